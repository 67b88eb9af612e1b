"""foundry package."""

__all__ = [
    "cli",
    "cloudinit",
    "config",
    "constants",
    "decommission",
    "domain",
    "exceptions",
    "hypervisor",
    "images",
    "inventory",
    "metadata",
    "models",
    "naming",
    "network",
    "provision",
    "runtime",
    "status",
    "storage",
    "utils",
]
