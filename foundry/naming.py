"""Deterministic names for volumes and network identities."""

from __future__ import annotations

import ipaddress
from typing import List

from foundry.constants import INTERFACE_PREFIX, MAC_PREFIX
from foundry.exceptions import ValidationError


def boot_volume_name(vm_name: str) -> str:
    return f"{vm_name}_boot.qcow2"


def data_volume_name(vm_name: str, device: str) -> str:
    return f"{vm_name}_data-{device}.qcow2"


def cloudinit_volume_name(vm_name: str) -> str:
    return f"{vm_name}_cloudinit.iso"


def volume_prefix(vm_name: str) -> str:
    """Prefix shared by every volume owned by ``vm_name``."""
    return f"{vm_name}_"


def _ipv4_octets(ip: str) -> List[int]:
    address = ip.split("/", 1)[0].strip()
    try:
        parsed = ipaddress.ip_address(address)
    except ValueError as exc:
        raise ValidationError(f"invalid IP address '{ip}'") from exc
    if not isinstance(parsed, ipaddress.IPv4Address):
        raise ValidationError(f"IPv6 addresses are not supported: '{ip}'")
    return list(parsed.packed)


def mac_from_ip(ip: str) -> str:
    """be:ef prefix followed by the four IPv4 octets; a CIDR suffix is ignored."""
    octets = _ipv4_octets(ip)
    return MAC_PREFIX + "".join(f":{o:02x}" for o in octets)


def interface_name_from_ip(ip: str) -> str:
    """Host tap device name, ``vm`` plus the hex IPv4 octets (fits IFNAMSIZ)."""
    octets = _ipv4_octets(ip)
    return INTERFACE_PREFIX + "".join(f"{o:02x}" for o in octets)
