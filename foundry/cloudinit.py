"""Cloud-init NoCloud seed generation for Foundry."""

from __future__ import annotations

import subprocess
import tempfile
from pathlib import Path
from typing import Any, Dict

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from foundry.constants import CLOUD_INIT_VOLUME_LABEL
from foundry.exceptions import BackendError, ValidationError
from foundry.models import VirtualMachine
from foundry.naming import mac_from_ip
from foundry.utils import hash_password, log, run


def _dump(data: Dict[str, Any]) -> str:
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)


def generate_user_data(vm: VirtualMachine) -> str:
    ci = vm.spec.cloud_init
    hostname = fqdn = vm.name
    if ci is not None and ci.fqdn:
        fqdn = ci.fqdn
        hostname = fqdn.split(".", 1)[0]

    user_cfg: Dict[str, Any] = {"hostname": hostname, "fqdn": fqdn}
    ssh_pwauth = False
    if ci is not None:
        if ci.ssh_authorized_keys:
            user_cfg["ssh_authorized_keys"] = list(ci.ssh_authorized_keys)
        password_hash = ci.password_hash or (hash_password(ci.password) if ci.password else "")
        if password_hash:
            user_cfg["chpasswd"] = {"expire": False, "list": f"root:{password_hash}"}
        ssh_pwauth = ci.ssh_password_auth
    user_cfg["ssh_pwauth"] = ssh_pwauth
    user_cfg["output"] = {"all": "| tee -a /var/log/cloud-init-output.log"}
    return "#cloud-config\n" + _dump(user_cfg)


def generate_meta_data(vm: VirtualMachine) -> str:
    # instance-id follows the name so a recreated VM runs cloud-init again
    return _dump({"instance-id": vm.name, "local-hostname": vm.name})


def generate_network_config(vm: VirtualMachine) -> str:
    """Netplan v2 config, one ethernet per interface matched by its derived MAC."""
    if not vm.spec.network_interfaces:
        raise ValidationError("at least one network interface is required")
    ethernets: Dict[str, Any] = {}
    for index, iface in enumerate(vm.spec.network_interfaces):
        eth: Dict[str, Any] = {
            "match": {"macaddress": mac_from_ip(iface.ip)},
            "addresses": [iface.ip],
        }
        if iface.default_route:
            eth["routes"] = [{"to": "0.0.0.0/0", "via": iface.gateway}]
        if iface.dns_servers:
            eth["nameservers"] = {"addresses": list(iface.dns_servers)}
        ethernets[f"eth{index}"] = eth
    return _dump({"version": 2, "ethernets": ethernets})


def generate_iso(vm: VirtualMachine) -> bytes:
    """Build the NoCloud seed ISO and return its bytes."""
    with tempfile.TemporaryDirectory(prefix="foundry-ci-") as tmpdir:
        tmp = Path(tmpdir)
        files = {
            "user-data": generate_user_data(vm),
            "meta-data": generate_meta_data(vm),
            "network-config": generate_network_config(vm),
        }
        for name, content in files.items():
            (tmp / name).write_text(content, encoding="utf-8")

        iso_path = tmp / "seed.iso"
        cmd = [
            "genisoimage",
            "-output",
            str(iso_path),
            "-volid",
            CLOUD_INIT_VOLUME_LABEL,
            "-joliet",
            "-rock",
        ] + [str(tmp / name) for name in files]
        try:
            run(cmd, capture_output=True)
        except FileNotFoundError as exc:
            raise BackendError("genisoimage is required to build cloud-init ISOs") from exc
        except subprocess.CalledProcessError as exc:
            raise BackendError(f"genisoimage failed: {(exc.stderr or '').strip()}") from exc
        data = iso_path.read_bytes()
    log("DEBUG", f"Generated cloud-init ISO for {vm.name} ({len(data)} bytes)")
    return data
