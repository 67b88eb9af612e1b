"""VM spec loading, validation and environment settings for Foundry."""

from __future__ import annotations

import ipaddress
from pathlib import Path
from typing import Optional, Set

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from foundry.constants import (
    API_VERSION,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_IMAGES_POOL_PATH,
    DEFAULT_SHUTDOWN_TIMEOUT,
    DEFAULT_VMS_POOL_PATH,
    DEVICE_NAME_RE,
    FORMAT_QCOW2,
    FQDN_RE,
    IMAGES_POOL,
    KIND_VIRTUAL_MACHINE,
    LIBVIRT_URI,
    SSH_KEY_PREFIXES,
    VM_NAME_RE,
    VMS_POOL,
    VOLUME_FORMATS,
)
from foundry.exceptions import ValidationError
from foundry.models import Settings, VirtualMachine
from foundry.runtime import resolve_qemu_identity
from foundry.utils import get_env, log, parse_int_env


def load_vm_from_file(path: Path) -> VirtualMachine:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ValidationError(f"Failed to read VM spec {path}: {exc}") from exc
    return load_vm_from_yaml(text)


def load_vm_from_yaml(text: str) -> VirtualMachine:
    """Parse, default and validate a VirtualMachine document."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValidationError(f"VM spec contains invalid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError("VM spec must be a YAML mapping")
    if not data.get("apiVersion"):
        raise ValidationError("missing required field: apiVersion")
    if not data.get("kind"):
        raise ValidationError("missing required field: kind")
    if data["apiVersion"] != API_VERSION:
        raise ValidationError(f"unsupported apiVersion: {data['apiVersion']} (expected: {API_VERSION})")
    if data["kind"] != KIND_VIRTUAL_MACHINE:
        raise ValidationError(f"unsupported kind: {data['kind']} (expected: {KIND_VIRTUAL_MACHINE})")

    try:
        vm = VirtualMachine.from_dict(data)
    except (TypeError, ValueError, AttributeError) as exc:
        raise ValidationError(f"malformed VM spec: {exc}") from exc
    apply_defaults(vm)
    validate_vm(vm)
    return vm


def save_vm_to_file(vm: VirtualMachine, path: Path) -> None:
    content = yaml.safe_dump(vm.to_dict(), sort_keys=False, default_flow_style=False)
    Path(path).write_text(content, encoding="utf-8")


def apply_defaults(vm: VirtualMachine) -> None:
    vm.name = vm.name.strip().lower()
    spec = vm.spec
    spec.cpu_mode = spec.cpu_mode or "host-model"
    spec.storage_pool = spec.storage_pool or VMS_POOL
    spec.boot_disk.format = spec.boot_disk.format or FORMAT_QCOW2
    spec.boot_disk.image_pool = spec.boot_disk.image_pool or IMAGES_POOL
    if spec.cloud_init is not None and spec.cloud_init.fqdn:
        spec.cloud_init.fqdn = spec.cloud_init.fqdn.strip().lower()


def _validate_ip(value: str, field_name: str, allow_prefix: bool) -> None:
    try:
        if allow_prefix and "/" in value:
            parsed = ipaddress.ip_interface(value).ip
        else:
            parsed = ipaddress.ip_address(value)
    except ValueError as exc:
        raise ValidationError(f"{field_name} '{value}' is not a valid IP address") from exc
    if parsed.version != 4:
        raise ValidationError(f"{field_name} '{value}' must be an IPv4 address")


def validate_vm(vm: VirtualMachine) -> None:
    if not vm.name:
        raise ValidationError("metadata.name is required")
    if not VM_NAME_RE.match(vm.name):
        raise ValidationError(f"metadata.name '{vm.name}' must be a DNS label (a-z, 0-9, '-')")

    spec = vm.spec
    if spec.vcpus <= 0:
        raise ValidationError("spec.vcpus must be greater than 0")
    if spec.memory_gib <= 0:
        raise ValidationError("spec.memoryGiB must be greater than 0")

    boot = spec.boot_disk
    if boot.size_gb <= 0:
        raise ValidationError("spec.bootDisk.sizeGB must be greater than 0")
    if not boot.image and not boot.empty:
        raise ValidationError("spec.bootDisk must specify either 'image' or 'empty: true'")
    if boot.image and boot.empty:
        raise ValidationError("spec.bootDisk cannot specify both 'image' and 'empty: true'")
    if boot.format not in VOLUME_FORMATS:
        raise ValidationError(f"spec.bootDisk.format must be qcow2 or raw (got '{boot.format}')")
    if boot.image and boot.format != FORMAT_QCOW2:
        raise ValidationError("spec.bootDisk.format must be qcow2 when booting from an image")

    devices: Set[str] = set()
    for i, disk in enumerate(spec.data_disks):
        if not disk.device:
            raise ValidationError(f"spec.dataDisks[{i}].device is required")
        if not DEVICE_NAME_RE.match(disk.device):
            raise ValidationError(f"spec.dataDisks[{i}].device '{disk.device}' must be vdb..vdz")
        if disk.size_gb <= 0:
            raise ValidationError(f"spec.dataDisks[{i}].sizeGB must be greater than 0")
        if disk.device in devices:
            raise ValidationError(f"spec.dataDisks[{i}].device '{disk.device}' is duplicated")
        devices.add(disk.device)

    if not spec.network_interfaces:
        raise ValidationError("spec.networkInterfaces must have at least one interface")
    ips: Set[str] = set()
    for i, iface in enumerate(spec.network_interfaces):
        if not iface.ip:
            raise ValidationError(f"spec.networkInterfaces[{i}].ip is required")
        if not iface.gateway:
            raise ValidationError(f"spec.networkInterfaces[{i}].gateway is required")
        if not iface.bridge:
            raise ValidationError(f"spec.networkInterfaces[{i}].bridge is required")
        _validate_ip(iface.ip, f"spec.networkInterfaces[{i}].ip", allow_prefix=True)
        _validate_ip(iface.gateway, f"spec.networkInterfaces[{i}].gateway", allow_prefix=False)
        for dns in iface.dns_servers:
            _validate_ip(dns, f"spec.networkInterfaces[{i}].dnsServers", allow_prefix=False)
        address = iface.ip.split("/", 1)[0]
        if address in ips:
            raise ValidationError(f"spec.networkInterfaces[{i}].ip '{iface.ip}' is duplicated")
        ips.add(address)

    ci = spec.cloud_init
    if ci is not None:
        if ci.fqdn and not FQDN_RE.match(ci.fqdn):
            raise ValidationError(f"spec.cloudInit.fqdn '{ci.fqdn}' is not a valid FQDN")
        for key in ci.ssh_authorized_keys:
            if not key.startswith(SSH_KEY_PREFIXES):
                raise ValidationError("spec.cloudInit.sshAuthorizedKeys contains an unsupported key type")
        if ci.password_hash and not ci.password_hash.startswith("$"):
            raise ValidationError("spec.cloudInit.passwordHash must be a crypt(3) hash")
        if ci.password_hash and ci.password:
            raise ValidationError("spec.cloudInit: set only one of password or passwordHash")


def parse_settings(resolve_identity: bool = True) -> Settings:
    """Build runtime settings from the environment."""
    connect_timeout = parse_int_env("FOUNDRY_CONNECT_TIMEOUT", str(DEFAULT_CONNECT_TIMEOUT), max_val=300)
    shutdown_timeout = parse_int_env("FOUNDRY_SHUTDOWN_TIMEOUT", str(DEFAULT_SHUTDOWN_TIMEOUT), max_val=3600)
    settings = Settings(
        libvirt_uri=get_env("LIBVIRT_URI", LIBVIRT_URI) or LIBVIRT_URI,
        images_pool_path=get_env("FOUNDRY_IMAGES_POOL_PATH") or DEFAULT_IMAGES_POOL_PATH,
        vms_pool_path=get_env("FOUNDRY_VMS_POOL_PATH") or DEFAULT_VMS_POOL_PATH,
        connect_timeout=connect_timeout,
        shutdown_timeout=shutdown_timeout,
    )
    if resolve_identity:
        settings.qemu = resolve_qemu_identity()
    log("DEBUG", f"Settings: uri={settings.libvirt_uri} images={settings.images_pool_path} vms={settings.vms_pool_path}")
    return settings


def describe_vm(vm: VirtualMachine, path: Optional[Path] = None) -> str:
    source = f" from {path}" if path else ""
    return (
        f"{vm.name}{source}: {vm.spec.vcpus} vCPU, {vm.spec.memory_gib} GiB, "
        f"{len(vm.spec.data_disks)} data disk(s), {len(vm.spec.network_interfaces)} interface(s)"
    )
