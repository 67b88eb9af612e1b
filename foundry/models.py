"""Data models for Foundry."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, NamedTuple, Optional

from foundry.constants import (
    API_VERSION,
    CONDITION_UNKNOWN,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_IMAGES_POOL_PATH,
    DEFAULT_SHUTDOWN_TIMEOUT,
    DEFAULT_VMS_POOL_PATH,
    FORMAT_QCOW2,
    GIB,
    IMAGES_POOL,
    KIND_VIRTUAL_MACHINE,
    LIBVIRT_URI,
    PHASE_PENDING,
    SHUTDOWN_POLL_INTERVAL,
    VMS_POOL,
    VOLUME_FORMATS,
    VOLUME_KIND_CLOUDINIT,
    VOLUME_KINDS,
)
from foundry.exceptions import ValidationError


class QemuIdentity(NamedTuple):
    uid: int
    gid: int


@dataclass
class VolumeSpec:
    name: str
    kind: str
    format: str
    capacity_gb: int = 0
    backing_volume: str = ""

    def validate(self) -> None:
        if not self.name:
            raise ValidationError("volume name is required")
        if self.kind not in VOLUME_KINDS:
            raise ValidationError(f"volume {self.name}: unsupported type '{self.kind}'")
        if self.format not in VOLUME_FORMATS:
            raise ValidationError(f"volume {self.name}: format must be qcow2 or raw (got '{self.format}')")
        if self.capacity_gb <= 0 and self.kind != VOLUME_KIND_CLOUDINIT:
            raise ValidationError(f"volume {self.name}: capacity must be greater than 0")
        if self.backing_volume and self.format != FORMAT_QCOW2:
            raise ValidationError(f"volume {self.name}: backing volumes require qcow2 format")


@dataclass
class PoolInfo:
    name: str
    type: str
    path: str
    uuid: str = ""
    state: str = "unknown"
    autostart: bool = False
    capacity: int = 0
    allocation: int = 0
    available: int = 0

    @property
    def capacity_gb(self) -> float:
        return self.capacity / GIB

    @property
    def allocation_gb(self) -> float:
        return self.allocation / GIB

    @property
    def available_gb(self) -> float:
        return self.available / GIB

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "path": self.path,
            "uuid": self.uuid,
            "state": self.state,
            "autostart": self.autostart,
            "capacity": self.capacity,
            "allocation": self.allocation,
            "available": self.available,
        }


@dataclass
class VolumeInfo:
    name: str
    path: str
    pool: str
    capacity: int = 0
    allocation: int = 0
    format: str = ""

    @property
    def capacity_gb(self) -> float:
        return self.capacity / GIB

    @property
    def allocation_gb(self) -> float:
        return self.allocation / GIB

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "pool": self.pool,
            "capacity": self.capacity,
            "allocation": self.allocation,
            "format": self.format,
        }


@dataclass
class Settings:
    """Runtime settings shared by every command."""

    libvirt_uri: str = LIBVIRT_URI
    images_pool_path: str = DEFAULT_IMAGES_POOL_PATH
    vms_pool_path: str = DEFAULT_VMS_POOL_PATH
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    poll_interval: float = SHUTDOWN_POLL_INTERVAL
    qemu: Optional[QemuIdentity] = None


# ---------------------------------------------------------------------------
# VirtualMachine resource
# ---------------------------------------------------------------------------


@dataclass
class BootDiskSpec:
    size_gb: int
    image: str = ""
    image_pool: str = IMAGES_POOL
    format: str = FORMAT_QCOW2
    empty: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"sizeGB": self.size_gb}
        if self.image:
            data["image"] = self.image
        data["imagePool"] = self.image_pool
        data["format"] = self.format
        if self.empty:
            data["empty"] = True
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BootDiskSpec":
        return cls(
            size_gb=int(data.get("sizeGB") or 0),
            image=str(data.get("image") or ""),
            image_pool=str(data.get("imagePool") or IMAGES_POOL),
            format=str(data.get("format") or FORMAT_QCOW2),
            empty=bool(data.get("empty", False)),
        )


@dataclass
class DataDiskSpec:
    device: str
    size_gb: int

    def to_dict(self) -> Dict[str, Any]:
        return {"device": self.device, "sizeGB": self.size_gb}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataDiskSpec":
        return cls(device=str(data.get("device") or ""), size_gb=int(data.get("sizeGB") or 0))


@dataclass
class NetworkInterfaceSpec:
    ip: str
    gateway: str
    bridge: str
    dns_servers: List[str] = field(default_factory=list)
    default_route: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"ip": self.ip, "gateway": self.gateway, "bridge": self.bridge}
        if self.dns_servers:
            data["dnsServers"] = list(self.dns_servers)
        if self.default_route:
            data["defaultRoute"] = True
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkInterfaceSpec":
        return cls(
            ip=str(data.get("ip") or ""),
            gateway=str(data.get("gateway") or ""),
            bridge=str(data.get("bridge") or ""),
            dns_servers=[str(s) for s in data.get("dnsServers") or []],
            default_route=bool(data.get("defaultRoute", False)),
        )


@dataclass
class CloudInitSpec:
    fqdn: str = ""
    ssh_authorized_keys: List[str] = field(default_factory=list)
    password_hash: str = ""
    password: str = ""
    ssh_password_auth: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.fqdn:
            data["fqdn"] = self.fqdn
        if self.ssh_authorized_keys:
            data["sshAuthorizedKeys"] = list(self.ssh_authorized_keys)
        if self.password_hash:
            data["passwordHash"] = self.password_hash
        if self.ssh_password_auth:
            data["sshPasswordAuth"] = True
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CloudInitSpec":
        return cls(
            fqdn=str(data.get("fqdn") or ""),
            ssh_authorized_keys=[str(k) for k in data.get("sshAuthorizedKeys") or []],
            password_hash=str(data.get("passwordHash") or ""),
            password=str(data.get("password") or ""),
            ssh_password_auth=bool(data.get("sshPasswordAuth", False)),
        )


@dataclass
class VirtualMachineSpec:
    vcpus: int
    memory_gib: int
    boot_disk: BootDiskSpec
    network_interfaces: List[NetworkInterfaceSpec] = field(default_factory=list)
    data_disks: List[DataDiskSpec] = field(default_factory=list)
    cloud_init: Optional[CloudInitSpec] = None
    cpu_mode: str = "host-model"
    storage_pool: str = VMS_POOL
    autostart: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "vcpus": self.vcpus,
            "cpuMode": self.cpu_mode,
            "memoryGiB": self.memory_gib,
            "storagePool": self.storage_pool,
            "bootDisk": self.boot_disk.to_dict(),
        }
        if self.data_disks:
            data["dataDisks"] = [d.to_dict() for d in self.data_disks]
        data["networkInterfaces"] = [n.to_dict() for n in self.network_interfaces]
        if self.cloud_init is not None:
            data["cloudInit"] = self.cloud_init.to_dict()
        data["autostart"] = self.autostart
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VirtualMachineSpec":
        cloud_init = data.get("cloudInit")
        autostart = data.get("autostart")
        return cls(
            vcpus=int(data.get("vcpus") or 0),
            memory_gib=int(data.get("memoryGiB") or 0),
            boot_disk=BootDiskSpec.from_dict(data.get("bootDisk") or {}),
            network_interfaces=[NetworkInterfaceSpec.from_dict(n) for n in data.get("networkInterfaces") or []],
            data_disks=[DataDiskSpec.from_dict(d) for d in data.get("dataDisks") or []],
            cloud_init=CloudInitSpec.from_dict(cloud_init) if cloud_init is not None else None,
            cpu_mode=str(data.get("cpuMode") or "host-model"),
            storage_pool=str(data.get("storagePool") or VMS_POOL),
            autostart=True if autostart is None else bool(autostart),
        )


@dataclass
class Condition:
    type: str
    status: str = CONDITION_UNKNOWN
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[datetime] = None
    observed_generation: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type, "status": self.status}
        if self.reason:
            data["reason"] = self.reason
        if self.message:
            data["message"] = self.message
        if self.last_transition_time is not None:
            data["lastTransitionTime"] = self.last_transition_time.isoformat()
        if self.observed_generation:
            data["observedGeneration"] = self.observed_generation
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        raw_time = data.get("lastTransitionTime")
        if isinstance(raw_time, str):
            transition_time: Optional[datetime] = datetime.fromisoformat(raw_time)
        elif isinstance(raw_time, datetime):
            transition_time = raw_time
        else:
            transition_time = None
        return cls(
            type=str(data.get("type") or ""),
            status=str(data.get("status") or CONDITION_UNKNOWN),
            reason=str(data.get("reason") or ""),
            message=str(data.get("message") or ""),
            last_transition_time=transition_time,
            observed_generation=int(data.get("observedGeneration") or 0),
        )


class Address(NamedTuple):
    type: str
    address: str


@dataclass
class VirtualMachineStatus:
    phase: str = PHASE_PENDING
    conditions: List[Condition] = field(default_factory=list)
    addresses: List[Address] = field(default_factory=list)
    domain_uuid: str = ""
    mac_addresses: List[str] = field(default_factory=list)
    interface_names: List[str] = field(default_factory=list)
    observed_generation: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"phase": self.phase}
        if self.conditions:
            data["conditions"] = [c.to_dict() for c in self.conditions]
        if self.addresses:
            data["addresses"] = [{"type": a.type, "address": a.address} for a in self.addresses]
        if self.domain_uuid:
            data["domainUUID"] = self.domain_uuid
        if self.mac_addresses:
            data["macAddresses"] = list(self.mac_addresses)
        if self.interface_names:
            data["interfaceNames"] = list(self.interface_names)
        if self.observed_generation:
            data["observedGeneration"] = self.observed_generation
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VirtualMachineStatus":
        return cls(
            phase=str(data.get("phase") or PHASE_PENDING),
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
            addresses=[Address(str(a.get("type", "")), str(a.get("address", ""))) for a in data.get("addresses") or []],
            domain_uuid=str(data.get("domainUUID") or ""),
            mac_addresses=[str(m) for m in data.get("macAddresses") or []],
            interface_names=[str(n) for n in data.get("interfaceNames") or []],
            observed_generation=int(data.get("observedGeneration") or 0),
        )


@dataclass
class VirtualMachine:
    name: str
    spec: VirtualMachineSpec
    status: VirtualMachineStatus = field(default_factory=VirtualMachineStatus)
    api_version: str = API_VERSION
    kind: str = KIND_VIRTUAL_MACHINE
    generation: int = 1
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)

    def to_dict(self, include_status: bool = True) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {"name": self.name}
        if self.generation:
            metadata["generation"] = self.generation
        if self.labels:
            metadata["labels"] = dict(self.labels)
        if self.annotations:
            metadata["annotations"] = dict(self.annotations)
        data: Dict[str, Any] = {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": metadata,
            "spec": self.spec.to_dict(),
        }
        if include_status:
            data["status"] = self.status.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VirtualMachine":
        metadata = data.get("metadata") or {}
        return cls(
            name=str(metadata.get("name") or ""),
            spec=VirtualMachineSpec.from_dict(data.get("spec") or {}),
            status=VirtualMachineStatus.from_dict(data.get("status") or {}),
            api_version=str(data.get("apiVersion") or ""),
            kind=str(data.get("kind") or ""),
            generation=int(metadata.get("generation") or 1),
            labels={str(k): str(v) for k, v in (metadata.get("labels") or {}).items()},
            annotations={str(k): str(v) for k, v in (metadata.get("annotations") or {}).items()},
        )


@dataclass
class VMInfo:
    """Summary of a defined domain, as reported by ``foundry list``."""

    name: str
    uuid: str
    phase: str
    state: int
    vcpus: int = 0
    memory_kib: int = 0
    autostart: bool = False
    ips: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "uuid": self.uuid,
            "phase": self.phase,
            "vcpus": self.vcpus,
            "memoryGiB": self.memory_kib // (1024 * 1024),
            "autostart": self.autostart,
            "ips": list(self.ips),
        }


@dataclass
class DestroyResult:
    name: str
    forced: bool = False
    deleted_volumes: List[str] = field(default_factory=list)
