"""Shared test fixtures: an in-memory hypervisor implementing foundry's capability protocols."""

from __future__ import annotations

import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from xml.etree.ElementTree import fromstring

import pytest

from foundry.constants import (
    DOMAIN_STATE_RUNNING,
    DOMAIN_STATE_SHUTOFF,
    POOL_STATE_RUNNING,
)
from foundry.exceptions import (
    BackendError,
    DomainNotFoundError,
    NotFoundError,
    PoolNotFoundError,
    VolumeNotFoundError,
)
from foundry.models import (
    BootDiskSpec,
    CloudInitSpec,
    DataDiskSpec,
    NetworkInterfaceSpec,
    QemuIdentity,
    VirtualMachine,
    VirtualMachineSpec,
)
from foundry.storage import StorageManager

Failure = Union[Exception, Callable[..., Optional[Exception]]]


class FakeVolume:
    def __init__(self, name: str, pool: "FakePool", capacity: int, xml: str) -> None:
        self.name = name
        self.pool = pool
        self.capacity = capacity
        self.xml = xml
        self.data = b""

    @property
    def path(self) -> str:
        return f"{self.pool.path}/{self.name}"


class FakePool:
    def __init__(self, name: str, path: str, pool_type: str = "dir") -> None:
        self.name = name
        self.path = path
        self.type = pool_type
        self.uuid = str(uuid.uuid4())
        self.state = 0
        self.autostart = False
        self.built = False
        self.volumes: Dict[str, FakeVolume] = {}


class FakeDomain:
    def __init__(self, name: str, xml: str) -> None:
        self.name = name
        self.xml = xml
        self.uuid = str(uuid.uuid4())
        self.state = DOMAIN_STATE_SHUTOFF
        self.autostart = False
        self.metadata: Dict[str, str] = {}
        # States reported before falling back to ``state``
        self.scripted_states: List[int] = []
        self.honours_shutdown = True


class FakeHypervisor:
    """Records every call; ``failures[method]`` makes a method raise."""

    def __init__(self) -> None:
        self.pools: Dict[str, FakePool] = {}
        self.domains: Dict[str, FakeDomain] = {}
        self.calls: List[Tuple[Any, ...]] = []
        self.failures: Dict[str, Failure] = {}
        self.closed = False

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method,) + args)
        failure = self.failures.get(method)
        if failure is None:
            return
        if isinstance(failure, Exception):
            raise failure
        exc = failure(*args)
        if exc is not None:
            raise exc

    def called(self, method: str) -> List[Tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == method]

    def add_pool(self, name: str, path: str, running: bool = True) -> FakePool:
        pool = FakePool(name, path)
        pool.state = POOL_STATE_RUNNING if running else 0
        self.pools[name] = pool
        return pool

    def add_volume(self, pool_name: str, name: str, capacity: int = 1, backing: str = "") -> FakeVolume:
        pool = self.pools[pool_name]
        xml = f"<volume><name>{name}</name>"
        if backing:
            xml += f"<backingStore><path>{backing}</path></backingStore>"
        xml += "</volume>"
        volume = FakeVolume(name, pool, capacity, xml)
        pool.volumes[name] = volume
        return volume

    def add_domain(self, name: str, state: int = DOMAIN_STATE_RUNNING) -> FakeDomain:
        domain = FakeDomain(name, f"<domain><name>{name}</name></domain>")
        domain.state = state
        self.domains[name] = domain
        return domain

    def close(self) -> None:
        self.closed = True

    # -- host -----------------------------------------------------------

    def hostname(self) -> str:
        self._record("hostname")
        return "fake-host"

    def lib_version(self) -> str:
        self._record("lib_version")
        return "10.0.0"

    # -- domains --------------------------------------------------------

    def lookup_domain(self, name: str) -> FakeDomain:
        self._record("lookup_domain", name)
        if name not in self.domains:
            raise DomainNotFoundError(f"lookup domain {name}: not found")
        return self.domains[name]

    def list_domains(self) -> List[FakeDomain]:
        self._record("list_domains")
        return list(self.domains.values())

    def define_domain(self, xml: str) -> FakeDomain:
        self._record("define_domain", xml)
        name = fromstring(xml).findtext("name")
        domain = FakeDomain(name, xml)
        self.domains[name] = domain
        return domain

    def set_autostart(self, domain: FakeDomain, enabled: bool) -> None:
        self._record("set_autostart", domain.name, enabled)
        domain.autostart = enabled

    def start_domain(self, domain: FakeDomain) -> None:
        self._record("start_domain", domain.name)
        domain.state = DOMAIN_STATE_RUNNING

    def domain_state(self, domain: FakeDomain) -> int:
        self._record("domain_state", domain.name)
        if domain.scripted_states:
            return domain.scripted_states.pop(0)
        return domain.state

    def shutdown_domain(self, domain: FakeDomain) -> None:
        self._record("shutdown_domain", domain.name)
        if domain.honours_shutdown:
            domain.state = DOMAIN_STATE_SHUTOFF

    def destroy_domain(self, domain: FakeDomain) -> None:
        self._record("destroy_domain", domain.name)
        domain.state = DOMAIN_STATE_SHUTOFF

    def undefine_domain(self, domain: FakeDomain, flags: int = 0) -> None:
        self._record("undefine_domain", domain.name, flags)
        self.domains.pop(domain.name, None)

    def domain_name(self, domain: FakeDomain) -> str:
        return domain.name

    def domain_uuid(self, domain: FakeDomain) -> str:
        self._record("domain_uuid", domain.name)
        return domain.uuid

    def domain_info(self, domain: FakeDomain) -> Tuple[int, int, int]:
        self._record("domain_info", domain.name)
        return domain.state, 4 * 1024 * 1024, 2

    def domain_autostart(self, domain: FakeDomain) -> bool:
        return domain.autostart

    def set_domain_metadata(self, domain: FakeDomain, xml: str, key: str, uri: str) -> None:
        self._record("set_domain_metadata", domain.name, key, uri)
        domain.metadata[uri] = xml

    def get_domain_metadata(self, domain: FakeDomain, uri: str) -> str:
        self._record("get_domain_metadata", domain.name, uri)
        if uri not in domain.metadata:
            raise NotFoundError("metadata not found")
        return domain.metadata[uri]

    # -- pools ----------------------------------------------------------

    def lookup_pool(self, name: str) -> FakePool:
        self._record("lookup_pool", name)
        if name not in self.pools:
            raise PoolNotFoundError(f"lookup storage pool {name}: not found")
        return self.pools[name]

    def list_pools(self) -> List[FakePool]:
        self._record("list_pools")
        return list(self.pools.values())

    def define_pool(self, xml: str) -> FakePool:
        self._record("define_pool", xml)
        root = fromstring(xml)
        pool = FakePool(root.findtext("name"), root.findtext("target/path"), root.get("type"))
        self.pools[pool.name] = pool
        return pool

    def build_pool(self, pool: FakePool) -> None:
        self._record("build_pool", pool.name)
        pool.built = True

    def start_pool(self, pool: FakePool) -> None:
        self._record("start_pool", pool.name)
        pool.state = POOL_STATE_RUNNING

    def stop_pool(self, pool: FakePool) -> None:
        self._record("stop_pool", pool.name)
        pool.state = 0

    def undefine_pool(self, pool: FakePool) -> None:
        self._record("undefine_pool", pool.name)
        self.pools.pop(pool.name, None)

    def refresh_pool(self, pool: FakePool) -> None:
        self._record("refresh_pool", pool.name)

    def set_pool_autostart(self, pool: FakePool, enabled: bool) -> None:
        self._record("set_pool_autostart", pool.name, enabled)
        pool.autostart = enabled

    def pool_name(self, pool: FakePool) -> str:
        return pool.name

    def pool_uuid(self, pool: FakePool) -> str:
        return pool.uuid

    def pool_autostart(self, pool: FakePool) -> bool:
        return pool.autostart

    def pool_xml(self, pool: FakePool) -> str:
        self._record("pool_xml", pool.name)
        return f'<pool type="{pool.type}"><name>{pool.name}</name><target><path>{pool.path}</path></target></pool>'

    def pool_info(self, pool: FakePool) -> Tuple[int, int, int, int]:
        self._record("pool_info", pool.name)
        allocation = sum(v.capacity for v in pool.volumes.values())
        return pool.state, 100 * 1024 ** 3, allocation, 100 * 1024 ** 3 - allocation

    # -- volumes --------------------------------------------------------

    def list_volumes(self, pool: FakePool) -> List[FakeVolume]:
        self._record("list_volumes", pool.name)
        return list(pool.volumes.values())

    def lookup_volume(self, pool: FakePool, name: str) -> FakeVolume:
        self._record("lookup_volume", pool.name, name)
        if name not in pool.volumes:
            raise VolumeNotFoundError(f"lookup volume {name}: not found")
        return pool.volumes[name]

    def create_volume(self, pool: FakePool, xml: str) -> FakeVolume:
        root = fromstring(xml)
        name = root.findtext("name")
        self._record("create_volume", pool.name, name)
        if name in pool.volumes:
            raise BackendError(f"volume {name} already exists")
        volume = FakeVolume(name, pool, int(root.findtext("capacity") or 0), xml)
        pool.volumes[name] = volume
        return volume

    def delete_volume(self, volume: FakeVolume) -> None:
        self._record("delete_volume", volume.pool.name, volume.name)
        volume.pool.volumes.pop(volume.name, None)

    def volume_name(self, volume: FakeVolume) -> str:
        return volume.name

    def volume_path(self, volume: FakeVolume) -> str:
        self._record("volume_path", volume.name)
        return volume.path

    def volume_info(self, volume: FakeVolume) -> Tuple[int, int, int]:
        self._record("volume_info", volume.name)
        return 0, volume.capacity, len(volume.data)

    def volume_xml(self, volume: FakeVolume) -> str:
        return volume.xml

    def upload_volume(self, volume: FakeVolume, source: Any, length: int) -> None:
        self._record("upload_volume", volume.name, length)
        volume.data = source.read(length)


@pytest.fixture
def hypervisor() -> FakeHypervisor:
    return FakeHypervisor()


@pytest.fixture
def qemu_identity() -> QemuIdentity:
    return QemuIdentity(uid=64055, gid=108)


@pytest.fixture
def storage(hypervisor: FakeHypervisor, qemu_identity: QemuIdentity) -> StorageManager:
    manager = StorageManager(hypervisor, qemu=qemu_identity, images_pool_path="/srv/images", vms_pool_path="/srv/vms")
    manager.ensure_default_pools()
    hypervisor.calls.clear()
    return manager


@pytest.fixture
def make_vm() -> Callable[..., VirtualMachine]:
    """Factory for a valid VM with an image-backed boot disk."""

    def _make(
        name: str = "web01",
        data_devices: Tuple[str, ...] = ("vdb",),
        cloud_init: bool = True,
        image: str = "ubuntu-24.04.qcow2",
    ) -> VirtualMachine:
        spec = VirtualMachineSpec(
            vcpus=2,
            memory_gib=4,
            boot_disk=BootDiskSpec(size_gb=20, image=image, empty=not image),
            network_interfaces=[
                NetworkInterfaceSpec(
                    ip="10.55.22.22/24",
                    gateway="10.55.22.1",
                    bridge="br0",
                    dns_servers=["10.55.1.1"],
                    default_route=True,
                )
            ],
            data_disks=[DataDiskSpec(device=dev, size_gb=10) for dev in data_devices],
            cloud_init=CloudInitSpec(fqdn=f"{name}.example.com", ssh_authorized_keys=["ssh-ed25519 AAAA test"])
            if cloud_init
            else None,
        )
        return VirtualMachine(name=name, spec=spec)

    return _make
