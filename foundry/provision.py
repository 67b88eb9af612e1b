"""VM provisioning for Foundry: storage, domain definition and boot, with rollback."""

from __future__ import annotations

import threading
from typing import Any, Callable, List, Optional, Protocol, Tuple

from foundry.constants import (
    DOMAIN_UNDEFINE_NVRAM,
    GIB,
    IMAGES_POOL,
    VOLUME_KIND_BOOT,
    VOLUME_KIND_CLOUDINIT,
    VOLUME_KIND_DATA,
    FORMAT_QCOW2,
    FORMAT_RAW,
)
from foundry.exceptions import (
    AlreadyExistsError,
    DomainNotFoundError,
    FoundryError,
    ImageNotFoundError,
    VolumeNotFoundError,
)
from foundry.models import Settings, VirtualMachine, VolumeSpec
from foundry import naming, status
from foundry.cloudinit import generate_iso
from foundry.domain import render_domain_xml
from foundry.metadata import store_vm_spec
from foundry.storage import StorageManager
from foundry.utils import log


class HypervisorClient(Protocol):
    """Domain operations needed to bring a VM up."""

    def lookup_domain(self, name: str) -> Any: ...
    def define_domain(self, xml: str) -> Any: ...
    def set_autostart(self, domain: Any, enabled: bool) -> None: ...
    def start_domain(self, domain: Any) -> None: ...
    def destroy_domain(self, domain: Any) -> None: ...
    def undefine_domain(self, domain: Any, flags: int = 0) -> None: ...
    def domain_uuid(self, domain: Any) -> str: ...
    def set_domain_metadata(self, domain: Any, xml: str, key: str, uri: str) -> None: ...


class StorageService(Protocol):
    """Storage operations needed to lay out a VM's volumes."""

    def create_volume(self, pool_name: str, spec: VolumeSpec) -> None: ...
    def delete_volume(self, pool_name: str, name: str) -> None: ...
    def volume_exists(self, pool_name: str, name: str) -> bool: ...
    def get_volume_path(self, pool_name: str, name: str) -> str: ...
    def write_volume_data(self, pool_name: str, name: str, data: bytes) -> None: ...


class Rollback:
    """Compensating actions for resources created so far, undone newest first."""

    def __init__(self) -> None:
        self._actions: List[Tuple[str, Callable[[], None]]] = []

    def add(self, description: str, action: Callable[[], None]) -> None:
        self._actions.append((description, action))

    def __len__(self) -> int:
        return len(self._actions)

    def run(self) -> List[str]:
        """Run every action once; return the descriptions of those that failed."""
        failed: List[str] = []
        while self._actions:
            description, action = self._actions.pop()
            try:
                action()
            except FoundryError as exc:
                log("WARN", f"Rollback: failed to {description}: {exc}")
                failed.append(description)
            else:
                log("INFO", f"Rollback: {description}")
        return failed

    def clear(self) -> None:
        self._actions.clear()


def is_path_reference(image: str) -> bool:
    return "/" in image or image.startswith(".")


class Provisioner:
    """Creates a VM from a validated spec, undoing partial work on failure."""

    def __init__(
        self,
        hypervisor: HypervisorClient,
        storage: StorageService,
        iso_builder: Callable[[VirtualMachine], bytes] = generate_iso,
        xml_builder: Callable[[VirtualMachine], str] = render_domain_xml,
    ) -> None:
        self.hypervisor = hypervisor
        self.storage = storage
        self.iso_builder = iso_builder
        self.xml_builder = xml_builder

    def create(self, vm: VirtualMachine) -> VirtualMachine:
        status.transition_to_creating(vm)
        log("INFO", f"Creating VM {vm.name}")
        rollback = Rollback()
        try:
            self._create(vm, rollback)
        except Exception as exc:
            if len(rollback):
                log("WARN", f"Creation of {vm.name} failed; rolling back")
                rollback.run()
            status.transition_to_failed(vm, "CreateFailed", str(exc))
            raise
        status.transition_to_running(vm)
        log("SUCCESS", f"VM {vm.name} created and started")
        return vm

    def _create(self, vm: VirtualMachine, rollback: Rollback) -> None:
        spec = vm.spec
        pool = spec.storage_pool
        boot_name = naming.boot_volume_name(vm.name)

        backing = self._preflight(vm, boot_name)

        self._create_volume(
            rollback,
            pool,
            VolumeSpec(
                name=boot_name,
                kind=VOLUME_KIND_BOOT,
                format=spec.boot_disk.format,
                capacity_gb=spec.boot_disk.size_gb,
                backing_volume=backing,
            ),
        )
        for disk in spec.data_disks:
            self._create_volume(
                rollback,
                pool,
                VolumeSpec(
                    name=naming.data_volume_name(vm.name, disk.device),
                    kind=VOLUME_KIND_DATA,
                    format=FORMAT_QCOW2,
                    capacity_gb=disk.size_gb,
                ),
            )
        status.mark_storage_provisioned(vm)

        if spec.cloud_init is not None:
            self._create_cloudinit(vm, rollback)
            status.mark_cloud_init_ready(vm)

        vm.status.mac_addresses = [naming.mac_from_ip(i.ip) for i in spec.network_interfaces]
        vm.status.interface_names = [naming.interface_name_from_ip(i.ip) for i in spec.network_interfaces]

        domain = self.hypervisor.define_domain(self.xml_builder(vm))
        rollback.add(f"remove domain {vm.name}", lambda: self._remove_domain(domain, vm.name))
        log("INFO", f"Defined domain {vm.name}")
        status.mark_network_configured(vm)

        self.hypervisor.set_autostart(domain, spec.autostart)
        self.hypervisor.start_domain(domain)
        log("INFO", f"Started domain {vm.name}")
        rollback.clear()

        try:
            vm.status.domain_uuid = self.hypervisor.domain_uuid(domain)
        except FoundryError as exc:
            log("WARN", f"Could not read UUID of {vm.name}: {exc}")
        try:
            store_vm_spec(self.hypervisor, domain, vm)
        except FoundryError as exc:
            log("WARN", f"Failed to store spec metadata on {vm.name}: {exc}")

    def _preflight(self, vm: VirtualMachine, boot_name: str) -> str:
        """Refuse to touch an existing VM and resolve the boot image; returns the backing path."""
        try:
            self.hypervisor.lookup_domain(vm.name)
        except DomainNotFoundError:
            pass
        else:
            raise AlreadyExistsError(f"domain {vm.name} already exists")

        if self.storage.volume_exists(vm.spec.storage_pool, boot_name):
            raise AlreadyExistsError(f"boot volume {boot_name} already exists in pool {vm.spec.storage_pool}")

        boot = vm.spec.boot_disk
        if boot.empty or not boot.image:
            return ""
        return self.resolve_image(boot.image, boot.image_pool or IMAGES_POOL)

    def resolve_image(self, image: str, default_pool: str = IMAGES_POOL) -> str:
        """Resolve a boot image reference to a backing file path.

        Paths are used as given; ``pool:volume`` names a volume in a specific
        pool; anything else is a volume in ``default_pool``.
        """
        if is_path_reference(image):
            return image
        pool, sep, volume = image.partition(":")
        if not sep:
            pool, volume = default_pool, image
        try:
            return self.storage.get_volume_path(pool, volume)
        except VolumeNotFoundError as exc:
            raise ImageNotFoundError(f"image {volume} not found in pool {pool}") from exc

    def _create_volume(self, rollback: Rollback, pool: str, spec: VolumeSpec) -> None:
        self.storage.create_volume(pool, spec)
        rollback.add(
            f"delete volume {spec.name}",
            lambda: self.storage.delete_volume(pool, spec.name),
        )

    def _create_cloudinit(self, vm: VirtualMachine, rollback: Rollback) -> None:
        data = self.iso_builder(vm)
        size_gb = max(1, -(-len(data) // GIB))
        name = naming.cloudinit_volume_name(vm.name)
        self._create_volume(
            rollback,
            vm.spec.storage_pool,
            VolumeSpec(name=name, kind=VOLUME_KIND_CLOUDINIT, format=FORMAT_RAW, capacity_gb=size_gb),
        )
        self.storage.write_volume_data(vm.spec.storage_pool, name, data)
        log("INFO", f"Wrote cloud-init ISO to {name}")

    def _remove_domain(self, domain: Any, name: str) -> None:
        try:
            self.hypervisor.destroy_domain(domain)
        except FoundryError as exc:
            log("DEBUG", f"Destroy of {name} during rollback: {exc}")
        self.hypervisor.undefine_domain(domain, DOMAIN_UNDEFINE_NVRAM)


def create_vm(
    vm: VirtualMachine,
    settings: Optional[Settings] = None,
    cancel: Optional[threading.Event] = None,
) -> VirtualMachine:
    """Connect to the hypervisor and provision ``vm``."""
    from foundry.hypervisor import connect

    settings = settings or Settings()
    client = connect(settings.libvirt_uri, settings.connect_timeout, cancel)
    try:
        storage = StorageManager(
            client,
            qemu=settings.qemu,
            images_pool_path=settings.images_pool_path,
            vms_pool_path=settings.vms_pool_path,
        )
        storage.ensure_default_pools()
        return Provisioner(client, storage).create(vm)
    finally:
        client.close()
