"""VM teardown for Foundry: graceful stop, undefine and volume reclamation."""

from __future__ import annotations

import threading
import time
from typing import Any, List, Optional, Protocol, Sequence

from foundry.constants import (
    DEFAULT_SHUTDOWN_TIMEOUT,
    DOMAIN_STATE_RUNNING,
    DOMAIN_STATE_SHUTOFF,
    DOMAIN_UNDEFINE_NVRAM,
    IMAGES_POOL,
    SHUTDOWN_POLL_INTERVAL,
    VMS_POOL,
)
from foundry.exceptions import (
    BackendError,
    FoundryError,
    OperationCancelledError,
    OperationTimeoutError,
)
from foundry.models import DestroyResult, Settings, VolumeInfo
from foundry.naming import volume_prefix
from foundry.storage import StorageManager
from foundry.utils import log


class HypervisorClient(Protocol):
    """Domain operations needed to tear a VM down."""

    def lookup_domain(self, name: str) -> Any: ...
    def domain_state(self, domain: Any) -> int: ...
    def shutdown_domain(self, domain: Any) -> None: ...
    def destroy_domain(self, domain: Any) -> None: ...
    def undefine_domain(self, domain: Any, flags: int = 0) -> None: ...


class StorageService(Protocol):
    """Storage operations needed to reclaim a VM's volumes."""

    def list_volumes(self, pool_name: str) -> List[VolumeInfo]: ...
    def delete_volume(self, pool_name: str, name: str) -> None: ...


class Decommissioner:
    """Removes a VM and every volume carrying its name prefix."""

    def __init__(
        self,
        hypervisor: HypervisorClient,
        storage: StorageService,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
        poll_interval: float = SHUTDOWN_POLL_INTERVAL,
        cancel: Optional[threading.Event] = None,
        pools: Sequence[str] = (VMS_POOL, IMAGES_POOL),
    ) -> None:
        self.hypervisor = hypervisor
        self.storage = storage
        self.shutdown_timeout = shutdown_timeout
        self.poll_interval = poll_interval
        self.cancel = cancel or threading.Event()
        self.pools = list(dict.fromkeys(pools))

    def destroy(self, name: str) -> DestroyResult:
        domain = self.hypervisor.lookup_domain(name)
        result = DestroyResult(name=name)

        try:
            state = self.hypervisor.domain_state(domain)
        except FoundryError as exc:
            raise BackendError(f"failed to get state of domain {name}: {exc}") from exc

        if state == DOMAIN_STATE_RUNNING:
            if not self._graceful_shutdown(domain, name):
                result.forced = self._force_stop(domain, name)

        try:
            self.hypervisor.undefine_domain(domain, DOMAIN_UNDEFINE_NVRAM)
        except FoundryError as exc:
            raise BackendError(f"failed to undefine domain {name}: {exc}") from exc
        log("INFO", f"Undefined domain {name}")

        result.deleted_volumes = self.reclaim_volumes(name)
        log("SUCCESS", f"VM {name} destroyed ({len(result.deleted_volumes)} volumes removed)")
        return result

    def _graceful_shutdown(self, domain: Any, name: str) -> bool:
        """Request an ACPI shutdown and wait for shutoff; False means force is needed."""
        log("INFO", f"Shutting down domain {name}")
        try:
            self.hypervisor.shutdown_domain(domain)
        except FoundryError as exc:
            log("WARN", f"Graceful shutdown of {name} failed: {exc}")
            return False
        try:
            self.wait_for_shutoff(domain)
        except (OperationTimeoutError, OperationCancelledError) as exc:
            log("WARN", f"{exc}; forcing {name} off")
            return False
        except FoundryError as exc:
            log("WARN", f"Could not confirm shutdown of {name}: {exc}")
            return False
        log("INFO", f"Domain {name} shut down")
        return True

    def wait_for_shutoff(self, domain: Any) -> None:
        """Poll the domain state until shutoff, bounded by the timeout and the cancel event."""
        deadline = time.monotonic() + self.shutdown_timeout
        while True:
            if self.hypervisor.domain_state(domain) == DOMAIN_STATE_SHUTOFF:
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise OperationTimeoutError(f"domain did not shut off within {self.shutdown_timeout}s")
            if self.cancel.wait(min(self.poll_interval, remaining)):
                raise OperationCancelledError("shutdown wait cancelled")

    def _force_stop(self, domain: Any, name: str) -> bool:
        try:
            state: Optional[int] = self.hypervisor.domain_state(domain)
        except FoundryError as exc:
            log("WARN", f"Could not read state of {name} before force stop: {exc}")
            state = None
        if state == DOMAIN_STATE_SHUTOFF:
            return False
        try:
            self.hypervisor.destroy_domain(domain)
        except FoundryError as exc:
            log("WARN", f"Force stop of {name} failed: {exc}")
            return False
        log("INFO", f"Domain {name} forced off")
        return True

    def reclaim_volumes(self, name: str) -> List[str]:
        """Delete every volume named ``<name>_*`` in the managed pools, best effort."""
        prefix = volume_prefix(name)
        deleted: List[str] = []
        for pool in self.pools:
            try:
                volumes = self.storage.list_volumes(pool)
            except FoundryError as exc:
                log("WARN", f"Could not list volumes in pool {pool}: {exc}")
                continue
            for volume in volumes:
                if not volume.name.startswith(prefix):
                    continue
                try:
                    self.storage.delete_volume(pool, volume.name)
                except FoundryError as exc:
                    log("WARN", f"Failed to delete volume {volume.name} from pool {pool}: {exc}")
                    continue
                deleted.append(volume.name)
        return deleted


def destroy_vm(
    name: str,
    settings: Optional[Settings] = None,
    cancel: Optional[threading.Event] = None,
) -> DestroyResult:
    """Connect to the hypervisor and destroy the named VM."""
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
        decommissioner = Decommissioner(
            client,
            storage,
            shutdown_timeout=settings.shutdown_timeout,
            poll_interval=settings.poll_interval,
            cancel=cancel,
        )
        return decommissioner.destroy(name)
    finally:
        client.close()
