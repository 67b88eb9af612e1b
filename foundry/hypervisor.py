"""libvirt connection adapter for Foundry."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, BinaryIO, Iterator, List, Optional, Tuple

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from foundry.constants import DEFAULT_CONNECT_TIMEOUT, LIBVIRT_URI, UPLOAD_CHUNK_SIZE
from foundry.exceptions import (
    BackendError,
    DomainNotFoundError,
    FoundryError,
    NotFoundError,
    PoolNotFoundError,
    VolumeNotFoundError,
)
from foundry.utils import log, run_with_cancel

_NOT_FOUND = {
    libvirt.VIR_ERR_NO_DOMAIN: DomainNotFoundError,
    libvirt.VIR_ERR_NO_STORAGE_POOL: PoolNotFoundError,
    libvirt.VIR_ERR_NO_STORAGE_VOL: VolumeNotFoundError,
    libvirt.VIR_ERR_NO_DOMAIN_METADATA: NotFoundError,
}


def translate_error(exc: "libvirt.libvirtError", action: str) -> FoundryError:
    """Map a libvirt error to the matching foundry exception."""
    message = exc.get_error_message() or str(exc)
    error_cls = _NOT_FOUND.get(exc.get_error_code(), BackendError)
    return error_cls(f"{action}: {message}")


@contextmanager
def _libvirt_errors(action: str) -> Iterator[None]:
    try:
        yield
    except libvirt.libvirtError as exc:
        raise translate_error(exc, action) from exc


class LibvirtClient:
    """Domain and storage operations on one libvirt connection.

    Implements the narrow capability protocols declared by the provisioner,
    decommissioner, inventory, metadata and storage modules.
    """

    def __init__(self, conn: "libvirt.virConnect", uri: str = LIBVIRT_URI) -> None:
        self.conn = conn
        self.uri = uri

    def close(self) -> None:
        if self.conn is not None:
            try:
                self.conn.close()
            except libvirt.libvirtError as exc:
                log("DEBUG", f"Error closing libvirt connection: {exc}")
            self.conn = None

    # ------------------------------------------------------------------
    # Host
    # ------------------------------------------------------------------

    def hostname(self) -> str:
        with _libvirt_errors("get hostname"):
            return self.conn.getHostname()

    def lib_version(self) -> str:
        with _libvirt_errors("get libvirt version"):
            version = self.conn.getLibVersion()
        return f"{version // 1000000}.{(version // 1000) % 1000}.{version % 1000}"

    # ------------------------------------------------------------------
    # Domains
    # ------------------------------------------------------------------

    def lookup_domain(self, name: str) -> Any:
        with _libvirt_errors(f"lookup domain {name}"):
            return self.conn.lookupByName(name)

    def list_domains(self) -> List[Any]:
        with _libvirt_errors("list domains"):
            return list(self.conn.listAllDomains(0))

    def define_domain(self, xml: str) -> Any:
        with _libvirt_errors("define domain"):
            domain = self.conn.defineXML(xml)
        if domain is None:
            raise BackendError("define domain: libvirt returned no domain")
        return domain

    def set_autostart(self, domain: Any, enabled: bool) -> None:
        with _libvirt_errors(f"set autostart on {domain.name()}"):
            domain.setAutostart(1 if enabled else 0)

    def start_domain(self, domain: Any) -> None:
        with _libvirt_errors(f"start domain {domain.name()}"):
            domain.create()

    def domain_state(self, domain: Any) -> int:
        with _libvirt_errors(f"get state of {domain.name()}"):
            state, _reason = domain.state()
        return state

    def shutdown_domain(self, domain: Any) -> None:
        with _libvirt_errors(f"shutdown domain {domain.name()}"):
            domain.shutdown()

    def destroy_domain(self, domain: Any) -> None:
        with _libvirt_errors(f"destroy domain {domain.name()}"):
            domain.destroy()

    def undefine_domain(self, domain: Any, flags: int = 0) -> None:
        with _libvirt_errors(f"undefine domain {domain.name()}"):
            domain.undefineFlags(flags)

    def domain_name(self, domain: Any) -> str:
        return domain.name()

    def domain_uuid(self, domain: Any) -> str:
        with _libvirt_errors("get domain UUID"):
            return domain.UUIDString()

    def domain_info(self, domain: Any) -> Tuple[int, int, int]:
        """Return (state, memory in KiB, vCPU count)."""
        with _libvirt_errors(f"get info for {domain.name()}"):
            state, max_mem, _mem, vcpus, _cpu_time = domain.info()
        return state, max_mem, vcpus

    def domain_autostart(self, domain: Any) -> bool:
        with _libvirt_errors(f"get autostart for {domain.name()}"):
            return bool(domain.autostart())

    def set_domain_metadata(self, domain: Any, xml: str, key: str, uri: str) -> None:
        flags = libvirt.VIR_DOMAIN_AFFECT_CONFIG
        with _libvirt_errors(f"set metadata on {domain.name()}"):
            if domain.isActive():
                flags |= libvirt.VIR_DOMAIN_AFFECT_LIVE
            domain.setMetadata(libvirt.VIR_DOMAIN_METADATA_ELEMENT, xml, key, uri, flags)

    def get_domain_metadata(self, domain: Any, uri: str) -> str:
        with _libvirt_errors(f"get metadata for {domain.name()}"):
            return domain.metadata(libvirt.VIR_DOMAIN_METADATA_ELEMENT, uri, 0)

    # ------------------------------------------------------------------
    # Storage pools
    # ------------------------------------------------------------------

    def lookup_pool(self, name: str) -> Any:
        with _libvirt_errors(f"lookup storage pool {name}"):
            return self.conn.storagePoolLookupByName(name)

    def list_pools(self) -> List[Any]:
        with _libvirt_errors("list storage pools"):
            return list(self.conn.listAllStoragePools(0))

    def define_pool(self, xml: str) -> Any:
        with _libvirt_errors("define storage pool"):
            return self.conn.storagePoolDefineXML(xml, 0)

    def build_pool(self, pool: Any) -> None:
        with _libvirt_errors(f"build storage pool {pool.name()}"):
            pool.build(0)

    def start_pool(self, pool: Any) -> None:
        with _libvirt_errors(f"start storage pool {pool.name()}"):
            pool.create(0)

    def stop_pool(self, pool: Any) -> None:
        with _libvirt_errors(f"stop storage pool {pool.name()}"):
            pool.destroy()

    def undefine_pool(self, pool: Any) -> None:
        with _libvirt_errors(f"undefine storage pool {pool.name()}"):
            pool.undefine()

    def refresh_pool(self, pool: Any) -> None:
        with _libvirt_errors(f"refresh storage pool {pool.name()}"):
            pool.refresh(0)

    def set_pool_autostart(self, pool: Any, enabled: bool) -> None:
        with _libvirt_errors(f"set autostart on storage pool {pool.name()}"):
            pool.setAutostart(1 if enabled else 0)

    def pool_name(self, pool: Any) -> str:
        return pool.name()

    def pool_uuid(self, pool: Any) -> str:
        with _libvirt_errors("get storage pool UUID"):
            return pool.UUIDString()

    def pool_autostart(self, pool: Any) -> bool:
        with _libvirt_errors(f"get autostart for storage pool {pool.name()}"):
            return bool(pool.autostart())

    def pool_xml(self, pool: Any) -> str:
        with _libvirt_errors(f"get XML for storage pool {pool.name()}"):
            return pool.XMLDesc(0)

    def pool_info(self, pool: Any) -> Tuple[int, int, int, int]:
        with _libvirt_errors(f"get info for storage pool {pool.name()}"):
            state, capacity, allocation, available = pool.info()
        return state, capacity, allocation, available

    # ------------------------------------------------------------------
    # Volumes
    # ------------------------------------------------------------------

    def list_volumes(self, pool: Any) -> List[Any]:
        with _libvirt_errors(f"list volumes in {pool.name()}"):
            return list(pool.listAllVolumes(0))

    def lookup_volume(self, pool: Any, name: str) -> Any:
        with _libvirt_errors(f"lookup volume {name}"):
            return pool.storageVolLookupByName(name)

    def create_volume(self, pool: Any, xml: str) -> Any:
        with _libvirt_errors(f"create volume in {pool.name()}"):
            return pool.createXML(xml, 0)

    def delete_volume(self, volume: Any) -> None:
        with _libvirt_errors(f"delete volume {volume.name()}"):
            volume.delete(0)

    def volume_name(self, volume: Any) -> str:
        return volume.name()

    def volume_path(self, volume: Any) -> str:
        with _libvirt_errors(f"get path for volume {volume.name()}"):
            return volume.path()

    def volume_info(self, volume: Any) -> Tuple[int, int, int]:
        with _libvirt_errors(f"get info for volume {volume.name()}"):
            kind, capacity, allocation = volume.info()
        return kind, capacity, allocation

    def volume_xml(self, volume: Any) -> str:
        with _libvirt_errors(f"get XML for volume {volume.name()}"):
            return volume.XMLDesc(0)

    def upload_volume(self, volume: Any, source: BinaryIO, length: int) -> None:
        """Stream ``length`` bytes from ``source`` into the volume."""

        def _read(_stream: Any, nbytes: int, fh: BinaryIO) -> bytes:
            return fh.read(min(nbytes, UPLOAD_CHUNK_SIZE))

        with _libvirt_errors(f"upload to volume {volume.name()}"):
            stream = self.conn.newStream(0)
            try:
                volume.upload(stream, 0, length, 0)
                stream.sendAll(_read, source)
                stream.finish()
            except libvirt.libvirtError:
                try:
                    stream.abort()
                except libvirt.libvirtError as abort_exc:
                    log("DEBUG", f"Failed to abort upload stream: {abort_exc}")
                raise


def _close_abandoned(conn: Any) -> None:
    if conn is None:
        return
    try:
        conn.close()
    except libvirt.libvirtError as exc:
        log("DEBUG", f"Error closing abandoned libvirt connection: {exc}")


def connect(
    uri: str = LIBVIRT_URI,
    timeout: float = DEFAULT_CONNECT_TIMEOUT,
    cancel: Optional[threading.Event] = None,
) -> LibvirtClient:
    """Open a libvirt connection, bounded by ``timeout`` and abortable via ``cancel``."""
    log("DEBUG", f"Connecting to {uri}")
    try:
        conn = run_with_cancel(
            lambda: libvirt.open(uri),
            timeout,
            cancel=cancel,
            on_abandon=_close_abandoned,
            label=f"connect to {uri}",
        )
    except libvirt.libvirtError as exc:
        raise BackendError(f"failed to connect to {uri}: {exc.get_error_message() or exc}") from exc
    if conn is None:
        raise BackendError(f"failed to open libvirt connection to {uri}")
    return LibvirtClient(conn, uri)
