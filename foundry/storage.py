"""Storage pool and volume management for Foundry."""

from __future__ import annotations

import io
import shutil
import tempfile
from pathlib import Path
from typing import Any, BinaryIO, List, Optional, Protocol, Tuple
from xml.etree.ElementTree import Element, SubElement, fromstring, ParseError

from foundry.constants import (
    DEFAULT_IMAGES_POOL_PATH,
    DEFAULT_VMS_POOL_PATH,
    DEFAULT_QEMU_GID,
    DEFAULT_QEMU_UID,
    FORMAT_QCOW2,
    FORMAT_RAW,
    GIB,
    IMAGE_EXTENSIONS,
    IMAGES_POOL,
    POOL_MODE,
    POOL_STATE_RUNNING,
    POOL_STATES,
    POOL_TYPE_DIR,
    RAW_BACKING_EXTENSIONS,
    RESERVED_POOLS,
    VMS_POOL,
    VOLUME_KIND_BASE_IMAGE,
    VOLUME_MODE,
)
from foundry.exceptions import (
    AlreadyExistsError,
    BackendError,
    FoundryError,
    ImageNotFoundError,
    PoolNotFoundError,
    ValidationError,
    VolumeNotFoundError,
)
from foundry.images import format_from_name, parse_checksum, validate_image_file
from foundry.models import PoolInfo, QemuIdentity, VolumeInfo, VolumeSpec
from foundry.utils import download_file, element_to_str, log, sha256_file


class StorageBackend(Protocol):
    """Pool and volume primitives offered by the hypervisor connection.

    Pool and volume handles are opaque to the manager. Lookups raise
    ``PoolNotFoundError``/``VolumeNotFoundError``; every other failure is a
    ``BackendError``.
    """

    def lookup_pool(self, name: str) -> Any: ...
    def list_pools(self) -> List[Any]: ...
    def define_pool(self, xml: str) -> Any: ...
    def build_pool(self, pool: Any) -> None: ...
    def start_pool(self, pool: Any) -> None: ...
    def stop_pool(self, pool: Any) -> None: ...
    def undefine_pool(self, pool: Any) -> None: ...
    def refresh_pool(self, pool: Any) -> None: ...
    def set_pool_autostart(self, pool: Any, enabled: bool) -> None: ...
    def pool_name(self, pool: Any) -> str: ...
    def pool_uuid(self, pool: Any) -> str: ...
    def pool_autostart(self, pool: Any) -> bool: ...
    def pool_xml(self, pool: Any) -> str: ...
    def pool_info(self, pool: Any) -> Tuple[int, int, int, int]: ...
    def list_volumes(self, pool: Any) -> List[Any]: ...
    def lookup_volume(self, pool: Any, name: str) -> Any: ...
    def create_volume(self, pool: Any, xml: str) -> Any: ...
    def delete_volume(self, volume: Any) -> None: ...
    def volume_name(self, volume: Any) -> str: ...
    def volume_path(self, volume: Any) -> str: ...
    def volume_info(self, volume: Any) -> Tuple[int, int, int]: ...
    def volume_xml(self, volume: Any) -> str: ...
    def upload_volume(self, volume: Any, source: BinaryIO, length: int) -> None: ...


def render_pool_xml(name: str, path: str, identity: QemuIdentity) -> str:
    """Render a ``dir`` storage pool definition."""
    pool = Element("pool", type=POOL_TYPE_DIR)
    SubElement(pool, "name").text = name
    target = SubElement(pool, "target")
    SubElement(target, "path").text = path
    perms = SubElement(target, "permissions")
    SubElement(perms, "mode").text = POOL_MODE
    SubElement(perms, "owner").text = str(identity.uid)
    SubElement(perms, "group").text = str(identity.gid)
    return element_to_str(pool)


def backing_format(path: str) -> str:
    return FORMAT_RAW if path.lower().endswith(RAW_BACKING_EXTENSIONS) else FORMAT_QCOW2


def render_volume_xml(spec: VolumeSpec, identity: QemuIdentity) -> str:
    """Render a file volume definition owned by the QEMU user."""
    vol = Element("volume", type="file")
    SubElement(vol, "name").text = spec.name
    SubElement(vol, "capacity", unit="bytes").text = str(spec.capacity_gb * GIB)
    SubElement(vol, "allocation", unit="bytes").text = "0"
    target = SubElement(vol, "target")
    SubElement(target, "format", type=spec.format)
    perms = SubElement(target, "permissions")
    SubElement(perms, "owner").text = str(identity.uid)
    SubElement(perms, "group").text = str(identity.gid)
    SubElement(perms, "mode").text = VOLUME_MODE
    if spec.backing_volume:
        backing = SubElement(vol, "backingStore")
        SubElement(backing, "path").text = spec.backing_volume
        SubElement(backing, "format", type=backing_format(spec.backing_volume))
    return element_to_str(vol)


def _parse_xml(xml: str, what: str) -> Element:
    try:
        return fromstring(xml)
    except ParseError as exc:
        raise BackendError(f"failed to parse {what} XML: {exc}") from exc


class StorageManager:
    """Owns pools and volumes on a single hypervisor connection."""

    def __init__(
        self,
        backend: StorageBackend,
        qemu: Optional[QemuIdentity] = None,
        images_pool_path: str = DEFAULT_IMAGES_POOL_PATH,
        vms_pool_path: str = DEFAULT_VMS_POOL_PATH,
    ) -> None:
        self.backend = backend
        self.qemu = qemu or QemuIdentity(DEFAULT_QEMU_UID, DEFAULT_QEMU_GID)
        self.default_pools = ((IMAGES_POOL, images_pool_path), (VMS_POOL, vms_pool_path))

    # ------------------------------------------------------------------
    # Pools
    # ------------------------------------------------------------------

    def ensure_pool(self, name: str, pool_type: str, path: str) -> None:
        try:
            self.backend.lookup_pool(name)
        except PoolNotFoundError:
            log("INFO", f"Creating storage pool {name} at {path}")
            self.create_pool(name, pool_type, path)
            return
        log("DEBUG", f"Storage pool {name} already exists")

    def ensure_default_pools(self) -> None:
        for name, path in self.default_pools:
            self.ensure_pool(name, POOL_TYPE_DIR, path)

    def create_pool(self, name: str, pool_type: str, path: str) -> None:
        if pool_type != POOL_TYPE_DIR:
            raise ValidationError(f"unsupported pool type '{pool_type}' (only '{POOL_TYPE_DIR}')")
        if not name or not path:
            raise ValidationError("pool name and path are required")
        try:
            self.backend.lookup_pool(name)
        except PoolNotFoundError:
            pass
        else:
            raise AlreadyExistsError(f"storage pool {name} already exists")

        pool = self.backend.define_pool(render_pool_xml(name, path, self.qemu))
        for step, action in (("build", self.backend.build_pool), ("start", self.backend.start_pool)):
            try:
                action(pool)
            except FoundryError as exc:
                self._undefine_quietly(pool, name)
                raise BackendError(f"failed to {step} storage pool {name}: {exc}") from exc
        try:
            self.backend.set_pool_autostart(pool, True)
        except FoundryError as exc:
            raise BackendError(f"failed to set autostart on storage pool {name}: {exc}") from exc
        log("SUCCESS", f"Storage pool {name} created")

    def _undefine_quietly(self, pool: Any, name: str) -> None:
        try:
            self.backend.undefine_pool(pool)
        except FoundryError as exc:
            log("WARN", f"Failed to undefine storage pool {name} after error: {exc}")

    def delete_pool(self, name: str, force: bool = False) -> None:
        if name in RESERVED_POOLS:
            raise ValidationError(f"storage pool {name} is managed by foundry and cannot be deleted")
        pool = self.backend.lookup_pool(name)
        if force:
            for volume in self.backend.list_volumes(pool):
                try:
                    vol_name = self.backend.volume_name(volume)
                    self.backend.delete_volume(volume)
                    log("INFO", f"Deleted volume {vol_name} from pool {name}")
                except FoundryError as exc:
                    log("WARN", f"Failed to delete volume in pool {name}: {exc}")
        state = self.backend.pool_info(pool)[0]
        if state == POOL_STATE_RUNNING:
            self.backend.stop_pool(pool)
        self.backend.undefine_pool(pool)
        log("SUCCESS", f"Storage pool {name} deleted")

    def _pool_info(self, pool: Any) -> PoolInfo:
        name = self.backend.pool_name(pool)
        root = _parse_xml(self.backend.pool_xml(pool), f"pool {name}")
        state, capacity, allocation, available = self.backend.pool_info(pool)
        return PoolInfo(
            name=name,
            type=root.get("type", ""),
            path=root.findtext("target/path", default=""),
            uuid=self.backend.pool_uuid(pool),
            state=POOL_STATES.get(state, "unknown"),
            autostart=self.backend.pool_autostart(pool),
            capacity=capacity,
            allocation=allocation,
            available=available,
        )

    def get_pool_info(self, name: str) -> PoolInfo:
        return self._pool_info(self.backend.lookup_pool(name))

    def list_pools(self) -> List[PoolInfo]:
        pools: List[PoolInfo] = []
        for pool in self.backend.list_pools():
            try:
                pools.append(self._pool_info(pool))
            except FoundryError as exc:
                log("DEBUG", f"Skipping unreadable storage pool: {exc}")
        return pools

    def refresh_pool(self, name: str) -> None:
        self.backend.refresh_pool(self.backend.lookup_pool(name))

    # ------------------------------------------------------------------
    # Volumes
    # ------------------------------------------------------------------

    def create_volume(self, pool_name: str, spec: VolumeSpec) -> Any:
        spec.validate()
        pool = self.backend.lookup_pool(pool_name)
        volume = self.backend.create_volume(pool, render_volume_xml(spec, self.qemu))
        log("INFO", f"Created volume {spec.name} in pool {pool_name} ({spec.capacity_gb} GiB, {spec.format})")
        return volume

    def delete_volume(self, pool_name: str, name: str) -> None:
        pool = self.backend.lookup_pool(pool_name)
        volume = self.backend.lookup_volume(pool, name)
        self.backend.delete_volume(volume)
        log("INFO", f"Deleted volume {name} from pool {pool_name}")

    def list_volumes(self, pool_name: str) -> List[VolumeInfo]:
        pool = self.backend.lookup_pool(pool_name)
        volumes: List[VolumeInfo] = []
        for volume in self.backend.list_volumes(pool):
            try:
                name = self.backend.volume_name(volume)
                path = self.backend.volume_path(volume)
                _, capacity, allocation = self.backend.volume_info(volume)
            except FoundryError as exc:
                log("DEBUG", f"Skipping unreadable volume in pool {pool_name}: {exc}")
                continue
            volumes.append(
                VolumeInfo(
                    name=name,
                    path=path,
                    pool=pool_name,
                    capacity=capacity,
                    allocation=allocation,
                    format=IMAGE_EXTENSIONS.get(Path(name).suffix.lower(), ""),
                )
            )
        return volumes

    def get_volume_path(self, pool_name: str, name: str) -> str:
        pool = self.backend.lookup_pool(pool_name)
        return self.backend.volume_path(self.backend.lookup_volume(pool, name))

    def volume_exists(self, pool_name: str, name: str) -> bool:
        pool = self.backend.lookup_pool(pool_name)
        try:
            self.backend.lookup_volume(pool, name)
        except VolumeNotFoundError:
            return False
        return True

    def write_volume_data(self, pool_name: str, name: str, data: bytes) -> None:
        pool = self.backend.lookup_pool(pool_name)
        volume = self.backend.lookup_volume(pool, name)
        self.backend.upload_volume(volume, io.BytesIO(data), len(data))
        log("DEBUG", f"Wrote {len(data)} bytes to volume {name}")

    # ------------------------------------------------------------------
    # Base images (images pool)
    # ------------------------------------------------------------------

    def import_image(self, source: Path, name: str) -> VolumeInfo:
        source = Path(source)
        image_format = validate_image_file(source, name)
        if self.image_exists(name):
            raise AlreadyExistsError(f"image {name} already exists in pool {IMAGES_POOL}")

        size = source.stat().st_size
        spec = VolumeSpec(
            name=name,
            kind=VOLUME_KIND_BASE_IMAGE,
            format=image_format,
            capacity_gb=size // GIB + 1,
        )
        volume = self.create_volume(IMAGES_POOL, spec)
        try:
            with open(source, "rb") as fh:
                self.backend.upload_volume(volume, fh, size)
        except (FoundryError, OSError) as exc:
            try:
                self.backend.delete_volume(volume)
            except FoundryError as cleanup_exc:
                log("WARN", f"Failed to delete partially imported image {name}: {cleanup_exc}")
            raise BackendError(f"failed to upload image {name}: {exc}") from exc

        log("SUCCESS", f"Imported {source} as {name} ({image_format}, {size} bytes)")
        return VolumeInfo(
            name=name,
            path=self.backend.volume_path(volume),
            pool=IMAGES_POOL,
            capacity=spec.capacity_gb * GIB,
            allocation=size,
            format=image_format,
        )

    def pull_image(self, url: str, name: str, checksum: Optional[str] = None) -> VolumeInfo:
        """Download an image over HTTP(S), verify it and import it."""
        if format_from_name(name) is None:
            raise ValidationError(f"image name '{name}' must end in .qcow2 or .raw")
        expected = parse_checksum(checksum) if checksum else None
        if self.image_exists(name):
            raise AlreadyExistsError(f"image {name} already exists in pool {IMAGES_POOL}")

        tmpdir = Path(tempfile.mkdtemp(prefix="foundry-pull-"))
        try:
            target = tmpdir / name
            download_file(url, target, label=f"Pulling {name}")
            if expected is not None:
                actual = sha256_file(target)
                if actual != expected:
                    raise ValidationError(f"checksum mismatch for {url}: expected {expected}, got {actual}")
                log("INFO", f"Checksum verified for {name}")
            return self.import_image(target, name)
        finally:
            shutil.rmtree(tmpdir, ignore_errors=True)

    def list_images(self) -> List[VolumeInfo]:
        return self.list_volumes(IMAGES_POOL)

    def get_image_path(self, name: str) -> str:
        try:
            return self.get_volume_path(IMAGES_POOL, name)
        except VolumeNotFoundError as exc:
            raise ImageNotFoundError(f"image {name} not found in pool {IMAGES_POOL}") from exc

    def image_exists(self, name: str) -> bool:
        return self.volume_exists(IMAGES_POOL, name)

    def get_image_info(self, name: str) -> VolumeInfo:
        for image in self.list_images():
            if image.name == name:
                return image
        raise ImageNotFoundError(f"image {name} not found in pool {IMAGES_POOL}")

    def image_users(self, name: str) -> List[str]:
        """Volumes in the VMs pool backed by the named image."""
        image_path = self.get_image_path(name)
        try:
            pool = self.backend.lookup_pool(VMS_POOL)
        except PoolNotFoundError:
            return []
        users: List[str] = []
        for volume in self.backend.list_volumes(pool):
            try:
                root = _parse_xml(self.backend.volume_xml(volume), "volume")
                vol_name = self.backend.volume_name(volume)
            except FoundryError as exc:
                log("DEBUG", f"Skipping unreadable volume in pool {VMS_POOL}: {exc}")
                continue
            if root.findtext("backingStore/path", default="") == image_path:
                users.append(vol_name)
        return users

    def delete_image(self, name: str, force: bool = False) -> None:
        if not force:
            users = self.image_users(name)
            if users:
                raise FoundryError(
                    f"image {name} is the backing store of {', '.join(sorted(users))}; use --force to delete anyway"
                )
        try:
            self.delete_volume(IMAGES_POOL, name)
        except VolumeNotFoundError as exc:
            raise ImageNotFoundError(f"image {name} not found in pool {IMAGES_POOL}") from exc
