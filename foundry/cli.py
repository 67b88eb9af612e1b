"""CLI entry points for Foundry."""

from __future__ import annotations

import argparse
import json
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from foundry.config import describe_vm, load_vm_from_file, parse_settings
from foundry.constants import IMAGES_POOL, POOL_TYPE_DIR, VMS_POOL
from foundry.decommission import destroy_vm
from foundry.exceptions import FoundryError
from foundry.inventory import get_vm, list_vms
from foundry.models import PoolInfo, Settings, VMInfo, VolumeInfo
from foundry.provision import create_vm
from foundry.storage import StorageManager
from foundry.utils import log

OUTPUT_FORMATS = ("table", "json", "yaml")


def _connect(settings: Settings, cancel: Optional[threading.Event] = None):
    from foundry.hypervisor import connect

    return connect(settings.libvirt_uri, settings.connect_timeout, cancel)


@contextmanager
def _storage(settings: Settings) -> Iterator[StorageManager]:
    client = _connect(settings)
    try:
        yield StorageManager(
            client,
            qemu=settings.qemu,
            images_pool_path=settings.images_pool_path,
            vms_pool_path=settings.vms_pool_path,
        )
    finally:
        client.close()


@contextmanager
def _cancel_on_signal() -> Iterator[threading.Event]:
    """Turn SIGINT/SIGTERM into a cancel event for the duration of a command."""
    cancel = threading.Event()

    def _request_cancel(signum, frame):
        log("WARN", f"Received signal {signum}; cancelling")
        cancel.set()

    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return
    prev_sigint = signal.signal(signal.SIGINT, _request_cancel)
    prev_sigterm = signal.signal(signal.SIGTERM, _request_cancel)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, prev_sigint)
        signal.signal(signal.SIGTERM, prev_sigterm)


def _dump(data: Any, fmt: str) -> None:
    if fmt == "json":
        print(json.dumps(data, indent=2))
    else:
        print(yaml.safe_dump(data, sort_keys=False, default_flow_style=False), end="")


def _print_table(headers: Sequence[str], rows: List[Sequence[str]], empty: str) -> None:
    if not rows:
        print(empty)
        return
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))
    print("  ".join(f"{h:<{widths[i]}}" for i, h in enumerate(headers)).rstrip())
    for row in rows:
        print("  ".join(f"{cell:<{widths[i]}}" for i, cell in enumerate(row)).rstrip())


def _gb(value: float) -> str:
    return f"{value:.1f} GiB"


def print_vms(vms: List[VMInfo], fmt: str) -> None:
    if fmt != "table":
        _dump([vm.to_dict() for vm in vms], fmt)
        return
    rows = [
        (
            vm.name,
            vm.phase,
            ", ".join(vm.ips) or "-",
            str(vm.vcpus),
            f"{vm.memory_kib // (1024 * 1024)} GiB",
            "yes" if vm.autostart else "no",
        )
        for vm in vms
    ]
    _print_table(("NAME", "PHASE", "IP", "VCPUS", "MEMORY", "AUTOSTART"), rows, "No VMs found")


def print_pools(pools: List[PoolInfo], fmt: str) -> None:
    if fmt != "table":
        _dump([pool.to_dict() for pool in pools], fmt)
        return
    rows = [
        (
            p.name,
            p.type,
            p.state,
            _gb(p.capacity_gb),
            _gb(p.allocation_gb),
            _gb(p.available_gb),
            "yes" if p.autostart else "no",
            p.path,
        )
        for p in pools
    ]
    _print_table(
        ("NAME", "TYPE", "STATE", "CAPACITY", "ALLOCATION", "AVAILABLE", "AUTOSTART", "PATH"),
        rows,
        "No storage pools found",
    )


def print_volumes(volumes: List[VolumeInfo], fmt: str, empty: str = "No volumes found") -> None:
    if fmt != "table":
        _dump([vol.to_dict() for vol in volumes], fmt)
        return
    rows = [
        (v.name, v.format or "-", _gb(v.capacity_gb), _gb(v.allocation_gb), v.path)
        for v in volumes
    ]
    _print_table(("NAME", "FORMAT", "CAPACITY", "ALLOCATION", "PATH"), rows, empty)


def print_pool_detail(pool: PoolInfo, fmt: str) -> None:
    if fmt != "table":
        _dump(pool.to_dict(), fmt)
        return
    print(f"Name:       {pool.name}")
    print(f"UUID:       {pool.uuid}")
    print(f"Type:       {pool.type}")
    print(f"Path:       {pool.path}")
    print(f"State:      {pool.state}")
    print(f"Autostart:  {'yes' if pool.autostart else 'no'}")
    print(f"Capacity:   {_gb(pool.capacity_gb)}")
    print(f"Allocation: {_gb(pool.allocation_gb)}")
    print(f"Available:  {_gb(pool.available_gb)}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_create(args: argparse.Namespace, settings: Settings) -> int:
    vm = load_vm_from_file(Path(args.config))
    log("INFO", f"Loaded {describe_vm(vm, Path(args.config))}")
    with _cancel_on_signal() as cancel:
        create_vm(vm, settings, cancel=cancel)
    for mac, dev in zip(vm.status.mac_addresses, vm.status.interface_names):
        log("INFO", f"Interface {dev}: {mac}")
    return 0


def cmd_destroy(args: argparse.Namespace, settings: Settings) -> int:
    with _cancel_on_signal() as cancel:
        result = destroy_vm(args.name, settings, cancel=cancel)
    for volume in result.deleted_volumes:
        log("INFO", f"Removed volume {volume}")
    return 0


def cmd_list(args: argparse.Namespace, settings: Settings) -> int:
    client = _connect(settings)
    try:
        vms = list_vms(client)
    finally:
        client.close()
    print_vms(vms, args.output)
    return 0


def cmd_get(args: argparse.Namespace, settings: Settings) -> int:
    client = _connect(settings)
    try:
        vm = get_vm(client, args.name)
    finally:
        client.close()
    _dump(vm.to_dict(), "json" if args.output == "json" else "yaml")
    return 0


def cmd_test_conn(args: argparse.Namespace, settings: Settings) -> int:
    client = _connect(settings)
    try:
        hostname = client.hostname()
        version = client.lib_version()
    finally:
        client.close()
    log("SUCCESS", f"Connected to {settings.libvirt_uri}")
    print(f"Hostname: {hostname}")
    print(f"libvirt:  {version}")
    return 0


def cmd_image(args: argparse.Namespace, settings: Settings) -> int:
    with _storage(settings) as storage:
        storage.ensure_default_pools()
        if args.image_command == "import":
            name = args.name or Path(args.path).name
            print_volumes([storage.import_image(Path(args.path), name)], args.output)
        elif args.image_command == "pull":
            name = args.name or Path(args.url.split("?", 1)[0]).name
            print_volumes([storage.pull_image(args.url, name, args.checksum)], args.output)
        elif args.image_command == "list":
            print_volumes(storage.list_images(), args.output, empty="No images found")
        elif args.image_command == "info":
            print_volumes([storage.get_image_info(args.name)], args.output)
        elif args.image_command == "delete":
            storage.delete_image(args.name, force=args.force)
            log("SUCCESS", f"Deleted image {args.name}")
    return 0


def cmd_pool(args: argparse.Namespace, settings: Settings) -> int:
    with _storage(settings) as storage:
        if args.pool_command == "list":
            print_pools(storage.list_pools(), args.output)
        elif args.pool_command == "info":
            print_pool_detail(storage.get_pool_info(args.name), args.output)
        elif args.pool_command == "add":
            storage.create_pool(args.name, args.type, args.path)
        elif args.pool_command == "delete":
            storage.delete_pool(args.name, force=args.force)
        elif args.pool_command == "refresh":
            storage.refresh_pool(args.name)
            log("SUCCESS", f"Refreshed storage pool {args.name}")
    return 0


def cmd_storage_status(args: argparse.Namespace, settings: Settings) -> int:
    with _storage(settings) as storage:
        pools = [p for p in storage.list_pools() if p.name in (IMAGES_POOL, VMS_POOL)]
        summary: Dict[str, Any] = {
            "pools": [p.to_dict() for p in pools],
            "images": len(storage.list_images()) if any(p.name == IMAGES_POOL for p in pools) else 0,
            "vmVolumes": len(storage.list_volumes(VMS_POOL)) if any(p.name == VMS_POOL for p in pools) else 0,
        }
    if args.output != "table":
        _dump(summary, args.output)
        return 0
    print_pools(pools, "table")
    print()
    print(f"Images:     {summary['images']}")
    print(f"VM volumes: {summary['vmVolumes']}")
    missing = {IMAGES_POOL, VMS_POOL} - {p.name for p in pools}
    for name in sorted(missing):
        log("WARN", f"Storage pool {name} is not defined; it is created on first use")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="foundry", description="Foundry libvirt VM lifecycle manager")
    parser.add_argument("--uri", help="libvirt connection URI (default: $LIBVIRT_URI or qemu:///system)")
    sub = parser.add_subparsers(dest="command", required=True)

    def _output(p: argparse.ArgumentParser) -> None:
        p.add_argument("-o", "--output", choices=OUTPUT_FORMATS, default="table", help="Output format")

    create = sub.add_parser("create", help="Create and start a VM from a YAML spec")
    create.add_argument("config", help="Path to the VirtualMachine YAML file")
    create.set_defaults(func=cmd_create)

    destroy = sub.add_parser("destroy", help="Stop and remove a VM and its volumes")
    destroy.add_argument("name")
    destroy.set_defaults(func=cmd_destroy)

    list_p = sub.add_parser("list", help="List VMs")
    _output(list_p)
    list_p.set_defaults(func=cmd_list)

    get = sub.add_parser("get", help="Show a VM's stored spec and live status")
    get.add_argument("name")
    get.add_argument("-o", "--output", choices=("yaml", "json"), default="yaml", help="Output format")
    get.set_defaults(func=cmd_get)

    test_conn = sub.add_parser("test-conn", help="Check the libvirt connection")
    test_conn.set_defaults(func=cmd_test_conn)

    image = sub.add_parser("image", help="Manage base images")
    image_sub = image.add_subparsers(dest="image_command", required=True)
    image_import = image_sub.add_parser("import", help="Import a local qcow2/raw image")
    image_import.add_argument("path")
    image_import.add_argument("--name", help="Image name (default: file name)")
    image_pull = image_sub.add_parser("pull", help="Download and import an image")
    image_pull.add_argument("url")
    image_pull.add_argument("--name", help="Image name (default: last URL path segment)")
    image_pull.add_argument("--checksum", help="Expected sha256 digest (sha256:<hex> or <hex>)")
    image_sub.add_parser("list", help="List images")
    image_info = image_sub.add_parser("info", help="Show one image")
    image_info.add_argument("name")
    image_delete = image_sub.add_parser("delete", help="Delete an image")
    image_delete.add_argument("name")
    image_delete.add_argument("--force", action="store_true", help="Delete even if VM disks use it")
    for p in (image_import, image_pull, image_sub.choices["list"], image_info, image_delete):
        _output(p)
    image.set_defaults(func=cmd_image)

    pool = sub.add_parser("pool", help="Manage storage pools")
    pool_sub = pool.add_subparsers(dest="pool_command", required=True)
    pool_list = pool_sub.add_parser("list", help="List storage pools")
    pool_info = pool_sub.add_parser("info", help="Show one storage pool")
    pool_info.add_argument("name")
    pool_add = pool_sub.add_parser("add", help="Define, build and start a storage pool")
    pool_add.add_argument("name")
    pool_add.add_argument("path")
    pool_add.add_argument("--type", default=POOL_TYPE_DIR, help="Pool type (only 'dir' is supported)")
    pool_delete = pool_sub.add_parser("delete", help="Delete a storage pool")
    pool_delete.add_argument("name")
    pool_delete.add_argument("--force", action="store_true", help="Delete all volumes first")
    pool_refresh = pool_sub.add_parser("refresh", help="Rescan a storage pool")
    pool_refresh.add_argument("name")
    for p in (pool_list, pool_info, pool_add, pool_delete, pool_refresh):
        _output(p)
    pool.set_defaults(func=cmd_pool)

    storage = sub.add_parser("storage", help="Storage overview")
    storage_sub = storage.add_subparsers(dest="storage_command", required=True)
    storage_status = storage_sub.add_parser("status", help="Show foundry pool usage")
    _output(storage_status)
    storage.set_defaults(func=cmd_storage_status)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = parse_settings()
        if args.uri:
            settings.libvirt_uri = args.uri
        return args.func(args, settings)
    except FoundryError as exc:
        log("ERROR", str(exc))
        return 1
