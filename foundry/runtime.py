"""QEMU service identity detection for Foundry."""

from __future__ import annotations

import grp
import pwd
import re
from pathlib import Path
from typing import Iterable, Optional

from foundry.constants import (
    DEFAULT_QEMU_GID,
    DEFAULT_QEMU_UID,
    QEMU_CONF_PATH,
    QEMU_GROUP_CANDIDATES,
    QEMU_USER_CANDIDATES,
)
from foundry.models import QemuIdentity
from foundry.utils import log

_CONF_LINE_RE = re.compile(r'^\s*(user|group)\s*=\s*"([^"]*)"')


def _read_qemu_conf(path: Path) -> dict:
    """Return the ``user``/``group`` settings from qemu.conf, if present."""
    values: dict = {}
    try:
        with open(path) as f:
            for line in f:
                match = _CONF_LINE_RE.match(line)
                if match:
                    values[match.group(1)] = match.group(2)
    except OSError:
        return {}
    return values


def _lookup_uid(name: str) -> Optional[int]:
    name = name.lstrip("+")
    if name.isdigit():
        return int(name)
    try:
        return pwd.getpwnam(name).pw_uid
    except KeyError:
        return None


def _lookup_gid(name: str) -> Optional[int]:
    name = name.lstrip("+")
    if name.isdigit():
        return int(name)
    try:
        return grp.getgrnam(name).gr_gid
    except KeyError:
        return None


def _first_known(names: Iterable[str], lookup) -> Optional[int]:
    for name in names:
        value = lookup(name)
        if value is not None:
            return value
    return None


def resolve_qemu_identity(conf_path: Optional[Path] = None) -> QemuIdentity:
    """Resolve the uid/gid QEMU runs as, for volume ownership.

    Order: explicit ``user``/``group`` in qemu.conf, then the distribution
    accounts (``qemu`` on Fedora/RHEL, ``libvirt-qemu`` on Debian/Ubuntu),
    then 107/107.
    """
    conf = _read_qemu_conf(conf_path or Path(QEMU_CONF_PATH))

    uid = _lookup_uid(conf["user"]) if conf.get("user") else None
    if uid is None:
        uid = _first_known(QEMU_USER_CANDIDATES, _lookup_uid)
    gid = _lookup_gid(conf["group"]) if conf.get("group") else None
    if gid is None:
        gid = _first_known(QEMU_GROUP_CANDIDATES, _lookup_gid)

    if uid is None or gid is None:
        log("DEBUG", "QEMU user/group not found on host; falling back to 107:107")
    identity = QemuIdentity(
        uid=DEFAULT_QEMU_UID if uid is None else uid,
        gid=DEFAULT_QEMU_GID if gid is None else gid,
    )
    log("DEBUG", f"QEMU identity: uid={identity.uid} gid={identity.gid}")
    return identity
