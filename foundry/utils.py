"""Utility functions for Foundry."""

from __future__ import annotations

import hashlib
import os
import subprocess
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, List, Optional
from xml.etree.ElementTree import Element, tostring

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

try:
    import requests  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("requests is required but not installed") from exc

from foundry.constants import _LOG_VERBOSE, DOWNLOAD_CHUNK_SIZE
from foundry.exceptions import (
    FoundryError,
    OperationCancelledError,
    OperationTimeoutError,
    ValidationError,
)


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level tags."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ValidationError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ValidationError(f"{name} must be <= {max_val} (got {value})")
    return value


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for cloud-init."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(DOWNLOAD_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def download_file(url: str, destination: Path, label: str = "Downloading", timeout: float = 60) -> None:
    """Stream a URL to ``destination`` through a temporary file in the same directory."""
    log("INFO", f"{label}: {url}")
    session = requests.Session()
    session.headers["User-Agent"] = "foundry/1.0"
    try:
        response = session.get(url, stream=True, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise FoundryError(f"Failed to download {url}: {exc}") from exc

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()

    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                if not chunk:
                    continue
                tmp.write(chunk)
                downloaded += len(chunk)
                if total_bytes:
                    pct = downloaded * 100 / total_bytes
                    print(f"\r  {pct:5.1f}% {downloaded / (1024 * 1024):.1f} MiB", end="", flush=True)
            print(flush=True)
        except (requests.RequestException, OSError) as exc:
            tmp_path.unlink(missing_ok=True)
            raise FoundryError(f"Failed to download {url}: {exc}") from exc
        finally:
            response.close()
    tmp_path.replace(destination)
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")


def run_with_cancel(
    func: Callable[[], Any],
    timeout: float,
    cancel: Optional[threading.Event] = None,
    on_abandon: Optional[Callable[[Any], None]] = None,
    label: str = "operation",
) -> Any:
    """Run ``func`` on a worker thread, giving up on timeout or when ``cancel`` is set.

    A result that arrives after the caller gave up is handed to ``on_abandon``
    so resources such as connections are released instead of leaked.
    """
    lock = threading.Lock()
    done = threading.Event()
    outcome: dict = {}

    def _worker() -> None:
        try:
            result = func()
        except BaseException as exc:  # re-raised in the caller thread
            with lock:
                outcome["error"] = exc
                done.set()
            return
        with lock:
            abandoned = outcome.get("abandoned", False)
            outcome["result"] = result
            done.set()
        if abandoned and on_abandon is not None:
            on_abandon(result)

    worker = threading.Thread(target=_worker, name=f"foundry-{label}", daemon=True)
    worker.start()

    deadline = time.monotonic() + timeout
    interval = 0.05
    while not done.is_set():
        remaining = deadline - time.monotonic()
        if cancel is not None and cancel.is_set():
            reason: Exception = OperationCancelledError(f"{label} cancelled")
        elif remaining <= 0:
            reason = OperationTimeoutError(f"{label} timed out after {timeout}s")
        else:
            done.wait(min(interval, remaining))
            continue
        with lock:
            if done.is_set():
                break
            outcome["abandoned"] = True
        raise reason

    if "error" in outcome:
        raise outcome["error"]
    return outcome["result"]


def element_to_str(root: Element) -> str:
    """Serialize an ElementTree element to a pretty-printed XML string without declaration."""
    from xml.dom.minidom import parseString

    raw = tostring(root, encoding="unicode")
    return parseString(raw).documentElement.toprettyxml(indent="  ").strip()


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
