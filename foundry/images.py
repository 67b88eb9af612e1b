"""Base image format detection for Foundry."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from foundry.constants import (
    FORMAT_QCOW2,
    FORMAT_RAW,
    IMAGE_EXTENSIONS,
    MBR_SIGNATURE,
    MBR_SIGNATURE_OFFSET,
    QCOW2_MAGIC,
)
from foundry.exceptions import ValidationError


def format_from_name(name: str) -> Optional[str]:
    """Return the format implied by an image name's extension, or None."""
    return IMAGE_EXTENSIONS.get(Path(name).suffix.lower())


def detect_image_format(path: Path) -> str:
    """Identify a disk image by its magic bytes.

    qcow2 images start with ``QFI\\xfb``; raw images are only recognised when
    they carry an MBR boot signature at offset 510.
    """
    try:
        with open(path, "rb") as fh:
            header = fh.read(MBR_SIGNATURE_OFFSET + len(MBR_SIGNATURE))
    except OSError as exc:
        raise ValidationError(f"cannot read image {path}: {exc}") from exc

    if len(header) < len(QCOW2_MAGIC):
        raise ValidationError(f"image {path} is too small to identify")
    if header.startswith(QCOW2_MAGIC):
        return FORMAT_QCOW2
    if len(header) < MBR_SIGNATURE_OFFSET + len(MBR_SIGNATURE):
        raise ValidationError(f"image {path} is too small to identify")
    if header[MBR_SIGNATURE_OFFSET:] == MBR_SIGNATURE:
        return FORMAT_RAW
    raise ValidationError(f"unrecognised image format for {path} (expected qcow2 or raw with MBR)")


def validate_image_file(path: Path, name: str) -> str:
    """Check that ``name`` has a known extension matching the file's contents."""
    expected = format_from_name(name)
    if expected is None:
        raise ValidationError(f"image name '{name}' must end in .qcow2 or .raw")
    detected = detect_image_format(path)
    if detected != expected:
        raise ValidationError(
            f"image {path} is {detected} but name '{name}' implies {expected}"
        )
    return detected


def parse_checksum(checksum: str) -> str:
    """Accept ``sha256:<hex>`` or a bare hex digest; return the lowercase digest."""
    algo, sep, digest = checksum.partition(":")
    if not sep:
        algo, digest = "sha256", checksum
    if algo.lower() != "sha256":
        raise ValidationError(f"unsupported checksum algorithm '{algo}' (only sha256)")
    digest = digest.strip().lower()
    if len(digest) != 64 or any(c not in "0123456789abcdef" for c in digest):
        raise ValidationError(f"invalid sha256 digest '{digest}'")
    return digest
