"""Tests for foundry.images."""

from __future__ import annotations

import pytest

from foundry.exceptions import ValidationError
from foundry.images import detect_image_format, format_from_name, parse_checksum, validate_image_file


def _qcow2(path):
    path.write_bytes(b"QFI\xfb" + b"\x00" * 1020)
    return path


def _raw_mbr(path):
    path.write_bytes(b"\x00" * 510 + b"\x55\xaa" + b"\x00" * 512)
    return path


class TestDetectImageFormat:
    def test_qcow2(self, tmp_path):
        assert detect_image_format(_qcow2(tmp_path / "a.img")) == "qcow2"

    def test_raw_with_mbr(self, tmp_path):
        assert detect_image_format(_raw_mbr(tmp_path / "a.img")) == "raw"

    def test_raw_without_mbr_rejected(self, tmp_path):
        path = tmp_path / "a.raw"
        path.write_bytes(b"\x00" * 4096)
        with pytest.raises(ValidationError, match="unrecognised"):
            detect_image_format(path)

    def test_shorter_than_magic(self, tmp_path):
        path = tmp_path / "tiny"
        path.write_bytes(b"QF")
        with pytest.raises(ValidationError, match="too small"):
            detect_image_format(path)

    def test_shorter_than_mbr(self, tmp_path):
        path = tmp_path / "short"
        path.write_bytes(b"\x00" * 100)
        with pytest.raises(ValidationError, match="too small"):
            detect_image_format(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValidationError, match="cannot read"):
            detect_image_format(tmp_path / "nope")


class TestValidateImageFile:
    def test_matching_extension(self, tmp_path):
        assert validate_image_file(_qcow2(tmp_path / "x"), "ubuntu.qcow2") == "qcow2"

    def test_extension_required(self, tmp_path):
        with pytest.raises(ValidationError, match=r"\.qcow2 or \.raw"):
            validate_image_file(_qcow2(tmp_path / "x"), "ubuntu")

    def test_mismatch(self, tmp_path):
        with pytest.raises(ValidationError, match="implies raw"):
            validate_image_file(_qcow2(tmp_path / "x"), "ubuntu.raw")

    def test_format_from_name(self):
        assert format_from_name("A.QCOW2") == "qcow2"
        assert format_from_name("disk.img") is None


class TestParseChecksum:
    DIGEST = "a" * 64

    def test_prefixed(self):
        assert parse_checksum(f"sha256:{self.DIGEST.upper()}") == self.DIGEST

    def test_bare(self):
        assert parse_checksum(self.DIGEST) == self.DIGEST

    def test_other_algorithm(self):
        with pytest.raises(ValidationError, match="only sha256"):
            parse_checksum(f"md5:{self.DIGEST}")

    def test_bad_digest(self):
        with pytest.raises(ValidationError, match="invalid sha256"):
            parse_checksum("sha256:xyz")
