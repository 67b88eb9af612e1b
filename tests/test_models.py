"""Tests for foundry.models."""

from __future__ import annotations

import pytest

from foundry.constants import GIB, IMAGES_POOL, VMS_POOL
from foundry.exceptions import ValidationError
from foundry.models import PoolInfo, VirtualMachine, VolumeSpec


class TestVolumeSpecValidate:
    def test_valid_boot_volume(self):
        VolumeSpec(name="a_boot.qcow2", kind="boot", format="qcow2", capacity_gb=10, backing_volume="/x.qcow2").validate()

    def test_cloudinit_may_have_zero_capacity(self):
        VolumeSpec(name="a_cloudinit.iso", kind="cloudinit", format="raw", capacity_gb=0).validate()

    @pytest.mark.parametrize(
        "kwargs,match",
        [
            ({"name": "", "kind": "boot", "format": "qcow2", "capacity_gb": 1}, "name is required"),
            ({"name": "v", "kind": "swap", "format": "qcow2", "capacity_gb": 1}, "unsupported type"),
            ({"name": "v", "kind": "data", "format": "vmdk", "capacity_gb": 1}, "qcow2 or raw"),
            ({"name": "v", "kind": "data", "format": "qcow2", "capacity_gb": 0}, "greater than 0"),
            ({"name": "v", "kind": "data", "format": "qcow2", "capacity_gb": -5}, "greater than 0"),
            (
                {"name": "v", "kind": "boot", "format": "raw", "capacity_gb": 1, "backing_volume": "/b.qcow2"},
                "require qcow2",
            ),
        ],
    )
    def test_invalid(self, kwargs, match):
        with pytest.raises(ValidationError, match=match):
            VolumeSpec(**kwargs).validate()


class TestPoolInfo:
    def test_gb_helpers(self):
        info = PoolInfo(name="p", type="dir", path="/p", capacity=10 * GIB, allocation=GIB // 2, available=9 * GIB)
        assert info.capacity_gb == 10
        assert info.allocation_gb == 0.5
        assert info.available_gb == 9


class TestVirtualMachineSerialization:
    def test_defaults_from_minimal_dict(self):
        vm = VirtualMachine.from_dict(
            {
                "apiVersion": "foundry.cofront.xyz/v1alpha1",
                "kind": "VirtualMachine",
                "metadata": {"name": "db01"},
                "spec": {"vcpus": 2, "memoryGiB": 8, "bootDisk": {"sizeGB": 40, "empty": True}},
            }
        )
        assert vm.spec.storage_pool == VMS_POOL
        assert vm.spec.boot_disk.image_pool == IMAGES_POOL
        assert vm.spec.cpu_mode == "host-model"
        assert vm.spec.autostart is True
        assert vm.spec.cloud_init is None
        assert vm.status.phase == "Pending"

    def test_autostart_false_is_kept(self):
        vm = VirtualMachine.from_dict({"metadata": {"name": "x"}, "spec": {"autostart": False, "bootDisk": {}}})
        assert vm.spec.autostart is False

    def test_to_dict_uses_camel_case(self, make_vm):
        data = make_vm().to_dict()
        spec = data["spec"]
        assert spec["memoryGiB"] == 4
        assert spec["bootDisk"]["sizeGB"] == 20
        assert spec["dataDisks"] == [{"device": "vdb", "sizeGB": 10}]
        assert spec["networkInterfaces"][0]["dnsServers"] == ["10.55.1.1"]
        assert spec["cloudInit"]["sshAuthorizedKeys"] == ["ssh-ed25519 AAAA test"]

    def test_plain_password_is_not_serialized(self, make_vm):
        vm = make_vm()
        vm.spec.cloud_init.password = "hunter2"
        assert "hunter2" not in str(vm.to_dict())

    def test_status_omitted_on_request(self, make_vm):
        assert "status" not in make_vm().to_dict(include_status=False)
