"""Tests for foundry.cli module."""

from __future__ import annotations

import json
import signal

import pytest
import yaml

from foundry import cli
from foundry.constants import DOMAIN_STATE_RUNNING, IMAGES_POOL, VMS_POOL
from foundry.exceptions import DomainNotFoundError
from foundry.metadata import store_vm_spec
from foundry.models import DestroyResult, Settings

VM_YAML = """\
apiVersion: foundry.cofront.xyz/v1alpha1
kind: VirtualMachine
metadata:
  name: web01
spec:
  vcpus: 2
  memoryGiB: 4
  bootDisk:
    sizeGB: 20
    image: ubuntu-24.04.qcow2
  networkInterfaces:
    - ip: 10.55.22.22/24
      gateway: 10.55.22.1
      bridge: br0
"""


@pytest.fixture(autouse=True)
def settings(monkeypatch):
    settings = Settings(images_pool_path="/srv/images", vms_pool_path="/srv/vms")
    monkeypatch.setattr(cli, "parse_settings", lambda: settings)
    return settings


@pytest.fixture
def connected(hypervisor, monkeypatch):
    seen = []

    def fake_connect(settings, cancel=None):
        seen.append(settings.libvirt_uri)
        return hypervisor

    monkeypatch.setattr(cli, "_connect", fake_connect)
    hypervisor.seen_uris = seen
    return hypervisor


class TestCreate:
    def test_loads_and_creates(self, tmp_path, monkeypatch):
        path = tmp_path / "web01.yaml"
        path.write_text(VM_YAML)
        calls = []

        def fake_create(vm, settings, cancel=None):
            calls.append((vm, settings, cancel))
            vm.status.mac_addresses = ["be:ef:0a:37:16:16"]
            vm.status.interface_names = ["vm0a371616"]
            return vm

        monkeypatch.setattr(cli, "create_vm", fake_create)
        assert cli.main(["--uri", "qemu+ssh://hv1/system", "create", str(path)]) == 0
        ((vm, settings, cancel),) = calls
        assert vm.name == "web01"
        assert settings.libvirt_uri == "qemu+ssh://hv1/system"
        assert cancel is not None and not cancel.is_set()

    def test_invalid_spec_returns_error(self, tmp_path, monkeypatch, capsys):
        path = tmp_path / "bad.yaml"
        path.write_text(VM_YAML.replace("vcpus: 2", "vcpus: 0"))
        monkeypatch.setattr(cli, "create_vm", pytest.fail)
        assert cli.main(["create", str(path)]) == 1
        assert "[ERROR]" in capsys.readouterr().out


class TestDestroy:
    def test_reports_volumes(self, monkeypatch, capsys):
        monkeypatch.setattr(
            cli,
            "destroy_vm",
            lambda name, settings, cancel=None: DestroyResult(name=name, deleted_volumes=["web01_boot.qcow2"]),
        )
        assert cli.main(["destroy", "web01"]) == 0
        assert "Removed volume web01_boot.qcow2" in capsys.readouterr().out

    def test_missing_vm(self, monkeypatch, capsys):
        def missing(name, settings, cancel=None):
            raise DomainNotFoundError(f"lookup domain {name}: not found")

        monkeypatch.setattr(cli, "destroy_vm", missing)
        assert cli.main(["destroy", "ghost"]) == 1
        assert "not found" in capsys.readouterr().out


class TestListAndGet:
    @pytest.fixture
    def with_vm(self, connected, make_vm):
        domain = connected.add_domain("web01", DOMAIN_STATE_RUNNING)
        store_vm_spec(connected, domain, make_vm())
        return connected

    def test_list_table(self, with_vm, capsys):
        assert cli.main(["list"]) == 0
        out = capsys.readouterr().out
        assert out.splitlines()[0].split() == ["NAME", "PHASE", "IP", "VCPUS", "MEMORY", "AUTOSTART"]
        assert "web01" in out
        assert "10.55.22.22" in out
        assert with_vm.closed

    def test_list_json(self, with_vm, capsys):
        assert cli.main(["list", "-o", "json"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data[0]["name"] == "web01"
        assert data[0]["phase"] == "Running"

    def test_list_empty(self, connected, capsys):
        assert cli.main(["list"]) == 0
        assert "No VMs found" in capsys.readouterr().out

    def test_get_yaml(self, with_vm, capsys):
        assert cli.main(["get", "web01"]) == 0
        data = yaml.safe_load(capsys.readouterr().out)
        assert data["metadata"]["name"] == "web01"
        assert data["status"]["phase"] == "Running"
        assert data["status"]["macAddresses"] == ["be:ef:0a:37:16:16"]

    def test_get_missing(self, connected):
        assert cli.main(["get", "ghost"]) == 1
        assert connected.closed


class TestTestConn:
    def test_prints_host(self, connected, capsys):
        assert cli.main(["--uri", "qemu:///session", "test-conn"]) == 0
        out = capsys.readouterr().out
        assert "Hostname: fake-host" in out
        assert "10.0.0" in out
        assert connected.seen_uris == ["qemu:///session"]


class TestImage:
    def test_list_creates_pools(self, connected, capsys):
        assert cli.main(["image", "list"]) == 0
        assert "No images found" in capsys.readouterr().out
        assert set(connected.pools) == {IMAGES_POOL, VMS_POOL}

    def test_import(self, connected, tmp_path, capsys):
        source = tmp_path / "noble.qcow2"
        source.write_bytes(b"QFI\xfb" + b"\x00" * 1020)
        assert cli.main(["image", "import", str(source), "-o", "json"]) == 0
        out = capsys.readouterr().out
        data = json.loads(out[out.index("[\n"):])
        assert data[0]["name"] == "noble.qcow2"
        assert connected.pools[IMAGES_POOL].volumes["noble.qcow2"].data == source.read_bytes()

    def test_delete_in_use_needs_force(self, connected, capsys):
        connected.add_pool(IMAGES_POOL, "/srv/images")
        connected.add_pool(VMS_POOL, "/srv/vms")
        connected.add_volume(IMAGES_POOL, "base.qcow2")
        connected.add_volume(VMS_POOL, "web01_boot.qcow2", backing="/srv/images/base.qcow2")
        assert cli.main(["image", "delete", "base.qcow2"]) == 1
        assert "--force" in capsys.readouterr().out
        assert cli.main(["image", "delete", "base.qcow2", "--force"]) == 0
        assert "base.qcow2" not in connected.pools[IMAGES_POOL].volumes


class TestPool:
    def test_add_and_list(self, connected, capsys):
        assert cli.main(["pool", "add", "extra", "/srv/extra"]) == 0
        capsys.readouterr()
        assert cli.main(["pool", "list", "-o", "yaml"]) == 0
        pools = yaml.safe_load(capsys.readouterr().out)
        assert [p["name"] for p in pools] == ["extra"]
        assert pools[0]["path"] == "/srv/extra"
        assert connected.pools["extra"].autostart

    def test_delete_reserved(self, connected, capsys):
        connected.add_pool(VMS_POOL, "/srv/vms")
        assert cli.main(["pool", "delete", VMS_POOL, "--force"]) == 1
        assert VMS_POOL in connected.pools
        assert "cannot be deleted" in capsys.readouterr().out

    def test_info_table(self, connected, capsys):
        connected.add_pool("extra", "/srv/extra")
        assert cli.main(["pool", "info", "extra"]) == 0
        out = capsys.readouterr().out
        assert "Path:       /srv/extra" in out
        assert "State:      running" in out


class TestStorageStatus:
    def test_json_summary(self, connected, capsys):
        connected.add_pool(IMAGES_POOL, "/srv/images")
        connected.add_pool(VMS_POOL, "/srv/vms")
        connected.add_volume(IMAGES_POOL, "a.qcow2")
        connected.add_volume(VMS_POOL, "web01_boot.qcow2")
        connected.add_volume(VMS_POOL, "web01_data-vdb.qcow2")
        assert cli.main(["storage", "status", "-o", "json"]) == 0
        summary = json.loads(capsys.readouterr().out)
        assert summary["images"] == 1
        assert summary["vmVolumes"] == 2
        assert {p["name"] for p in summary["pools"]} == {IMAGES_POOL, VMS_POOL}

    def test_missing_pools_warn(self, connected, capsys):
        assert cli.main(["storage", "status"]) == 0
        out = capsys.readouterr().out
        assert "No storage pools found" in out
        assert f"Storage pool {IMAGES_POOL} is not defined" in out


class TestCancelOnSignal:
    def test_handlers_restored(self):
        before = signal.getsignal(signal.SIGTERM)
        with cli._cancel_on_signal() as cancel:
            handler = signal.getsignal(signal.SIGTERM)
            assert handler is not before
            handler(signal.SIGTERM, None)
            assert cancel.is_set()
        assert signal.getsignal(signal.SIGTERM) is before
