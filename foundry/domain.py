"""Domain XML generation for Foundry."""

from __future__ import annotations

from xml.etree.ElementTree import Element, SubElement, fromstring

from foundry.models import VirtualMachine
from foundry.naming import boot_volume_name, cloudinit_volume_name, data_volume_name
from foundry.network import render_interface_xml
from foundry.utils import element_to_str

_FEATURES = ("acpi", "apic", "pae")


def _volume_disk(devices: Element, pool: str, volume: str, dev: str, disk_format: str) -> Element:
    disk = SubElement(devices, "disk", type="volume", device="disk")
    SubElement(disk, "driver", name="qemu", type=disk_format, discard="unmap")
    SubElement(disk, "source", pool=pool, volume=volume)
    SubElement(disk, "target", dev=dev, bus="virtio")
    return disk


def render_domain_xml(vm: VirtualMachine) -> str:
    """Render the libvirt domain definition for a VM spec.

    Disks reference pool volumes by name, so the volumes must exist before
    the domain is defined.
    """
    spec = vm.spec
    domain = Element("domain", type="kvm")
    SubElement(domain, "name").text = vm.name
    SubElement(domain, "memory", unit="GiB").text = str(spec.memory_gib)
    SubElement(domain, "currentMemory", unit="GiB").text = str(spec.memory_gib)
    SubElement(domain, "vcpu", placement="static").text = str(spec.vcpus)

    os_el = SubElement(domain, "os", firmware="efi")
    SubElement(os_el, "type", arch="x86_64", machine="q35").text = "hvm"

    features = SubElement(domain, "features")
    for feature in _FEATURES:
        SubElement(features, feature)

    cpu = SubElement(domain, "cpu", mode=spec.cpu_mode, check="partial")
    if spec.cpu_mode == "host-model":
        cpu.set("match", "exact")
        SubElement(cpu, "model", fallback="allow")

    clock = SubElement(domain, "clock", offset="utc")
    SubElement(clock, "timer", name="rtc", tickpolicy="catchup")
    SubElement(clock, "timer", name="pit", tickpolicy="delay")
    SubElement(clock, "timer", name="hpet", present="no")

    SubElement(domain, "on_poweroff").text = "destroy"
    SubElement(domain, "on_reboot").text = "restart"
    SubElement(domain, "on_crash").text = "destroy"

    devices = SubElement(domain, "devices")
    boot = _volume_disk(devices, spec.storage_pool, boot_volume_name(vm.name), "vda", spec.boot_disk.format)
    SubElement(boot, "boot", order="1")
    for disk in spec.data_disks:
        _volume_disk(devices, spec.storage_pool, data_volume_name(vm.name, disk.device), disk.device, "qcow2")

    if spec.cloud_init is not None:
        cdrom = SubElement(devices, "disk", type="volume", device="cdrom")
        SubElement(cdrom, "driver", name="qemu", type="raw")
        SubElement(cdrom, "source", pool=spec.storage_pool, volume=cloudinit_volume_name(vm.name))
        SubElement(cdrom, "target", dev="sda", bus="sata")
        SubElement(cdrom, "readonly")

    for iface in spec.network_interfaces:
        devices.append(fromstring(render_interface_xml(iface).xml))

    serial = SubElement(devices, "serial", type="pty")
    SubElement(serial, "target", port="0")
    console = SubElement(devices, "console", type="pty")
    SubElement(console, "target", type="serial", port="0")

    channel = SubElement(devices, "channel", type="unix")
    SubElement(channel, "target", type="virtio", name="org.qemu.guest_agent.0")
    SubElement(devices, "memballoon", model="virtio")
    rng = SubElement(devices, "rng", model="virtio")
    SubElement(rng, "backend", model="random").text = "/dev/urandom"

    return element_to_str(domain)
