"""Network interface XML generation for Foundry."""

from __future__ import annotations

from typing import NamedTuple
from xml.etree.ElementTree import Element, SubElement

from foundry.exceptions import ValidationError
from foundry.models import NetworkInterfaceSpec
from foundry.naming import interface_name_from_ip, mac_from_ip
from foundry.utils import element_to_str


class RenderedInterface(NamedTuple):
    xml: str
    mac: str
    target_dev: str


def render_interface_xml(iface: NetworkInterfaceSpec, model: str = "virtio") -> RenderedInterface:
    """Render a bridged interface whose MAC and tap name derive from its IPv4 address."""
    if not iface.bridge:
        raise ValidationError(f"interface {iface.ip}: bridge is required")
    mac = mac_from_ip(iface.ip)
    target_dev = interface_name_from_ip(iface.ip)

    element = Element("interface", type="bridge")
    SubElement(element, "mac", address=mac)
    SubElement(element, "source", bridge=iface.bridge)
    SubElement(element, "target", dev=target_dev)
    if model == "virtio":
        SubElement(element, "driver", name="vhost")
    SubElement(element, "model", type=model)
    return RenderedInterface(element_to_str(element), mac, target_dev)
