"""Persist a VM's spec inside its libvirt domain metadata."""

from __future__ import annotations

from typing import Any, Optional, Protocol
from xml.etree.ElementTree import Element, ParseError, fromstring, tostring

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from foundry.constants import METADATA_KEY, METADATA_NAMESPACE
from foundry.exceptions import BackendError, NotFoundError
from foundry.models import VirtualMachine


class MetadataClient(Protocol):
    def set_domain_metadata(self, domain: Any, xml: str, key: str, uri: str) -> None: ...
    def get_domain_metadata(self, domain: Any, uri: str) -> str: ...


def render_metadata_xml(vm: VirtualMachine) -> str:
    element = Element("vm")
    element.text = yaml.safe_dump(vm.to_dict(include_status=False), sort_keys=False, default_flow_style=False)
    return tostring(element, encoding="unicode")


def parse_metadata_xml(xml: str) -> VirtualMachine:
    try:
        element = fromstring(xml)
    except ParseError as exc:
        raise BackendError(f"invalid foundry metadata XML: {exc}") from exc
    data = yaml.safe_load(element.text or "")
    if not isinstance(data, dict):
        raise BackendError("foundry metadata does not contain a VM spec")
    return VirtualMachine.from_dict(data)


def store_vm_spec(client: MetadataClient, domain: Any, vm: VirtualMachine) -> None:
    client.set_domain_metadata(domain, render_metadata_xml(vm), METADATA_KEY, METADATA_NAMESPACE)


def load_vm_spec(client: MetadataClient, domain: Any) -> Optional[VirtualMachine]:
    """Return the stored spec, or None for domains foundry did not create."""
    try:
        xml = client.get_domain_metadata(domain, METADATA_NAMESPACE)
    except NotFoundError:
        return None
    return parse_metadata_xml(xml)
