"""Listing and inspection of foundry-managed VMs."""

from __future__ import annotations

from typing import Any, List, Protocol, Tuple

from foundry.constants import CONDITION_FALSE, CONDITION_READY, CONDITION_TRUE, DOMAIN_STATE_RUNNING
from foundry.exceptions import DomainNotFoundError, FoundryError
from foundry.metadata import load_vm_spec
from foundry.models import Address, VirtualMachine, VMInfo
from foundry.naming import interface_name_from_ip, mac_from_ip
from foundry.status import phase_from_domain_state, set_condition
from foundry.utils import log


class HypervisorClient(Protocol):
    """Read-only domain operations used for listing."""

    def list_domains(self) -> List[Any]: ...
    def lookup_domain(self, name: str) -> Any: ...
    def domain_name(self, domain: Any) -> str: ...
    def domain_uuid(self, domain: Any) -> str: ...
    def domain_info(self, domain: Any) -> Tuple[int, int, int]: ...
    def domain_autostart(self, domain: Any) -> bool: ...
    def get_domain_metadata(self, domain: Any, uri: str) -> str: ...


def _describe(client: HypervisorClient, domain: Any) -> VMInfo:
    state, memory_kib, vcpus = client.domain_info(domain)
    info = VMInfo(
        name=client.domain_name(domain),
        uuid=client.domain_uuid(domain),
        phase=phase_from_domain_state(state),
        state=state,
        vcpus=vcpus,
        memory_kib=memory_kib,
        autostart=client.domain_autostart(domain),
    )
    try:
        vm = load_vm_spec(client, domain)
    except FoundryError as exc:
        log("DEBUG", f"Ignoring unreadable metadata on {info.name}: {exc}")
        vm = None
    if vm is not None:
        info.ips = [iface.ip.split("/", 1)[0] for iface in vm.spec.network_interfaces]
    return info


def list_vms(client: HypervisorClient) -> List[VMInfo]:
    """Summarise every defined domain; domains that cannot be read are skipped."""
    vms: List[VMInfo] = []
    for domain in client.list_domains():
        try:
            vms.append(_describe(client, domain))
        except FoundryError as exc:
            log("WARN", f"Skipping domain: {exc}")
    return sorted(vms, key=lambda v: v.name)


def get_vm(client: HypervisorClient, name: str) -> VirtualMachine:
    """Return the stored spec of ``name`` with status derived from the live domain."""
    domain = client.lookup_domain(name)
    vm = load_vm_spec(client, domain)
    if vm is None:
        raise DomainNotFoundError(f"domain {name} exists but is not managed by foundry")

    state, _memory, _vcpus = client.domain_info(domain)
    vm.status.phase = phase_from_domain_state(state)
    vm.status.domain_uuid = client.domain_uuid(domain)
    interfaces = vm.spec.network_interfaces
    vm.status.mac_addresses = [mac_from_ip(i.ip) for i in interfaces]
    vm.status.interface_names = [interface_name_from_ip(i.ip) for i in interfaces]
    vm.status.addresses = [Address("InternalIP", i.ip.split("/", 1)[0]) for i in interfaces]
    if state == DOMAIN_STATE_RUNNING:
        set_condition(vm, CONDITION_READY, CONDITION_TRUE, "Running", "VM is running")
    else:
        set_condition(vm, CONDITION_READY, CONDITION_FALSE, "NotRunning", "VM is not running")
    return vm
