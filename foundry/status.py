"""VM phase transitions and status conditions for Foundry."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from foundry.constants import (
    CONDITION_CLOUD_INIT_READY,
    CONDITION_FALSE,
    CONDITION_NETWORK_CONFIGURED,
    CONDITION_READY,
    CONDITION_STORAGE_PROVISIONED,
    CONDITION_TRUE,
    DOMAIN_STATE_BLOCKED,
    DOMAIN_STATE_CRASHED,
    DOMAIN_STATE_PAUSED,
    DOMAIN_STATE_PMSUSPENDED,
    DOMAIN_STATE_RUNNING,
    DOMAIN_STATE_SHUTDOWN,
    DOMAIN_STATE_SHUTOFF,
    PHASE_CREATING,
    PHASE_FAILED,
    PHASE_PENDING,
    PHASE_RUNNING,
    PHASE_STOPPED,
    PHASE_STOPPING,
)
from foundry.exceptions import InvalidTransitionError
from foundry.models import Condition, VirtualMachine

_ALLOWED_SOURCES = {
    PHASE_CREATING: (PHASE_PENDING,),
    PHASE_RUNNING: (PHASE_CREATING, PHASE_STOPPED),
    PHASE_STOPPING: (PHASE_RUNNING,),
    PHASE_STOPPED: (PHASE_STOPPING, PHASE_RUNNING),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _check_transition(vm: VirtualMachine, target: str) -> None:
    current = vm.status.phase
    if current not in _ALLOWED_SOURCES[target]:
        raise InvalidTransitionError(f"cannot transition VM {vm.name} from {current} to {target}")


# ---------------------------------------------------------------------------
# Phase transitions
# ---------------------------------------------------------------------------


def transition_to_creating(vm: VirtualMachine) -> None:
    _check_transition(vm, PHASE_CREATING)
    vm.status.phase = PHASE_CREATING
    set_condition(vm, CONDITION_READY, CONDITION_FALSE, "Creating", "VM creation in progress")


def transition_to_running(vm: VirtualMachine) -> None:
    _check_transition(vm, PHASE_RUNNING)
    vm.status.phase = PHASE_RUNNING
    vm.status.observed_generation = vm.generation
    set_condition(vm, CONDITION_READY, CONDITION_TRUE, "VMReady", "VM is running and accessible")


def transition_to_stopping(vm: VirtualMachine) -> None:
    _check_transition(vm, PHASE_STOPPING)
    vm.status.phase = PHASE_STOPPING
    set_condition(vm, CONDITION_READY, CONDITION_FALSE, "Stopping", "VM shutdown in progress")


def transition_to_stopped(vm: VirtualMachine) -> None:
    _check_transition(vm, PHASE_STOPPED)
    vm.status.phase = PHASE_STOPPED
    set_condition(vm, CONDITION_READY, CONDITION_FALSE, "Stopped", "VM has been stopped")


def transition_to_failed(vm: VirtualMachine, reason: str, message: str) -> None:
    """Move to Failed from any phase; this transition never raises."""
    vm.status.phase = PHASE_FAILED
    set_condition(vm, CONDITION_READY, CONDITION_FALSE, reason, message)


def is_terminal(phase: str) -> bool:
    return phase in (PHASE_STOPPED, PHASE_FAILED)


def is_running(phase: str) -> bool:
    return phase == PHASE_RUNNING


def is_transitioning(phase: str) -> bool:
    return phase in (PHASE_CREATING, PHASE_STOPPING)


def phase_from_domain_state(state: int) -> str:
    """Map a libvirt domain state to a VM phase."""
    if state in (DOMAIN_STATE_RUNNING, DOMAIN_STATE_BLOCKED, DOMAIN_STATE_PAUSED, DOMAIN_STATE_PMSUSPENDED):
        return PHASE_RUNNING
    if state == DOMAIN_STATE_SHUTDOWN:
        return PHASE_STOPPING
    if state == DOMAIN_STATE_SHUTOFF:
        return PHASE_STOPPED
    if state == DOMAIN_STATE_CRASHED:
        return PHASE_FAILED
    return PHASE_PENDING


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


def get_condition(vm: VirtualMachine, condition_type: str) -> Optional[Condition]:
    for condition in vm.status.conditions:
        if condition.type == condition_type:
            return condition
    return None


def set_condition(vm: VirtualMachine, condition_type: str, status: str, reason: str, message: str) -> None:
    """Add or update a condition; the transition time moves only when the status changes."""
    existing = get_condition(vm, condition_type)
    if existing is None:
        vm.status.conditions.append(
            Condition(
                type=condition_type,
                status=status,
                reason=reason,
                message=message,
                last_transition_time=_now(),
                observed_generation=vm.generation,
            )
        )
        return
    if existing.status != status:
        existing.last_transition_time = _now()
    existing.status = status
    existing.reason = reason
    existing.message = message
    existing.observed_generation = vm.generation


def is_condition_true(vm: VirtualMachine, condition_type: str) -> bool:
    condition = get_condition(vm, condition_type)
    return condition is not None and condition.status == CONDITION_TRUE


def is_condition_false(vm: VirtualMachine, condition_type: str) -> bool:
    condition = get_condition(vm, condition_type)
    return condition is not None and condition.status == CONDITION_FALSE


def remove_condition(vm: VirtualMachine, condition_type: str) -> None:
    vm.status.conditions = [c for c in vm.status.conditions if c.type != condition_type]


def mark_ready(vm: VirtualMachine) -> None:
    """Set every condition to True, for a VM that came up fully provisioned."""
    set_condition(vm, CONDITION_READY, CONDITION_TRUE, "VMReady", "VM is running and accessible")
    set_condition(vm, CONDITION_STORAGE_PROVISIONED, CONDITION_TRUE, "StorageReady", "All storage volumes created successfully")
    set_condition(vm, CONDITION_NETWORK_CONFIGURED, CONDITION_TRUE, "NetworkReady", "Network interfaces configured")
    set_condition(vm, CONDITION_CLOUD_INIT_READY, CONDITION_TRUE, "CloudInitReady", "Cloud-init ISO created and attached")


def mark_failed(vm: VirtualMachine, reason: str, message: str) -> None:
    set_condition(vm, CONDITION_READY, CONDITION_FALSE, reason, message)


def mark_storage_provisioned(vm: VirtualMachine) -> None:
    set_condition(vm, CONDITION_STORAGE_PROVISIONED, CONDITION_TRUE, "StorageCreated", "All storage volumes created successfully")


def mark_storage_failed(vm: VirtualMachine, message: str) -> None:
    set_condition(vm, CONDITION_STORAGE_PROVISIONED, CONDITION_FALSE, "StorageFailed", message)


def mark_network_configured(vm: VirtualMachine) -> None:
    set_condition(vm, CONDITION_NETWORK_CONFIGURED, CONDITION_TRUE, "NetworkReady", "Network interfaces configured")


def mark_network_failed(vm: VirtualMachine, message: str) -> None:
    set_condition(vm, CONDITION_NETWORK_CONFIGURED, CONDITION_FALSE, "NetworkFailed", message)


def mark_cloud_init_ready(vm: VirtualMachine) -> None:
    set_condition(vm, CONDITION_CLOUD_INIT_READY, CONDITION_TRUE, "CloudInitGenerated", "Cloud-init ISO created and attached")


def mark_cloud_init_failed(vm: VirtualMachine, message: str) -> None:
    set_condition(vm, CONDITION_CLOUD_INIT_READY, CONDITION_FALSE, "CloudInitFailed", message)
