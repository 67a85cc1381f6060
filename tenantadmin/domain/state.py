from __future__ import annotations

from enum import Enum


class WorkflowState(str, Enum):
    INITIALIZING = "initializing"
    PROVISIONING = "provisioning"
    CONFIGURING_PERMISSIONS = "configuring_permissions"
    SENDING_NOTIFICATIONS = "sending_notifications"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({WorkflowState.COMPLETED, WorkflowState.FAILED, WorkflowState.CANCELLED})

# Fixed step order; each step runs in the state named alongside it.
STEP_SEQUENCE: tuple[tuple[str, WorkflowState], ...] = (
    ("provision_resources", WorkflowState.PROVISIONING),
    ("configure_permissions", WorkflowState.CONFIGURING_PERMISSIONS),
    ("send_notifications", WorkflowState.SENDING_NOTIFICATIONS),
)

_ALLOWED_TRANSITIONS: dict[WorkflowState, frozenset[WorkflowState]] = {
    WorkflowState.INITIALIZING: frozenset({WorkflowState.PROVISIONING}),
    WorkflowState.PROVISIONING: frozenset({WorkflowState.CONFIGURING_PERMISSIONS}),
    WorkflowState.CONFIGURING_PERMISSIONS: frozenset({WorkflowState.SENDING_NOTIFICATIONS}),
    WorkflowState.SENDING_NOTIFICATIONS: frozenset({WorkflowState.COMPLETED}),
    WorkflowState.COMPLETED: frozenset(),
    WorkflowState.FAILED: frozenset(),
    WorkflowState.CANCELLED: frozenset(),
}


def can_transition(current: WorkflowState, target: WorkflowState) -> bool:
    # failed and cancelled are reachable from any non-terminal state.
    if current.is_terminal:
        return False
    if target in (WorkflowState.FAILED, WorkflowState.CANCELLED):
        return True
    return target in _ALLOWED_TRANSITIONS[current]
