"""
Compliance Flow — Workflow Coordinator

Owns workflow instances: the state machine, durable store, idempotency
records and the orchestrator that drives requests end to end.

State is persisted to SQLite so instances survive process restarts;
Orchestrator.recover() resumes whatever was in flight.

Usage:
    from coordinator.runtime import Orchestrator

    orch = Orchestrator(config=load_config())
    resp = orch.submit(raw_payload)
"""

from coordinator.types import (
    WorkflowState,
    WorkflowInstance,
    FailureKind,
    EscalationReason,
    SubmitResponse,
    CallbackResult,
    CallbackStatus,
    VALID_TRANSITIONS,
    TERMINAL_STATES,
)
from coordinator.store import WorkflowStore
from coordinator.idempotency import IdempotencyStore, Reservation, ReservationKind
from coordinator.runtime import Orchestrator

__all__ = [
    "Orchestrator",
    "WorkflowStore",
    "IdempotencyStore",
    "Reservation",
    "ReservationKind",
    "WorkflowState",
    "WorkflowInstance",
    "FailureKind",
    "EscalationReason",
    "SubmitResponse",
    "CallbackResult",
    "CallbackStatus",
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
]
