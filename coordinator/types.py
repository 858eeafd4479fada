"""
Compliance Flow — Workflow Type Definitions

Instance state machine, the persisted instance record, and the small
result types the orchestrator hands back to its callers.
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any


# ─── State Machine ──────────────────────────────────────────────────

class WorkflowState(str, enum.Enum):
    """Lifecycle states for a workflow instance."""
    RECEIVED = "received"
    VALIDATING = "validating"
    ENRICHING = "enriching"
    DECIDING = "deciding"
    PROCEEDING = "proceeding"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ESCALATED = "escalated"
    FAILED = "failed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({
    WorkflowState.COMPLETED,
    WorkflowState.ESCALATED,
    WorkflowState.FAILED,
    WorkflowState.REJECTED,
    WorkflowState.CANCELLED,
})

# Waiting on an external actor; only a callback or the sweep moves these.
SUSPENDED_STATES = frozenset({WorkflowState.AWAITING_APPROVAL})

# Valid transitions: {from_state: [valid_to_states]}
VALID_TRANSITIONS = {
    WorkflowState.RECEIVED: [
        WorkflowState.VALIDATING, WorkflowState.FAILED, WorkflowState.CANCELLED,
    ],
    WorkflowState.VALIDATING: [
        WorkflowState.ENRICHING, WorkflowState.FAILED, WorkflowState.CANCELLED,
    ],
    WorkflowState.ENRICHING: [
        WorkflowState.DECIDING, WorkflowState.ESCALATED,
        WorkflowState.FAILED, WorkflowState.CANCELLED,
    ],
    WorkflowState.DECIDING: [
        WorkflowState.PROCEEDING, WorkflowState.AWAITING_APPROVAL,
        WorkflowState.ESCALATED, WorkflowState.FAILED, WorkflowState.CANCELLED,
    ],
    WorkflowState.PROCEEDING: [
        WorkflowState.EXECUTING, WorkflowState.FAILED, WorkflowState.CANCELLED,
    ],
    WorkflowState.AWAITING_APPROVAL: [
        WorkflowState.EXECUTING, WorkflowState.REJECTED, WorkflowState.ESCALATED,
        WorkflowState.FAILED, WorkflowState.CANCELLED,
    ],
    # No cancellation once the action may have been dispatched.
    WorkflowState.EXECUTING: [WorkflowState.COMPLETED, WorkflowState.FAILED],
    WorkflowState.COMPLETED: [],  # Terminal
    WorkflowState.ESCALATED: [],  # Terminal
    WorkflowState.FAILED: [],     # Terminal
    WorkflowState.REJECTED: [],   # Terminal
    WorkflowState.CANCELLED: [],  # Terminal
}


def can_transition(from_state: WorkflowState, to_state: WorkflowState) -> bool:
    return to_state in VALID_TRANSITIONS.get(from_state, [])


class FailureKind(str, enum.Enum):
    VALIDATION = "validation"
    ACTION = "action"
    INTERNAL = "internal"
    RETRIES_EXHAUSTED = "retries_exhausted"


class EscalationReason(str, enum.Enum):
    CONNECTOR_EXHAUSTED = "connector_exhausted"
    CONNECTOR_ERROR = "connector_error"
    DECISION_ESCALATE = "decision_escalate"
    APPROVAL_EXPIRED = "approval_expired"


# ─── Instance ───────────────────────────────────────────────────────

@dataclass
class WorkflowInstance:
    """
    Durable record of one request's progress.

    Mutated only by the orchestrator's transition commit; version
    increments on every persisted transition.
    """
    correlation_id: str
    state: WorkflowState
    payload: dict[str, Any]
    created_at: float
    updated_at: float
    version: int = 0
    facts: list[dict[str, Any]] = field(default_factory=list)
    decision: dict[str, Any] | None = None
    retry_count: int = 0
    failure_kind: str | None = None
    escalation_reason: str | None = None
    approval_request_id: str | None = None
    action_result: dict[str, Any] | None = None
    error: str | None = None
    terminal_at: float | None = None

    @staticmethod
    def create(correlation_id: str, payload: dict[str, Any], now: float | None = None) -> WorkflowInstance:
        now = time.time() if now is None else now
        return WorkflowInstance(
            correlation_id=correlation_id,
            state=WorkflowState.RECEIVED,
            payload=dict(payload),
            created_at=now,
            updated_at=now,
            version=1,
        )

    @staticmethod
    def from_dict(data: dict[str, Any]) -> WorkflowInstance:
        return WorkflowInstance(
            correlation_id=data["correlation_id"],
            state=WorkflowState(data["state"]),
            payload=dict(data.get("payload") or {}),
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            version=int(data.get("version", 0)),
            facts=list(data.get("facts") or []),
            decision=data.get("decision"),
            retry_count=int(data.get("retry_count", 0)),
            failure_kind=data.get("failure_kind"),
            escalation_reason=data.get("escalation_reason"),
            approval_request_id=data.get("approval_request_id"),
            action_result=data.get("action_result"),
            error=data.get("error"),
            terminal_at=data.get("terminal_at"),
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_suspended(self) -> bool:
        return self.state in SUSPENDED_STATES

    def outcome(self) -> dict[str, Any]:
        """The answer a replayed submission receives once terminal."""
        decision = self.decision or {}
        return {
            "correlation_id": self.correlation_id,
            "state": self.state.value,
            "branch": decision.get("branch"),
            "action": decision.get("action"),
            "action_result": self.action_result,
            "failure_kind": self.failure_kind,
            "escalation_reason": self.escalation_reason,
            "error": self.error,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "state": self.state.value,
            "version": self.version,
            "payload": self.payload,
            "facts": self.facts,
            "decision": self.decision,
            "retry_count": self.retry_count,
            "failure_kind": self.failure_kind,
            "escalation_reason": self.escalation_reason,
            "approval_request_id": self.approval_request_id,
            "action_result": self.action_result,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "terminal_at": self.terminal_at,
        }


# ─── Caller-facing results ──────────────────────────────────────────

@dataclass
class SubmitResponse:
    """What submit() answers: an HTTP-shaped status code and body."""
    status_code: int
    body: dict[str, Any]


class CallbackStatus(str, enum.Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    LATE = "late"
    CLOSED = "closed"
    UNKNOWN = "unknown"


@dataclass
class CallbackResult:
    status: CallbackStatus
    approval_request_id: str
    correlation_id: str | None = None
    decision: str | None = None
    instance_state: str | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "approval_request_id": self.approval_request_id,
            "correlation_id": self.correlation_id,
            "decision": self.decision,
            "instance_state": self.instance_state,
            "message": self.message,
        }
