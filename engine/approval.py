"""
Compliance Flow — Approval Gate State Machine

Lifecycle of one human approval request:

    opened → approved | rejected | expired
    opened → withdrawn              (owning instance cancelled)

Transitions are pure functions over ApprovalRequest values; nothing here
blocks or holds a thread. The orchestrator persists the request next to
the suspended instance and re-enters the state machine when a callback
or the expiry sweep arrives.

Callback rules:
  - first decision before the deadline wins
  - any later callback for a decided request is a no-op returning the
    recorded decision
  - a callback after the deadline (or after expiry) raises ApprovalExpired
    and never changes the outcome
"""

from __future__ import annotations

import enum
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any

from engine.errors import ApprovalExpired, IllegalTransition

logger = logging.getLogger("compliance_flow.approval")


class ApprovalState(str, enum.Enum):
    OPENED = "opened"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    WITHDRAWN = "withdrawn"


class ApprovalDecision(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"


VALID_TRANSITIONS = {
    ApprovalState.OPENED: [
        ApprovalState.APPROVED, ApprovalState.REJECTED,
        ApprovalState.EXPIRED, ApprovalState.WITHDRAWN,
    ],
    ApprovalState.APPROVED: [],   # Terminal
    ApprovalState.REJECTED: [],   # Terminal
    ApprovalState.EXPIRED: [],    # Terminal
    ApprovalState.WITHDRAWN: [],  # Terminal
}


@dataclass(frozen=True)
class ApprovalRequest:
    """One pending (or closed) human decision for a workflow instance."""
    approval_request_id: str
    instance_id: str
    opened_at: float
    deadline: float
    state: ApprovalState = ApprovalState.OPENED
    decision: ApprovalDecision | None = None
    approver_id: str = ""
    decided_at: float | None = None
    callback_timestamp: str = ""
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.state == ApprovalState.OPENED

    def is_overdue(self, now: float) -> bool:
        return now > self.deadline

    def to_dict(self) -> dict[str, Any]:
        return {
            "approval_request_id": self.approval_request_id,
            "instance_id": self.instance_id,
            "opened_at": self.opened_at,
            "deadline": self.deadline,
            "state": self.state.value,
            "decision": self.decision.value if self.decision else None,
            "approver_id": self.approver_id,
            "decided_at": self.decided_at,
            "callback_timestamp": self.callback_timestamp,
            "context": dict(self.context),
        }


def open_request(
    instance_id: str,
    deadline_seconds: float,
    now: float | None = None,
    context: dict[str, Any] | None = None,
) -> ApprovalRequest:
    """Create an opened request with a deadline deadline_seconds from now."""
    if deadline_seconds <= 0:
        raise ValueError(f"deadline_seconds must be positive, got {deadline_seconds}")
    opened_at = time.time() if now is None else now
    return ApprovalRequest(
        approval_request_id=f"apr_{uuid.uuid4().hex[:12]}",
        instance_id=instance_id,
        opened_at=opened_at,
        deadline=opened_at + deadline_seconds,
        context=dict(context or {}),
    )


def _check(request: ApprovalRequest, to_state: ApprovalState):
    if to_state not in VALID_TRANSITIONS.get(request.state, []):
        raise IllegalTransition(
            f"Cannot move approval {request.approval_request_id!r} from "
            f"{request.state.value} to {to_state.value}"
        )


def decide(
    request: ApprovalRequest,
    decision: ApprovalDecision | str,
    approver_id: str,
    now: float | None = None,
    timestamp: str = "",
) -> tuple[ApprovalRequest, bool]:
    """
    Apply a decision callback.

    Returns (request, changed). changed=False means the request had
    already been decided and the callback was a no-op.

    Raises:
        ApprovalExpired:   deadline passed or request already expired
        IllegalTransition: request was withdrawn
    """
    now = time.time() if now is None else now
    decision = ApprovalDecision(decision)

    if request.state in (ApprovalState.APPROVED, ApprovalState.REJECTED):
        logger.info(
            "Duplicate approval callback ignored: request=%s recorded=%s incoming=%s",
            request.approval_request_id, request.decision.value if request.decision else None,
            decision.value,
        )
        return request, False

    if request.state == ApprovalState.EXPIRED or (
        request.is_open and request.is_overdue(now)
    ):
        logger.warning(
            "Late approval callback rejected: request=%s approver=%s deadline=%.0f received=%.0f",
            request.approval_request_id, approver_id, request.deadline, now,
        )
        raise ApprovalExpired(request.approval_request_id, request.deadline)

    to_state = (
        ApprovalState.APPROVED if decision == ApprovalDecision.APPROVE
        else ApprovalState.REJECTED
    )
    _check(request, to_state)
    return replace(
        request,
        state=to_state,
        decision=decision,
        approver_id=approver_id,
        decided_at=now,
        callback_timestamp=timestamp,
    ), True


def expire(request: ApprovalRequest, now: float | None = None) -> ApprovalRequest:
    """Close an overdue request as expired."""
    now = time.time() if now is None else now
    _check(request, ApprovalState.EXPIRED)
    if not request.is_overdue(now):
        raise IllegalTransition(
            f"Approval {request.approval_request_id!r} is not past its deadline"
        )
    return replace(request, state=ApprovalState.EXPIRED, decided_at=now)


def withdraw(request: ApprovalRequest, now: float | None = None) -> ApprovalRequest:
    """Close an open request because its instance was cancelled."""
    now = time.time() if now is None else now
    _check(request, ApprovalState.WITHDRAWN)
    return replace(request, state=ApprovalState.WITHDRAWN, decided_at=now)
