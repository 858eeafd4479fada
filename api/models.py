"""
Compliance Flow — API Models

Request/response dataclasses for the API server.
No FastAPI dependency — used by server, CLI, and tests.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any

from coordinator.types import WorkflowInstance
from engine.approval import ApprovalDecision, ApprovalRequest


@dataclass
class ApprovalCallback:
    """POST /v1/approvals/callback request body."""
    approval_request_id: str
    decision: str
    approver_id: str
    timestamp: str = ""

    @staticmethod
    def from_body(body: Any) -> ApprovalCallback:
        body = body if isinstance(body, dict) else {}
        return ApprovalCallback(
            approval_request_id=body.get("approvalRequestId", ""),
            decision=body.get("decision", ""),
            approver_id=body.get("approverId", ""),
            timestamp=body.get("timestamp", "") or "",
        )

    def validate(self) -> list[str]:
        """Return list of validation errors (empty = valid)."""
        errors = []
        if not self.approval_request_id or not isinstance(self.approval_request_id, str):
            errors.append("approvalRequestId is required and must be a string")
        if self.decision not in [d.value for d in ApprovalDecision]:
            errors.append("decision must be 'approve' or 'reject'")
        if not self.approver_id or not isinstance(self.approver_id, str):
            errors.append("approverId is required and must be a string")
        if not isinstance(self.timestamp, str):
            errors.append("timestamp must be a string")
        return errors


@dataclass
class CancelRequest:
    """POST /v1/requests/{id}/cancel body."""
    reason: str = ""
    actor: str = "operator"

    @staticmethod
    def from_body(body: Any) -> CancelRequest:
        body = body if isinstance(body, dict) else {}
        return CancelRequest(
            reason=body.get("reason", "") or "",
            actor=body.get("actor", "operator") or "operator",
        )

    def validate(self) -> list[str]:
        errors = []
        if not isinstance(self.reason, str):
            errors.append("reason must be a string")
        if not isinstance(self.actor, str):
            errors.append("actor must be a string")
        return errors


@dataclass
class RequestStatus:
    """GET /v1/requests/{id} response — current state and outcome."""
    correlation_id: str
    state: str
    version: int
    requested_action: str
    branch: str | None
    action: str | None
    matched_rule: str | None
    failure_kind: str | None
    escalation_reason: str | None
    approval_request_id: str | None
    action_result: dict[str, Any] | None
    error: str | None
    retry_count: int
    created_at: float
    updated_at: float
    terminal_at: float | None

    @staticmethod
    def from_instance(inst: WorkflowInstance) -> RequestStatus:
        decision = inst.decision or {}
        return RequestStatus(
            correlation_id=inst.correlation_id,
            state=inst.state.value,
            version=inst.version,
            requested_action=inst.payload.get("requested_action", ""),
            branch=decision.get("branch"),
            action=decision.get("action"),
            matched_rule=decision.get("matched_rule"),
            failure_kind=inst.failure_kind,
            escalation_reason=inst.escalation_reason,
            approval_request_id=inst.approval_request_id,
            action_result=inst.action_result,
            error=inst.error,
            retry_count=inst.retry_count,
            created_at=inst.created_at,
            updated_at=inst.updated_at,
            terminal_at=inst.terminal_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ApprovalEntry:
    """GET /v1/approvals response item."""
    approval_request_id: str
    correlation_id: str
    action: str
    reason: str
    opened_at: float
    deadline: float

    @staticmethod
    def from_request(req: ApprovalRequest) -> ApprovalEntry:
        return ApprovalEntry(
            approval_request_id=req.approval_request_id,
            correlation_id=req.instance_id,
            action=req.context.get("action", ""),
            reason=req.context.get("reason", ""),
            opened_at=req.opened_at,
            deadline=req.deadline,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
