"""
Compliance Flow — Error Taxonomy

Every failure the orchestrator can observe has a named type here.
Component-local errors (ConnectorError) are absorbed by the retry
policy; only errors that exhaust local policy reach the orchestrator,
which turns them into a state transition instead of letting them
cross the instance boundary.

    ValidationError      malformed inbound payload, rejected before any instance exists
    ConnectorError       one failed enrichment call (retryable or terminal)
    ConnectorExhausted   retries used up → instance escalated
    ApprovalExpired      decision arrived after the deadline → instance escalated
    ActionError          terminal action failed after its single dispatch → failed(action)
    PersistenceError     durable state could not be written → instance halted
"""

from __future__ import annotations

from typing import Any


class ComplianceFlowError(Exception):
    """Base class for all orchestrator errors."""

    code = "error"

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": str(self)}


class ValidationError(ComplianceFlowError):
    """
    Inbound payload failed schema validation.

    Carries every violation, not just the first, so the caller can
    fix all problems in one round trip.
    """

    code = "validation_error"

    def __init__(self, violations: list[dict[str, str]]):
        self.violations = list(violations)
        fields = ", ".join(v["field"] for v in self.violations)
        super().__init__(f"{len(self.violations)} validation error(s): {fields}")

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "violations": self.violations}


class ConnectorError(ComplianceFlowError):
    """A single enrichment call failed."""

    code = "connector_error"

    def __init__(
        self,
        connector: str,
        message: str,
        retryable: bool = False,
        status_code: int | None = None,
    ):
        self.connector = connector
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(f"{connector}: {message}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "connector": self.connector,
            "retryable": self.retryable,
            "status_code": self.status_code,
            "message": str(self),
        }


class ConnectorExhausted(ComplianceFlowError):
    """A connector used up its retry budget (or its circuit is open)."""

    code = "connector_exhausted"

    def __init__(self, connector: str, attempts: int, last_error: str = ""):
        self.connector = connector
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{connector}: exhausted after {attempts} attempt(s): {last_error}"
        )


class ApprovalExpired(ComplianceFlowError):
    """A decision callback arrived after the approval deadline."""

    code = "approval_expired"

    def __init__(self, approval_request_id: str, deadline: float):
        self.approval_request_id = approval_request_id
        self.deadline = deadline
        super().__init__(
            f"Approval request {approval_request_id} expired at {deadline:.0f}"
        )


class ActionError(ComplianceFlowError):
    """The terminal action failed. Never retried without human sign-off."""

    code = "action_error"

    def __init__(self, action: str, message: str):
        self.action = action
        super().__init__(f"{action}: {message}")


class PersistenceError(ComplianceFlowError):
    """Durable state could not be read or written. Fatal for the instance."""

    code = "persistence_error"


class StaleInstanceError(PersistenceError):
    """Version compare-and-set lost: another writer committed first."""

    code = "stale_instance"

    def __init__(self, correlation_id: str, expected_version: int):
        self.correlation_id = correlation_id
        self.expected_version = expected_version
        super().__init__(
            f"Instance {correlation_id} changed since version {expected_version}"
        )


class IllegalTransition(ComplianceFlowError):
    """Attempted a state transition the state machine does not allow."""

    code = "illegal_transition"


class CancellationRefused(ComplianceFlowError):
    """Cancellation requested while executing or after a terminal state."""

    code = "cancellation_refused"


class InstanceNotFound(ComplianceFlowError):
    """No workflow instance for the given correlation id."""

    code = "not_found"
