"""
Compliance Flow - Action Registry and Executor

Write-side counterpart to the connector layer (which handles reads).

An "action" is a callable that takes parameters and performs the one
terminal side effect of a workflow instance: opening a case, updating a
record, sending a notification, archiving the document. Actions are
registered by name; the decision outcome names which one runs.

The executor is not idempotent on its own. The orchestrator marks the
dispatch in the action ledger before calling execute() and never calls
it twice for the same instance.

Usage:
    registry = ActionRegistry()
    registry.register(
        name="create_case",
        fn=my_case_fn,
        description="Open a case in the case management system",
        target_system="case_management",
    )
    executor = ActionExecutor(registry)
    result = executor.execute(instance)     # raises ActionError
"""

import hashlib
import logging
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Optional

from engine.errors import ActionError

logger = logging.getLogger("compliance_flow.actions")


# ---------------------------------------------------------------------------
# Action result
# ---------------------------------------------------------------------------

@dataclass
class ActionResult:
    """Result of executing a single action."""
    action: str
    target_system: str
    status: str  # executed | failed
    confirmation_id: Optional[str] = None
    response_data: Optional[dict] = None
    error: Optional[str] = None
    latency_ms: float = 0.0
    reversible: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Action specification
# ---------------------------------------------------------------------------

@dataclass
class ActionSpec:
    """Registration entry for an action."""
    name: str
    fn: Callable[[dict[str, Any]], dict[str, Any]]
    description: str = ""
    target_system: str = ""
    reversible: bool = True
    side_effects: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Action Registry
# ---------------------------------------------------------------------------

class ActionRegistry:
    """Central registry of executable actions."""

    def __init__(self):
        self._actions: dict[str, ActionSpec] = {}

    def register(
        self,
        name: str,
        fn: Callable[[dict[str, Any]], dict[str, Any]],
        description: str = "",
        target_system: str = "",
        reversible: bool = True,
        side_effects: Optional[list[str]] = None,
    ):
        """Register an executable action."""
        self._actions[name] = ActionSpec(
            name=name,
            fn=fn,
            description=description,
            target_system=target_system,
            reversible=reversible,
            side_effects=side_effects or [],
        )

    def get(self, name: str) -> Optional[ActionSpec]:
        return self._actions.get(name)

    def list_actions(self) -> list[str]:
        return list(self._actions.keys())

    def describe(self) -> str:
        """Human-readable listing for the `actions` CLI command."""
        if not self._actions:
            return "No actions registered."
        lines = []
        for spec in self._actions.values():
            rev = " (reversible)" if spec.reversible else " (IRREVERSIBLE)"
            target = f" [{spec.target_system}]" if spec.target_system else ""
            lines.append(f"  - {spec.name}{target}{rev}: {spec.description}")
            for se in spec.side_effects:
                lines.append(f"    Side effect: {se}")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

def build_action_params(instance: Any) -> dict[str, Any]:
    """
    Parameters handed to an action function.

    Built from the persisted instance only (payload, facts, decision),
    so a resumed instance produces the same parameters.
    """
    payload = dict(instance.payload or {})
    decision = dict(instance.decision or {})
    return {
        "correlation_id": instance.correlation_id,
        "customer_id": payload.get("customer_id", ""),
        "document_uri": payload.get("document_uri", ""),
        "document_type": payload.get("document_type", ""),
        "received_date": payload.get("received_date", ""),
        "key_dates": dict(payload.get("key_dates") or {}),
        "facts": {f["name"]: f["value"] for f in (instance.facts or [])},
        "matched_rule": decision.get("matched_rule"),
    }


class ActionExecutor:
    """Runs the action chosen by the decision outcome for one instance."""

    def __init__(self, registry: ActionRegistry):
        self.registry = registry

    def execute(self, instance: Any) -> ActionResult:
        """
        Invoke the decided action.

        Raises:
            ActionError: no action decided, action not registered,
                         the action function raised, or it returned
                         something other than a mapping
        """
        action_name = (instance.decision or {}).get("action", "")
        if not action_name:
            raise ActionError("", f"instance {instance.correlation_id} has no decided action")

        spec = self.registry.get(action_name)
        if spec is None:
            raise ActionError(action_name, f"action {action_name!r} not registered")

        params = build_action_params(instance)
        t0 = time.time()
        try:
            response = spec.fn(params)
        except Exception as e:
            logger.error(
                "Action %s failed for %s: %s", action_name, instance.correlation_id, e)
            raise ActionError(action_name, str(e)) from e
        if response is None:
            response = {}
        if not isinstance(response, dict):
            logger.error(
                "Action %s returned %s for %s, expected a mapping",
                action_name, type(response).__name__, instance.correlation_id)
            raise ActionError(
                action_name,
                f"action returned {type(response).__name__}, expected a mapping; "
                "side effect may have happened",
            )
        elapsed_ms = (time.time() - t0) * 1000

        logger.info(
            "Action %s executed for %s in %.1fms (target=%s)",
            action_name, instance.correlation_id, elapsed_ms, spec.target_system,
        )
        return ActionResult(
            action=action_name,
            target_system=spec.target_system,
            status="executed",
            confirmation_id=response.get("confirmation_id"),
            response_data=response,
            latency_ms=round(elapsed_ms, 3),
            reversible=spec.reversible,
        )


# ---------------------------------------------------------------------------
# Simulation registry (dev/test)
# ---------------------------------------------------------------------------

def _confirmation(prefix: str, params: dict) -> str:
    # Derived from the correlation id so a replayed instance gets the same id.
    digest = hashlib.sha256(params.get("correlation_id", "").encode()).hexdigest()
    return f"{prefix}-{digest[:8].upper()}"


def create_simulation_registry() -> ActionRegistry:
    """
    Create an ActionRegistry that simulates the four supported actions.

    In dev/test, actions don't touch real systems. They return plausible
    confirmation IDs and response data. In production, replace these with
    real integrations.
    """
    registry = ActionRegistry()

    def _sim_create_case(params: dict) -> dict:
        return {
            "confirmation_id": _confirmation("CASE", params),
            "customer_id": params.get("customer_id", "unknown"),
            "document_type": params.get("document_type", "unknown"),
            "status": "opened",
        }

    def _sim_update_record(params: dict) -> dict:
        return {
            "confirmation_id": _confirmation("REC", params),
            "customer_id": params.get("customer_id", "unknown"),
            "fields_updated": sorted(params.get("key_dates", {}).keys()),
            "status": "updated",
        }

    def _sim_notify(params: dict) -> dict:
        return {
            "confirmation_id": _confirmation("NTF", params),
            "recipient": params.get("customer_id", "unknown"),
            "status": "queued",
        }

    def _sim_archive(params: dict) -> dict:
        return {
            "confirmation_id": _confirmation("ARC", params),
            "document_uri": params.get("document_uri", ""),
            "status": "archived",
        }

    registry.register(
        name="create_case",
        fn=_sim_create_case,
        description="Open a case in the case management system",
        target_system="case_management",
        reversible=True,
        side_effects=["Case created and assigned to the intake queue"],
    )
    registry.register(
        name="update_record",
        fn=_sim_update_record,
        description="Update the customer record with the extracted dates",
        target_system="system_of_record",
        reversible=True,
        side_effects=["Customer record fields overwritten"],
    )
    registry.register(
        name="notify",
        fn=_sim_notify,
        description="Send a notification to the customer",
        target_system="correspondence",
        reversible=False,
        side_effects=["Notification queued for delivery"],
    )
    registry.register(
        name="archive",
        fn=_sim_archive,
        description="Move the source document to long-term storage",
        target_system="records_retention",
        reversible=False,
        side_effects=["Document moved to the retention store"],
    )
    return registry
