"""
Compliance Flow — Workflow Orchestrator

Drives each request through its lifecycle:

    received → validating → enriching → deciding
        → proceeding → executing → completed
        → awaiting_approval → executing → completed
                            → rejected | escalated (approval expired)
        → escalated (connector exhausted / terminal connector error / rule)
    failed(kind) from any non-terminal state
    cancelled from any non-terminal state except executing

Every transition is one commit: instance row (version compare-and-set),
audit entry, and the idempotency outcome when terminal, all in the
same SQLite transaction. The next state's work starts only after the
commit returns, so the audit log always happens-before the effect.

Concurrency:
  - run() holds the per-instance lease; a second runner backs off.
  - Callbacks, cancel and the expiry sweep read-check-write inside one
    store transaction and rely on the version check to lose races.
  - Approval suspension releases the lease and returns; nothing waits.

Usage:
    orch = Orchestrator(config=load_config())
    resp = orch.submit(raw_payload)          # 422 / 202 / 200
    orch.handle_approval_callback("apr_...", "approve", "alice")
    orch.recover()                           # after a restart
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import replace
from typing import Any, Callable

from coordinator.idempotency import IdempotencyStore, ReservationKind
from coordinator.store import WorkflowStore
from coordinator.types import (
    TERMINAL_STATES,
    CallbackResult,
    CallbackStatus,
    EscalationReason,
    FailureKind,
    SubmitResponse,
    WorkflowInstance,
    WorkflowState,
    can_transition,
)
from engine import approval as approval_gate
from engine.actions import ActionExecutor, ActionRegistry, create_simulation_registry
from engine.approval import ApprovalRequest, ApprovalState
from engine.audit import AuditEntry
from engine.config import OrchestratorSettings
from engine.connectors import (
    ConnectorRegistry,
    EnrichmentFact,
    EnrichmentQuery,
    build_registry,
    fetch_all,
    facts_by_name,
)
from engine.decision import Branch, DecisionTable, load_decision_table
from engine.errors import (
    ActionError,
    ApprovalExpired,
    CancellationRefused,
    ConnectorError,
    ConnectorExhausted,
    IllegalTransition,
    InstanceNotFound,
    PersistenceError,
    StaleInstanceError,
    ValidationError,
)
from engine.logging import StructuredLogger
from engine.retry import retry_policy_from_config
from engine.validate import Payload, validate

logger = logging.getLogger("compliance_flow.orchestrator")


class Orchestrator:
    """
    Owns every workflow instance and is the only writer of its state.

    Operations:
        submit(raw) → SubmitResponse
        run(correlation_id) → WorkflowInstance | None
        handle_approval_callback(approval_request_id, decision, approver_id, timestamp)
        expire_overdue_approvals() → [approval_request_id]
        cancel(correlation_id, reason, actor) → WorkflowInstance
        recover() → {"resumed": [...], "failed": [...], "skipped": [...]}
    """

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        store: WorkflowStore | None = None,
        connectors: ConnectorRegistry | None = None,
        decision_table: DecisionTable | None = None,
        actions: ActionRegistry | None = None,
        backend: Any = None,
        clock: Callable[[], float] = time.time,
        sleep_fn: Callable[[float], None] = time.sleep,
        owner: str | None = None,
    ):
        self.config = config or {}
        self.settings = OrchestratorSettings.from_config(self.config)

        self.store = store or WorkflowStore(self.settings.db_path)
        self.audit = self.store.audit
        self.idempotency = IdempotencyStore(self.store, clock=clock)

        self.connectors = connectors if connectors is not None else build_registry(self.config)
        self.decision_table = decision_table or load_decision_table(self.config)
        self.action_registry = actions or create_simulation_registry()
        self.executor = ActionExecutor(self.action_registry)

        # Anything with enqueue(correlation_id, fn); None runs inline.
        self.backend = backend
        self.clock = clock
        self.sleep_fn = sleep_fn
        self.owner = owner or f"orch_{uuid.uuid4().hex[:8]}"
        self._events = StructuredLogger(component="workflow")

    # ═══════════════════════════════════════════════════════════════
    # Intake
    # ═══════════════════════════════════════════════════════════════

    def submit(self, raw: Any) -> SubmitResponse:
        """
        Validate and accept a request.

        422: payload invalid, no instance created.
        202: accepted (new) or already in progress (retry).
        200: already completed; body carries the stored outcome.
        """
        try:
            payload = validate(raw)
        except ValidationError as e:
            cid = raw.get("correlationId") if isinstance(raw, dict) else None
            self._events.bind(cid if isinstance(cid, str) else "").request_rejected(e.violations)
            return SubmitResponse(422, e.to_dict())

        cid = payload.correlation_id
        canonical = payload.to_dict()
        now = self.clock()

        with self.store.transaction():
            reservation = self.idempotency.reserve(cid, canonical)
            if reservation.kind == ReservationKind.FRESH:
                inst = WorkflowInstance.create(cid, canonical, now=now)
                self.store.insert_instance(inst)
                self.audit.append(
                    cid, "submit", WorkflowState.RECEIVED.value,
                    from_state=None, actor="intake", actor_type="system",
                    snapshot={
                        "version": inst.version,
                        "schema_version": payload.schema_version,
                        "requested_action": payload.requested_action,
                        "confidence": payload.confidence,
                        "agent_model": payload.agent_model,
                        "agent_version": payload.agent_version,
                    },
                    timestamp=now,
                )

        events = self._events.bind(cid)
        if reservation.kind == ReservationKind.COMPLETED:
            body = {"status": "completed", "correlation_id": cid, "outcome": reservation.outcome}
            if reservation.payload_mismatch:
                body["payload_mismatch"] = True
            return SubmitResponse(200, body)

        if reservation.kind == ReservationKind.IN_PROGRESS:
            current = self.store.get_instance(cid)
            body = {
                "status": "in_progress",
                "correlation_id": cid,
                "state": current.state.value if current else None,
            }
            if reservation.payload_mismatch:
                body["payload_mismatch"] = True
            return SubmitResponse(202, body)

        events.transition(None, WorkflowState.RECEIVED.value, actor="intake", version=1)
        self._schedule(cid)
        current = self.store.get_instance(cid)
        return SubmitResponse(202, {
            "status": "accepted",
            "correlation_id": cid,
            "state": current.state.value if current else WorkflowState.RECEIVED.value,
        })

    def _schedule(self, correlation_id: str):
        if self.backend is None:
            self.run(correlation_id)
        else:
            self.backend.enqueue(correlation_id, lambda: self.run(correlation_id))

    # ═══════════════════════════════════════════════════════════════
    # Transition commit
    # ═══════════════════════════════════════════════════════════════

    def _commit(
        self,
        inst: WorkflowInstance,
        to_state: WorkflowState,
        transition: str,
        actor: str = "orchestrator",
        actor_type: str = "system",
        snapshot: dict[str, Any] | None = None,
        also: Callable[[], None] | None = None,
        **changes,
    ) -> WorkflowInstance:
        """
        Persist one transition atomically and return the new instance.

        `also` runs inside the same transaction (approval request writes).
        """
        if not can_transition(inst.state, to_state):
            raise IllegalTransition(
                f"Cannot move {inst.correlation_id} from {inst.state.value} to {to_state.value}"
            )

        now = self.clock()
        new = replace(
            inst,
            state=to_state,
            version=inst.version + 1,
            updated_at=now,
            **changes,
        )
        if to_state in TERMINAL_STATES:
            new.terminal_at = now

        entry_snapshot = {"version": new.version, **(snapshot or {})}
        with self.store.transaction():
            self.store.save_instance(new, expected_version=inst.version)
            self.audit.append(
                new.correlation_id, transition, to_state.value,
                from_state=inst.state.value, actor=actor, actor_type=actor_type,
                snapshot=entry_snapshot, timestamp=now,
            )
            if also is not None:
                also()
            if to_state in TERMINAL_STATES:
                self.idempotency.complete(new.correlation_id, new.outcome())

        details = {k: v for k, v in changes.items() if k in ("failure_kind", "escalation_reason")}
        self._events.bind(new.correlation_id).transition(
            inst.state.value, to_state.value, actor=actor, version=new.version,
            transition=transition, **details,
        )
        return new

    def _fail(
        self,
        inst: WorkflowInstance,
        kind: FailureKind,
        error: str,
        transition: str,
        actor: str = "orchestrator",
    ) -> WorkflowInstance:
        return self._commit(
            inst, WorkflowState.FAILED, transition,
            actor=actor,
            snapshot={"failure_kind": kind.value, "error": error[:500]},
            failure_kind=kind.value,
            error=error[:2000],
        )

    def _escalate(
        self,
        inst: WorkflowInstance,
        reason: EscalationReason,
        error: str,
        transition: str,
        actor: str = "orchestrator",
        actor_type: str = "system",
        **changes,
    ) -> WorkflowInstance:
        return self._commit(
            inst, WorkflowState.ESCALATED, transition,
            actor=actor, actor_type=actor_type,
            snapshot={"escalation_reason": reason.value, "error": error[:500]},
            escalation_reason=reason.value,
            error=error[:2000],
            **changes,
        )

    # ═══════════════════════════════════════════════════════════════
    # Run loop
    # ═══════════════════════════════════════════════════════════════

    def run(self, correlation_id: str) -> WorkflowInstance | None:
        """
        Drive an instance until it suspends or reaches a terminal state.

        Never raises for instance-level problems: those become
        transitions, or (persistence) a halted instance left for recover().
        """
        events = self._events.bind(correlation_id)
        try:
            leased = self.idempotency.acquire_lease(
                correlation_id, self.owner, self.settings.lease_seconds)
        except PersistenceError as e:
            events.halted(str(e))
            logger.critical("Cannot lease %s: %s", correlation_id, e)
            return None
        if not leased:
            logger.info("Instance %s is being run elsewhere, skipping", correlation_id)
            return self.store.get_instance(correlation_id)

        try:
            return self._drive(correlation_id)
        finally:
            try:
                self.idempotency.release_lease(correlation_id, self.owner)
            except PersistenceError as e:
                logger.critical("Could not release lease on %s: %s", correlation_id, e)

    def _drive(self, correlation_id: str) -> WorkflowInstance | None:
        events = self._events.bind(correlation_id)
        inst = self.store.get_instance(correlation_id)
        if inst is None:
            logger.warning("run() for unknown instance %s", correlation_id)
            return None

        while not inst.is_terminal and not inst.is_suspended:
            try:
                inst = self._step(inst)
            except StaleInstanceError as e:
                # Someone else (cancel, callback) committed first; their state wins.
                logger.info("Stopping %s: %s", correlation_id, e)
                return self.store.get_instance(correlation_id)
            except PersistenceError as e:
                events.halted(str(e))
                logger.critical("Instance %s halted: %s", correlation_id, e)
                return None
            except Exception as e:
                logger.exception("Unexpected error in %s at %s", correlation_id, inst.state.value)
                return self._fail_internal(correlation_id, e)
        return inst

    def _fail_internal(self, correlation_id: str, error: Exception) -> WorkflowInstance | None:
        try:
            latest = self.store.get_instance(correlation_id)
            if latest is None or latest.is_terminal:
                return latest
            return self._fail(
                latest, FailureKind.INTERNAL,
                f"{type(error).__name__}: {error}", "internal_error",
            )
        except PersistenceError as e:
            self._events.bind(correlation_id).halted(str(e))
            logger.critical("Instance %s halted while failing: %s", correlation_id, e)
            return None

    def _step(self, inst: WorkflowInstance) -> WorkflowInstance:
        handler = {
            WorkflowState.RECEIVED: self._step_received,
            WorkflowState.VALIDATING: self._step_validating,
            WorkflowState.ENRICHING: self._step_enriching,
            WorkflowState.DECIDING: self._step_deciding,
            WorkflowState.PROCEEDING: self._step_proceeding,
            WorkflowState.EXECUTING: self._step_executing,
        }.get(inst.state)
        if handler is None:
            raise IllegalTransition(f"No work defined for state {inst.state.value}")
        return handler(inst)

    # ─── Steps ───────────────────────────────────────────────────────

    def _step_received(self, inst: WorkflowInstance) -> WorkflowInstance:
        return self._commit(inst, WorkflowState.VALIDATING, "begin_validation")

    def _step_validating(self, inst: WorkflowInstance) -> WorkflowInstance:
        try:
            payload = validate(Payload.from_dict(inst.payload).to_wire())
        except ValidationError as e:
            return self._commit(
                inst, WorkflowState.FAILED, "payload_invalid",
                snapshot={"failure_kind": FailureKind.VALIDATION.value,
                          "violations": e.violations},
                failure_kind=FailureKind.VALIDATION.value,
                error=str(e),
            )
        except (KeyError, TypeError, ValueError) as e:
            return self._fail(
                inst, FailureKind.VALIDATION,
                f"stored payload unreadable: {e}", "payload_invalid")
        return self._commit(
            inst, WorkflowState.ENRICHING, "payload_valid",
            snapshot={"schema_version": payload.schema_version},
        )

    def _step_enriching(self, inst: WorkflowInstance) -> WorkflowInstance:
        events = self._events.bind(inst.correlation_id)
        payload = Payload.from_dict(inst.payload)
        query = EnrichmentQuery.from_payload(payload)
        try:
            facts = fetch_all(
                self.connectors.all(),
                query,
                policy_for=lambda name: retry_policy_from_config(self.config, name),
                max_workers=self.settings.enrichment_max_workers,
                sleep_fn=self.sleep_fn,
                on_attempt=events.connector_attempt,
                clock=self.clock,
            )
        except ConnectorExhausted as e:
            events.connector_exhausted(e.connector, e.attempts, e.last_error)
            return self._escalate(
                inst, EscalationReason.CONNECTOR_EXHAUSTED, str(e),
                "connector_exhausted", actor=e.connector, actor_type="connector",
            )
        except ConnectorError as e:
            return self._escalate(
                inst, EscalationReason.CONNECTOR_ERROR, str(e),
                "connector_error", actor=e.connector, actor_type="connector",
            )

        fact_dicts = [f.to_dict() for f in facts]
        return self._commit(
            inst, WorkflowState.DECIDING, "facts_joined",
            actor="enrichment", actor_type="connector",
            snapshot={"facts": fact_dicts},
            facts=fact_dicts,
        )

    def _step_deciding(self, inst: WorkflowInstance) -> WorkflowInstance:
        events = self._events.bind(inst.correlation_id)
        payload = Payload.from_dict(inst.payload)
        outcome = self.decision_table.evaluate(payload, facts_by_name_from_dicts(inst.facts))
        decision = outcome.to_dict()
        events.decision(decision)

        if outcome.branch == Branch.PROCEED:
            return self._commit(
                inst, WorkflowState.PROCEEDING, "decision_proceed",
                snapshot={"decision": decision}, decision=decision,
            )

        if outcome.branch == Branch.ESCALATE:
            return self._escalate(
                inst, EscalationReason.DECISION_ESCALATE, outcome.reason,
                "decision_escalate", decision=decision,
            )

        request = approval_gate.open_request(
            inst.correlation_id,
            self.settings.approval_deadline_seconds,
            now=self.clock(),
            context={"action": outcome.action, "reason": outcome.reason},
        )
        new = self._commit(
            inst, WorkflowState.AWAITING_APPROVAL, "decision_human_review",
            snapshot={
                "decision": decision,
                "approval_request_id": request.approval_request_id,
                "deadline": request.deadline,
            },
            also=lambda: self.store.save_approval(request),
            decision=decision,
            approval_request_id=request.approval_request_id,
        )
        events.approval_opened(request.approval_request_id, request.deadline)
        return new

    def _step_proceeding(self, inst: WorkflowInstance) -> WorkflowInstance:
        return self._commit(
            inst, WorkflowState.EXECUTING, "dispatch_action",
            snapshot={"action": (inst.decision or {}).get("action")},
        )

    def _step_executing(self, inst: WorkflowInstance) -> WorkflowInstance:
        events = self._events.bind(inst.correlation_id)
        action = (inst.decision or {}).get("action", "")
        cid = inst.correlation_id

        dispatch = self.idempotency.get_dispatch(cid)
        if dispatch is None:
            marked = self.idempotency.mark_action_dispatched(
                cid, action, details={"matched_rule": (inst.decision or {}).get("matched_rule")},
            )
            if marked:
                return self._dispatch(inst, action)
            dispatch = self.idempotency.get_dispatch(cid)

        # Dispatched by an earlier run of this instance.
        result = (dispatch or {}).get("result")
        if result is None:
            logger.error("Action %s for %s was dispatched with no recorded result", action, cid)
            return self._fail(
                inst, FailureKind.ACTION,
                f"action {action} outcome unknown: dispatched before restart "
                "with no recorded result, operator review required",
                "action_outcome_unknown",
            )
        if result.get("status") == "failed":
            return self._fail(
                inst, FailureKind.ACTION, result.get("error") or "action failed", "action_failed")
        events.action_dispatched(action, "recovered", result.get("latency_ms", 0.0))
        return self._commit(
            inst, WorkflowState.COMPLETED, "action_completed",
            snapshot={"action_result": result, "recovered": True},
            action_result=result,
        )

    def _dispatch(self, inst: WorkflowInstance, action: str) -> WorkflowInstance:
        events = self._events.bind(inst.correlation_id)
        try:
            result = self.executor.execute(inst)
        except ActionError as e:
            self.idempotency.record_action_result(
                inst.correlation_id, {"action": action, "status": "failed", "error": str(e)})
            events.action_dispatched(action, "failed")
            return self._fail(inst, FailureKind.ACTION, str(e), "action_failed", actor=action)

        result_dict = result.to_dict()
        self.idempotency.record_action_result(inst.correlation_id, result_dict)
        events.action_dispatched(action, result.status, result.latency_ms)
        return self._commit(
            inst, WorkflowState.COMPLETED, "action_completed",
            actor=action,
            snapshot={"action_result": result_dict},
            action_result=result_dict,
        )

    # ═══════════════════════════════════════════════════════════════
    # Approval callbacks
    # ═══════════════════════════════════════════════════════════════

    def handle_approval_callback(
        self,
        approval_request_id: str,
        decision: str,
        approver_id: str,
        timestamp: str = "",
    ) -> CallbackResult:
        """
        Apply a human decision.

        Lateness is judged by the time the callback is received here,
        not by the timestamp the caller supplies (which is only recorded).
        """
        now = self.clock()
        resume = None

        with self.store.transaction():
            req = self.store.get_approval(approval_request_id)
            if req is None:
                result = CallbackResult(
                    CallbackStatus.UNKNOWN, approval_request_id,
                    decision=decision, message="unknown approval request")
            else:
                result = self._apply_callback(req, decision, approver_id, timestamp, now)
                if result.status == CallbackStatus.ACCEPTED and \
                        result.instance_state == WorkflowState.EXECUTING.value:
                    resume = req.instance_id

        self._events.bind(result.correlation_id or "").approval_callback(
            approval_request_id, decision, approver_id, result.status.value)
        if resume:
            self._schedule(resume)
            latest = self.store.get_instance(resume)
            if latest is not None:
                result.instance_state = latest.state.value
        return result

    def _apply_callback(
        self,
        req: ApprovalRequest,
        decision: str,
        approver_id: str,
        timestamp: str,
        now: float,
    ) -> CallbackResult:
        cid = req.instance_id

        def _result(status, message="", state=None, recorded=None):
            return CallbackResult(
                status, req.approval_request_id, correlation_id=cid,
                decision=recorded or decision, instance_state=state, message=message,
            )

        if req.state == ApprovalState.WITHDRAWN:
            return _result(CallbackStatus.CLOSED, "approval request withdrawn")

        try:
            decided, changed = approval_gate.decide(req, decision, approver_id, now, timestamp)
        except ApprovalExpired as e:
            state = None
            if req.is_open:
                state = self._expire_locked(req, now)
            return _result(CallbackStatus.LATE, str(e), state=state)

        if not changed:
            inst = self.store.get_instance(cid)
            return _result(
                CallbackStatus.DUPLICATE, "decision already recorded",
                state=inst.state.value if inst else None,
                recorded=req.decision.value if req.decision else None,
            )

        inst = self.store.get_instance(cid)
        if inst is None or inst.state != WorkflowState.AWAITING_APPROVAL \
                or inst.approval_request_id != req.approval_request_id:
            return _result(
                CallbackStatus.CLOSED, "instance is no longer awaiting this approval",
                state=inst.state.value if inst else None)

        approved = decided.state == ApprovalState.APPROVED
        snapshot = {
            "approval_request_id": req.approval_request_id,
            "decision": decided.decision.value,
            "approver_id": approver_id,
            "callback_timestamp": timestamp,
            "received_at": now,
        }
        new = self._commit(
            inst,
            WorkflowState.EXECUTING if approved else WorkflowState.REJECTED,
            "approved" if approved else "rejected",
            actor=approver_id or "approver",
            actor_type="human",
            snapshot=snapshot,
            also=lambda: self.store.save_approval(decided),
            **({} if approved else {"error": f"rejected by {approver_id}"}),
        )
        return _result(CallbackStatus.ACCEPTED, state=new.state.value)

    def _expire_locked(self, req: ApprovalRequest, now: float) -> str | None:
        """Expire an overdue request and escalate its instance. Caller holds the transaction."""
        expired = approval_gate.expire(req, now)
        self.store.save_approval(expired)
        inst = self.store.get_instance(req.instance_id)
        if inst is None or inst.state != WorkflowState.AWAITING_APPROVAL \
                or inst.approval_request_id != req.approval_request_id:
            return inst.state.value if inst else None
        new = self._escalate(
            inst, EscalationReason.APPROVAL_EXPIRED,
            f"approval {req.approval_request_id} expired without a decision",
            "approval_expired", actor="approval_timer",
        )
        return new.state.value

    def expire_overdue_approvals(self) -> list[str]:
        """Timer sweep: expire every open request past its deadline."""
        now = self.clock()
        expired = []
        for req in self.store.list_overdue_approvals(now):
            with self.store.transaction():
                current = self.store.get_approval(req.approval_request_id)
                if current is None or not current.is_open or not current.is_overdue(now):
                    continue
                self._expire_locked(current, now)
            expired.append(req.approval_request_id)
        if expired:
            logger.info("Expired %d overdue approval request(s)", len(expired))
        return expired

    # ═══════════════════════════════════════════════════════════════
    # Cancellation
    # ═══════════════════════════════════════════════════════════════

    def cancel(self, correlation_id: str, reason: str = "", actor: str = "operator") -> WorkflowInstance:
        """
        Cancel a non-terminal instance.

        Raises:
            InstanceNotFound:    no such instance
            CancellationRefused: executing (action may be in flight) or terminal
        """
        now = self.clock()
        with self.store.transaction():
            inst = self.store.get_instance(correlation_id)
            if inst is None:
                raise InstanceNotFound(f"No instance {correlation_id}")
            if inst.state == WorkflowState.EXECUTING:
                raise CancellationRefused(
                    f"Instance {correlation_id} is executing its action and cannot be cancelled")
            if inst.is_terminal:
                raise CancellationRefused(
                    f"Instance {correlation_id} already {inst.state.value}")

            withdrawn = None
            if inst.approval_request_id:
                req = self.store.get_approval(inst.approval_request_id)
                if req is not None and req.is_open:
                    withdrawn = approval_gate.withdraw(req, now)

            return self._commit(
                inst, WorkflowState.CANCELLED, "cancelled",
                actor=actor, actor_type="human",
                snapshot={"reason": reason},
                also=(lambda: self.store.save_approval(withdrawn)) if withdrawn else None,
                error=f"cancelled: {reason}" if reason else "cancelled",
            )

    # ═══════════════════════════════════════════════════════════════
    # Recovery
    # ═══════════════════════════════════════════════════════════════

    def recover(self) -> dict[str, list[str]]:
        """
        Resume every non-terminal, non-suspended instance after a restart.

        The lease is taken before the restart is counted and stays held
        until the scheduled run() picks the instance up (run() re-takes a
        lease this orchestrator already owns). Each resume counts against
        orchestrator.max_instance_retries; beyond it the instance fails
        with retries_exhausted.
        """
        resumed, failed, skipped = [], [], []
        for candidate in self.store.list_resumable():
            cid = candidate.correlation_id
            try:
                leased = self.idempotency.acquire_lease(
                    cid, self.owner, self.settings.lease_seconds)
            except PersistenceError as e:
                logger.critical("Recovery could not lease %s: %s", cid, e)
                skipped.append(cid)
                continue
            if not leased:
                skipped.append(cid)
                continue

            outcome = self._recover_leased(cid)
            if outcome == "resumed":
                resumed.append(cid)
                self._schedule(cid)
                continue

            try:
                self.idempotency.release_lease(cid, self.owner)
            except PersistenceError as e:
                logger.critical("Could not release lease on %s: %s", cid, e)
            (failed if outcome == "failed" else skipped).append(cid)

        return {"resumed": resumed, "failed": failed, "skipped": skipped}

    def _recover_leased(self, cid: str) -> str:
        """Count one restart of an instance whose lease we hold. Returns resumed, failed or skipped."""
        inst = self.store.get_instance(cid)
        if inst is None or inst.is_terminal or inst.is_suspended:
            return "skipped"
        try:
            bumped = replace(
                inst, retry_count=inst.retry_count + 1,
                version=inst.version + 1, updated_at=self.clock(),
            )
            self.store.save_instance(bumped, expected_version=inst.version)
        except StaleInstanceError:
            return "skipped"
        except PersistenceError as e:
            logger.critical("Recovery could not update %s: %s", cid, e)
            return "skipped"

        if bumped.retry_count > self.settings.max_instance_retries:
            logger.error(
                "Instance %s exceeded %d restarts, failing",
                cid, self.settings.max_instance_retries)
            try:
                self._fail(
                    bumped, FailureKind.RETRIES_EXHAUSTED,
                    f"restarted {bumped.retry_count} times without finishing",
                    "retries_exhausted", actor="recovery",
                )
            except (StaleInstanceError, PersistenceError) as e:
                logger.critical("Recovery could not fail %s: %s", cid, e)
                return "skipped"
            return "failed"

        logger.info("Resuming %s from %s (restart %d)", cid, inst.state.value, bumped.retry_count)
        return "resumed"

    # ═══════════════════════════════════════════════════════════════
    # Queries and maintenance
    # ═══════════════════════════════════════════════════════════════

    def get_instance(self, correlation_id: str) -> WorkflowInstance:
        """Live or archived instance. Raises InstanceNotFound."""
        inst = self.store.get_instance(correlation_id)
        if inst is not None:
            return inst
        archived = self.store.get_archived(correlation_id)
        if archived is not None:
            return WorkflowInstance.from_dict(archived)
        raise InstanceNotFound(f"No instance {correlation_id}")

    def get_audit_trail(self, correlation_id: str) -> list[AuditEntry]:
        entries = self.audit.read_all(correlation_id)
        if not entries:
            # Raises if the instance never existed.
            self.get_instance(correlation_id)
        return entries

    def list_pending_approvals(self) -> list[ApprovalRequest]:
        return self.store.list_open_approvals()

    def archive_expired(self) -> list[str]:
        """Archive terminal instances older than the retention period."""
        now = self.clock()
        cutoff = now - self.settings.retention_seconds
        archived = []
        for inst in self.store.list_archivable(cutoff):
            self.store.archive_instance(inst, now=now)
            archived.append(inst.correlation_id)
        if archived:
            logger.info("Archived %d terminal instance(s)", len(archived))
        return archived

    def sweep(self) -> dict[str, list[str]]:
        """Periodic maintenance: approval expiry, then archival."""
        return {
            "expired_approvals": self.expire_overdue_approvals(),
            "archived": self.archive_expired(),
        }

    def verify_audit(self, correlation_id: str | None = None) -> tuple[bool, str]:
        return self.audit.verify_chain(correlation_id)

    def stats(self) -> dict[str, Any]:
        stats = self.store.stats()
        stats["connectors"] = self.connectors.list_connectors()
        stats["actions"] = self.action_registry.list_actions()
        stats["rules"] = len(self.decision_table.rules)
        stats["confidence_threshold"] = self.decision_table.confidence_threshold
        return stats

    def close(self):
        self.store.close()


def facts_by_name_from_dicts(facts: list[dict[str, Any]]) -> dict[str, Any]:
    """Persisted fact dicts → the name → value mapping rules evaluate."""
    return facts_by_name([EnrichmentFact.from_dict(f) for f in facts])
