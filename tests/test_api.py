"""
Compliance Flow — API Models and Server Tests

Model validation runs without a server. Route tests drive the FastAPI
app through TestClient against a real Orchestrator on a temp database,
running instances inline so every response reflects the final state.
Lifecycle tests enter the client as a context manager so the startup
recovery and the approval timer run.
"""

import os
import shutil
import sys
import tempfile
import time
import unittest
from unittest import mock

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from fastapi.testclient import TestClient

from api.models import ApprovalCallback, ApprovalEntry, CancelRequest, RequestStatus
from api.server import create_app
from api.worker import InlineBackend
from coordinator.runtime import Orchestrator
from coordinator.types import WorkflowInstance, WorkflowState
from engine.approval import open_request
from engine.retry import reset_all_circuit_breakers

T0 = 1_700_000_000.0

_CONFIG = {
    "approval": {"deadline_seconds": 600},
    "enrichment": {"connectors": [
        {"name": "crm", "type": "static", "fact": "customer_status",
         "table": {"C-1001": "active", "C-2001": "suspended"}, "default": "unknown"},
    ]},
    "decision": {
        "confidence_threshold": 0.70,
        "rules": [
            {"name": "suspended_customer",
             "when": [{"field": "facts.customer_status", "operator": "eq", "value": "suspended"}],
             "branch": "escalate"},
            {"name": "active_customer",
             "when": [{"field": "facts.customer_status", "operator": "eq", "value": "active"}],
             "branch": "proceed", "action": "create_case"},
        ],
    },
}


def _payload(cid="req-1", confidence=0.93, customer="C-1001"):
    return {
        "schemaVersion": "1.0",
        "correlationId": cid,
        "document": {
            "uri": f"s3://intake/{cid}.pdf",
            "type": "claim_form",
            "extracted": {
                "customerId": customer,
                "receivedDate": "2024-03-01",
                "keyDates": {},
                "confidence": confidence,
            },
        },
        "requestedAction": "create_case",
        "agent": {"model": "extractor", "version": "3.2"},
    }


# ═══════════════════════════════════════════════════════════════════
# Model Validation Tests
# ═══════════════════════════════════════════════════════════════════

class TestApprovalCallbackModel(unittest.TestCase):

    def test_from_camel_case_body(self):
        cb = ApprovalCallback.from_body({
            "approvalRequestId": "apr_1", "decision": "approve",
            "approverId": "alice", "timestamp": "2024-03-01T10:00:00Z",
        })
        self.assertEqual(cb.approval_request_id, "apr_1")
        self.assertEqual(cb.approver_id, "alice")
        self.assertEqual(cb.validate(), [])

    def test_timestamp_optional(self):
        cb = ApprovalCallback.from_body({"approvalRequestId": "apr_1", "decision": "reject", "approverId": "bob"})
        self.assertEqual(cb.timestamp, "")
        self.assertEqual(cb.validate(), [])

    def test_missing_fields(self):
        errors = ApprovalCallback.from_body({}).validate()
        self.assertEqual(len(errors), 3)
        self.assertTrue(any("approvalRequestId" in e for e in errors))
        self.assertTrue(any("approverId" in e for e in errors))

    def test_bad_decision(self):
        cb = ApprovalCallback.from_body({"approvalRequestId": "apr_1", "decision": "maybe", "approverId": "a"})
        self.assertTrue(any("decision" in e for e in cb.validate()))

    def test_non_object_body(self):
        self.assertTrue(ApprovalCallback.from_body(["x"]).validate())


class TestCancelRequestModel(unittest.TestCase):

    def test_defaults(self):
        c = CancelRequest.from_body(None)
        self.assertEqual((c.reason, c.actor), ("", "operator"))
        self.assertEqual(c.validate(), [])

    def test_bad_types(self):
        self.assertEqual(len(CancelRequest(reason=5, actor=["x"]).validate()), 2)


class TestResponseSerialization(unittest.TestCase):

    def test_request_status(self):
        inst = WorkflowInstance.create("req-1", {"correlation_id": "req-1", "requested_action": "notify"}, now=5.0)
        inst.state = WorkflowState.ESCALATED
        inst.decision = {"branch": "escalate", "action": "", "matched_rule": "r1"}
        inst.escalation_reason = "decision_escalate"
        d = RequestStatus.from_instance(inst).to_dict()
        self.assertEqual(d["state"], "escalated")
        self.assertEqual(d["requested_action"], "notify")
        self.assertEqual(d["matched_rule"], "r1")
        self.assertEqual(d["escalation_reason"], "decision_escalate")
        self.assertEqual(d["created_at"], 5.0)

    def test_approval_entry(self):
        req = open_request("req-1", 60, now=100.0, context={"action": "notify", "reason": "low confidence"})
        d = ApprovalEntry.from_request(req).to_dict()
        self.assertEqual(d["correlation_id"], "req-1")
        self.assertEqual(d["action"], "notify")
        self.assertEqual(d["deadline"], 160.0)


# ═══════════════════════════════════════════════════════════════════
# Route Tests
# ═══════════════════════════════════════════════════════════════════

class TestServer(unittest.TestCase):

    def setUp(self):
        reset_all_circuit_breakers()
        self.tmpdir = tempfile.mkdtemp()
        self.now = [T0]
        config = dict(_CONFIG, store={"db_path": os.path.join(self.tmpdir, "api.db")})
        self.backend = InlineBackend()
        self.orch = Orchestrator(config=config, clock=lambda: self.now[0], sleep_fn=lambda s: None,
                                 backend=self.backend)
        self.client = TestClient(create_app(config=config, orchestrator=self.orch, backend=self.backend))

    def tearDown(self):
        self.orch.close()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _callback(self, approval_id, decision="approve", approver="alice"):
        return self.client.post("/v1/approvals/callback", json={
            "approvalRequestId": approval_id, "decision": decision,
            "approverId": approver, "timestamp": "2024-03-01T10:00:00Z",
        })

    def _await_approval(self, cid="req-1"):
        self.assertEqual(self.client.post("/v1/requests", json=_payload(cid, confidence=0.4)).status_code, 202)
        approvals = self.client.get("/v1/approvals").json()["approvals"]
        return next(a["approval_request_id"] for a in approvals if a["correlation_id"] == cid)

    # ── Intake ──

    def test_submit_accepted_then_replayed(self):
        resp = self.client.post("/v1/requests", json=_payload())
        self.assertEqual(resp.status_code, 202)
        self.assertEqual(resp.json()["status"], "accepted")
        self.assertEqual(resp.json()["state"], "completed")

        again = self.client.post("/v1/requests", json=_payload())
        self.assertEqual(again.status_code, 200)
        self.assertEqual(again.json()["outcome"]["state"], "completed")

    def test_submit_invalid(self):
        bad = _payload()
        del bad["correlationId"]
        resp = self.client.post("/v1/requests", json=bad)
        self.assertEqual(resp.status_code, 422)
        body = resp.json()
        self.assertEqual(body["error"], "validation_error")
        self.assertIn("correlationId", [v["field"] for v in body["violations"]])

    def test_submit_not_json(self):
        resp = self.client.post("/v1/requests", content=b"{not json",
                                headers={"content-type": "application/json"})
        self.assertEqual(resp.status_code, 422)
        self.assertEqual(resp.json()["violations"][0]["field"], "$")

    # ── Status and trail ──

    def test_get_request(self):
        self.client.post("/v1/requests", json=_payload(customer="C-2001"))
        body = self.client.get("/v1/requests/req-1").json()
        self.assertEqual(body["state"], "escalated")
        self.assertEqual(body["escalation_reason"], "decision_escalate")
        self.assertEqual(body["matched_rule"], "suspended_customer")
        self.assertEqual(body["job"]["status"], "completed")
        self.assertTrue(body["job"]["job_id"].startswith("job_"))

    def test_get_unknown_request(self):
        resp = self.client.get("/v1/requests/nope")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["error"], "not_found")
        self.assertEqual(self.client.get("/v1/requests/nope/trail").status_code, 404)

    def test_trail(self):
        self.client.post("/v1/requests", json=_payload())
        body = self.client.get("/v1/requests/req-1/trail").json()
        self.assertEqual(body["count"], 7)
        self.assertEqual([e["sequence"] for e in body["entries"]], list(range(1, 8)))
        self.assertEqual(body["entries"][-1]["transition"], "action_completed")

    # ── Approvals ──

    def test_list_and_approve(self):
        approval_id = self._await_approval()
        listing = self.client.get("/v1/approvals").json()
        self.assertEqual(listing["count"], 1)
        self.assertEqual(listing["approvals"][0]["deadline"], T0 + 600)

        resp = self._callback(approval_id)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "accepted")
        self.assertEqual(resp.json()["instance_state"], "completed")
        self.assertEqual(self.client.get("/v1/approvals").json()["count"], 0)

        dup = self._callback(approval_id, decision="reject")
        self.assertEqual(dup.status_code, 200)
        self.assertEqual(dup.json()["status"], "duplicate")

    def test_late_callback(self):
        approval_id = self._await_approval()
        self.now[0] += 601
        resp = self._callback(approval_id)
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["status"], "late")
        self.assertEqual(self.client.get("/v1/requests/req-1").json()["escalation_reason"], "approval_expired")

    def test_unknown_callback(self):
        resp = self._callback("apr_missing")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["status"], "unknown")

    def test_invalid_callback_body(self):
        resp = self.client.post("/v1/approvals/callback", json={"decision": "approve"})
        self.assertEqual(resp.status_code, 422)
        self.assertEqual(len(resp.json()["errors"]), 2)

    # ── Cancel ──

    def test_cancel(self):
        approval_id = self._await_approval()
        resp = self.client.post("/v1/requests/req-1/cancel", json={"reason": "duplicate", "actor": "ops"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["state"], "cancelled")
        closed = self._callback(approval_id)
        self.assertEqual(closed.status_code, 409)
        self.assertEqual(closed.json()["status"], "closed")

    def test_cancel_without_body(self):
        self._await_approval()
        self.assertEqual(self.client.post("/v1/requests/req-1/cancel").status_code, 200)

    def test_cancel_refused_and_unknown(self):
        self.client.post("/v1/requests", json=_payload())
        refused = self.client.post("/v1/requests/req-1/cancel", json={})
        self.assertEqual(refused.status_code, 409)
        self.assertEqual(refused.json()["error"], "cancellation_refused")
        self.assertEqual(self.client.post("/v1/requests/nope/cancel", json={}).status_code, 404)

    # ── Maintenance, stats, health ──

    def test_sweep(self):
        approval_id = self._await_approval()
        self.now[0] += 700
        body = self.client.post("/v1/maintenance/sweep").json()
        self.assertEqual(body["expired_approvals"], [approval_id])
        self.assertEqual(body["archived"], [])

    def test_stats(self):
        self.client.post("/v1/requests", json=_payload())
        body = self.client.get("/v1/stats").json()
        self.assertEqual(body["instances"], {"completed": 1})
        self.assertEqual(body["audit_entries"], 7)
        self.assertEqual(body["connectors"], ["crm"])
        self.assertIn("worker", body)

    def test_health_and_ready(self):
        self.assertEqual(self.client.get("/health").json()["status"], "ok")
        self.assertEqual(self.client.get("/ready").json(), {"status": "ok"})


# ═══════════════════════════════════════════════════════════════════
# Lifecycle Tests (startup recovery, approval timer)
# ═══════════════════════════════════════════════════════════════════

class _Deferred:
    """Backend that accepts jobs and never runs them, like a process that died."""

    def __init__(self):
        self.jobs = []

    def enqueue(self, correlation_id, fn):
        self.jobs.append(correlation_id)
        return f"job_{len(self.jobs)}"


class TestServerLifecycle(unittest.TestCase):

    def setUp(self):
        reset_all_circuit_breakers()
        self.tmpdir = tempfile.mkdtemp()
        self.now = [T0]
        self._open = []

    def tearDown(self):
        for orch in self._open:
            orch.close()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _config(self, **approval):
        return dict(
            _CONFIG,
            approval={"deadline_seconds": 600, "sweep_interval_seconds": 0, **approval},
            store={"db_path": os.path.join(self.tmpdir, "lifecycle.db")},
        )

    def _orchestrator(self, config, **kwargs):
        orch = Orchestrator(config=config, clock=lambda: self.now[0],
                            sleep_fn=lambda s: None, **kwargs)
        self._open.append(orch)
        return orch

    def test_startup_resumes_unfinished_instances(self):
        config = self._config()
        crashed = self._orchestrator(config, backend=_Deferred())
        self.assertEqual(crashed.submit(_payload()).status_code, 202)
        crashed.close()

        orch = self._orchestrator(config)
        self.assertEqual(orch.get_instance("req-1").state, WorkflowState.RECEIVED)
        with TestClient(create_app(config=config, orchestrator=orch, backend=InlineBackend())) as client:
            body = client.get("/v1/requests/req-1").json()
        self.assertEqual(body["state"], "completed")
        self.assertEqual(orch.get_instance("req-1").retry_count, 1)

    def test_timer_expires_overdue_approvals(self):
        config = self._config(sweep_interval_seconds=0.02)
        orch = self._orchestrator(config)
        with TestClient(create_app(config=config, orchestrator=orch, backend=InlineBackend())) as client:
            client.post("/v1/requests", json=_payload(confidence=0.4))
            self.assertEqual(client.get("/v1/approvals").json()["count"], 1)
            self.now[0] += 601

            deadline = time.time() + 5
            state = None
            while time.time() < deadline:
                state = client.get("/v1/requests/req-1").json()["state"]
                if state == "escalated":
                    break
                time.sleep(0.02)
            self.assertEqual(state, "escalated")
            body = client.get("/v1/requests/req-1").json()
            self.assertEqual(body["escalation_reason"], "approval_expired")
            self.assertEqual(client.get("/v1/approvals").json()["count"], 0)

    def test_timer_disabled(self):
        config = self._config()
        orch = self._orchestrator(config)
        with mock.patch.object(orch, "sweep") as sweep:
            with TestClient(create_app(config=config, orchestrator=orch, backend=InlineBackend())) as client:
                client.post("/v1/requests", json=_payload(confidence=0.4))
                self.now[0] += 601
                time.sleep(0.1)
                self.assertEqual(client.get("/v1/requests/req-1").json()["state"], "awaiting_approval")
        sweep.assert_not_called()


if __name__ == "__main__":
    unittest.main()
