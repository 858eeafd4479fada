"""
Compliance Flow — API Server

FastAPI application serving:
  POST /v1/requests                  — submit an extraction payload
  GET  /v1/requests/{id}             — current state + outcome (+ job status)
  GET  /v1/requests/{id}/trail       — ordered audit entries
  POST /v1/requests/{id}/cancel      — cancel (409 when refused)
  POST /v1/approvals/callback        — approver decision
  GET  /v1/approvals                 — open approval requests
  POST /v1/maintenance/sweep         — expire overdue approvals, archive
  GET  /health                       — liveness
  GET  /ready                        — readiness
  GET  /v1/stats                     — orchestrator statistics

On startup the server resumes unfinished instances (recover) and starts
a timer that expires overdue approvals every approval.sweep_interval_seconds.

Usage:
    uvicorn api.server:app --host 0.0.0.0 --port 8080

    # Development
    CF_WORKER__MODE=inline uvicorn api.server:app --reload
"""

from __future__ import annotations

import json
import logging
import os
import time
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.models import ApprovalCallback, ApprovalEntry, CancelRequest, RequestStatus
from api.worker import PeriodicTask, WorkerBackend, create_backend
from coordinator.runtime import Orchestrator
from coordinator.types import CallbackStatus
from engine.config import OrchestratorSettings, load_config
from engine.errors import CancellationRefused, InstanceNotFound, PersistenceError
from engine.logging import configure_logging, is_configured

logger = logging.getLogger("compliance_flow.api")

_CALLBACK_STATUS_CODES = {
    CallbackStatus.ACCEPTED: 200,
    CallbackStatus.DUPLICATE: 200,
    CallbackStatus.LATE: 409,
    CallbackStatus.CLOSED: 409,
    CallbackStatus.UNKNOWN: 404,
}


def create_app(
    config: dict[str, Any] | None = None,
    orchestrator: Orchestrator | None = None,
    backend: WorkerBackend | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns the app instance. Separated from module-level creation
    so tests can create fresh instances.
    """
    app = FastAPI(
        title="Compliance Flow API",
        version="0.1.0",
        description="Deterministic, auditable workflow orchestration",
    )

    # ── State ────────────────────────────────────────────────

    _config = config
    _backend: WorkerBackend | None = backend
    _orchestrator: Orchestrator | None = orchestrator
    _sweeper: PeriodicTask | None = None

    def get_config() -> dict[str, Any]:
        nonlocal _config
        if _config is None:
            _config = load_config()
        return _config

    def get_backend() -> WorkerBackend:
        nonlocal _backend
        if _backend is None:
            settings = OrchestratorSettings.from_config(get_config())
            _backend = create_backend(settings.worker_mode, settings.worker_max_concurrent)
        return _backend

    def get_orchestrator() -> Orchestrator:
        nonlocal _orchestrator
        if _orchestrator is None:
            _orchestrator = Orchestrator(config=get_config(), backend=get_backend())
        return _orchestrator

    async def _json_body(request: Request) -> tuple[Any, JSONResponse | None]:
        try:
            return await request.json(), None
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None, JSONResponse(
                status_code=422,
                content={"error": "validation_error",
                         "violations": [{"field": "$", "message": "body is not valid JSON"}]},
            )

    # ── Lifecycle ─────────────────────────────────────────────

    @app.on_event("startup")
    async def startup():
        nonlocal _sweeper
        orch = get_orchestrator()
        recovered = orch.recover()
        logger.info(
            "Startup recovery: %d resumed, %d failed, %d skipped",
            len(recovered["resumed"]), len(recovered["failed"]), len(recovered["skipped"]),
        )
        interval = orch.settings.sweep_interval_seconds
        if interval > 0:
            _sweeper = PeriodicTask("approval_sweep", orch.sweep, interval)
            _sweeper.start()

    @app.on_event("shutdown")
    async def shutdown():
        nonlocal _sweeper
        if _sweeper:
            _sweeper.stop()
            _sweeper = None
        if _backend:
            _backend.shutdown()

    # ── Intake ────────────────────────────────────────────────

    @app.post("/v1/requests", response_model=None)
    async def submit_request(request: Request):
        body, error = await _json_body(request)
        if error is not None:
            return error
        resp = get_orchestrator().submit(body)
        return JSONResponse(status_code=resp.status_code, content=resp.body)

    # ── Request status ────────────────────────────────────────

    @app.get("/v1/requests/{correlation_id}")
    async def get_request(correlation_id: str):
        try:
            inst = get_orchestrator().get_instance(correlation_id)
        except InstanceNotFound as e:
            return JSONResponse(status_code=404, content=e.to_dict())
        body = RequestStatus.from_instance(inst).to_dict()
        job = get_backend().tracker.get_by_correlation(correlation_id)
        if job is not None:
            body["job"] = {"job_id": job.job_id, "status": job.status, "error": job.error}
        return JSONResponse(content=body)

    @app.get("/v1/requests/{correlation_id}/trail")
    async def get_trail(correlation_id: str):
        try:
            entries = get_orchestrator().get_audit_trail(correlation_id)
        except InstanceNotFound as e:
            return JSONResponse(status_code=404, content=e.to_dict())
        return JSONResponse(content={
            "correlation_id": correlation_id,
            "count": len(entries),
            "entries": [e.to_dict() for e in entries],
        })

    @app.post("/v1/requests/{correlation_id}/cancel")
    async def cancel_request(correlation_id: str, request: Request):
        body = {}
        if await request.body():
            body, error = await _json_body(request)
            if error is not None:
                return error
        cancel = CancelRequest.from_body(body)
        errors = cancel.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})
        try:
            inst = get_orchestrator().cancel(correlation_id, cancel.reason, cancel.actor)
        except InstanceNotFound as e:
            return JSONResponse(status_code=404, content=e.to_dict())
        except CancellationRefused as e:
            return JSONResponse(status_code=409, content=e.to_dict())
        return JSONResponse(content=RequestStatus.from_instance(inst).to_dict())

    # ── Approvals ─────────────────────────────────────────────

    @app.post("/v1/approvals/callback")
    async def approval_callback(request: Request):
        body, error = await _json_body(request)
        if error is not None:
            return error
        callback = ApprovalCallback.from_body(body)
        errors = callback.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        result = get_orchestrator().handle_approval_callback(
            callback.approval_request_id,
            callback.decision,
            callback.approver_id,
            callback.timestamp,
        )
        return JSONResponse(
            status_code=_CALLBACK_STATUS_CODES[result.status],
            content=result.to_dict(),
        )

    @app.get("/v1/approvals")
    async def list_approvals():
        pending = [
            ApprovalEntry.from_request(r).to_dict()
            for r in get_orchestrator().list_pending_approvals()
        ]
        return JSONResponse(content={"count": len(pending), "approvals": pending})

    # ── Maintenance ───────────────────────────────────────────

    @app.post("/v1/maintenance/sweep")
    async def sweep():
        return JSONResponse(content=get_orchestrator().sweep())

    # ── Stats ─────────────────────────────────────────────────

    @app.get("/v1/stats")
    async def get_stats():
        stats = get_orchestrator().stats()
        stats["worker"] = get_backend().tracker.stats
        return JSONResponse(content=stats)

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return JSONResponse(content={
            "status": "ok",
            "timestamp": time.time(),
        })

    @app.get("/ready")
    async def ready():
        try:
            get_orchestrator().stats()
            return JSONResponse(content={"status": "ok"})
        except (PersistenceError, OSError, ValueError) as e:
            return JSONResponse(
                status_code=503,
                content={"status": "fail", "error": str(e)[:200]},
            )

    return app


def _module_app() -> FastAPI:
    config = load_config(os.environ.get("CF_CONFIG", "compliance_flow.yaml"))
    if not is_configured():
        configure_logging(level=str(config.get("logging", {}).get("level", "INFO")))
    return create_app(config=config)


# ── Module-level app for uvicorn ──────────────────────────────

app = _module_app()
