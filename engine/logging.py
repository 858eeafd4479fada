"""
Compliance Flow — Structured Logging with Correlation IDs

Emits JSON log lines for every workflow event. Each line carries the
correlation id of the request it belongs to, so one request's history
can be pulled out of the combined log stream with a single filter.

Design decisions:
  - Transport: Python logging with a JSON formatter
  - Schema: flat JSON, one object per line, OTel-style service fields
  - Configurable log level: DEBUG (attempt detail), INFO (transitions), WARNING (failures)

The audit log is the record of truth; these lines are for operators.

Usage:
    from engine.logging import StructuredLogger, configure_logging

    configure_logging(level="INFO")
    log = StructuredLogger(correlation_id="req-2024-000123")
    log.transition("enriching", "deciding", actor="orchestrator")
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "compliance_flow"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """
    Formats log records as JSON lines.

    Fields passed through record.structured are merged into the
    top-level object.
    """

    def __init__(self, service_name: str = ROOT_LOGGER):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("CF_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

_configured = False


def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = ROOT_LOGGER,
) -> logging.Logger:
    """
    Configure the compliance_flow logger with JSON output.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries

    Returns:
        The configured compliance_flow logger
    """
    global _configured

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Avoid duplicate handlers on reconfigure
    logger.handlers.clear()

    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(f"{ROOT_LOGGER}."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)  # Inherit from parent

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)

    logger.propagate = False

    _configured = True
    return logger


def is_configured() -> bool:
    return _configured


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the compliance_flow namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


# ═══════════════════════════════════════════════════════════════════
# Structured Logger
# ═══════════════════════════════════════════════════════════════════

class StructuredLogger:
    """
    Event logger bound to one correlation id.

    Every entry includes correlation_id and an "event" field naming
    what happened.
    """

    def __init__(self, correlation_id: str = "", component: str = "workflow"):
        self.correlation_id = correlation_id
        self.component = component
        self._logger = get_logger(component)

    def bind(self, correlation_id: str) -> StructuredLogger:
        """Same component, different request."""
        return StructuredLogger(correlation_id=correlation_id, component=self.component)

    def _emit(self, level: int, event: str, **fields):
        """Emit a structured log entry."""
        if not self._logger.isEnabledFor(level):
            return
        structured = {"correlation_id": self.correlation_id, "event": event, **fields}
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=event,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    # ── Workflow events ─────────────────────────────────────────

    def request_rejected(self, violations: list[dict[str, str]]) -> None:
        """Intake validation failed; no instance was created."""
        self._emit(
            logging.WARNING, "request_rejected",
            violation_count=len(violations),
            fields=[v.get("field", "") for v in violations],
        )

    def transition(
        self,
        from_state: str | None,
        to_state: str,
        actor: str = "orchestrator",
        version: int | None = None,
        **details,
    ) -> None:
        fields: dict[str, Any] = {
            "from_state": from_state,
            "to_state": to_state,
            "actor": actor,
        }
        if version is not None:
            fields["version"] = version
        fields.update(details)
        self._emit(logging.INFO, "transition", **fields)

    def connector_attempt(self, entry: dict[str, Any]) -> None:
        """One enrichment call attempt, as logged by invoke_with_retry."""
        level = logging.DEBUG if entry.get("status") == "success" else logging.INFO
        self._emit(level, "connector_attempt", **entry)

    def connector_exhausted(self, connector: str, attempts: int, error: str) -> None:
        self._emit(
            logging.WARNING, "connector_exhausted",
            connector=connector,
            attempts=attempts,
            error=error[:500],
        )

    def decision(self, outcome: dict[str, Any]) -> None:
        self._emit(
            logging.INFO, "decision",
            branch=outcome.get("branch"),
            action=outcome.get("action"),
            matched_rule=outcome.get("matched_rule"),
            confidence_override=outcome.get("confidence_override", False),
            reason=str(outcome.get("reason", ""))[:500],
        )

    def approval_opened(self, approval_request_id: str, deadline: float) -> None:
        self._emit(
            logging.INFO, "approval_opened",
            approval_request_id=approval_request_id,
            deadline=datetime.fromtimestamp(deadline, tz=timezone.utc).isoformat(),
        )

    def approval_callback(
        self,
        approval_request_id: str,
        decision: str,
        approver_id: str,
        status: str,
    ) -> None:
        level = logging.WARNING if status in ("late", "closed", "unknown") else logging.INFO
        self._emit(
            level, "approval_callback",
            approval_request_id=approval_request_id,
            decision=decision,
            approver_id=approver_id,
            status=status,
        )

    def action_dispatched(self, action: str, status: str, latency_ms: float = 0.0) -> None:
        self._emit(
            logging.INFO, "action_dispatched",
            action=action,
            status=status,
            latency_ms=round(latency_ms, 1),
        )

    def halted(self, error: str) -> None:
        """Durable state could not be written; instance left for recovery."""
        self._emit(logging.CRITICAL, "halted", error=error[:500])
