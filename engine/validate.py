"""
Compliance Flow — Payload Validator

Validates an inbound extraction payload against the versioned request
schema before any processing begins. Collects every violation in a
single pass so the caller can correct all of them in one round trip.

Inbound shape (camelCase, as produced by the upstream agent):

    {
      "schemaVersion": "1.0",               # optional, defaults to 1.0
      "correlationId": "req-2024-000123",
      "document": {
        "uri": "s3://intake/claims/123.pdf",
        "type": "claim_form",
        "extracted": {
          "customerId": "C-1001",
          "receivedDate": "2024-03-01",
          "keyDates": {"incidentDate": "2024-02-27"},
          "confidence": 0.93
        }
      },
      "requestedAction": "create_case",
      "agent": {"model": "extractor", "version": "3.2"}
    }

Usage:
    from engine.validate import validate
    payload = validate(raw)       # raises ValidationError
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any

from engine.errors import ValidationError


SUPPORTED_SCHEMA_VERSIONS = ("1.0", "1.1")
DEFAULT_SCHEMA_VERSION = "1.0"

REQUESTED_ACTIONS = ("create_case", "update_record", "notify", "archive")

MAX_CORRELATION_ID_LENGTH = 128

# Keys of document.extracted with dedicated attributes on ExtractedFields.
_KNOWN_EXTRACTED = {"customerId", "receivedDate", "keyDates", "confidence"}


# ═══════════════════════════════════════════════════════════════════
# Payload
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DocumentRef:
    uri: str
    type: str


@dataclass(frozen=True)
class ExtractedFields:
    customer_id: str
    received_date: str
    confidence: float
    key_dates: dict[str, str] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Payload:
    """Validated extraction result. Immutable once accepted."""
    correlation_id: str
    document: DocumentRef
    extracted: ExtractedFields
    requested_action: str
    agent_model: str = ""
    agent_version: str = ""
    schema_version: str = DEFAULT_SCHEMA_VERSION

    @property
    def confidence(self) -> float:
        return self.extracted.confidence

    def to_dict(self) -> dict[str, Any]:
        """Canonical form (snake_case), used for persistence and rule paths."""
        return {
            "schema_version": self.schema_version,
            "correlation_id": self.correlation_id,
            "document_uri": self.document.uri,
            "document_type": self.document.type,
            "customer_id": self.extracted.customer_id,
            "received_date": self.extracted.received_date,
            "key_dates": dict(self.extracted.key_dates),
            "confidence": self.extracted.confidence,
            "extra": dict(self.extracted.extra),
            "requested_action": self.requested_action,
            "agent_model": self.agent_model,
            "agent_version": self.agent_version,
        }

    def to_wire(self) -> dict[str, Any]:
        """Inbound (camelCase) shape; validate(p.to_wire()) reproduces p."""
        extracted: dict[str, Any] = dict(self.extracted.extra)
        extracted.update({
            "customerId": self.extracted.customer_id,
            "receivedDate": self.extracted.received_date,
            "keyDates": dict(self.extracted.key_dates),
            "confidence": self.extracted.confidence,
        })
        return {
            "schemaVersion": self.schema_version,
            "correlationId": self.correlation_id,
            "document": {
                "uri": self.document.uri,
                "type": self.document.type,
                "extracted": extracted,
            },
            "requestedAction": self.requested_action,
            "agent": {"model": self.agent_model, "version": self.agent_version},
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Payload:
        return Payload(
            correlation_id=data["correlation_id"],
            document=DocumentRef(uri=data["document_uri"], type=data["document_type"]),
            extracted=ExtractedFields(
                customer_id=data["customer_id"],
                received_date=data["received_date"],
                confidence=float(data["confidence"]),
                key_dates=dict(data.get("key_dates") or {}),
                extra=dict(data.get("extra") or {}),
            ),
            requested_action=data["requested_action"],
            agent_model=data.get("agent_model", ""),
            agent_version=data.get("agent_version", ""),
            schema_version=data.get("schema_version", DEFAULT_SCHEMA_VERSION),
        )


# ═══════════════════════════════════════════════════════════════════
# Validation
# ═══════════════════════════════════════════════════════════════════

class _Violations:
    """Accumulates violations instead of failing on the first one."""

    def __init__(self):
        self.items: list[dict[str, str]] = []

    def add(self, field_path: str, message: str):
        self.items.append({"field": field_path, "message": message})

    def __bool__(self) -> bool:
        return bool(self.items)


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ""


def _is_iso_date(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        datetime.date.fromisoformat(value)
    except ValueError:
        return False
    return True


def _object(raw: dict, key: str, path: str, errors: _Violations) -> dict | None:
    value = raw.get(key)
    if value is None:
        errors.add(path, "is required")
        return None
    if not isinstance(value, dict):
        errors.add(path, "must be an object")
        return None
    return value


def _required_str(obj: dict, key: str, path: str, errors: _Violations) -> str:
    value = obj.get(key)
    if value is None:
        errors.add(path, "is required")
        return ""
    if not _non_empty_str(value):
        errors.add(path, "must be a non-empty string")
        return ""
    return value


def validate(raw: Any) -> Payload:
    """
    Validate an inbound request and return the immutable Payload.

    Raises:
        ValidationError: listing every violated field.
    """
    errors = _Violations()
    if not isinstance(raw, dict):
        raise ValidationError([{"field": "$", "message": "request body must be a JSON object"}])

    schema_version = raw.get("schemaVersion", DEFAULT_SCHEMA_VERSION)
    if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
        errors.add(
            "schemaVersion",
            f"unsupported version {schema_version!r}; expected one of {list(SUPPORTED_SCHEMA_VERSIONS)}",
        )

    correlation_id = _required_str(raw, "correlationId", "correlationId", errors)
    if correlation_id and len(correlation_id) > MAX_CORRELATION_ID_LENGTH:
        errors.add("correlationId", f"must be at most {MAX_CORRELATION_ID_LENGTH} characters")

    uri = doc_type = customer_id = received_date = ""
    confidence = 0.0
    key_dates: dict[str, str] = {}
    extra: dict[str, Any] = {}

    document = _object(raw, "document", "document", errors)
    if document is not None:
        uri = _required_str(document, "uri", "document.uri", errors)
        doc_type = _required_str(document, "type", "document.type", errors)
        extracted = _object(document, "extracted", "document.extracted", errors)
        if extracted is not None:
            customer_id = _required_str(
                extracted, "customerId", "document.extracted.customerId", errors)

            received_date = extracted.get("receivedDate")
            if received_date is None:
                errors.add("document.extracted.receivedDate", "is required")
            elif not _is_iso_date(received_date):
                errors.add("document.extracted.receivedDate", "must be an ISO-8601 date (YYYY-MM-DD)")

            raw_key_dates = extracted.get("keyDates", {})
            if not isinstance(raw_key_dates, dict):
                errors.add("document.extracted.keyDates", "must be an object of ISO-8601 dates")
            else:
                for name, value in raw_key_dates.items():
                    if not _is_iso_date(value):
                        errors.add(
                            f"document.extracted.keyDates.{name}",
                            "must be an ISO-8601 date (YYYY-MM-DD)",
                        )
                key_dates = dict(raw_key_dates)

            raw_confidence = extracted.get("confidence")
            if raw_confidence is None:
                errors.add("document.extracted.confidence", "is required")
            elif isinstance(raw_confidence, bool) or not isinstance(raw_confidence, (int, float)):
                errors.add("document.extracted.confidence", "must be a number")
            elif not 0.0 <= raw_confidence <= 1.0:
                errors.add("document.extracted.confidence", "must be between 0 and 1")
            else:
                confidence = float(raw_confidence)

            extra = {k: v for k, v in extracted.items() if k not in _KNOWN_EXTRACTED}

    requested_action = raw.get("requestedAction")
    if requested_action is None:
        errors.add("requestedAction", "is required")
    elif requested_action not in REQUESTED_ACTIONS:
        errors.add(
            "requestedAction",
            f"{requested_action!r} not in {list(REQUESTED_ACTIONS)}",
        )

    agent_model = agent_version = ""
    agent = raw.get("agent")
    if agent is not None:
        if not isinstance(agent, dict):
            errors.add("agent", "must be an object")
        else:
            for key in ("model", "version"):
                value = agent.get(key, "")
                if not isinstance(value, str):
                    errors.add(f"agent.{key}", "must be a string")
            agent_model = agent.get("model", "") if isinstance(agent.get("model", ""), str) else ""
            agent_version = agent.get("version", "") if isinstance(agent.get("version", ""), str) else ""

    if errors:
        raise ValidationError(errors.items)

    return Payload(
        correlation_id=correlation_id,
        document=DocumentRef(uri=uri, type=doc_type),
        extracted=ExtractedFields(
            customer_id=customer_id,
            received_date=received_date,
            confidence=confidence,
            key_dates=key_dates,
            extra=extra,
        ),
        requested_action=requested_action,
        agent_model=agent_model,
        agent_version=agent_version,
        schema_version=schema_version,
    )
