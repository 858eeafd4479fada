"""
Compliance Flow - Enrichment Connectors

Read-side access to line-of-business systems. A connector wraps one
external system and answers one question about a request: it takes an
EnrichmentQuery and returns a single named EnrichmentFact.

Connector types:
  - StaticConnector:   lookup table keyed by a query field (dev/test, reference data)
  - CallableConnector: wraps a plain function
  - HttpConnector:     REST endpoint via httpx

Connectors report failures as ConnectorError with a retryable flag:
timeouts, connection errors, 429 and 5xx are retryable; other 4xx and
responses that don't carry the expected field are terminal.

Usage:
    registry = ConnectorRegistry()
    registry.register(StaticConnector("crm", fact="customer_status",
                                      table={"C-1": "active"}))
    facts = fetch_all(registry.all(), query, policy_for=lambda n: policy)
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from engine.errors import ConnectorError, ConnectorExhausted
from engine.retry import RetryPolicy, invoke_with_retry

logger = logging.getLogger("compliance_flow.connectors")


# ---------------------------------------------------------------------------
# Query and fact
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EnrichmentQuery:
    """What a connector may look at: the identifying fields of the payload."""
    correlation_id: str
    customer_id: str
    document_type: str
    document_uri: str
    requested_action: str
    key_dates: dict[str, str] = field(default_factory=dict)

    @staticmethod
    def from_payload(payload: Any) -> EnrichmentQuery:
        return EnrichmentQuery(
            correlation_id=payload.correlation_id,
            customer_id=payload.extracted.customer_id,
            document_type=payload.document.type,
            document_uri=payload.document.uri,
            requested_action=payload.requested_action,
            key_dates=dict(payload.extracted.key_dates),
        )

    def as_params(self) -> dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "customer_id": self.customer_id,
            "document_type": self.document_type,
            "document_uri": self.document_uri,
            "requested_action": self.requested_action,
        }


@dataclass(frozen=True)
class EnrichmentFact:
    """A named value fetched from a connector, with provenance for audit."""
    name: str
    value: Any
    source: str
    fetched_at: float
    value_type: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "value_type": self.value_type or type(self.value).__name__,
            "source": self.source,
            "fetched_at": self.fetched_at,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> EnrichmentFact:
        return EnrichmentFact(
            name=data["name"],
            value=data["value"],
            source=data["source"],
            fetched_at=data["fetched_at"],
            value_type=data.get("value_type", ""),
        )


def facts_by_name(facts: list[EnrichmentFact]) -> dict[str, Any]:
    """Flatten facts into the name → value mapping rules are evaluated against."""
    return {f.name: f.value for f in facts}


# ---------------------------------------------------------------------------
# Connectors
# ---------------------------------------------------------------------------

class Connector:
    """Base class. Subclasses implement _fetch_value()."""

    def __init__(self, name: str, fact: str = "", description: str = ""):
        self.name = name
        self.fact = fact or name
        self.description = description

    def fetch(self, query: EnrichmentQuery) -> EnrichmentFact:
        value = self._fetch_value(query)
        return EnrichmentFact(
            name=self.fact,
            value=value,
            source=self.name,
            fetched_at=time.time(),
            value_type=type(value).__name__,
        )

    def _fetch_value(self, query: EnrichmentQuery) -> Any:
        raise NotImplementedError


class StaticConnector(Connector):
    """
    Answers from an in-memory table keyed by one query field.

    A key missing from the table returns `default` when one is given,
    otherwise it is a terminal error (the record does not exist).
    """

    _MISSING = object()

    def __init__(
        self,
        name: str,
        table: dict[str, Any],
        fact: str = "",
        key_field: str = "customer_id",
        default: Any = _MISSING,
        description: str = "",
    ):
        super().__init__(name, fact, description)
        self.table = dict(table)
        self.key_field = key_field
        self.default = default

    def _fetch_value(self, query: EnrichmentQuery) -> Any:
        key = query.as_params().get(self.key_field, "")
        if key in self.table:
            return self.table[key]
        if self.default is not self._MISSING:
            return self.default
        raise ConnectorError(self.name, f"no record for {self.key_field}={key!r}", status_code=404)


class CallableConnector(Connector):
    """Wraps fn(query) -> value."""

    def __init__(
        self,
        name: str,
        fn: Callable[[EnrichmentQuery], Any],
        fact: str = "",
        description: str = "",
    ):
        super().__init__(name, fact, description)
        self.fn = fn

    def _fetch_value(self, query: EnrichmentQuery) -> Any:
        return self.fn(query)


class HttpConnector(Connector):
    """
    Calls a REST endpoint and extracts one field from the JSON response.

    Example:
        HttpConnector(
            name="crm",
            base_url="https://crm.internal",
            path="/v1/customers/{customer_id}",
            fact="customer_status",
            response_field="status",
        )
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        path: str,
        fact: str = "",
        response_field: str = "",
        method: str = "GET",
        auth_token: str | None = None,
        timeout_ms: int = 5000,
        transport: httpx.BaseTransport | None = None,
        description: str = "",
    ):
        super().__init__(name, fact, description)
        self.base_url = base_url.rstrip("/")
        self.path = path
        self.response_field = response_field
        self.method = method.upper()
        self.auth_token = auth_token
        self.timeout_ms = timeout_ms
        self.transport = transport

    def _fetch_value(self, query: EnrichmentQuery) -> Any:
        params = query.as_params()
        url = f"{self.base_url}{self.path.format(**params)}"
        headers = {"Accept": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"

        try:
            with httpx.Client(timeout=self.timeout_ms / 1000, transport=self.transport) as client:
                if self.method == "GET":
                    resp = client.get(url, headers=headers)
                else:
                    resp = client.post(url, headers=headers, json=params)
        except httpx.TimeoutException as e:
            raise ConnectorError(self.name, f"timeout: {e}", retryable=True) from e
        except httpx.TransportError as e:
            raise ConnectorError(self.name, f"transport error: {e}", retryable=True) from e

        if resp.status_code >= 400:
            raise ConnectorError(
                self.name,
                f"HTTP {resp.status_code}",
                retryable=resp.status_code in (408, 429) or 500 <= resp.status_code < 600,
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise ConnectorError(self.name, "response is not JSON") from e

        if not self.response_field:
            return data
        current = data
        for key in self.response_field.split("."):
            if not isinstance(current, dict) or key not in current:
                raise ConnectorError(
                    self.name, f"schema mismatch: response has no {self.response_field!r}")
            current = current[key]
        return current


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ConnectorRegistry:
    """Connectors by name. Enrichment queries every registered connector."""

    def __init__(self):
        self._connectors: dict[str, Connector] = {}

    def register(self, connector: Connector):
        self._connectors[connector.name] = connector

    def get(self, name: str) -> Connector | None:
        return self._connectors.get(name)

    def list_connectors(self) -> list[str]:
        return sorted(self._connectors)

    def all(self) -> list[Connector]:
        return [self._connectors[n] for n in self.list_connectors()]

    def __len__(self) -> int:
        return len(self._connectors)


def build_registry(config: dict[str, Any] | None) -> ConnectorRegistry:
    """
    Build connectors from the `enrichment.connectors` config section.

    enrichment:
      connectors:
        - name: crm
          type: http
          base_url: https://crm.internal
          path: /v1/customers/{customer_id}
          fact: customer_status
          response_field: status
        - name: risk
          type: static
          fact: risk_tier
          table: {C-1001: low}
          default: unknown
    """
    registry = ConnectorRegistry()
    specs = ((config or {}).get("enrichment", {}) or {}).get("connectors", []) or []
    for spec in specs:
        kind = spec.get("type", "static")
        name = spec["name"]
        if kind == "http":
            registry.register(HttpConnector(
                name=name,
                base_url=spec["base_url"],
                path=spec.get("path", ""),
                fact=spec.get("fact", ""),
                response_field=spec.get("response_field", ""),
                method=spec.get("method", "GET"),
                auth_token=spec.get("auth_token"),
                timeout_ms=int(spec.get("timeout_ms", 5000)),
                description=spec.get("description", ""),
            ))
        elif kind == "static":
            kwargs = {}
            if "default" in spec:
                kwargs["default"] = spec["default"]
            registry.register(StaticConnector(
                name=name,
                table=spec.get("table", {}) or {},
                fact=spec.get("fact", ""),
                key_field=spec.get("key_field", "customer_id"),
                description=spec.get("description", ""),
                **kwargs,
            ))
        else:
            raise ValueError(f"Unknown connector type {kind!r} for connector {name!r}")
    return registry


# ---------------------------------------------------------------------------
# Concurrent fetch with join
# ---------------------------------------------------------------------------

def fetch_all(
    connectors: list[Connector],
    query: EnrichmentQuery,
    policy_for: Callable[[str], RetryPolicy],
    max_workers: int = 4,
    sleep_fn: Callable[[float], None] = time.sleep,
    on_attempt: Callable[[dict[str, Any]], None] | None = None,
    clock: Callable[[], float] = time.time,
) -> list[EnrichmentFact]:
    """
    Fetch one fact from every connector, in parallel, and wait for all.

    Each connector call is retried under its own policy. All calls are
    collected before returning (join barrier); if any connector failed,
    the first failure in connector-name order is raised:
    ConnectorExhausted for spent retries, ConnectorError for terminal errors.

    Returns facts ordered by connector name.
    """
    ordered = sorted(connectors, key=lambda c: c.name)
    if not ordered:
        return []

    def _one(connector: Connector):
        try:
            result = invoke_with_retry(
                lambda: connector.fetch(query),
                policy_for(connector.name),
                name=connector.name,
                sleep_fn=sleep_fn,
                on_attempt=on_attempt,
                clock=clock,
            )
            return result.value, None
        except (ConnectorError, ConnectorExhausted) as e:
            return None, e

    workers = max(1, min(max_workers, len(ordered)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="enrich") as pool:
        outcomes = list(pool.map(_one, ordered))

    facts: list[EnrichmentFact] = []
    for connector, (fact, error) in zip(ordered, outcomes):
        if error is not None:
            logger.warning("Enrichment failed for connector %s: %s", connector.name, error)
            raise error
        facts.append(fact)
    return facts
