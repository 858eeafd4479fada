"""
Compliance Flow — Connector Retry with Backoff & Circuit Breaker

Wraps enrichment connector calls with:
  - Bounded retry on transient failures (timeout, connection, 429, 5xx)
  - Exponential backoff between attempts, with jitter
  - Immediate stop on terminal failures (4xx, schema mismatch)
  - Circuit breaker: N consecutive exhausted calls → stop calling the system
  - Structured attempt log for audit snapshots

Exhausting the attempt budget raises ConnectorExhausted. The
orchestrator routes that to escalation rather than failing the request.

Usage:
    from engine.retry import invoke_with_retry, retry_policy_from_config

    policy = retry_policy_from_config(cfg, connector="crm")
    result = invoke_with_retry(lambda: connector.fetch(query), policy, name="crm")
    fact = result.value
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from engine.errors import ConnectorError, ConnectorExhausted

logger = logging.getLogger("compliance_flow.retry")


# ═══════════════════════════════════════════════════════════════════
# Retry Policy
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RetryPolicy:
    """Configuration for connector retry behavior."""
    max_attempts: int = 3
    backoff_base: float = 0.5       # seconds; delay = base * 2^attempt ± jitter
    backoff_max: float = 10.0       # cap on delay between attempts
    jitter: float = 0.2             # ±20% randomization on backoff

    # Circuit breaker
    circuit_breaker_threshold: int = 5
    circuit_breaker_reset_seconds: float = 60.0

    # What counts as retryable when the error is not a ConnectorError
    retryable_exceptions: tuple = (
        TimeoutError,
        ConnectionError,
    )
    # Every 5xx is retryable in addition to these
    retryable_status_codes: tuple = (408, 429)


DEFAULT_POLICY = RetryPolicy()


# ═══════════════════════════════════════════════════════════════════
# Circuit Breaker
# ═══════════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Per-connector circuit breaker.

    States:
      closed     normal operation, exhausted calls increment counter
      open       calls rejected until reset_seconds have passed
      half_open  one probe call allowed; success → closed, failure → open

    The reset window is measured on `clock`, the same clock the
    orchestrator uses for deadlines and leases.
    """

    def __init__(
        self,
        threshold: int = 5,
        reset_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.threshold = threshold
        self.reset_seconds = reset_seconds
        self.clock = clock
        self._failures = 0
        self._last_failure_time = 0.0
        self._state = "closed"
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == "open":
                if self.clock() - self._last_failure_time >= self.reset_seconds:
                    self._state = "half_open"
            return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_success(self):
        with self._lock:
            self._failures = 0
            self._state = "closed"

    def record_failure(self):
        with self._lock:
            self._failures += 1
            self._last_failure_time = self.clock()
            if self._failures >= self.threshold or self._state == "half_open":
                self._state = "open"

    def reset(self):
        with self._lock:
            self._failures = 0
            self._state = "closed"
            self._last_failure_time = 0.0


_circuit_breakers: dict[str, CircuitBreaker] = {}
_cb_lock = threading.Lock()


def get_circuit_breaker(
    name: str,
    policy: RetryPolicy,
    clock: Callable[[], float] = time.time,
) -> CircuitBreaker:
    """Get or create the circuit breaker for a connector. The clock is fixed at creation."""
    with _cb_lock:
        if name not in _circuit_breakers:
            _circuit_breakers[name] = CircuitBreaker(
                threshold=policy.circuit_breaker_threshold,
                reset_seconds=policy.circuit_breaker_reset_seconds,
                clock=clock,
            )
        return _circuit_breakers[name]


def reset_all_circuit_breakers():
    """Reset all circuit breakers. For testing."""
    with _cb_lock:
        _circuit_breakers.clear()


# ═══════════════════════════════════════════════════════════════════
# Retry Result
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RetryResult:
    """Result of a call that eventually succeeded."""
    value: Any
    attempts: int
    total_latency: float
    attempt_log: list[dict[str, Any]] = field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════
# Config
# ═══════════════════════════════════════════════════════════════════

def retry_policy_from_config(
    config: dict[str, Any] | None,
    connector: str | None = None,
) -> RetryPolicy:
    """
    Build a retry policy from the `retry` config section.

    Config format:
        retry:
          max_attempts: 3
          backoff_base: 0.5
          connectors:
            crm:
              max_attempts: 5
    """
    section = dict((config or {}).get("retry", {}) or {})
    overrides = (section.pop("connectors", {}) or {}).get(connector or "", {}) or {}
    merged = {**section, **overrides}

    return RetryPolicy(
        max_attempts=int(merged.get("max_attempts", DEFAULT_POLICY.max_attempts)),
        backoff_base=float(merged.get("backoff_base", DEFAULT_POLICY.backoff_base)),
        backoff_max=float(merged.get("backoff_max", DEFAULT_POLICY.backoff_max)),
        jitter=float(merged.get("jitter", DEFAULT_POLICY.jitter)),
        circuit_breaker_threshold=int(merged.get(
            "circuit_breaker_threshold", DEFAULT_POLICY.circuit_breaker_threshold)),
        circuit_breaker_reset_seconds=float(merged.get(
            "circuit_breaker_reset_seconds", DEFAULT_POLICY.circuit_breaker_reset_seconds)),
    )


# ═══════════════════════════════════════════════════════════════════
# Retry Logic
# ═══════════════════════════════════════════════════════════════════

def is_retryable(error: Exception, policy: RetryPolicy) -> bool:
    """Classify an error as retryable (transient) or terminal."""
    if isinstance(error, ConnectorError):
        if error.status_code is not None:
            return (error.status_code in policy.retryable_status_codes
                    or 500 <= error.status_code < 600)
        return error.retryable
    return isinstance(error, policy.retryable_exceptions)


def calculate_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Exponential backoff delay for a zero-based attempt index, with jitter."""
    capped = min(policy.backoff_base * (2 ** attempt), policy.backoff_max)
    jitter_range = capped * policy.jitter
    return max(0.0, capped + random.uniform(-jitter_range, jitter_range))


def invoke_with_retry(
    fn: Callable[[], Any],
    policy: RetryPolicy | None = None,
    name: str = "unknown",
    sleep_fn: Callable[[float], None] = time.sleep,
    on_attempt: Callable[[dict[str, Any]], None] | None = None,
    clock: Callable[[], float] = time.time,
) -> RetryResult:
    """
    Call fn() until it succeeds, fails terminally, or runs out of attempts.

    Args:
        fn:         Zero-argument callable performing one attempt
        policy:     RetryPolicy (or default)
        name:       Connector name, scopes the circuit breaker and logs
        sleep_fn:   Sleep function (injectable for testing)
        on_attempt: Optional callback receiving each attempt log entry
        clock:      Time source for the circuit breaker reset window

    Returns:
        RetryResult with the successful value

    Raises:
        ConnectorError:     terminal (non-retryable) failure, raised as-is
        ConnectorExhausted: every attempt failed with a retryable error,
                            or the circuit breaker is open
    """
    if policy is None:
        policy = DEFAULT_POLICY

    cb = get_circuit_breaker(name, policy, clock=clock)
    if cb.is_open:
        logger.warning("Circuit open for connector %s, not calling", name)
        raise ConnectorExhausted(name, 0, "circuit breaker open")

    attempt_log: list[dict[str, Any]] = []
    last_error: Exception | None = None
    total_t0 = time.time()

    for attempt in range(policy.max_attempts):
        entry: dict[str, Any] = {"attempt": attempt + 1, "connector": name}
        t0 = time.time()
        try:
            value = fn()
        except Exception as e:
            entry["latency_s"] = round(time.time() - t0, 3)
            entry["error"] = str(e)[:200]
            last_error = e

            if not is_retryable(e, policy):
                entry["status"] = "terminal_error"
                attempt_log.append(entry)
                if on_attempt:
                    on_attempt(entry)
                logger.error(
                    "Connector terminal error (connector=%s, attempt=%d): %s",
                    name, attempt + 1, str(e)[:100],
                )
                if isinstance(e, ConnectorError):
                    raise
                raise ConnectorError(name, str(e), retryable=False) from e

            entry["status"] = "retryable_error"
            logger.warning(
                "Connector retryable error (attempt %d/%d, connector=%s): %s",
                attempt + 1, policy.max_attempts, name, str(e)[:100],
            )
            if attempt < policy.max_attempts - 1:
                delay = calculate_backoff(attempt, policy)
                entry["backoff_s"] = round(delay, 3)
                attempt_log.append(entry)
                if on_attempt:
                    on_attempt(entry)
                sleep_fn(delay)
            else:
                attempt_log.append(entry)
                if on_attempt:
                    on_attempt(entry)
            continue

        entry["latency_s"] = round(time.time() - t0, 3)
        entry["status"] = "success"
        attempt_log.append(entry)
        if on_attempt:
            on_attempt(entry)
        cb.record_success()
        return RetryResult(
            value=value,
            attempts=attempt + 1,
            total_latency=time.time() - total_t0,
            attempt_log=attempt_log,
        )

    cb.record_failure()
    logger.error(
        "All retry attempts exhausted (connector=%s, attempts=%d)",
        name, policy.max_attempts,
    )
    raise ConnectorExhausted(name, policy.max_attempts, str(last_error)[:200])
