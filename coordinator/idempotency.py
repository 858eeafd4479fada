"""
Compliance Flow — Idempotency Store

Maps a correlation id to exactly one processing outcome, whatever the
number of retried submissions. Also owns the two guards that keep a
single instance from being driven twice:

  - Per-instance lease: compare-and-set owner with a TTL. Whoever holds
    the lease is the only runner of that instance; an expired lease can
    be taken over (crashed process).
  - Action ledger: the terminal action's dispatch is marked under a
    UNIQUE idempotency key before the executor is called. A second mark
    for the same instance fails, so a resumed instance never dispatches
    again.

All writes share the workflow store's connection and join its
transaction when one is open.
"""

from __future__ import annotations

import enum
import hashlib
import json
import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Any, Callable

from coordinator.store import WorkflowStore
from engine.errors import PersistenceError

logger = logging.getLogger("compliance_flow.idempotency")


class ReservationKind(str, enum.Enum):
    FRESH = "fresh"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass
class Reservation:
    """Result of reserve(): what the caller should do with this submission."""
    kind: ReservationKind
    correlation_id: str
    outcome: dict[str, Any] | None = None
    payload_mismatch: bool = False


def payload_hash(payload: dict[str, Any]) -> str:
    """Stable hash of the canonical payload dict."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def action_key(correlation_id: str) -> str:
    return f"action:{correlation_id}"


class IdempotencyStore:
    """Idempotency records, leases and the action ledger."""

    def __init__(self, store: WorkflowStore, clock: Callable[[], float] = time.time):
        self.store = store
        self.clock = clock

    @property
    def conn(self) -> sqlite3.Connection:
        return self.store.conn

    # ─── Reservation ─────────────────────────────────────────────────

    def reserve(self, correlation_id: str, payload: dict[str, Any]) -> Reservation:
        """
        Atomic insert-if-absent for a correlation id.

        FRESH means this call created the record and the caller owns the
        new instance. Otherwise the existing record answers.
        """
        digest = payload_hash(payload)
        now = self.clock()
        with self.store.transaction():
            try:
                cur = self.conn.execute("""
                    INSERT OR IGNORE INTO idempotency_keys
                    (correlation_id, status, payload_hash, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (correlation_id, ReservationKind.IN_PROGRESS.value, digest, now, now))
                if cur.rowcount == 1:
                    return Reservation(ReservationKind.FRESH, correlation_id)
                row = self.conn.execute(
                    "SELECT status, payload_hash, outcome FROM idempotency_keys "
                    "WHERE correlation_id = ?",
                    (correlation_id,),
                ).fetchone()
            except sqlite3.Error as e:
                raise PersistenceError(f"Could not reserve {correlation_id}: {e}") from e

        mismatch = row["payload_hash"] != digest
        if mismatch:
            logger.warning(
                "Payload mismatch on retried submission %s: answering from the existing record",
                correlation_id,
            )
        if row["status"] == ReservationKind.COMPLETED.value:
            return Reservation(
                ReservationKind.COMPLETED, correlation_id,
                outcome=json.loads(row["outcome"]) if row["outcome"] else None,
                payload_mismatch=mismatch,
            )
        return Reservation(ReservationKind.IN_PROGRESS, correlation_id, payload_mismatch=mismatch)

    def complete(self, correlation_id: str, outcome: dict[str, Any]):
        """Record the final outcome. Later reservations return it verbatim."""
        with self.store.transaction():
            try:
                self.conn.execute("""
                    UPDATE idempotency_keys
                    SET status = ?, outcome = ?, updated_at = ?
                    WHERE correlation_id = ?
                """, (
                    ReservationKind.COMPLETED.value,
                    json.dumps(outcome, sort_keys=True, default=str),
                    self.clock(), correlation_id,
                ))
            except sqlite3.Error as e:
                raise PersistenceError(f"Could not complete {correlation_id}: {e}") from e

    def get(self, correlation_id: str) -> dict[str, Any] | None:
        with self.store.lock:
            row = self.conn.execute(
                "SELECT * FROM idempotency_keys WHERE correlation_id = ?", (correlation_id,)
            ).fetchone()
        if not row:
            return None
        record = dict(row)
        record["outcome"] = json.loads(record["outcome"]) if record["outcome"] else None
        return record

    # ─── Lease ───────────────────────────────────────────────────────

    def acquire_lease(self, correlation_id: str, owner: str, ttl_seconds: float) -> bool:
        """
        Take the per-instance lease if it is free, expired, or already ours.
        Returns False if someone else holds a live lease.
        """
        now = self.clock()
        with self.store.transaction():
            try:
                cur = self.conn.execute("""
                    UPDATE idempotency_keys
                    SET lease_owner = ?, lease_expires_at = ?, updated_at = ?
                    WHERE correlation_id = ?
                      AND (lease_owner IS NULL OR lease_expires_at < ? OR lease_owner = ?)
                """, (owner, now + ttl_seconds, now, correlation_id, now, owner))
            except sqlite3.Error as e:
                raise PersistenceError(f"Could not lease {correlation_id}: {e}") from e
        acquired = cur.rowcount == 1
        if not acquired:
            logger.debug("Lease for %s held by another runner", correlation_id)
        return acquired

    def release_lease(self, correlation_id: str, owner: str):
        with self.store.transaction():
            try:
                self.conn.execute("""
                    UPDATE idempotency_keys
                    SET lease_owner = NULL, lease_expires_at = NULL
                    WHERE correlation_id = ? AND lease_owner = ?
                """, (correlation_id, owner))
            except sqlite3.Error as e:
                raise PersistenceError(f"Could not release lease {correlation_id}: {e}") from e

    def lease_is_free(self, correlation_id: str) -> bool:
        with self.store.lock:
            row = self.conn.execute(
                "SELECT lease_owner, lease_expires_at FROM idempotency_keys "
                "WHERE correlation_id = ?",
                (correlation_id,),
            ).fetchone()
        if row is None or row["lease_owner"] is None:
            return True
        return row["lease_expires_at"] < self.clock()

    # ─── Action Ledger ───────────────────────────────────────────────

    def mark_action_dispatched(
        self,
        correlation_id: str,
        action: str,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """
        Check-and-mark the terminal action for an instance.

        Returns False if the action was already marked (it may or may not
        have run); the caller must not dispatch again.
        """
        with self.store.transaction():
            try:
                self.conn.execute("""
                    INSERT INTO action_ledger
                    (correlation_id, action_type, details, idempotency_key, created_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (
                    correlation_id, action,
                    json.dumps(details or {}, default=str),
                    action_key(correlation_id), self.clock(),
                ))
                return True
            except sqlite3.IntegrityError:
                # Idempotency key already exists
                return False
            except sqlite3.Error as e:
                raise PersistenceError(
                    f"Could not mark dispatch for {correlation_id}: {e}") from e

    def record_action_result(self, correlation_id: str, result: dict[str, Any]):
        with self.store.transaction():
            try:
                self.conn.execute("""
                    UPDATE action_ledger SET result = ?, completed_at = ?
                    WHERE idempotency_key = ?
                """, (json.dumps(result, default=str), self.clock(), action_key(correlation_id)))
            except sqlite3.Error as e:
                raise PersistenceError(
                    f"Could not record action result for {correlation_id}: {e}") from e

    def get_dispatch(self, correlation_id: str) -> dict[str, Any] | None:
        """The ledger entry for an instance's action, or None if never marked."""
        with self.store.lock:
            row = self.conn.execute(
                "SELECT * FROM action_ledger WHERE idempotency_key = ?",
                (action_key(correlation_id),),
            ).fetchone()
        if not row:
            return None
        return {
            "id": row["id"],
            "correlation_id": row["correlation_id"],
            "action_type": row["action_type"],
            "details": json.loads(row["details"]),
            "result": json.loads(row["result"]) if row["result"] else None,
            "idempotency_key": row["idempotency_key"],
            "created_at": row["created_at"],
            "completed_at": row["completed_at"],
        }
