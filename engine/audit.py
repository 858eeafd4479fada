"""
Compliance Flow — Append-Only Audit Log

Durable, ordered record of every state transition of every workflow
instance. This is the regulatory reconstruction surface: reading the
entries of one instance in sequence order replays its whole history.

Features:
  - Append-only: no UPDATE, no DELETE exposed
  - Per-instance sequence: 1, 2, 3 ... with no gaps
  - SHA-256 hash chain per instance: each entry includes the hash of
    the previous entry of the same instance
  - Tamper detection: verify_chain() on demand

The orchestrator shares its store connection with the audit log so an
entry is written in the same SQLite transaction as the state change it
records. In that mode append() never commits; the enclosing
transaction does. A standalone AuditLog (own db_path) commits per entry.

Usage:
    log = AuditLog("audit.db")
    log.append("req-1", "received", from_state=None, to_state="received",
               actor="intake", actor_type="system", snapshot={...})
    entries = log.read_all("req-1")
    ok, message = log.verify_chain()
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger("compliance_flow.audit")

ACTOR_TYPES = ("system", "connector", "human")


# ═══════════════════════════════════════════════════════════════════
# Audit Entry
# ═══════════════════════════════════════════════════════════════════

@dataclass
class AuditEntry:
    """A single audit log entry."""
    instance_id: str
    sequence: int
    transition: str
    from_state: str | None
    to_state: str
    timestamp: float
    actor: str
    actor_type: str
    snapshot: dict[str, Any] = field(default_factory=dict)
    event_hash: str = ""
    previous_hash: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "sequence": self.sequence,
            "transition": self.transition,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "actor_type": self.actor_type,
            "snapshot": self.snapshot,
            "event_hash": self.event_hash,
            "previous_hash": self.previous_hash,
        }


# ═══════════════════════════════════════════════════════════════════
# Hash Chain
# ═══════════════════════════════════════════════════════════════════

GENESIS_HASH = "0" * 64  # chain anchor for the first entry of each instance


def compute_entry_hash(
    previous_hash: str,
    instance_id: str,
    sequence: int,
    transition: str,
    from_state: str | None,
    to_state: str,
    timestamp: float,
    actor: str,
    actor_type: str,
    snapshot_json: str,
) -> str:
    """Compute SHA-256 hash for an audit entry."""
    content = (
        f"{previous_hash}|{instance_id}|{sequence}|{transition}|"
        f"{from_state or ''}|{to_state}|{timestamp}|{actor}|{actor_type}|{snapshot_json}"
    )
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


# ═══════════════════════════════════════════════════════════════════
# Audit Log Store
# ═══════════════════════════════════════════════════════════════════

class AuditLog:
    """
    Append-only audit store with per-instance sequence and hash chain.

    Either opens its own database (db_path) or shares an existing
    connection and lock (conn, lock) with the workflow store.
    """

    def __init__(
        self,
        db_path: str | None = None,
        conn: sqlite3.Connection | None = None,
        lock: threading.RLock | None = None,
    ):
        if conn is None and db_path is None:
            raise ValueError("AuditLog needs either db_path or conn")
        self._owns_conn = conn is None
        if conn is None:
            conn = sqlite3.connect(db_path, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")
        self._conn = conn
        self._lock = lock or threading.RLock()
        self._create_tables()

    def _create_tables(self):
        with self._lock:
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS audit_entries (
                    instance_id TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    transition TEXT NOT NULL,
                    from_state TEXT,
                    to_state TEXT NOT NULL,
                    timestamp REAL NOT NULL,
                    actor TEXT NOT NULL,
                    actor_type TEXT NOT NULL,
                    snapshot TEXT NOT NULL,
                    event_hash TEXT NOT NULL,
                    previous_hash TEXT NOT NULL,
                    PRIMARY KEY (instance_id, sequence)
                );

                CREATE INDEX IF NOT EXISTS idx_audit_timestamp
                    ON audit_entries(timestamp);
                CREATE INDEX IF NOT EXISTS idx_audit_to_state
                    ON audit_entries(to_state);
            """)

    def _last_for(self, instance_id: str) -> tuple[int, str]:
        """(last sequence, last hash) for an instance, or (0, GENESIS_HASH)."""
        row = self._conn.execute(
            """SELECT sequence, event_hash FROM audit_entries
               WHERE instance_id = ? ORDER BY sequence DESC LIMIT 1""",
            (instance_id,),
        ).fetchone()
        return (row[0], row[1]) if row else (0, GENESIS_HASH)

    def append(
        self,
        instance_id: str,
        transition: str,
        to_state: str,
        from_state: str | None = None,
        actor: str = "orchestrator",
        actor_type: str = "system",
        snapshot: dict[str, Any] | None = None,
        timestamp: float | None = None,
    ) -> AuditEntry:
        """
        Append one entry. The sequence is assigned here, never by the caller.

        When sharing a connection, call inside the store's transaction.
        """
        if actor_type not in ACTOR_TYPES:
            raise ValueError(f"actor_type must be one of {ACTOR_TYPES}, got {actor_type!r}")

        snapshot = dict(snapshot or {})
        snapshot_json = json.dumps(snapshot, sort_keys=True, default=str)
        with self._lock:
            ts = time.time() if timestamp is None else timestamp
            last_seq, previous_hash = self._last_for(instance_id)
            sequence = last_seq + 1
            event_hash = compute_entry_hash(
                previous_hash, instance_id, sequence, transition,
                from_state, to_state, ts, actor, actor_type, snapshot_json,
            )
            self._conn.execute(
                """INSERT INTO audit_entries
                   (instance_id, sequence, transition, from_state, to_state,
                    timestamp, actor, actor_type, snapshot, event_hash, previous_hash)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (instance_id, sequence, transition, from_state, to_state,
                 ts, actor, actor_type, snapshot_json, event_hash, previous_hash),
            )
            if self._owns_conn:
                self._conn.commit()

        return AuditEntry(
            instance_id=instance_id,
            sequence=sequence,
            transition=transition,
            from_state=from_state,
            to_state=to_state,
            timestamp=ts,
            actor=actor,
            actor_type=actor_type,
            snapshot=snapshot,
            event_hash=event_hash,
            previous_hash=previous_hash,
        )

    # ── Query Methods ───────────────────────────────────────────

    @staticmethod
    def _row_to_entry(r) -> AuditEntry:
        return AuditEntry(
            instance_id=r[0], sequence=r[1], transition=r[2],
            from_state=r[3], to_state=r[4], timestamp=r[5],
            actor=r[6], actor_type=r[7], snapshot=json.loads(r[8]),
            event_hash=r[9], previous_hash=r[10],
        )

    _COLUMNS = """instance_id, sequence, transition, from_state, to_state,
                  timestamp, actor, actor_type, snapshot, event_hash, previous_hash"""

    def read_all(self, instance_id: str) -> list[AuditEntry]:
        """Every entry of one instance, in sequence order."""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {self._COLUMNS} FROM audit_entries "
                "WHERE instance_id = ? ORDER BY sequence ASC",
                (instance_id,),
            ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def count_entries(self, instance_id: str | None = None) -> int:
        with self._lock:
            if instance_id is None:
                row = self._conn.execute("SELECT COUNT(*) FROM audit_entries").fetchone()
            else:
                row = self._conn.execute(
                    "SELECT COUNT(*) FROM audit_entries WHERE instance_id = ?",
                    (instance_id,),
                ).fetchone()
        return row[0]

    # ── Integrity Verification ──────────────────────────────────

    def verify_chain(self, instance_id: str | None = None) -> tuple[bool, str]:
        """
        Verify sequence contiguity and hash chain integrity.

        Checks one instance, or every instance when instance_id is None.
        Returns (is_valid, message).
        """
        with self._lock:
            if instance_id is None:
                rows = self._conn.execute(
                    f"SELECT {self._COLUMNS} FROM audit_entries "
                    "ORDER BY instance_id ASC, sequence ASC"
                ).fetchall()
            else:
                rows = self._conn.execute(
                    f"SELECT {self._COLUMNS} FROM audit_entries "
                    "WHERE instance_id = ? ORDER BY sequence ASC",
                    (instance_id,),
                ).fetchall()

        if not rows:
            return True, "Empty log, nothing to verify"

        current = None
        expected_seq = 1
        expected_prev = GENESIS_HASH
        instances = 0
        for row in rows:
            (iid, seq, transition, from_state, to_state, ts,
             actor, actor_type, snapshot_json, stored_hash, stored_prev) = row

            if iid != current:
                current = iid
                instances += 1
                expected_seq = 1
                expected_prev = GENESIS_HASH

            if seq != expected_seq:
                return False, (
                    f"Sequence gap for {iid}: expected {expected_seq}, got {seq}"
                )

            if stored_prev != expected_prev:
                return False, (
                    f"Chain broken at {iid}#{seq}: "
                    f"expected previous_hash={expected_prev[:16]}..., "
                    f"got {stored_prev[:16]}..."
                )

            computed = compute_entry_hash(
                stored_prev, iid, seq, transition, from_state, to_state,
                ts, actor, actor_type, snapshot_json,
            )
            if computed != stored_hash:
                return False, (
                    f"Tampered entry {iid}#{seq}: "
                    f"computed hash={computed[:16]}..., "
                    f"stored hash={stored_hash[:16]}..."
                )

            expected_prev = stored_hash
            expected_seq += 1

        return True, (
            f"Chain verified: {len(rows)} entries across {instances} instance(s), "
            "integrity intact"
        )

    def close(self):
        if self._owns_conn:
            self._conn.close()
