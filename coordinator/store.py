"""
Compliance Flow — Workflow State Store

SQLite-backed persistence for workflow instances, approval requests,
the idempotency records, the action ledger, archived instances and
the audit log. One connection, shared by every component, so a state
change and its audit entry commit in the same transaction.

Concurrency: the connection is guarded by a re-entrant lock. Writes
that must be atomic go through store.transaction(), which holds the
lock for the whole BEGIN IMMEDIATE ... COMMIT span.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any

from coordinator.types import (
    SUSPENDED_STATES,
    TERMINAL_STATES,
    WorkflowInstance,
    WorkflowState,
)
from engine.approval import ApprovalDecision, ApprovalRequest, ApprovalState
from engine.audit import AuditLog
from engine.errors import PersistenceError, StaleInstanceError

logger = logging.getLogger("compliance_flow.store")


class _Transaction:
    """
    SQLite transaction context manager.

    While active, individual save_*/commit() calls become no-ops.
    The real COMMIT happens when the outermost block exits cleanly;
    nested blocks on the same thread join the outer transaction.
    """
    def __init__(self, store):
        self.store = store

    def __enter__(self):
        self.store._lock.acquire()
        if self.store._tx_depth == 0:
            try:
                self.store.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                self.store._lock.release()
                raise PersistenceError(f"Could not begin transaction: {e}") from e
        self.store._tx_depth += 1
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.store._tx_depth -= 1
        try:
            if self.store._tx_depth == 0:
                if exc_type is None:
                    try:
                        self.store.conn.commit()
                    except sqlite3.Error as e:
                        self.store.conn.rollback()
                        raise PersistenceError(f"Commit failed: {e}") from e
                else:
                    self.store.conn.rollback()
        finally:
            self.store._lock.release()
        return False


class WorkflowStore:
    """SQLite-backed store for orchestrator state."""

    def __init__(self, db_path: str | Path = "compliance_flow.db"):
        self.db_path = str(db_path)
        try:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA busy_timeout=5000")
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not open store {self.db_path}: {e}") from e
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._create_tables()
        self.audit = AuditLog(conn=self.conn, lock=self._lock)

    @property
    def _in_transaction(self) -> bool:
        return self._tx_depth > 0

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def _commit(self):
        """Commit unless inside an explicit transaction block."""
        if not self._in_transaction:
            self.conn.commit()

    def transaction(self):
        """
        Context manager for explicit transaction boundaries.

        Usage:
            with store.transaction():
                store.save_instance(inst, expected_version=3)
                store.audit.append(...)
                # Both committed atomically, or both rolled back
        """
        return _Transaction(self)

    def _create_tables(self):
        with self._lock:
            self.conn.executescript("""
                CREATE TABLE IF NOT EXISTS instances (
                    correlation_id TEXT PRIMARY KEY,
                    state TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 0,
                    payload TEXT NOT NULL,
                    facts TEXT NOT NULL DEFAULT '[]',
                    decision TEXT,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    failure_kind TEXT,
                    escalation_reason TEXT,
                    approval_request_id TEXT,
                    action_result TEXT,
                    error TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    terminal_at REAL
                );

                CREATE TABLE IF NOT EXISTS approval_requests (
                    approval_request_id TEXT PRIMARY KEY,
                    instance_id TEXT NOT NULL,
                    opened_at REAL NOT NULL,
                    deadline REAL NOT NULL,
                    state TEXT NOT NULL,
                    decision TEXT,
                    approver_id TEXT DEFAULT '',
                    decided_at REAL,
                    callback_timestamp TEXT DEFAULT '',
                    context TEXT DEFAULT '{}'
                );

                CREATE TABLE IF NOT EXISTS idempotency_keys (
                    correlation_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    payload_hash TEXT NOT NULL,
                    outcome TEXT,
                    lease_owner TEXT,
                    lease_expires_at REAL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS action_ledger (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    correlation_id TEXT NOT NULL,
                    action_type TEXT NOT NULL,
                    details TEXT NOT NULL,
                    result TEXT,
                    idempotency_key TEXT UNIQUE,
                    created_at REAL NOT NULL,
                    completed_at REAL
                );

                CREATE TABLE IF NOT EXISTS archived_instances (
                    correlation_id TEXT PRIMARY KEY,
                    state TEXT NOT NULL,
                    record TEXT NOT NULL,
                    terminal_at REAL,
                    archived_at REAL NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_instances_state ON instances(state);
                CREATE INDEX IF NOT EXISTS idx_approvals_instance ON approval_requests(instance_id);
                CREATE INDEX IF NOT EXISTS idx_approvals_state ON approval_requests(state);
                CREATE INDEX IF NOT EXISTS idx_ledger_correlation ON action_ledger(correlation_id);
            """)
            self._commit()

    # ─── Instance CRUD ───────────────────────────────────────────────

    @staticmethod
    def _instance_params(inst: WorkflowInstance) -> tuple:
        return (
            inst.state.value, inst.version,
            json.dumps(inst.payload, sort_keys=True),
            json.dumps(inst.facts, sort_keys=True, default=str),
            json.dumps(inst.decision) if inst.decision is not None else None,
            inst.retry_count, inst.failure_kind, inst.escalation_reason,
            inst.approval_request_id,
            json.dumps(inst.action_result, default=str) if inst.action_result is not None else None,
            inst.error, inst.created_at, inst.updated_at, inst.terminal_at,
        )

    def insert_instance(self, inst: WorkflowInstance):
        """Create the row for a new instance. Fails if it already exists."""
        with self.transaction():
            try:
                self.conn.execute("""
                    INSERT INTO instances
                    (state, version, payload, facts, decision, retry_count,
                     failure_kind, escalation_reason, approval_request_id,
                     action_result, error, created_at, updated_at, terminal_at,
                     correlation_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, self._instance_params(inst) + (inst.correlation_id,))
            except sqlite3.Error as e:
                raise PersistenceError(
                    f"Could not insert instance {inst.correlation_id}: {e}") from e

    def save_instance(self, inst: WorkflowInstance, expected_version: int):
        """
        Write the instance if the stored version is still expected_version.

        Raises StaleInstanceError when another writer got there first.
        """
        with self.transaction():
            try:
                cur = self.conn.execute("""
                    UPDATE instances SET
                        state = ?, version = ?, payload = ?, facts = ?, decision = ?,
                        retry_count = ?, failure_kind = ?, escalation_reason = ?,
                        approval_request_id = ?, action_result = ?, error = ?,
                        created_at = ?, updated_at = ?, terminal_at = ?
                    WHERE correlation_id = ? AND version = ?
                """, self._instance_params(inst) + (inst.correlation_id, expected_version))
            except sqlite3.Error as e:
                raise PersistenceError(
                    f"Could not save instance {inst.correlation_id}: {e}") from e
            if cur.rowcount != 1:
                raise StaleInstanceError(inst.correlation_id, expected_version)

    def get_instance(self, correlation_id: str) -> WorkflowInstance | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM instances WHERE correlation_id = ?", (correlation_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_instance(row)

    def list_resumable(self) -> list[WorkflowInstance]:
        """Non-terminal instances that are not waiting on an external actor."""
        excluded = [s.value for s in TERMINAL_STATES | SUSPENDED_STATES]
        marks = ", ".join("?" for _ in excluded)
        with self._lock:
            rows = self.conn.execute(
                f"SELECT * FROM instances WHERE state NOT IN ({marks}) ORDER BY created_at ASC",
                excluded,
            ).fetchall()
        return [self._row_to_instance(r) for r in rows]

    def _row_to_instance(self, row) -> WorkflowInstance:
        return WorkflowInstance(
            correlation_id=row["correlation_id"],
            state=WorkflowState(row["state"]),
            version=row["version"],
            payload=json.loads(row["payload"]),
            facts=json.loads(row["facts"]),
            decision=json.loads(row["decision"]) if row["decision"] else None,
            retry_count=row["retry_count"],
            failure_kind=row["failure_kind"],
            escalation_reason=row["escalation_reason"],
            approval_request_id=row["approval_request_id"],
            action_result=json.loads(row["action_result"]) if row["action_result"] else None,
            error=row["error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            terminal_at=row["terminal_at"],
        )

    # ─── Approval Requests ───────────────────────────────────────────

    def save_approval(self, req: ApprovalRequest):
        with self.transaction():
            try:
                self.conn.execute("""
                    INSERT OR REPLACE INTO approval_requests
                    (approval_request_id, instance_id, opened_at, deadline, state,
                     decision, approver_id, decided_at, callback_timestamp, context)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    req.approval_request_id, req.instance_id, req.opened_at,
                    req.deadline, req.state.value,
                    req.decision.value if req.decision else None,
                    req.approver_id, req.decided_at, req.callback_timestamp,
                    json.dumps(req.context, default=str),
                ))
            except sqlite3.Error as e:
                raise PersistenceError(
                    f"Could not save approval {req.approval_request_id}: {e}") from e

    def get_approval(self, approval_request_id: str) -> ApprovalRequest | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM approval_requests WHERE approval_request_id = ?",
                (approval_request_id,),
            ).fetchone()
        return self._row_to_approval(row) if row else None

    def list_open_approvals(self, instance_id: str | None = None) -> list[ApprovalRequest]:
        query = "SELECT * FROM approval_requests WHERE state = ?"
        params: list[Any] = [ApprovalState.OPENED.value]
        if instance_id:
            query += " AND instance_id = ?"
            params.append(instance_id)
        query += " ORDER BY deadline ASC"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_approval(r) for r in rows]

    def list_overdue_approvals(self, now: float) -> list[ApprovalRequest]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM approval_requests WHERE state = ? AND deadline < ? "
                "ORDER BY deadline ASC",
                (ApprovalState.OPENED.value, now),
            ).fetchall()
        return [self._row_to_approval(r) for r in rows]

    @staticmethod
    def _row_to_approval(row) -> ApprovalRequest:
        return ApprovalRequest(
            approval_request_id=row["approval_request_id"],
            instance_id=row["instance_id"],
            opened_at=row["opened_at"],
            deadline=row["deadline"],
            state=ApprovalState(row["state"]),
            decision=ApprovalDecision(row["decision"]) if row["decision"] else None,
            approver_id=row["approver_id"] or "",
            decided_at=row["decided_at"],
            callback_timestamp=row["callback_timestamp"] or "",
            context=json.loads(row["context"] or "{}"),
        )

    # ─── Archival ────────────────────────────────────────────────────

    def list_archivable(self, cutoff: float) -> list[WorkflowInstance]:
        """Terminal instances that reached their terminal state before cutoff."""
        terminal = [s.value for s in TERMINAL_STATES]
        marks = ", ".join("?" for _ in terminal)
        with self._lock:
            rows = self.conn.execute(
                f"SELECT * FROM instances WHERE state IN ({marks}) "
                "AND terminal_at IS NOT NULL AND terminal_at < ? ORDER BY terminal_at ASC",
                terminal + [cutoff],
            ).fetchall()
        return [self._row_to_instance(r) for r in rows]

    def archive_instance(self, inst: WorkflowInstance, now: float | None = None):
        """Move a terminal instance into archived_instances."""
        now = time.time() if now is None else now
        with self.transaction():
            try:
                self.conn.execute("""
                    INSERT OR REPLACE INTO archived_instances
                    (correlation_id, state, record, terminal_at, archived_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (
                    inst.correlation_id, inst.state.value,
                    json.dumps(inst.to_dict(), default=str),
                    inst.terminal_at, now,
                ))
                self.conn.execute(
                    "DELETE FROM instances WHERE correlation_id = ? AND version = ?",
                    (inst.correlation_id, inst.version),
                )
            except sqlite3.Error as e:
                raise PersistenceError(
                    f"Could not archive instance {inst.correlation_id}: {e}") from e

    def get_archived(self, correlation_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT record FROM archived_instances WHERE correlation_id = ?",
                (correlation_id,),
            ).fetchone()
        return json.loads(row["record"]) if row else None

    # ─── Statistics ──────────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        """Return summary statistics for the store."""
        with self._lock:
            instances = self.conn.execute(
                "SELECT state, COUNT(*) as cnt FROM instances GROUP BY state"
            ).fetchall()
            approvals = self.conn.execute(
                "SELECT state, COUNT(*) as cnt FROM approval_requests GROUP BY state"
            ).fetchall()
            ledger_count = self.conn.execute(
                "SELECT COUNT(*) as cnt FROM action_ledger"
            ).fetchone()["cnt"]
            archived_count = self.conn.execute(
                "SELECT COUNT(*) as cnt FROM archived_instances"
            ).fetchone()["cnt"]

        return {
            "instances": {r["state"]: r["cnt"] for r in instances},
            "approvals": {r["state"]: r["cnt"] for r in approvals},
            "action_ledger_entries": ledger_count,
            "archived_instances": archived_count,
            "audit_entries": self.audit.count_entries(),
        }

    def close(self):
        with self._lock:
            self.conn.close()
