"""
Compliance Flow — Worker Backends

Pluggable backends that run orchestrator jobs (one job = one run() of
one instance):
  - InlineBackend: synchronous in-process (dev/testing, CLI)
  - ThreadPoolBackend: ThreadPoolExecutor in-process (bounded concurrency)

PeriodicTask runs a maintenance callable (the approval sweep) on a timer.

The active backend is selected by worker.mode in config, or the
CF_WORKER__MODE env var:
  inline    → InlineBackend
  thread    → ThreadPoolBackend

A job is a zero-argument callable. Crash recovery does not depend on
the backend: state is durable and recover() picks up unfinished work.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, Future
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger("compliance_flow.worker")


# ═══════════════════════════════════════════════════════════════════
# Job Tracking
# ═══════════════════════════════════════════════════════════════════

@dataclass
class JobRecord:
    """In-memory record for tracking job lifecycle."""
    job_id: str
    correlation_id: str
    status: str = "queued"      # queued | running | completed | failed
    enqueued_at: float = 0.0
    started_at: float = 0.0
    completed_at: float = 0.0
    error: str = ""


class JobTracker:
    """
    Thread-safe in-memory job status tracker.

    Keeps at most max_finished completed or failed records, dropping the
    oldest first. Queued and running jobs are never dropped.
    """

    def __init__(self, max_finished: int = 1000):
        self.max_finished = max_finished
        self._jobs: dict[str, JobRecord] = {}
        self._lock = threading.Lock()

    def create(self, correlation_id: str) -> JobRecord:
        job_id = f"job_{uuid.uuid4().hex[:12]}"
        record = JobRecord(
            job_id=job_id,
            correlation_id=correlation_id,
            status="queued",
            enqueued_at=time.time(),
        )
        with self._lock:
            self._jobs[job_id] = record
        return record

    def get(self, job_id: str) -> JobRecord | None:
        with self._lock:
            return self._jobs.get(job_id)

    def get_by_correlation(self, correlation_id: str) -> JobRecord | None:
        """Most recent job for a correlation id."""
        with self._lock:
            matches = [j for j in self._jobs.values() if j.correlation_id == correlation_id]
        return max(matches, key=lambda j: j.enqueued_at) if matches else None

    def mark_running(self, job_id: str):
        with self._lock:
            if job_id in self._jobs:
                self._jobs[job_id].status = "running"
                self._jobs[job_id].started_at = time.time()

    def mark_completed(self, job_id: str):
        with self._lock:
            if job_id in self._jobs:
                self._jobs[job_id].status = "completed"
                self._jobs[job_id].completed_at = time.time()
                self._prune_locked()

    def mark_failed(self, job_id: str, error: str):
        with self._lock:
            if job_id in self._jobs:
                self._jobs[job_id].status = "failed"
                self._jobs[job_id].completed_at = time.time()
                self._jobs[job_id].error = error[:500]
                self._prune_locked()

    def _prune_locked(self):
        finished = [j for j in self._jobs.values() if j.status in ("completed", "failed")]
        excess = len(finished) - self.max_finished
        if excess > 0:
            for j in sorted(finished, key=lambda j: j.completed_at)[:excess]:
                del self._jobs[j.job_id]

    @property
    def stats(self) -> dict[str, int]:
        with self._lock:
            counts = {"queued": 0, "running": 0, "completed": 0, "failed": 0}
            for j in self._jobs.values():
                counts[j.status] = counts.get(j.status, 0) + 1
            return counts


# ═══════════════════════════════════════════════════════════════════
# Worker Backend Interface
# ═══════════════════════════════════════════════════════════════════

class WorkerBackend:
    """Abstract interface for job dispatch."""

    tracker: JobTracker

    def enqueue(self, correlation_id: str, fn: Callable[[], Any]) -> str:
        """Schedule fn for execution. Returns job_id."""
        raise NotImplementedError

    def get_job(self, job_id: str) -> JobRecord | None:
        return self.tracker.get(job_id)

    def shutdown(self):
        """Graceful shutdown."""
        pass


def _run_job(tracker: JobTracker, job_id: str, correlation_id: str, fn: Callable[[], Any]):
    tracker.mark_running(job_id)
    try:
        fn()
        tracker.mark_completed(job_id)
    except Exception as e:
        tracker.mark_failed(job_id, str(e))
        logger.error("Job %s failed for %s: %s", job_id, correlation_id, e)


# ═══════════════════════════════════════════════════════════════════
# Inline Backend (synchronous, dev/test)
# ═══════════════════════════════════════════════════════════════════

class InlineBackend(WorkerBackend):
    """Synchronous in-process execution. Blocks until the job returns."""

    def __init__(self):
        self.tracker = JobTracker()

    def enqueue(self, correlation_id: str, fn: Callable[[], Any]) -> str:
        record = self.tracker.create(correlation_id)
        _run_job(self.tracker, record.job_id, correlation_id, fn)
        return record.job_id


# ═══════════════════════════════════════════════════════════════════
# Thread Pool Backend
# ═══════════════════════════════════════════════════════════════════

class ThreadPoolBackend(WorkerBackend):
    """
    Async execution via ThreadPoolExecutor.
    Bounded concurrency. The orchestrator runs synchronously in worker threads.
    """

    def __init__(self, max_workers: int = 4):
        self.tracker = JobTracker()
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="cf_worker",
        )
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()
        logger.info("ThreadPoolBackend started: max_workers=%d", max_workers)

    def enqueue(self, correlation_id: str, fn: Callable[[], Any]) -> str:
        record = self.tracker.create(correlation_id)
        future = self._pool.submit(_run_job, self.tracker, record.job_id, correlation_id, fn)
        with self._lock:
            self._futures[record.job_id] = future
        future.add_done_callback(lambda f, job_id=record.job_id: self._forget(job_id))
        logger.info("Enqueued job %s for %s", record.job_id, correlation_id)
        return record.job_id

    def _forget(self, job_id: str):
        with self._lock:
            self._futures.pop(job_id, None)

    def wait(self, timeout: float | None = None):
        """Block until every job still in flight has finished."""
        with self._lock:
            futures = list(self._futures.values())
        for f in futures:
            f.result(timeout=timeout)

    def shutdown(self):
        logger.info("Shutting down ThreadPoolBackend...")
        self._pool.shutdown(wait=True, cancel_futures=False)


# ═══════════════════════════════════════════════════════════════════
# Backend Factory
# ═══════════════════════════════════════════════════════════════════

def create_backend(mode: str | None = None, max_workers: int = 4) -> WorkerBackend:
    """
    Create the worker backend for a mode.

      - "inline": InlineBackend (synchronous)
      - "thread": ThreadPoolBackend (async, in-process)
    """
    mode = mode or "inline"
    if mode == "inline":
        logger.info("Worker backend: InlineBackend (synchronous)")
        return InlineBackend()
    if mode == "thread":
        logger.info("Worker backend: ThreadPoolBackend (max_workers=%d)", max_workers)
        return ThreadPoolBackend(max_workers=max_workers)
    raise ValueError(f"Unknown worker mode {mode!r}; expected inline or thread")


# ═══════════════════════════════════════════════════════════════════
# Periodic Task
# ═══════════════════════════════════════════════════════════════════

class PeriodicTask:
    """
    Calls fn every interval seconds on a daemon thread until stopped.

    Used by the API server for the approval-expiry and archival sweep.
    A failing call is logged and the next tick runs as usual.
    """

    def __init__(self, name: str, fn: Callable[[], Any], interval: float):
        self.name = name
        self.fn = fn
        self.interval = interval
        self.runs = 0
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._loop, name=f"cf_{self.name}", daemon=True)
        self._thread.start()
        logger.info("Periodic task %s started: every %.1fs", self.name, self.interval)

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _loop(self):
        while not self._stop.wait(self.interval):
            try:
                self.fn()
            except Exception as e:
                logger.error("Periodic task %s failed: %s", self.name, e)
            self.runs += 1
