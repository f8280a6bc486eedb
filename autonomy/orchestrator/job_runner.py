"""Job runner: polls the job store and executes claimed jobs via the registry.

Per-job state machine::

    pending ──claim──▶ claimed ──ok──▶ completed
                          │
                          ├─error, attempts+1 < max──▶ pending (run_at = now + backoff)
                          ├─error, attempts+1 ≥ max──▶ failed
                          └─no executor registered───▶ failed (never retried)

Concurrency
-----------
* One daemon coordinator thread wakes every ``poll_interval`` seconds,
  claims up to ``max_concurrent - active`` due jobs and hands them to a
  ``ThreadPoolExecutor(max_workers=max_concurrent)``.  A hung executor
  only holds its own slot.
* The wait between ticks is a ``threading.Event`` so ``stop()`` is seen
  immediately.  In-flight jobs are drained (up to ``drain_timeout``),
  never interrupted.
* A stale-reclaim pass runs every ``stale_interval`` seconds inside the
  same loop, returning jobs stuck in ``claimed`` to ``pending``.

Backoff is exponential with jitter::

    min(retry_max, retry_base * 2 ** (attempts - 1)) * uniform(1 - jitter, 1 + jitter)
"""

from __future__ import annotations

import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any

from autonomy.audit import AuditLogger
from autonomy.clock import Clock, utcnow
from autonomy.config import (
    AGENT_JOB_POLL_INTERVAL_SECONDS,
    AGENT_JOB_STALE_TIMEOUT_SECONDS,
    AGENT_MAX_CONCURRENT_JOBS,
    AGENT_SHUTDOWN_DRAIN_SECONDS,
    AGENT_STALE_RECLAIM_INTERVAL_SECONDS,
    JOB_RETRY_BASE_SECONDS,
    JOB_RETRY_JITTER,
    JOB_RETRY_MAX_SECONDS,
)
from autonomy.domain.models import Job
from autonomy.errors import ErrorKind, ToolNotRegisteredError
from autonomy.interfaces import JobStore
from autonomy.orchestrator.tool_registry import ToolRegistry

logger = logging.getLogger(__name__)

MAX_ERROR_CHARS = 500


class JobRunner:
    def __init__(
        self,
        store: JobStore,
        registry: ToolRegistry,
        audit: AuditLogger,
        *,
        poll_interval: float = AGENT_JOB_POLL_INTERVAL_SECONDS,
        max_concurrent: int = AGENT_MAX_CONCURRENT_JOBS,
        stale_timeout: float = AGENT_JOB_STALE_TIMEOUT_SECONDS,
        stale_interval: float = AGENT_STALE_RECLAIM_INTERVAL_SECONDS,
        drain_timeout: float = AGENT_SHUTDOWN_DRAIN_SECONDS,
        retry_base: float = JOB_RETRY_BASE_SECONDS,
        retry_max: float = JOB_RETRY_MAX_SECONDS,
        retry_jitter: float = JOB_RETRY_JITTER,
        clock: Clock = utcnow,
        rng: random.Random | None = None,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self._store = store
        self._registry = registry
        self._audit = audit
        self._poll_interval = poll_interval
        self._max_concurrent = max_concurrent
        self._stale_timeout = timedelta(seconds=stale_timeout)
        self._stale_interval = stale_interval
        self._drain_timeout = drain_timeout
        self._retry_base = retry_base
        self._retry_max = retry_max
        self._retry_jitter = retry_jitter
        self._clock = clock
        self._rng = rng or random.Random()

        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._pool: ThreadPoolExecutor | None = None
        self._active = 0
        self._active_cond = threading.Condition()
        self._last_reclaim = 0.0

    # ── Lifecycle ────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def active_jobs(self) -> int:
        with self._active_cond:
            return self._active

    def start(self) -> None:
        """Spawn the coordinator thread and its worker pool (no-op if running)."""
        if self.running:
            logger.warning("Job runner already running")
            return
        self._stop.clear()
        self._pool = ThreadPoolExecutor(
            max_workers=self._max_concurrent, thread_name_prefix="job-worker",
        )
        self._thread = threading.Thread(target=self._loop, name="job-runner", daemon=True)
        self._thread.start()
        logger.info(
            "Job runner started (poll=%.1fs, max_concurrent=%d, tools=%d)",
            self._poll_interval, self._max_concurrent, len(self._registry),
        )

    def stop(self) -> None:
        """Stop polling and drain in-flight jobs (bounded by drain_timeout)."""
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join()
        self._thread = None

        with self._active_cond:
            drained = self._active_cond.wait_for(
                lambda: self._active == 0, timeout=self._drain_timeout,
            )
            remaining = self._active
        if self._pool is not None:
            self._pool.shutdown(wait=drained, cancel_futures=True)
            self._pool = None
        if drained:
            logger.info("Job runner stopped")
        else:
            logger.warning("Job runner stopped with %d job(s) still running", remaining)

    def status(self) -> dict[str, Any]:
        """Snapshot for the status endpoint."""
        return {
            "running": self.running,
            "active_jobs": self.active_jobs,
            "max_concurrent": self._max_concurrent,
            "poll_interval_seconds": self._poll_interval,
            "registered_types": self._registry.list(),
        }

    # ── Polling ──────────────────────────────────────────────────────

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self._maybe_reclaim()
                self._tick()
            except Exception:
                logger.exception("Job runner tick failed")
            self._stop.wait(self._poll_interval)

    def _maybe_reclaim(self) -> None:
        now = time.monotonic()
        if now - self._last_reclaim < self._stale_interval:
            return
        self._last_reclaim = now
        self.reclaim_stale()

    def _tick(self) -> None:
        free = self._max_concurrent - self.active_jobs
        if free <= 0:
            return
        jobs = self._store.claim_batch(free)
        for job in jobs:
            with self._active_cond:
                self._active += 1
            self._pool.submit(self._run_tracked, job)

    def _run_tracked(self, job: Job) -> None:
        try:
            self.execute_job(job)
        except Exception:
            logger.exception("Job %s (%s) crashed outside its executor", job.id[:8], job.type)
        finally:
            with self._active_cond:
                self._active -= 1
                self._active_cond.notify_all()

    def run_once(self) -> int:
        """Claim one batch and execute it on the calling thread."""
        jobs = self._store.claim_batch(self._max_concurrent)
        for job in jobs:
            self.execute_job(job)
        return len(jobs)

    def reclaim_stale(self) -> int:
        """Return stale claims to the queue; returns how many were touched."""
        count = self._store.reclaim_stale(self._stale_timeout)
        if count:
            logger.warning("Reclaimed %d stale job(s)", count)
            self._audit.log(
                tenant_id=None,
                event_type="job.stale_reclaimed",
                entity_type="job",
                actor="job_runner",
                payload={
                    "count": count,
                    "timeout_seconds": self._stale_timeout.total_seconds(),
                    "reason": ErrorKind.STALE_CLAIM_TIMEOUT.value,
                },
            )
        return count

    # ── Execution ────────────────────────────────────────────────────

    def execute_job(self, job: Job) -> None:
        """Run one claimed job and record its outcome.

        Unknown job types fail at once without retry.  An executor exception
        either schedules a retry with backoff or, once ``max_attempts`` is
        reached, fails the job for good.
        """
        executor = self._registry.get(job.type)
        if executor is None:
            error = ToolNotRegisteredError(job.type)
            self._store.fail(job.id, str(error))
            logger.error("Job %s refused: %s", job.id[:8], error)
            self._audit_failure(job, str(error), job.attempts, will_retry=False,
                                reason=ErrorKind.TOOL_NOT_REGISTERED.value)
            return

        started = time.monotonic()
        try:
            executor(job)
        except Exception as exc:
            self._handle_failure(job, exc)
            return

        duration_ms = round((time.monotonic() - started) * 1000, 1)
        self._store.complete(job.id)
        logger.info("Job %s (%s) completed in %.1fms", job.id[:8], job.type, duration_ms)
        self._audit.log(
            tenant_id=job.tenant_id,
            event_type="job.completed",
            entity_type="job",
            entity_id=job.id,
            actor="job_runner",
            payload={"type": job.type, "attempts": job.attempts, "duration_ms": duration_ms},
        )

    def _handle_failure(self, job: Job, exc: Exception) -> None:
        error = (str(exc) or type(exc).__name__)[:MAX_ERROR_CHARS]
        attempts = job.attempts + 1

        if attempts < job.max_attempts:
            run_at = self._clock() + timedelta(seconds=self.backoff_seconds(attempts))
            self._store.schedule_retry(job.id, error, run_at)
            logger.warning(
                "Job %s (%s) failed, attempt %d/%d, retry at %s",
                job.id[:8], job.type, attempts, job.max_attempts, run_at.isoformat(),
            )
            self._audit_failure(job, error, attempts, will_retry=True, retry_at=run_at)
            return

        self._store.fail(job.id, error, attempts=attempts)
        logger.error(
            "Job %s (%s) failed permanently after %d attempt(s): %s",
            job.id[:8], job.type, attempts, error,
        )
        self._audit_failure(job, error, attempts, will_retry=False)

    def backoff_seconds(self, attempts: int) -> float:
        """Exponential delay before retry number *attempts*, with jitter."""
        delay = min(self._retry_max, self._retry_base * 2 ** (attempts - 1))
        if self._retry_jitter:
            delay *= self._rng.uniform(1 - self._retry_jitter, 1 + self._retry_jitter)
        return delay

    def _audit_failure(
        self,
        job: Job,
        error: str,
        attempts: int,
        *,
        will_retry: bool,
        retry_at: datetime | None = None,
        reason: str | None = None,
    ) -> None:
        payload: dict[str, Any] = {
            "type": job.type,
            "error": error,
            "attempts": attempts,
            "max_attempts": job.max_attempts,
            "will_retry": will_retry,
        }
        if retry_at is not None:
            payload["retry_at"] = retry_at
        if reason is not None:
            payload["reason"] = reason
        self._audit.log(
            tenant_id=job.tenant_id,
            event_type="job.failed",
            entity_type="job",
            entity_id=job.id,
            actor="job_runner",
            payload=payload,
        )
