"""Tests for the job runner: execution, retries, allowlist refusal, reclaim."""

from __future__ import annotations

import random
import threading
import time
from datetime import timedelta

import pytest

from autonomy.domain.models import JobStatus, NewJob
from autonomy.orchestrator.job_runner import MAX_ERROR_CHARS, JobRunner
from autonomy.orchestrator.tool_registry import build_registry
from autonomy.stores.memory import InMemoryJobStore

# ── Helpers ──────────────────────────────────────────────────────────


def _runner(store, tools, audit, clock, **kwargs) -> JobRunner:
    kwargs.setdefault("retry_jitter", 0.0)
    return JobRunner(
        store,
        build_registry(tools),
        audit,
        clock=clock,
        rng=random.Random(0),
        **kwargs,
    )


def _job(store, job_type: str = "send_confirmation", **kwargs):
    return store.create(NewJob(tenant_id="t1", type=job_type, **kwargs))


@pytest.fixture
def store(clock):
    return InMemoryJobStore(clock=clock)


# ── Execution ────────────────────────────────────────────────────────


class TestExecuteJob:
    def test_successful_job_completes_and_is_audited(self, store, audit, audit_sink, clock):
        seen = []
        runner = _runner(store, [("send_confirmation", seen.append)], audit, clock)
        job = _job(store)

        assert runner.run_once() == 1

        assert [j.id for j in seen] == [job.id]
        assert store.find_by_id(job.id).status == JobStatus.COMPLETED
        [entry] = audit_sink.by_type("job.completed")
        assert entry.entity_id == job.id
        assert "duration_ms" in entry.payload

    def test_unregistered_type_fails_without_retry(self, store, audit, audit_sink, clock):
        runner = _runner(store, [], audit, clock)
        job = _job(store, "delete_all_data")

        runner.run_once()

        stored = store.find_by_id(job.id)
        assert stored.status == JobStatus.FAILED
        assert "No executor registered" in stored.last_error
        [entry] = audit_sink.by_type("job.failed")
        assert entry.payload["will_retry"] is False
        assert entry.payload["reason"] == "tool_not_registered"

    def test_failure_schedules_retry_with_backoff(self, store, audit, audit_sink, clock):
        def boom(job):
            raise RuntimeError("smtp unavailable")

        runner = _runner(store, [("send_confirmation", boom)], audit, clock, retry_base=30)
        job = _job(store)

        runner.run_once()

        stored = store.find_by_id(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.attempts == 1
        assert stored.last_error == "smtp unavailable"
        assert stored.run_at == clock.now + timedelta(seconds=30)
        [entry] = audit_sink.by_type("job.failed")
        assert entry.payload["will_retry"] is True

    def test_exhausted_job_fails_permanently(self, store, audit, clock):
        def boom(job):
            raise RuntimeError("still broken")

        runner = _runner(store, [("send_confirmation", boom)], audit, clock, retry_base=1)
        job = _job(store, max_attempts=3)

        for _ in range(3):
            runner.run_once()
            clock.advance(minutes=5)

        stored = store.find_by_id(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.attempts == 3
        assert runner.run_once() == 0

    def test_single_attempt_job_fails_on_first_error(self, store, audit, clock):
        def boom(job):
            raise RuntimeError("nope")

        runner = _runner(store, [("send_confirmation", boom)], audit, clock)
        job = _job(store, max_attempts=1)
        runner.run_once()
        assert store.find_by_id(job.id).status == JobStatus.FAILED
        assert store.find_by_id(job.id).attempts == 1

    def test_long_errors_are_truncated(self, store, audit, clock):
        def boom(job):
            raise RuntimeError("x" * 2000)

        runner = _runner(store, [("send_confirmation", boom)], audit, clock)
        job = _job(store)
        runner.run_once()
        assert len(store.find_by_id(job.id).last_error) == MAX_ERROR_CHARS

    def test_future_jobs_are_not_claimed(self, store, audit, clock):
        runner = _runner(store, [("send_confirmation", lambda j: None)], audit, clock)
        _job(store, run_at=clock.now + timedelta(hours=1))
        assert runner.run_once() == 0

    def test_higher_priority_runs_first(self, store, audit, clock):
        order = []
        runner = _runner(
            store, [("send_confirmation", lambda j: order.append(j.priority))], audit, clock,
            max_concurrent=1,
        )
        _job(store, priority=1)
        _job(store, priority=10)
        runner.run_once()
        runner.run_once()
        assert order == [10, 1]


# ── Backoff ──────────────────────────────────────────────────────────


class TestBackoff:
    def test_exponential_and_capped(self, store, audit, clock):
        runner = _runner(store, [], audit, clock, retry_base=30, retry_max=100)
        assert runner.backoff_seconds(1) == 30
        assert runner.backoff_seconds(2) == 60
        assert runner.backoff_seconds(3) == 100

    def test_jitter_stays_within_bounds(self, store, audit, clock):
        runner = _runner(store, [], audit, clock, retry_base=100, retry_max=1000, retry_jitter=0.2)
        for _ in range(50):
            assert 80 <= runner.backoff_seconds(1) <= 120


# ── Stale reclaim ────────────────────────────────────────────────────


class TestReclaimStale:
    def test_stale_claim_returns_to_pending(self, store, audit, audit_sink, clock):
        runner = _runner(store, [], audit, clock, stale_timeout=300)
        job = _job(store)
        store.claim_batch(1)
        clock.advance(seconds=301)

        assert runner.reclaim_stale() == 1

        stored = store.find_by_id(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.attempts == 1
        [entry] = audit_sink.by_type("job.stale_reclaimed")
        assert entry.payload["count"] == 1

    def test_fresh_claims_are_left_alone(self, store, audit, clock):
        runner = _runner(store, [], audit, clock, stale_timeout=300)
        _job(store)
        store.claim_batch(1)
        clock.advance(seconds=60)
        assert runner.reclaim_stale() == 0

    def test_stale_job_without_attempts_left_fails(self, store, audit, clock):
        runner = _runner(store, [], audit, clock, stale_timeout=300)
        job = _job(store, max_attempts=1)
        store.claim_batch(1)
        clock.advance(seconds=301)
        runner.reclaim_stale()
        assert store.find_by_id(job.id).status == JobStatus.FAILED


# ── Lifecycle ────────────────────────────────────────────────────────


class TestLifecycle:
    def test_rejects_zero_concurrency(self, store, audit, clock):
        with pytest.raises(ValueError):
            _runner(store, [], audit, clock, max_concurrent=0)

    def test_background_loop_runs_jobs_and_drains_on_stop(self, audit):
        store = InMemoryJobStore()
        done = threading.Event()
        runner = JobRunner(
            store,
            build_registry([("send_confirmation", lambda job: done.set())]),
            audit,
            poll_interval=0.01,
        )
        job = _job(store)
        runner.start()
        try:
            assert done.wait(timeout=5)
        finally:
            runner.stop()

        assert not runner.running
        # The executor returned; completion is recorded before the slot is released.
        deadline = time.monotonic() + 5
        while store.find_by_id(job.id).status != JobStatus.COMPLETED and time.monotonic() < deadline:
            time.sleep(0.01)
        assert store.find_by_id(job.id).status == JobStatus.COMPLETED
        assert runner.active_jobs == 0

    def test_status_reports_registered_types(self, store, audit, clock):
        runner = _runner(store, [("send_confirmation", lambda j: None)], audit, clock)
        status = runner.status()
        assert status["running"] is False
        assert status["registered_types"] == ["send_confirmation"]
