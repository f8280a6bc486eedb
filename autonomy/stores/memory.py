"""Thread-safe in-memory implementations of every collaborator interface.

Used by the test-suite, the demo server and the worker CLI.  Each store
guards its state with one ``threading.Lock``; claims, idempotent enqueue
and the rate-limit check-then-record are single critical sections, which
is the atomicity the runtime relies on.

Stores hand out copies so callers cannot mutate stored state by accident.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

from autonomy.clock import Clock, utcnow
from autonomy.domain.models import (
    ACTIVE_OUTBOX_STATUSES,
    Appointment,
    Job,
    JobStatus,
    NewJob,
    NotificationRequest,
    OutboxEntry,
    OutboxStatus,
    PolicyRule,
    TenantConfig,
    WaitlistEntry,
)

STALE_CLAIM_ERROR = "stale claim timeout"


# ── Jobs ─────────────────────────────────────────────────────────────


class InMemoryJobStore:
    """Jobs keyed by id.  Every state change happens under one lock, so a
    job is claimed by at most one caller."""

    def __init__(self, *, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    def create(self, new_job: NewJob) -> Job:
        """Insert a pending job, or return the live job holding its ``dedupe_key``."""
        with self._lock:
            if new_job.dedupe_key:
                for job in self._jobs.values():
                    if job.dedupe_key == new_job.dedupe_key and job.status in (
                        JobStatus.PENDING, JobStatus.CLAIMED,
                    ):
                        return job.model_copy()
            job = Job(
                tenant_id=new_job.tenant_id,
                type=new_job.type,
                payload=dict(new_job.payload),
                priority=new_job.priority,
                run_at=new_job.run_at or self._clock(),
                max_attempts=new_job.max_attempts,
                source_event=new_job.source_event,
                dedupe_key=new_job.dedupe_key,
                created_at=self._clock(),
            )
            self._jobs[job.id] = job
            return job.model_copy()

    def claim_batch(self, limit: int) -> list[Job]:
        """Atomically move up to *limit* due pending jobs to ``claimed``.

        Ordered by priority (highest first), then ``run_at``.
        """
        if limit <= 0:
            return []
        now = self._clock()
        with self._lock:
            due = [
                j for j in self._jobs.values()
                if j.status == JobStatus.PENDING and j.run_at <= now
            ]
            due.sort(key=lambda j: (-j.priority, j.run_at, j.created_at))
            claimed = []
            for job in due[:limit]:
                job.status = JobStatus.CLAIMED
                job.claimed_at = now
                claimed.append(job.model_copy())
            return claimed

    def complete(self, job_id: str) -> None:
        """Mark a claimed job completed."""
        with self._lock:
            job = self._jobs[job_id]
            if job.is_terminal:
                return
            job.status = JobStatus.COMPLETED
            job.completed_at = self._clock()

    def fail(self, job_id: str, error: str, attempts: int | None = None) -> None:
        """Mark a job failed for good.  Terminal jobs are left untouched."""
        with self._lock:
            job = self._jobs[job_id]
            if job.is_terminal:
                return
            job.status = JobStatus.FAILED
            job.last_error = error
            job.completed_at = self._clock()
            if attempts is not None:
                job.attempts = min(attempts, job.max_attempts)

    def schedule_retry(self, job_id: str, error: str, run_at: datetime) -> None:
        """Return a claimed job to ``pending`` at *run_at* with one more attempt."""
        with self._lock:
            job = self._jobs[job_id]
            if job.is_terminal:
                return
            job.attempts = min(job.attempts + 1, job.max_attempts)
            job.status = JobStatus.PENDING
            job.last_error = error
            job.run_at = run_at
            job.claimed_at = None

    def reclaim_stale(self, timeout: timedelta) -> int:
        """Return stale claims to ``pending``, counting the lost run as an
        attempt.  A job with no attempts left is failed instead."""
        now = self._clock()
        cutoff = now - timeout
        count = 0
        with self._lock:
            for job in self._jobs.values():
                if job.status != JobStatus.CLAIMED or job.claimed_at is None:
                    continue
                if job.claimed_at >= cutoff:
                    continue
                count += 1
                job.claimed_at = None
                if job.attempts + 1 >= job.max_attempts:
                    job.attempts = job.max_attempts
                    job.status = JobStatus.FAILED
                    job.last_error = STALE_CLAIM_ERROR
                    job.completed_at = now
                else:
                    job.attempts += 1
                    job.status = JobStatus.PENDING
                    job.last_error = STALE_CLAIM_ERROR
                    job.run_at = now
        return count

    def cancel(self, job_id: str) -> None:
        """Cancel a pending job.  Claimed or finished jobs keep their status."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None and job.status == JobStatus.PENDING:
                job.status = JobStatus.CANCELLED
                job.completed_at = self._clock()

    def find_by_id(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy() if job else None

    def count_matching(
        self,
        tenant_id: str,
        job_type: str,
        *,
        payload_key: str,
        payload_value: Any,
        statuses: Iterable[JobStatus] | None = None,
        created_after: datetime | None = None,
    ) -> int:
        """Count jobs of *job_type* whose payload has ``payload_key == payload_value``,
        optionally narrowed by status and creation time."""
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            return sum(
                1
                for j in self._jobs.values()
                if j.tenant_id == tenant_id
                and j.type == job_type
                and j.payload.get(payload_key) == payload_value
                and (wanted is None or j.status in wanted)
                and (created_after is None or j.created_at >= created_after)
            )

    def list_jobs(
        self, *, job_type: str | None = None, status: JobStatus | None = None,
    ) -> list[Job]:
        with self._lock:
            jobs = [
                j.model_copy()
                for j in self._jobs.values()
                if (job_type is None or j.type == job_type)
                and (status is None or j.status == status)
            ]
        return sorted(jobs, key=lambda j: j.created_at)

    def counts_by_status(self) -> dict[str, int]:
        """Job totals per status, every status present."""
        with self._lock:
            counts = dict.fromkeys((s.value for s in JobStatus), 0)
            for job in self._jobs.values():
                counts[job.status.value] += 1
            return counts


# ── Policies ─────────────────────────────────────────────────────────


class InMemoryPolicyStore:
    def __init__(self, rules: Iterable[PolicyRule] = ()) -> None:
        self._rules = list(rules)
        self._lock = threading.Lock()

    def add(self, rule: PolicyRule) -> PolicyRule:
        with self._lock:
            self._rules.append(rule)
        return rule

    def find_by_action(self, action: str) -> list[PolicyRule]:
        """Active rules naming *action*."""
        with self._lock:
            return [r.model_copy() for r in self._rules if r.action == action and r.is_active]


# ── Outbox ───────────────────────────────────────────────────────────


class InMemoryOutboxStore:
    """Outbound SMS entries keyed by id, unique on the idempotency key while
    queued or sending."""

    def __init__(self, *, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._entries: dict[str, OutboxEntry] = {}
        self._lock = threading.Lock()

    def enqueue(
        self,
        *,
        tenant_id: str,
        recipient: str,
        body: str,
        message_type: str,
        linked_entity_id: str | None,
        scheduled_at: datetime,
        idempotency_key: str,
        max_attempts: int,
        attempts: int = 0,
        source_job_id: str | None = None,
    ) -> tuple[OutboxEntry, bool]:
        """Queue a message unless a live entry already holds *idempotency_key*.

        Returns ``(entry, created)``; on a collision *entry* is the existing one.
        """
        with self._lock:
            for entry in self._entries.values():
                if (
                    entry.idempotency_key == idempotency_key
                    and entry.status in ACTIVE_OUTBOX_STATUSES
                ):
                    return entry.model_copy(), False
            now = self._clock()
            entry = OutboxEntry(
                tenant_id=tenant_id,
                recipient=recipient,
                body=body,
                message_type=message_type,
                linked_entity_id=linked_entity_id,
                idempotency_key=idempotency_key,
                attempts=attempts,
                max_attempts=max_attempts,
                scheduled_at=scheduled_at,
                source_job_id=source_job_id,
                created_at=now,
                updated_at=now,
            )
            self._entries[entry.id] = entry
            return entry.model_copy(), True

    def claim_batch(self, limit: int) -> list[OutboxEntry]:
        """Atomically move up to *limit* due queued entries to ``sending``,
        oldest ``scheduled_at`` first, consuming one attempt each."""
        now = self._clock()
        with self._lock:
            due = sorted(
                (
                    e for e in self._entries.values()
                    if e.status == OutboxStatus.QUEUED and e.scheduled_at <= now
                ),
                key=lambda e: e.scheduled_at,
            )
            claimed = []
            for entry in due[:limit]:
                entry.status = OutboxStatus.SENDING
                entry.attempts += 1
                entry.updated_at = now
                claimed.append(entry.model_copy())
            return claimed

    def _update(self, entry_id: str, **changes: Any) -> None:
        with self._lock:
            entry = self._entries[entry_id]
            for key, value in changes.items():
                setattr(entry, key, value)
            entry.updated_at = self._clock()

    def mark_sent(self, entry_id: str, provider_message_id: str | None = None) -> None:
        with self._lock:
            entry = self._entries[entry_id]
            entry.status = OutboxStatus.SENT
            if provider_message_id:
                entry.provider_message_id = provider_message_id
            entry.updated_at = self._clock()

    def schedule_retry(self, entry_id: str, retry_at: datetime, error: str) -> None:
        """Back to ``queued`` at *retry_at*; the attempt stays consumed."""
        self._update(entry_id, status=OutboxStatus.QUEUED, scheduled_at=retry_at, last_error=error)

    def reschedule(self, entry_id: str, scheduled_at: datetime, reason: str) -> None:
        """Back to ``queued`` at *scheduled_at*, giving the attempt back."""
        with self._lock:
            entry = self._entries[entry_id]
            if entry.status == OutboxStatus.SENDING:
                entry.attempts = max(0, entry.attempts - 1)
            entry.status = OutboxStatus.QUEUED
            entry.scheduled_at = scheduled_at
            entry.last_error = reason
            entry.updated_at = self._clock()

    def mark_failed(self, entry_id: str, error: str, error_code: int | None = None) -> None:
        with self._lock:
            entry = self._entries[entry_id]
            entry.status = OutboxStatus.FAILED
            entry.last_error = error
            if error_code is not None:
                entry.error_code = error_code
            entry.updated_at = self._clock()

    def abort(self, entry_id: str, reason: str) -> None:
        self._update(entry_id, status=OutboxStatus.ABORTED, abort_reason=reason)

    def abort_by_booking(self, linked_entity_id: str, reason: str) -> int:
        """Abort every queued or sending entry for a booking; returns the count."""
        now = self._clock()
        count = 0
        with self._lock:
            for entry in self._entries.values():
                if (
                    entry.linked_entity_id == linked_entity_id
                    and entry.status in ACTIVE_OUTBOX_STATUSES
                ):
                    entry.status = OutboxStatus.ABORTED
                    entry.abort_reason = reason
                    entry.updated_at = now
                    count += 1
        return count

    def update_provider_status(
        self, provider_message_id: str, status: str, error_code: int | None = None,
    ) -> OutboxEntry | None:
        with self._lock:
            for entry in self._entries.values():
                if entry.provider_message_id == provider_message_id:
                    entry.provider_status = status
                    if error_code is not None:
                        entry.error_code = error_code
                    entry.updated_at = self._clock()
                    return entry.model_copy()
        return None

    def find_by_message_sid(self, provider_message_id: str) -> OutboxEntry | None:
        with self._lock:
            for entry in self._entries.values():
                if entry.provider_message_id == provider_message_id:
                    return entry.model_copy()
        return None

    def find_by_id(self, entry_id: str) -> OutboxEntry | None:
        with self._lock:
            entry = self._entries.get(entry_id)
            return entry.model_copy() if entry else None

    def list_entries(self) -> list[OutboxEntry]:
        with self._lock:
            return sorted(
                (e.model_copy() for e in self._entries.values()),
                key=lambda e: e.created_at,
            )

    def health_stats(self) -> dict[str, int]:
        """Entry totals per status."""
        with self._lock:
            counts = dict.fromkeys((s.value for s in OutboxStatus), 0)
            for entry in self._entries.values():
                counts[entry.status.value] += 1
            return counts


# ── Opt-outs and rate limits ─────────────────────────────────────────


class InMemoryOptOutStore:
    """Opt-outs keyed by ``(phone, tenant_id)``.  A ``None`` tenant is a
    global opt-out that blocks every tenant."""

    def __init__(self) -> None:
        self._opted_out: set[tuple[str, str | None]] = set()
        self._lock = threading.Lock()

    def is_opted_out(self, recipient: str, tenant_id: str | None) -> bool:
        with self._lock:
            return (recipient, None) in self._opted_out or (
                tenant_id is not None and (recipient, tenant_id) in self._opted_out
            )

    def opt_out(self, recipient: str, tenant_id: str | None) -> None:
        """Record an opt-out.  Idempotent."""
        with self._lock:
            self._opted_out.add((recipient, tenant_id))

    def opt_in(self, recipient: str, tenant_id: str | None) -> None:
        """START without a tenant clears every opt-out for the phone."""
        with self._lock:
            if tenant_id is None:
                self._opted_out = {k for k in self._opted_out if k[0] != recipient}
            else:
                self._opted_out.discard((recipient, tenant_id))
                self._opted_out.discard((recipient, None))


class InMemoryRateLimitStore:
    """Sliding-window send counter per recipient."""

    def __init__(self, *, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._sends: dict[str, deque[datetime]] = {}
        self._lock = threading.Lock()

    def try_acquire(self, recipient: str, limit: int, window: timedelta) -> bool:
        """Count a send for *recipient* if fewer than *limit* fall inside *window*."""
        now = self._clock()
        with self._lock:
            sends = self._sends.setdefault(recipient, deque())
            while sends and sends[0] <= now - window:
                sends.popleft()
            if len(sends) >= limit:
                return False
            sends.append(now)
            return True


# ── Tenants, appointments, sessions ──────────────────────────────────


class InMemoryTenantStore:
    def __init__(self, tenants: Iterable[TenantConfig] = ()) -> None:
        self._tenants = {t.id: t for t in tenants}
        self._lock = threading.Lock()

    def put(self, tenant: TenantConfig) -> None:
        with self._lock:
            self._tenants[tenant.id] = tenant

    def get(self, tenant_id: str) -> TenantConfig | None:
        with self._lock:
            return self._tenants.get(tenant_id)


class InMemoryAppointmentStore:
    def __init__(self) -> None:
        self._appointments: dict[str, tuple[str, Appointment]] = {}
        self._lock = threading.Lock()

    def put(self, tenant_id: str, appointment: Appointment) -> None:
        with self._lock:
            self._appointments[appointment.id] = (tenant_id, appointment)

    def find_by_id(self, appointment_id: str, tenant_id: str) -> Appointment | None:
        with self._lock:
            found = self._appointments.get(appointment_id)
        if found is None or found[0] != tenant_id:
            return None
        return found[1]

    def set_calendar_event_id(self, appointment_id: str, event_id: str) -> None:
        with self._lock:
            tenant_id, appointment = self._appointments[appointment_id]
            self._appointments[appointment_id] = (
                tenant_id,
                appointment.model_copy(update={"calendar_event_id": event_id}),
            )


class InMemorySessionStore:
    def __init__(self) -> None:
        self._contacts: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def put(self, session_id: str, contact: dict[str, Any]) -> None:
        with self._lock:
            self._contacts[session_id] = dict(contact)

    def get_contact(self, session_id: str) -> dict[str, Any] | None:
        with self._lock:
            contact = self._contacts.get(session_id)
            return dict(contact) if contact is not None else None


# ── Reminders, waitlist, notifications ──────────────────────────────


class InMemoryReminderStore:
    """Reminder records, one per scheduled reminder job."""

    def __init__(self, jobs: InMemoryJobStore | None = None) -> None:
        self._jobs = jobs
        self._reminders: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def create(
        self,
        *,
        appointment_id: str,
        tenant_id: str,
        job_id: str,
        reminder_type: str,
        scheduled_at: datetime,
    ) -> None:
        with self._lock:
            self._reminders[job_id] = {
                "appointment_id": appointment_id,
                "tenant_id": tenant_id,
                "job_id": job_id,
                "reminder_type": reminder_type,
                "scheduled_at": scheduled_at,
                "status": "pending",
            }

    def cancel_by_appointment(self, appointment_id: str) -> int:
        """Cancel the scheduled reminders for an appointment and their pending
        jobs.  Returns how many reminders changed."""
        with self._lock:
            pending = [
                r for r in self._reminders.values()
                if r["appointment_id"] == appointment_id and r["status"] == "pending"
            ]
            for reminder in pending:
                reminder["status"] = "cancelled"
        if self._jobs is not None:
            for reminder in pending:
                self._jobs.cancel(reminder["job_id"])
        return len(pending)

    def _set_status(self, job_id: str, status: str) -> None:
        with self._lock:
            reminder = self._reminders.get(job_id)
            if reminder is not None:
                reminder["status"] = status

    def mark_sent(self, job_id: str) -> None:
        self._set_status(job_id, "sent")

    def mark_failed(self, job_id: str) -> None:
        self._set_status(job_id, "failed")

    def mark_cancelled(self, job_id: str) -> None:
        self._set_status(job_id, "cancelled")

    def get(self, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            reminder = self._reminders.get(job_id)
            return dict(reminder) if reminder is not None else None

    def list_for_appointment(self, appointment_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return [
                dict(r) for r in self._reminders.values()
                if r["appointment_id"] == appointment_id
            ]


class InMemoryWaitlistStore:
    def __init__(self) -> None:
        self._entries: dict[str, WaitlistEntry] = {}
        self._notified: dict[str, tuple[datetime, datetime]] = {}
        self._lock = threading.Lock()

    def add(self, entry: WaitlistEntry) -> WaitlistEntry:
        with self._lock:
            self._entries[entry.id] = entry
        return entry

    def find_waiting(
        self, tenant_id: str, *, service: str | None = None, limit: int = 5,
    ) -> list[WaitlistEntry]:
        """Waiting entries for a tenant whose service preference is unset or
        equal to *service*, oldest first."""
        with self._lock:
            matches = [
                e.model_copy() for e in self._entries.values()
                if e.tenant_id == tenant_id
                and e.status == "waiting"
                and (service is None or e.preferred_service in (None, service))
            ]
        return matches[:limit]

    def mark_notified(self, entry_id: str, slot_start: datetime, slot_end: datetime) -> None:
        with self._lock:
            entry = self._entries[entry_id]
            entry.status = "notified"
            self._notified[entry_id] = (slot_start, slot_end)

    def get(self, entry_id: str) -> WaitlistEntry | None:
        with self._lock:
            entry = self._entries.get(entry_id)
            return entry.model_copy() if entry else None


class InMemoryNotificationStore:
    def __init__(self) -> None:
        self.requests: list[NotificationRequest] = []
        self._lock = threading.Lock()

    def enqueue(self, request: NotificationRequest) -> None:
        with self._lock:
            self.requests.append(request)


class InMemoryCalendarWriter:
    """Records created events.  Set ``fail_with`` to make writes raise."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []
        self.fail_with: Exception | None = None
        self._lock = threading.Lock()

    def create_event(self, tenant: TenantConfig, details: dict[str, Any]) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        with self._lock:
            self.events.append({"tenant_id": tenant.id, **details})
            return f"evt_{len(self.events)}"
