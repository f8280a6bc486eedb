"""Narrow collaborator interfaces consumed by the runtime.

The runtime never talks to a database, a calendar API or an SMS provider
directly.  It is handed objects that satisfy these protocols; production
wires real implementations, tests and the demo server use
``autonomy.stores.memory``.

Atomicity requirements (claims, idempotent enqueue, rate-limit
check-then-increment) belong to the implementations.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any, Protocol

from autonomy.domain.models import (
    Appointment,
    AuditEntry,
    Job,
    JobStatus,
    NewJob,
    NotificationRequest,
    OutboxEntry,
    PolicyRule,
    TenantConfig,
    TransportResult,
    WaitlistEntry,
)


class JobStore(Protocol):
    def create(self, new_job: NewJob) -> Job:
        """Insert a pending job, or return the active job sharing its dedupe_key."""

    def claim_batch(self, limit: int) -> list[Job]:
        """Atomically move up to *limit* due pending jobs to ``claimed``."""

    def complete(self, job_id: str) -> None: ...

    def fail(self, job_id: str, error: str, attempts: int | None = None) -> None:
        """Mark a job permanently failed, recording *attempts* when given."""

    def schedule_retry(self, job_id: str, error: str, run_at: datetime) -> None:
        """Increment attempts and return the job to ``pending`` at *run_at*."""

    def reclaim_stale(self, timeout: timedelta) -> int: ...

    def cancel(self, job_id: str) -> None: ...

    def find_by_id(self, job_id: str) -> Job | None: ...

    def count_matching(
        self,
        tenant_id: str,
        job_type: str,
        *,
        payload_key: str,
        payload_value: Any,
        statuses: Iterable[JobStatus] | None = None,
        created_after: datetime | None = None,
    ) -> int: ...

    def counts_by_status(self) -> dict[str, int]: ...


class PolicyStore(Protocol):
    def find_by_action(self, action: str) -> list[PolicyRule]: ...


class AuditSink(Protocol):
    def log(self, entry: AuditEntry) -> None: ...


class DeliveryTransport(Protocol):
    def send(self, recipient: str, body: str, tenant_id: str | None = None) -> TransportResult: ...


class OutboxStore(Protocol):
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
        """Queue a message.  Returns ``(entry, created)``; a live key collision
        returns the existing entry with ``created=False``."""

    def claim_batch(self, limit: int) -> list[OutboxEntry]: ...

    def mark_sent(self, entry_id: str, provider_message_id: str | None = None) -> None: ...

    def schedule_retry(self, entry_id: str, retry_at: datetime, error: str) -> None: ...

    def reschedule(self, entry_id: str, scheduled_at: datetime, reason: str) -> None:
        """Release a claim without consuming the attempt (quiet-hours re-entry)."""

    def mark_failed(self, entry_id: str, error: str, error_code: int | None = None) -> None: ...

    def abort(self, entry_id: str, reason: str) -> None: ...

    def abort_by_booking(self, linked_entity_id: str, reason: str) -> int: ...

    def update_provider_status(
        self, provider_message_id: str, status: str, error_code: int | None = None,
    ) -> OutboxEntry | None: ...

    def find_by_message_sid(self, provider_message_id: str) -> OutboxEntry | None: ...

    def health_stats(self) -> dict[str, int]:
        """Entry counts keyed by status."""


class OptOutStore(Protocol):
    def is_opted_out(self, recipient: str, tenant_id: str | None) -> bool: ...

    def opt_out(self, recipient: str, tenant_id: str | None) -> None: ...

    def opt_in(self, recipient: str, tenant_id: str | None) -> None: ...


class RateLimitStore(Protocol):
    def try_acquire(self, recipient: str, limit: int, window: timedelta) -> bool:
        """Atomically check the window count and record a send if under *limit*."""


class TenantStore(Protocol):
    def get(self, tenant_id: str) -> TenantConfig | None: ...


class AppointmentStore(Protocol):
    def find_by_id(self, appointment_id: str, tenant_id: str) -> Appointment | None: ...

    def set_calendar_event_id(self, appointment_id: str, event_id: str) -> None: ...


class ReminderStore(Protocol):
    def create(
        self,
        *,
        appointment_id: str,
        tenant_id: str,
        job_id: str,
        reminder_type: str,
        scheduled_at: datetime,
    ) -> None: ...

    def cancel_by_appointment(self, appointment_id: str) -> int:
        """Cancel pending reminders (and their jobs).  Returns count cancelled."""

    def mark_sent(self, job_id: str) -> None: ...

    def mark_failed(self, job_id: str) -> None: ...

    def mark_cancelled(self, job_id: str) -> None: ...


class WaitlistStore(Protocol):
    def find_waiting(
        self, tenant_id: str, *, service: str | None = None, limit: int = 5,
    ) -> list[WaitlistEntry]: ...

    def mark_notified(self, entry_id: str, slot_start: datetime, slot_end: datetime) -> None: ...


class SessionStore(Protocol):
    def get_contact(self, session_id: str) -> dict[str, Any] | None:
        """Contact details collected in a chat session (``client_email``, ...)."""


class NotificationStore(Protocol):
    def enqueue(self, request: NotificationRequest) -> None: ...


class CalendarWriter(Protocol):
    def create_event(self, tenant: TenantConfig, details: dict[str, Any]) -> str:
        """Write a calendar event and return the provider event id."""
