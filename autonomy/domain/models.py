"""Core data model for the autonomy runtime.

These are plain pydantic models.  Stores own persistence; the runtime only
reads and mutates them through the collaborator interfaces in
``autonomy.interfaces``.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from autonomy.clock import utcnow
from autonomy.config import (
    DEFAULT_QUIET_HOURS_END,
    DEFAULT_QUIET_HOURS_START,
    DEFAULT_TIMEZONE,
    JOB_DEFAULT_MAX_ATTEMPTS,
    SMS_MAX_ATTEMPTS,
)


def new_id() -> str:
    return str(uuid.uuid4())


# ── Jobs ─────────────────────────────────────────────────────────────


class JobStatus(StrEnum):
    PENDING = "pending"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
)


class NewJob(BaseModel):
    """A request to enqueue deferred work for a registered tool."""

    tenant_id: str
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    run_at: datetime | None = None
    max_attempts: int = Field(default=JOB_DEFAULT_MAX_ATTEMPTS, ge=1)
    source_event: str | None = None
    # Jobs sharing a dedupe_key collapse while one is still pending/claimed.
    dedupe_key: str | None = None


class Job(BaseModel):
    """A unit of deferred, retryable work.  Never deleted (audit trail)."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    priority: int = 0
    run_at: datetime = Field(default_factory=utcnow)
    claimed_at: datetime | None = None
    completed_at: datetime | None = None
    attempts: int = 0
    max_attempts: int = JOB_DEFAULT_MAX_ATTEMPTS
    last_error: str | None = None
    source_event: str | None = None
    dedupe_key: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


# ── Policies ─────────────────────────────────────────────────────────


class PolicyEffect(StrEnum):
    ALLOW = "allow"
    DENY = "deny"


class PolicyRule(BaseModel):
    """A tenant-scoped (or global when ``tenant_id`` is None) allow/deny rule."""

    id: str = Field(default_factory=new_id)
    tenant_id: str | None = None
    action: str
    effect: PolicyEffect
    conditions: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    is_active: bool = True


class PolicyDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    effect: PolicyEffect
    rule_id: str | None
    action: str
    reason: str
    evaluated_at: datetime

    @property
    def allowed(self) -> bool:
        return self.effect == PolicyEffect.ALLOW


# ── Audit ────────────────────────────────────────────────────────────


class AuditEntry(BaseModel):
    """Append-only audit record.  ``payload`` is already PII-redacted."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str | None
    event_type: str
    entity_type: str
    entity_id: str | None = None
    actor: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


# ── Tenants ──────────────────────────────────────────────────────────


class TenantConfig(BaseModel):
    """Read-only per-tenant settings consulted by the delivery gateway."""

    id: str = ""
    name: str = ""
    timezone: str = DEFAULT_TIMEZONE
    quiet_hours_start: str = DEFAULT_QUIET_HOURS_START
    quiet_hours_end: str = DEFAULT_QUIET_HOURS_END
    sms_outbound_enabled: bool = True
    sms_retry_enabled: bool = True
    sms_quiet_hours_enabled: bool = True


# ── Booking snapshots (owned by the booking service) ─────────────────


class Appointment(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    reference_code: str
    client_name: str | None = None
    client_email: str | None = None
    client_phone: str | None = None
    service: str | None = None
    start_time: datetime
    end_time: datetime
    timezone: str | None = None
    status: str = "confirmed"
    calendar_event_id: str | None = None


class WaitlistEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str
    session_id: str | None = None
    client_name: str
    client_email: str
    preferred_service: str | None = None
    preferred_days: list[str] = Field(default_factory=list)
    preferred_time_start: str | None = None  # "HH:MM", UTC
    preferred_time_end: str | None = None
    status: str = "waiting"


# ── Notifications ────────────────────────────────────────────────────


class NotificationRequest(BaseModel):
    """A rendered message handed to the external notification outbox."""

    tenant_id: str
    job_id: str | None = None
    channel: str = "email"
    recipient: str
    subject: str | None = None
    body: str


# ── Outbound delivery ────────────────────────────────────────────────


class OutboxStatus(StrEnum):
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    ABORTED = "aborted"


ACTIVE_OUTBOX_STATUSES = frozenset({OutboxStatus.QUEUED, OutboxStatus.SENDING})


class OutboxEntry(BaseModel):
    """A scheduled external-channel message awaiting or undergoing delivery."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    recipient: str
    body: str
    message_type: str
    linked_entity_id: str | None = None
    idempotency_key: str
    status: OutboxStatus = OutboxStatus.QUEUED
    attempts: int = 0
    max_attempts: int = SMS_MAX_ATTEMPTS
    scheduled_at: datetime
    last_error: str | None = None
    abort_reason: str | None = None
    source_job_id: str | None = None
    provider_message_id: str | None = None
    provider_status: str | None = None
    error_code: int | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class SendRequest(BaseModel):
    tenant_id: str
    recipient: str
    body: str
    message_type: str  # e.g. "reminder", "confirmation"
    linked_entity_id: str | None = None  # appointment id: idempotency + abort
    scheduled_at: datetime | None = None  # logical send time for the idempotency key
    source_job_id: str | None = None


class TransportResult(BaseModel):
    success: bool
    error: str | None = None
    opted_out: bool = False
    rate_limited: bool = False
    provider_message_id: str | None = None
    error_code: int | None = None
    simulated: bool = False
