"""Notification tools.

Each tool renders a fixed template from the job payload and places a
``NotificationRequest`` on the notification store.  Delivery itself is the
messaging service's job.  Audit payloads carry the reference code and the
notification type, never the recipient.
"""

from __future__ import annotations

import logging
from datetime import datetime

from autonomy.domain.models import Job, NotificationRequest
from autonomy.orchestrator.context import RuntimeContext
from autonomy.tools import templates

logger = logging.getLogger(__name__)

ACTOR = "job_runner"


def _queue(
    ctx: RuntimeContext,
    job: Job,
    *,
    recipient: str | None,
    subject: str | None,
    body: str,
    channel: str = "email",
) -> None:
    if not recipient:
        raise ValueError(f"{job.type}: no {channel} recipient in payload")
    ctx.notifications.enqueue(NotificationRequest(
        tenant_id=job.tenant_id,
        job_id=job.id,
        channel=channel,
        recipient=recipient,
        subject=subject,
        body=body,
    ))
    ctx.audit.log(
        tenant_id=job.tenant_id,
        event_type="notification.queued",
        entity_type="notification",
        entity_id=job.id,
        actor=ACTOR,
        payload={
            "channel": channel,
            "reference_code": job.payload.get("reference_code"),
            "type": job.type,
        },
    )
    logger.info("Queued %s notification for job %s", job.type, job.id[:8])


# ── Booking lifecycle ───────────────────────────────────────────────


def send_confirmation(ctx: RuntimeContext, job: Job) -> None:
    subject, body = templates.confirmation_email(job.payload)
    _queue(ctx, job, recipient=job.payload.get("client_email"), subject=subject, body=body)


def send_cancellation(ctx: RuntimeContext, job: Job) -> None:
    subject, body = templates.cancellation_email(job.payload)
    _queue(ctx, job, recipient=job.payload.get("client_email"), subject=subject, body=body)


def send_reminder(ctx: RuntimeContext, job: Job) -> None:
    """24h or 2h email reminder, chosen by ``payload["reminder_type"]``."""
    subject, body = templates.reminder_email(job.payload)
    _queue(ctx, job, recipient=job.payload.get("client_email"), subject=subject, body=body)
    ctx.reminders.mark_sent(job.id)


# ── Recovery flows ──────────────────────────────────────────────────


def send_hold_followup(ctx: RuntimeContext, job: Job) -> None:
    subject, body = templates.hold_followup_email(job.payload)
    _queue(ctx, job, recipient=job.payload.get("client_email"), subject=subject, body=body)


def send_waitlist_notification(ctx: RuntimeContext, job: Job) -> None:
    payload = job.payload
    subject, body = templates.waitlist_email(payload)
    _queue(ctx, job, recipient=payload.get("client_email"), subject=subject, body=body)

    entry_id = payload.get("waitlist_entry_id")
    if entry_id and payload.get("slot_start") and payload.get("slot_end"):
        ctx.waitlist.mark_notified(
            entry_id,
            datetime.fromisoformat(payload["slot_start"]),
            datetime.fromisoformat(payload["slot_end"]),
        )


def escalate_calendar_failure(ctx: RuntimeContext, job: Job) -> None:
    subject, body = templates.calendar_escalation_email(job.payload)
    _queue(ctx, job, recipient=job.payload.get("client_email"), subject=subject, body=body)
    ctx.audit.log(
        tenant_id=job.tenant_id,
        event_type="calendar.escalated",
        entity_type="appointment",
        entity_id=job.payload.get("appointment_id"),
        actor=ACTOR,
        payload={"reference_code": job.payload.get("reference_code")},
    )


def send_contact_followup(ctx: RuntimeContext, job: Job) -> None:
    """Follow up on the channel the client asked for, falling back to email."""
    payload = job.payload
    body = templates.contact_followup_body(payload)
    phone = payload.get("client_phone")
    if payload.get("preferred_contact") == "sms" and phone:
        _queue(ctx, job, recipient=phone, subject=None, body=body, channel="sms")
    else:
        _queue(
            ctx, job,
            recipient=payload.get("client_email"),
            subject="Following up on your appointment request",
            body=body,
        )
