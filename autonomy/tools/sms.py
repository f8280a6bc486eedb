"""SMS tools: the appointment reminder and the outbox-processor tick."""

from __future__ import annotations

import logging
from datetime import datetime

from autonomy.config import SMS_OUTBOX_BATCH_SIZE
from autonomy.domain.models import Job, SendRequest
from autonomy.orchestrator.context import RuntimeContext
from autonomy.tools import templates

logger = logging.getLogger(__name__)


def send_sms_reminder(ctx: RuntimeContext, job: Job) -> None:
    payload = job.payload
    phone = payload.get("phone")
    if not phone:
        ctx.reminders.mark_failed(job.id)
        logger.warning("SMS reminder job %s has no phone number", job.id[:8])
        return

    appointment_id = payload.get("appointment_id")
    appointment = ctx.appointments.find_by_id(appointment_id, job.tenant_id)
    if appointment is None or appointment.status != "confirmed":
        ctx.reminders.mark_cancelled(job.id)
        logger.info("Skipping SMS reminder %s: booking no longer active", job.id[:8])
        return
    if ctx.opt_outs.is_opted_out(phone, job.tenant_id):
        ctx.reminders.mark_cancelled(job.id)
        logger.info("Skipping SMS reminder %s: recipient opted out", job.id[:8])
        return

    tenant = ctx.tenants.get(job.tenant_id)
    if tenant is None:
        raise LookupError(f"Tenant not found: {job.tenant_id}")

    body = templates.sms_reminder_body(
        payload.get("first_name") or templates.first_name(appointment.client_name),
        payload.get("service") or appointment.service or "appointment",
        templates.format_local_datetime(
            payload.get("start_time") or appointment.start_time,
            payload.get("timezone") or tenant.timezone,
        ),
    )
    start_time = payload.get("start_time")
    result = ctx.gateway.send(
        SendRequest(
            tenant_id=job.tenant_id,
            recipient=phone,
            body=body,
            message_type="reminder",
            linked_entity_id=appointment_id,
            scheduled_at=datetime.fromisoformat(start_time) if start_time else appointment.start_time,
            source_job_id=job.id,
        ),
        tenant,
    )

    if result.sent:
        ctx.reminders.mark_sent(job.id)
        ctx.audit.log(
            tenant_id=job.tenant_id,
            event_type="sms_reminder.sent",
            entity_type="appointment",
            entity_id=appointment_id,
            actor="job_runner",
            payload={
                "reference_code": payload.get("reference_code"),
                "message_sid_last4": result.provider_message_id_last4,
                "simulated": result.simulated,
            },
        )
        return
    if result.queued:
        # The outbox owns delivery from here.
        return

    ctx.reminders.mark_failed(job.id)
    raise RuntimeError(f"SMS reminder failed: {result.error}")


def process_sms_outbox(ctx: RuntimeContext, job: Job) -> None:
    summary = ctx.gateway.process_outbox(SMS_OUTBOX_BATCH_SIZE)
    logger.info("Outbox batch via job %s: %s", job.id[:8], summary.model_dump())
