"""Calendar sync retry tool."""

from __future__ import annotations

import logging

from autonomy.domain.events import CalendarWriteFailed
from autonomy.domain.models import Job
from autonomy.orchestrator.context import RuntimeContext

logger = logging.getLogger(__name__)


def retry_calendar_sync(ctx: RuntimeContext, job: Job) -> None:
    """Write the appointment to the calendar again.

    A write error re-emits ``CalendarWriteFailed`` so the next step of the
    retry chain (or the exhaustion escalation) is scheduled, then re-raises
    so this job is recorded as failed.
    """
    payload = job.payload
    tenant = ctx.tenants.get(job.tenant_id)
    if tenant is None:
        raise LookupError(f"Tenant not found: {job.tenant_id}")

    appointment_id = payload.get("appointment_id")
    appointment = ctx.appointments.find_by_id(appointment_id, job.tenant_id)
    if appointment is None:
        raise LookupError(f"Appointment not found: {appointment_id}")
    if appointment.calendar_event_id:
        logger.info("Calendar event already recorded for %s, skipping retry", appointment.reference_code)
        return

    details = {
        "summary": f"{appointment.service or 'Appointment'} - {appointment.client_name or 'Client'}",
        "description": f"Ref: {appointment.reference_code}",
        "start": appointment.start_time,
        "end": appointment.end_time,
        "timezone": appointment.timezone or tenant.timezone,
    }
    try:
        event_id = ctx.calendar.create_event(tenant, details)
    except Exception as exc:
        logger.warning("Calendar retry for %s failed: %s", appointment.reference_code, exc)
        ctx.bus.emit(CalendarWriteFailed(
            tenant_id=job.tenant_id,
            appointment_id=appointment.id,
            reference_code=appointment.reference_code,
            session_id=payload.get("session_id"),
            error=str(exc) or type(exc).__name__,
            chain_attempt=payload.get("attempt", 0),
        ))
        raise

    ctx.appointments.set_calendar_event_id(appointment.id, event_id)
    ctx.audit.log(
        tenant_id=job.tenant_id,
        event_type="calendar.retry_succeeded",
        entity_type="appointment",
        entity_id=appointment.id,
        actor="job_runner",
        payload={"reference_code": appointment.reference_code, "calendar_event_id": event_id},
    )
    logger.info("Calendar sync recovered for %s", appointment.reference_code)
