"""Domain event handlers.

Handlers translate booking events into policy checks and jobs.  They never
perform a side effect directly, with one exception: the booking
confirmation SMS goes out immediately through the outbound gateway.

The bus already isolates handler failures, so a handler only catches where
a partial result must still be recorded.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from autonomy.config import (
    CALENDAR_RETRY_BACKOFF_SECONDS,
    CALENDAR_RETRY_MAX,
    HOLD_FOLLOWUP_COOLDOWN_MINUTES,
    WAITLIST_NOTIFY_LIMIT,
)
from autonomy.domain.events import (
    BookingCancelled,
    BookingCreated,
    BookingRescheduled,
    CalendarRetryExhausted,
    CalendarWriteFailed,
    FollowupCooldownBlocked,
    HoldExpired,
    SlotOpened,
)
from autonomy.domain.models import (
    Appointment,
    JobStatus,
    NewJob,
    SendRequest,
    TenantConfig,
    WaitlistEntry,
)
from autonomy.orchestrator.context import RuntimeContext
from autonomy.orchestrator.event_bus import DomainEventBus
from autonomy.tools import templates

logger = logging.getLogger(__name__)

ACTOR = "orchestrator"

EMAIL = {"channel": "email"}

# Statuses that count towards the calendar retry ceiling.
CALENDAR_RETRY_STATUSES = (
    JobStatus.PENDING,
    JobStatus.CLAIMED,
    JobStatus.COMPLETED,
    JobStatus.FAILED,
)
CALENDAR_RETRY_LIVE_STATUSES = (JobStatus.PENDING, JobStatus.CLAIMED)

DAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def matches_preferences(entry: WaitlistEntry, event: SlotOpened) -> bool:
    """Day and ``HH:MM`` preferences, compared in UTC.  No preference matches."""
    slot = event.slot_start.astimezone(UTC) if event.slot_start.tzinfo else event.slot_start
    if entry.preferred_days and DAY_NAMES[slot.weekday()] not in entry.preferred_days:
        return False
    hhmm = f"{slot:%H:%M}"
    if entry.preferred_time_start and hhmm < entry.preferred_time_start:
        return False
    if entry.preferred_time_end and hhmm > entry.preferred_time_end:
        return False
    return True


class EventHandlers:
    def __init__(self, ctx: RuntimeContext):
        self.ctx = ctx

    def register(self, bus: DomainEventBus) -> None:
        bus.on("BookingCreated", self.on_booking_created)
        bus.on("BookingCancelled", self.on_booking_cancelled)
        bus.on("BookingRescheduled", self.on_booking_rescheduled)
        bus.on("HoldExpired", self.on_hold_expired)
        bus.on("CalendarWriteFailed", self.on_calendar_write_failed)
        bus.on("CalendarRetryExhausted", self.on_calendar_retry_exhausted)
        bus.on("SlotOpened", self.on_slot_opened)
        logger.info("Event handlers registered")

    # ── Booking lifecycle ────────────────────────────────────────────

    def on_booking_created(self, event: BookingCreated) -> None:
        ctx = self.ctx
        appt = event.appointment
        tenant_id = event.tenant_id
        now = ctx.clock()

        ctx.metrics.inc("booking_sms" if appt.client_phone else "booking_web")

        booking_payload = {
            "reference_code": appt.reference_code,
            "client_email": appt.client_email,
            "service": appt.service,
            "start_time": appt.start_time.isoformat(),
        }

        if ctx.policy.evaluate("send_confirmation", tenant_id, EMAIL).allowed:
            ctx.jobs.create(NewJob(
                tenant_id=tenant_id,
                type="send_confirmation",
                payload=booking_payload,
                priority=10,
                source_event=event.name,
            ))

        if ctx.policy.evaluate("send_reminder", tenant_id, EMAIL).allowed:
            run_at = appt.start_time - timedelta(hours=24)
            if run_at > now:
                self._schedule_email_reminder(event, booking_payload, "24h", run_at, priority=5)

        if ctx.policy.evaluate("send_reminder", tenant_id, {**EMAIL, "reminder_type": "2h"}).allowed:
            run_at = appt.start_time - timedelta(hours=2)
            if run_at > now:
                self._schedule_email_reminder(event, booking_payload, "2h", run_at, priority=7)

        if ctx.sms_enabled and appt.client_phone:
            self._schedule_sms_reminder(event.name, tenant_id, appt, appt.client_phone)
            self._send_sms_confirmation(tenant_id, appt)

    def _schedule_email_reminder(
        self,
        event: BookingCreated,
        booking_payload: dict[str, Any],
        reminder_type: str,
        run_at: datetime,
        *,
        priority: int,
    ) -> None:
        job = self.ctx.jobs.create(NewJob(
            tenant_id=event.tenant_id,
            type="send_reminder",
            payload={**booking_payload, "reminder_type": reminder_type},
            priority=priority,
            run_at=run_at,
            source_event=event.name,
        ))
        self.ctx.reminders.create(
            appointment_id=event.appointment.id,
            tenant_id=event.tenant_id,
            job_id=job.id,
            reminder_type=f"email_{reminder_type}",
            scheduled_at=run_at,
        )

    def _schedule_sms_reminder(
        self, source_event: str, tenant_id: str, appt: Appointment, phone: str,
    ) -> None:
        run_at = appt.start_time - timedelta(hours=2)
        if run_at <= self.ctx.clock():
            return
        job = self.ctx.jobs.create(NewJob(
            tenant_id=tenant_id,
            type="send_sms_reminder",
            payload={
                "appointment_id": appt.id,
                "reference_code": appt.reference_code,
                "phone": phone,
                "first_name": templates.first_name(appt.client_name),
                "service": appt.service or "appointment",
                "start_time": appt.start_time.isoformat(),
                "end_time": appt.end_time.isoformat(),
                "timezone": appt.timezone,
            },
            priority=8,
            run_at=run_at,
            source_event=source_event,
        ))
        self.ctx.reminders.create(
            appointment_id=appt.id,
            tenant_id=tenant_id,
            job_id=job.id,
            reminder_type="sms_2h",
            scheduled_at=run_at,
        )
        logger.info("SMS reminder for %s scheduled at %s", appt.reference_code, run_at.isoformat())

    def _send_sms_confirmation(self, tenant_id: str, appt: Appointment) -> None:
        ctx = self.ctx
        if not ctx.policy.evaluate("send_sms_confirmation", tenant_id, {"channel": "sms"}).allowed:
            return

        try:
            tenant = ctx.tenants.get(tenant_id) or TenantConfig(id=tenant_id)
            when = templates.format_local_datetime(appt.start_time, appt.timezone or tenant.timezone)
            result = ctx.gateway.send(
                SendRequest(
                    tenant_id=tenant_id,
                    recipient=appt.client_phone,
                    body=templates.sms_confirmation_body(when, appt.reference_code),
                    message_type="confirmation",
                    linked_entity_id=appt.id,
                    scheduled_at=appt.start_time,
                ),
                tenant,
            )
        except Exception as exc:
            logger.exception("Confirmation SMS for %s raised", appt.reference_code)
            self._confirmation_failed(tenant_id, appt, str(exc) or type(exc).__name__)
            return

        if result.sent or result.queued:
            ctx.metrics.inc("confirmation_sent")
            ctx.audit.log(
                tenant_id=tenant_id,
                event_type="sms.booking_confirmation_sent",
                entity_type="appointment",
                entity_id=appt.id,
                actor="on_booking_created",
                payload={
                    "reference_code": appt.reference_code,
                    "queued": result.queued,
                    "simulated": result.simulated,
                    "message_sid_last4": result.provider_message_id_last4,
                },
            )
            logger.info(
                "Confirmation SMS %s for %s",
                "queued" if result.queued else "sent", appt.reference_code,
            )
        else:
            self._confirmation_failed(tenant_id, appt, result.error or "unknown")

    def _confirmation_failed(self, tenant_id: str, appt: Appointment, error: str) -> None:
        self.ctx.metrics.inc("confirmation_failed")
        self.ctx.audit.log(
            tenant_id=tenant_id,
            event_type="sms.booking_confirmation_failed",
            entity_type="appointment",
            entity_id=appt.id,
            actor="on_booking_created",
            payload={"reference_code": appt.reference_code, "error": error},
        )
        logger.warning("Confirmation SMS failed for %s: %s", appt.reference_code, error)

    def on_booking_cancelled(self, event: BookingCancelled) -> None:
        ctx = self.ctx
        appt = event.appointment

        if ctx.policy.evaluate("send_cancellation", event.tenant_id, EMAIL).allowed:
            ctx.jobs.create(NewJob(
                tenant_id=event.tenant_id,
                type="send_cancellation",
                payload={"reference_code": appt.reference_code, "client_email": appt.client_email},
                priority=10,
                source_event=event.name,
            ))

        cancelled = ctx.reminders.cancel_by_appointment(appt.id)
        aborted = ctx.outbox.abort_by_booking(appt.id, "booking_cancelled")
        if cancelled or aborted:
            logger.info(
                "Booking %s cancelled: %d reminder(s) cancelled, %d SMS aborted",
                appt.reference_code, cancelled, aborted,
            )

    def on_booking_rescheduled(self, event: BookingRescheduled) -> None:
        ctx = self.ctx
        old, new = event.old_appointment, event.new_appointment

        cancelled = ctx.reminders.cancel_by_appointment(old.id)
        aborted = ctx.outbox.abort_by_booking(old.id, "booking_rescheduled")
        logger.info(
            "Booking %s rescheduled: %d reminder(s) cancelled, %d SMS aborted",
            old.reference_code, cancelled, aborted,
        )

        phone = new.client_phone or old.client_phone
        if ctx.sms_enabled and phone:
            self._schedule_sms_reminder(event.name, event.tenant_id, new, phone)

    # ── Recovery flows ───────────────────────────────────────────────

    def on_hold_expired(self, event: HoldExpired) -> None:
        ctx = self.ctx
        ctx.audit.log(
            tenant_id=event.tenant_id,
            event_type="hold.expired",
            entity_type="hold",
            entity_id=event.hold_id,
            actor=ACTOR,
            payload={
                "slot_start": event.slot_start,
                "slot_end": event.slot_end,
                "session_id": event.session_id,
            },
        )
        if not event.session_id:
            return
        contact = ctx.sessions.get_contact(event.session_id) or {}
        client_email = contact.get("client_email")
        if not client_email:
            return

        since = ctx.clock() - timedelta(minutes=HOLD_FOLLOWUP_COOLDOWN_MINUTES)
        recent = ctx.jobs.count_matching(
            event.tenant_id,
            "send_hold_followup",
            payload_key="session_id",
            payload_value=event.session_id,
            created_after=since,
        )
        if recent:
            logger.info("Hold follow-up for session %s in cooldown", event.session_id)
            ctx.bus.emit(FollowupCooldownBlocked(
                tenant_id=event.tenant_id,
                session_id=event.session_id,
                client_email=client_email,
                cooldown_minutes=HOLD_FOLLOWUP_COOLDOWN_MINUTES,
            ))
            return

        if not ctx.policy.evaluate("hold_followup", event.tenant_id, EMAIL).allowed:
            return
        ctx.jobs.create(NewJob(
            tenant_id=event.tenant_id,
            type="send_hold_followup",
            payload={
                "session_id": event.session_id,
                "hold_id": event.hold_id,
                "client_email": client_email,
                "client_name": contact.get("client_name") or "there",
                "slot_start": event.slot_start.isoformat(),
                "slot_end": event.slot_end.isoformat(),
            },
            priority=5,
            source_event=event.name,
        ))

    def on_calendar_write_failed(self, event: CalendarWriteFailed) -> None:
        ctx = self.ctx
        ctx.audit.log(
            tenant_id=event.tenant_id,
            event_type="calendar.write_failed",
            entity_type="appointment",
            entity_id=event.appointment_id,
            actor=ACTOR,
            payload={"reference_code": event.reference_code, "error": event.error},
        )

        # A failing retry job is still claimed when it re-emits, so it does
        # not count against itself.
        live = ctx.jobs.count_matching(
            event.tenant_id,
            "retry_calendar_sync",
            payload_key="appointment_id",
            payload_value=event.appointment_id,
            statuses=CALENDAR_RETRY_LIVE_STATUSES,
        )
        if event.chain_attempt is not None:
            live -= 1
        if live > 0:
            logger.info(
                "Calendar retry already in flight for %s, ignoring duplicate failure",
                event.reference_code,
            )
            return

        previous = ctx.jobs.count_matching(
            event.tenant_id,
            "retry_calendar_sync",
            payload_key="appointment_id",
            payload_value=event.appointment_id,
            statuses=CALENDAR_RETRY_STATUSES,
        )
        if previous >= CALENDAR_RETRY_MAX:
            logger.warning(
                "Calendar retries exhausted for %s after %d attempt(s)",
                event.reference_code, previous,
            )
            ctx.bus.emit(CalendarRetryExhausted(
                tenant_id=event.tenant_id,
                appointment_id=event.appointment_id,
                reference_code=event.reference_code,
                attempts=previous,
                last_error=event.error,
            ))
            return

        decision = ctx.policy.evaluate(
            "retry_calendar_sync", event.tenant_id, {"failure_type": "calendar_write"},
        )
        if not decision.allowed:
            return

        attempt = previous + 1
        delay = CALENDAR_RETRY_BACKOFF_SECONDS[min(previous, len(CALENDAR_RETRY_BACKOFF_SECONDS) - 1)]
        ctx.jobs.create(NewJob(
            tenant_id=event.tenant_id,
            type="retry_calendar_sync",
            payload={
                "appointment_id": event.appointment_id,
                "reference_code": event.reference_code,
                "session_id": event.session_id,
                "attempt": attempt,
            },
            priority=8,
            run_at=ctx.clock() + timedelta(seconds=delay),
            # Each link in the chain is a single attempt; the next link is
            # scheduled by the tool re-emitting CalendarWriteFailed.
            max_attempts=1,
            source_event=event.name,
            dedupe_key=f"retry_calendar_sync:{event.appointment_id}:{attempt}",
        ))
        logger.info(
            "Calendar retry %d/%d for %s in %ds",
            attempt, CALENDAR_RETRY_MAX, event.reference_code, delay,
        )

    def on_calendar_retry_exhausted(self, event: CalendarRetryExhausted) -> None:
        ctx = self.ctx
        ctx.audit.log(
            tenant_id=event.tenant_id,
            event_type="calendar.retry_exhausted",
            entity_type="appointment",
            entity_id=event.appointment_id,
            actor=ACTOR,
            payload={
                "reference_code": event.reference_code,
                "attempts": event.attempts,
                "last_error": event.last_error,
            },
        )
        decision = ctx.policy.evaluate(
            "escalate_calendar_failure", event.tenant_id, {"failure_type": "calendar_write"},
        )
        if not decision.allowed:
            return

        appt = ctx.appointments.find_by_id(event.appointment_id, event.tenant_id)
        ctx.jobs.create(NewJob(
            tenant_id=event.tenant_id,
            type="escalate_calendar_failure",
            payload={
                "appointment_id": event.appointment_id,
                "reference_code": event.reference_code,
                "client_email": appt.client_email if appt else None,
                "client_name": appt.client_name if appt else None,
            },
            priority=10,
            source_event=event.name,
            dedupe_key=f"escalate_calendar_failure:{event.appointment_id}",
        ))

    def on_slot_opened(self, event: SlotOpened) -> None:
        ctx = self.ctx
        ctx.audit.log(
            tenant_id=event.tenant_id,
            event_type="slot.opened",
            entity_type="availability",
            actor=ACTOR,
            payload={
                "slot_start": event.slot_start,
                "slot_end": event.slot_end,
                "service": event.service,
                "reason": event.reason,
            },
        )
        entries = ctx.waitlist.find_waiting(
            event.tenant_id, service=event.service, limit=WAITLIST_NOTIFY_LIMIT,
        )
        for entry in entries:
            if not matches_preferences(entry, event):
                continue
            if not ctx.policy.evaluate("waitlist_notify", event.tenant_id, EMAIL).allowed:
                continue
            ctx.jobs.create(NewJob(
                tenant_id=event.tenant_id,
                type="send_waitlist_notification",
                payload={
                    "waitlist_entry_id": entry.id,
                    "client_email": entry.client_email,
                    "client_name": entry.client_name,
                    "slot_start": event.slot_start.isoformat(),
                    "slot_end": event.slot_end.isoformat(),
                    "service": event.service,
                },
                priority=8,
                source_event=event.name,
            ))
