"""Tests for the built-in tools and their templates."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest

from autonomy.config import SMS_OUTBOX_BATCH_SIZE
from autonomy.domain.models import Job, OutboxStatus, WaitlistEntry
from autonomy.tools import notifications, sms, templates
from autonomy.tools.calendar_sync import retry_calendar_sync


def _job(job_type: str, **payload) -> Job:
    return Job(tenant_id="t1", type=job_type, payload=payload)


# ── Templates ────────────────────────────────────────────────────────


class TestTemplates:
    @pytest.mark.parametrize(
        "name,expected",
        [("Jane Doe", "Jane"), ("  Sam  ", "Sam"), ("", "there"), (None, "there")],
    )
    def test_first_name(self, name, expected):
        assert templates.first_name(name) == expected

    def test_format_local_datetime(self):
        when = datetime(2026, 3, 12, 18, 0, tzinfo=UTC)
        assert templates.format_local_datetime(when, "America/New_York") == "Thu Mar 12 at 2:00 PM"
        assert templates.format_local_datetime(when.isoformat(), "UTC") == "Thu Mar 12 at 6:00 PM"

    @pytest.mark.parametrize("value,tz", [(None, "UTC"), ("not a date", "UTC"), ("2026-03-12T18:00:00+00:00", "Mars/Base")])
    def test_format_local_datetime_fallback(self, value, tz):
        assert templates.format_local_datetime(value, tz) == templates.FALLBACK_TIME_TEXT

    def test_reminder_email_label(self):
        subject, body = templates.reminder_email({"reference_code": "APT-1", "reminder_type": "2h"})
        assert "2 hours" in subject
        assert "Reference: APT-1" in body
        subject, _ = templates.reminder_email({"reference_code": "APT-1"})
        assert "24 hours" in subject

    def test_contact_followup_reason(self):
        body = templates.contact_followup_body({"reason": "no_availability", "notes": "mornings"})
        assert "no available slots" in body
        assert "Your note: mornings" in body
        assert "you asked us to follow up" in templates.contact_followup_body({})


# ── Notification tools ───────────────────────────────────────────────


class TestNotificationTools:
    def test_confirmation_is_queued_and_audited(self, orchestrator, audit_sink):
        ctx = orchestrator.ctx
        job = _job("send_confirmation", reference_code="APT-1001", client_email="jane@example.com")

        notifications.send_confirmation(ctx, job)

        [request] = ctx.notifications.requests
        assert request.recipient == "jane@example.com"
        assert request.job_id == job.id
        assert request.subject.endswith("APT-1001")
        [entry] = audit_sink.by_type("notification.queued")
        assert entry.payload == {"channel": "email", "reference_code": "APT-1001", "type": "send_confirmation"}

    def test_missing_recipient_raises(self, orchestrator):
        with pytest.raises(ValueError, match="no email recipient"):
            notifications.send_cancellation(orchestrator.ctx, _job("send_cancellation"))

    def test_reminder_marks_record_sent(self, orchestrator, clock):
        ctx = orchestrator.ctx
        job = _job("send_reminder", client_email="jane@example.com", reminder_type="24h")
        ctx.reminders.create(
            appointment_id="appt-1", tenant_id="t1", job_id=job.id,
            reminder_type="email_24h", scheduled_at=clock.now,
        )

        notifications.send_reminder(ctx, job)

        assert ctx.reminders.get(job.id)["status"] == "sent"

    def test_waitlist_notification_marks_entry(self, orchestrator):
        ctx = orchestrator.ctx
        entry = ctx.waitlist.add(
            WaitlistEntry(tenant_id="t1", client_name="Sam", client_email="sam@example.com"),
        )
        job = _job(
            "send_waitlist_notification",
            waitlist_entry_id=entry.id,
            client_email="sam@example.com",
            slot_start="2026-03-11T15:00:00+00:00",
            slot_end="2026-03-11T15:30:00+00:00",
        )

        notifications.send_waitlist_notification(ctx, job)

        assert ctx.waitlist.get(entry.id).status == "notified"

    def test_contact_followup_prefers_sms(self, orchestrator):
        ctx = orchestrator.ctx
        notifications.send_contact_followup(ctx, _job(
            "send_contact_followup",
            preferred_contact="sms",
            client_phone="+15551234567",
            client_email="jane@example.com",
        ))
        [request] = ctx.notifications.requests
        assert request.channel == "sms"
        assert request.subject is None

    def test_contact_followup_falls_back_to_email(self, orchestrator):
        ctx = orchestrator.ctx
        notifications.send_contact_followup(ctx, _job(
            "send_contact_followup", preferred_contact="sms", client_email="jane@example.com",
        ))
        [request] = ctx.notifications.requests
        assert request.channel == "email"
        assert request.recipient == "jane@example.com"


# ── Calendar sync ────────────────────────────────────────────────────


class TestRetryCalendarSync:
    def test_unknown_appointment_raises(self, orchestrator):
        with pytest.raises(LookupError, match="Appointment not found"):
            retry_calendar_sync(orchestrator.ctx, _job("retry_calendar_sync", appointment_id="nope"))

    def test_writes_event_details(self, orchestrator, make_appt):
        ctx = orchestrator.ctx
        appt = make_appt()
        ctx.appointments.put("t1", appt)

        retry_calendar_sync(ctx, _job("retry_calendar_sync", appointment_id="appt-1"))

        [event] = ctx.calendar.events
        assert event["summary"] == "Cleaning - Jane Doe"
        assert event["description"] == "Ref: APT-1001"
        assert event["start"] == appt.start_time
        assert event["timezone"] == "America/New_York"

    def test_already_synced_appointment_is_skipped(self, orchestrator, make_appt):
        ctx = orchestrator.ctx
        ctx.appointments.put("t1", make_appt())
        ctx.appointments.set_calendar_event_id("appt-1", "evt_existing")

        retry_calendar_sync(ctx, _job("retry_calendar_sync", appointment_id="appt-1"))

        assert ctx.calendar.events == []

    def test_write_error_reemits_and_raises(self, orchestrator, make_appt):
        ctx = orchestrator.ctx
        ctx.appointments.put("t1", make_appt())
        ctx.calendar.fail_with = RuntimeError("quota exceeded")

        with pytest.raises(RuntimeError, match="quota exceeded"):
            retry_calendar_sync(ctx, _job("retry_calendar_sync", appointment_id="appt-1"))

        assert orchestrator.bus.get_recent_events()[-1]["name"] == "CalendarWriteFailed"
        [retry] = ctx.jobs.list_jobs(job_type="retry_calendar_sync")
        assert retry.payload["appointment_id"] == "appt-1"


# ── SMS reminder ─────────────────────────────────────────────────────


def _reminder_job(ctx, appt, clock, **overrides) -> Job:
    """An SMS reminder job with its reminder record, as the handler builds it."""
    payload = {
        "appointment_id": appt.id,
        "reference_code": appt.reference_code,
        "phone": appt.client_phone,
        "first_name": "Jane",
        "service": "Cleaning",
        "start_time": appt.start_time.isoformat(),
        "timezone": "America/New_York",
    }
    payload.update(overrides)
    job = _job("send_sms_reminder", **payload)
    ctx.reminders.create(
        appointment_id=appt.id, tenant_id="t1", job_id=job.id,
        reminder_type="sms_2h", scheduled_at=clock.now,
    )
    return job


class TestSendSmsReminder:
    def test_sends_and_marks_sent(self, orchestrator, make_appt, transport, audit_sink, clock):
        ctx = orchestrator.ctx
        appt = make_appt()
        ctx.appointments.put("t1", appt)
        job = _reminder_job(ctx, appt, clock)

        sms.send_sms_reminder(ctx, job)

        [(recipient, body, tenant_id)] = transport.calls
        assert recipient == "+15551234567"
        assert tenant_id == "t1"
        assert body.startswith("Hi Jane")
        assert "Cleaning" in body
        assert ctx.reminders.get(job.id)["status"] == "sent"
        [entry] = audit_sink.by_type("sms_reminder.sent")
        assert entry.payload["message_sid_last4"] == "0001"

    def test_cancelled_booking_is_skipped(self, orchestrator, make_appt, transport, clock):
        ctx = orchestrator.ctx
        appt = make_appt(status="cancelled")
        ctx.appointments.put("t1", appt)
        job = _reminder_job(ctx, appt, clock)

        sms.send_sms_reminder(ctx, job)

        assert transport.calls == []
        assert ctx.reminders.get(job.id)["status"] == "cancelled"

    def test_opted_out_recipient_is_skipped(self, orchestrator, make_appt, transport, clock):
        ctx = orchestrator.ctx
        appt = make_appt()
        ctx.appointments.put("t1", appt)
        ctx.opt_outs.opt_out(appt.client_phone, "t1")
        job = _reminder_job(ctx, appt, clock)

        sms.send_sms_reminder(ctx, job)

        assert transport.calls == []
        assert ctx.reminders.get(job.id)["status"] == "cancelled"

    def test_missing_phone_marks_failed(self, orchestrator, make_appt, clock):
        ctx = orchestrator.ctx
        appt = make_appt()
        job = _reminder_job(ctx, appt, clock, phone=None)
        sms.send_sms_reminder(ctx, job)
        assert ctx.reminders.get(job.id)["status"] == "failed"

    def test_quiet_hours_leave_delivery_to_outbox(self, orchestrator, make_appt, transport, clock):
        ctx = orchestrator.ctx
        clock.now = datetime(2026, 3, 11, 3, 0, tzinfo=UTC)  # 23:00 in New York
        appt = make_appt()
        ctx.appointments.put("t1", appt)
        job = _reminder_job(ctx, appt, clock)

        sms.send_sms_reminder(ctx, job)

        assert transport.calls == []
        [entry] = ctx.outbox.list_entries()
        assert entry.status == OutboxStatus.QUEUED
        assert entry.source_job_id == job.id
        assert ctx.reminders.get(job.id)["status"] == "pending"

    def test_outbound_disabled_raises(self, orchestrator, make_appt, tenant, clock):
        ctx = orchestrator.ctx
        ctx.tenants.put(tenant.model_copy(update={"sms_outbound_enabled": False}))
        appt = make_appt()
        ctx.appointments.put("t1", appt)
        job = _reminder_job(ctx, appt, clock)

        with pytest.raises(RuntimeError, match="outbound_disabled"):
            sms.send_sms_reminder(ctx, job)
        assert ctx.reminders.get(job.id)["status"] == "failed"


class TestProcessSmsOutbox:
    def test_runs_one_processor_batch(self, orchestrator, make_appt, transport, clock):
        ctx = orchestrator.ctx
        appt = make_appt()
        ctx.appointments.put("t1", appt)
        clock.now = datetime(2026, 3, 11, 3, 0, tzinfo=UTC)  # quiet: queued until 12:00 UTC
        sms.send_sms_reminder(ctx, _reminder_job(ctx, appt, clock))
        clock.now = datetime(2026, 3, 11, 12, 0, tzinfo=UTC) + timedelta(minutes=1)

        sms.process_sms_outbox(ctx, _job("process_sms_outbox"))

        [entry] = ctx.outbox.list_entries()
        assert entry.status == OutboxStatus.SENT
        assert len(transport.calls) == 1

    def test_batch_size_comes_from_config(self, orchestrator):
        gateway = orchestrator.ctx.gateway
        with patch.object(gateway, "process_outbox", wraps=gateway.process_outbox) as spy:
            sms.process_sms_outbox(orchestrator.ctx, _job("process_sms_outbox"))
        spy.assert_called_once_with(SMS_OUTBOX_BATCH_SIZE)
