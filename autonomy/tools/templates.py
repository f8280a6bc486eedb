"""Fixed notification texts.

Rendering beyond these few templates belongs to the messaging service.
"""

from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from autonomy.config import DEFAULT_TIMEZONE

FALLBACK_TIME_TEXT = "your scheduled time"


def first_name(full_name: str | None) -> str:
    parts = (full_name or "").split()
    return parts[0] if parts else "there"


def format_local_datetime(value: datetime | str | None, timezone: str | None) -> str:
    """``"Mon Feb 9 at 2:00 PM"`` in *timezone*, or a neutral fallback."""
    if value is None:
        return FALLBACK_TIME_TEXT
    try:
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        local = value.astimezone(ZoneInfo(timezone or DEFAULT_TIMEZONE))
    except (ValueError, ZoneInfoNotFoundError):
        return FALLBACK_TIME_TEXT
    hour = local.hour % 12 or 12
    return f"{local:%a %b} {local.day} at {hour}:{local:%M %p}"


def sms_confirmation_body(when: str, reference_code: str) -> str:
    return (
        f"Confirmed: {when}. Ref: {reference_code}. Reply CHANGE to reschedule, "
        "CANCEL to cancel. HELP for options. STOP to opt out."
    )


def sms_reminder_body(name: str, service: str, when: str) -> str:
    return f"Hi {name} 👋 Reminder: your {service} is {when}. Reply HELP if you need to reschedule."


def confirmation_email(payload: dict) -> tuple[str, str]:
    subject = f"Appointment Confirmed — {payload.get('reference_code')}"
    body = "\n".join([
        "Your appointment has been confirmed.",
        f"Service: {payload.get('service') or 'Consultation'}",
        f"Time: {payload.get('start_time') or 'TBD'}",
        f"Reference: {payload.get('reference_code')}",
        "",
        "If you need to reschedule or cancel, please use your reference code.",
    ])
    return subject, body


def cancellation_email(payload: dict) -> tuple[str, str]:
    ref = payload.get("reference_code")
    return (
        f"Appointment Cancelled — {ref}",
        f"Your appointment ({ref}) has been cancelled. "
        "You may book a new appointment at any time.",
    )


def reminder_email(payload: dict) -> tuple[str, str]:
    label = "2 hours" if payload.get("reminder_type") == "2h" else "24 hours"
    subject = f"Appointment Reminder ({label}) — {payload.get('reference_code')}"
    body = "\n".join([
        f"This is a reminder for your upcoming appointment (in {label}).",
        f"Service: {payload.get('service') or 'Consultation'}",
        f"Time: {payload.get('start_time') or 'TBD'}",
        f"Reference: {payload.get('reference_code')}",
        "",
        "If you need to reschedule or cancel, please contact us.",
    ])
    return subject, body


def hold_followup_email(payload: dict) -> tuple[str, str]:
    body = "\n".join([
        f"Hi {payload.get('client_name') or 'there'},",
        "",
        f"The time slot you were holding ({payload.get('slot_start') or 'N/A'}) has expired.",
        "",
        "Would you like to see new available options? Simply reply to this message",
        "or start a new chat session to find another time that works for you.",
    ])
    return "Your held time slot has expired", body


def waitlist_email(payload: dict) -> tuple[str, str]:
    lines = [
        f"Hi {payload.get('client_name') or 'there'},",
        "",
        "Great news! A time slot matching your preferences has become available:",
        f"Time: {payload.get('slot_start') or 'N/A'}",
    ]
    if payload.get("service"):
        lines.append(f"Service: {payload['service']}")
    lines += ["", "This slot may fill quickly, start a chat to book it now!"]
    return "A time slot matching your preferences just opened!", "\n".join(lines)


def calendar_escalation_email(payload: dict) -> tuple[str, str]:
    ref = payload.get("reference_code")
    body = "\n".join([
        f"Hi {payload.get('client_name') or 'there'},",
        "",
        f"Your appointment ({ref}) has been confirmed in our system,",
        "but we encountered an issue syncing it to the calendar.",
        "",
        "Our team has been notified and will ensure your appointment appears",
        "on the calendar shortly. No action is needed from you.",
    ])
    return f"Calendar Sync Issue — {ref}", body


CONTACT_REASONS = {
    "no_availability": "no available slots matched your preferences",
    "calendar_retry_queued": "we are finalizing your calendar booking",
}


def contact_followup_body(payload: dict) -> str:
    reason = CONTACT_REASONS.get(payload.get("reason") or "", "you asked us to follow up")
    lines = [
        f"Hi {payload.get('client_name') or 'there'},",
        "",
        f"Thank you for chatting with us! Since {reason}, "
        "we wanted to reach out with updated options.",
    ]
    if payload.get("preferred_service"):
        lines.append(f"Service of interest: {payload['preferred_service']}")
    lines += [
        "",
        "We'll be checking availability and will share the best times with you.",
    ]
    if payload.get("notes"):
        lines += ["", f"Your note: {payload['notes']}"]
    return "\n".join(lines)
