"""Domain events — immutable records of things that happened.

Every significant booking state change is broadcast on the event bus as one
of these.  Each variant carries ``tenant_id`` and ``timestamp`` and is
discriminated by its literal ``name``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from autonomy.clock import utcnow
from autonomy.domain.models import Appointment


class _BaseEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    timestamp: datetime = Field(default_factory=utcnow)


class BookingCreated(_BaseEvent):
    name: Literal["BookingCreated"] = "BookingCreated"
    appointment: Appointment
    session_id: str | None = None


class BookingCancelled(_BaseEvent):
    name: Literal["BookingCancelled"] = "BookingCancelled"
    appointment: Appointment


class BookingRescheduled(_BaseEvent):
    name: Literal["BookingRescheduled"] = "BookingRescheduled"
    old_appointment: Appointment
    new_appointment: Appointment
    session_id: str | None = None


class HoldExpired(_BaseEvent):
    name: Literal["HoldExpired"] = "HoldExpired"
    hold_id: str
    session_id: str | None = None
    slot_start: datetime
    slot_end: datetime


class CalendarWriteFailed(_BaseEvent):
    name: Literal["CalendarWriteFailed"] = "CalendarWriteFailed"
    appointment_id: str
    reference_code: str
    session_id: str | None = None
    error: str
    # Set when a retry job re-emits the failure; None for the original write.
    chain_attempt: int | None = None


class SlotOpened(_BaseEvent):
    """A slot became available after a cancellation or reschedule."""

    name: Literal["SlotOpened"] = "SlotOpened"
    slot_start: datetime
    slot_end: datetime
    service: str | None = None
    reason: Literal["cancellation", "reschedule"] = "cancellation"


class CalendarRetryExhausted(_BaseEvent):
    name: Literal["CalendarRetryExhausted"] = "CalendarRetryExhausted"
    appointment_id: str
    reference_code: str
    attempts: int
    last_error: str


class FollowupCooldownBlocked(_BaseEvent):
    name: Literal["FollowupCooldownBlocked"] = "FollowupCooldownBlocked"
    session_id: str
    channel: Literal["email", "sms"] = "email"
    client_email: str | None = None
    cooldown_minutes: int
    last_followup_at: datetime | None = None


DomainEvent = Annotated[
    BookingCreated
    | BookingCancelled
    | BookingRescheduled
    | HoldExpired
    | CalendarWriteFailed
    | SlotOpened
    | CalendarRetryExhausted
    | FollowupCooldownBlocked,
    Field(discriminator="name"),
]

EVENT_NAMES: tuple[str, ...] = (
    "BookingCreated",
    "BookingCancelled",
    "BookingRescheduled",
    "HoldExpired",
    "CalendarWriteFailed",
    "SlotOpened",
    "CalendarRetryExhausted",
    "FollowupCooldownBlocked",
)
