"""Demo data for the in-memory runtime.

The worker and (with ``SEED_DEMO_DATA=true``) the server start on empty
in-memory stores.  ``seed_demo`` gives them a tenant, a week of sample
bookings and a waitlist entry, and emits the events the booking service
would have emitted for them, so the handlers, jobs and outbox have real
work to do.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from autonomy.domain.events import BookingCreated, SlotOpened
from autonomy.domain.models import Appointment, TenantConfig, WaitlistEntry
from autonomy.orchestrator.runtime import Orchestrator

logger = logging.getLogger(__name__)

DEMO_TENANT = TenantConfig(id="demo", name="Demo Clinic", timezone="America/New_York")

# (reference, name, email, phone, service, day offset, local hour, minutes)
DEMO_BOOKINGS = (
    ("APT-DEMO-001", "Sarah Johnson", "sarah.johnson@example.com", "+15555550101",
     "Demo Consultation", 1, 10, 30),
    ("APT-DEMO-002", "Michael Chen", "michael.chen@example.com", None,
     "Extended Session", 1, 14, 60),
    ("APT-DEMO-003", "Emily Rodriguez", "emily.r@example.com", None,
     "Follow-up Appointment", 2, 11, 20),
    ("APT-DEMO-004", "David Kim", "david.kim@example.com", "+15555550104",
     "Demo Consultation", 3, 15, 30),
    ("APT-DEMO-005", "Lisa Thompson", "lisa.t@example.com", None,
     "Follow-up Appointment", 5, 9, 20),
)


def _local_slot(now: datetime, tz: ZoneInfo, days: int, hour: int) -> datetime:
    day = (now.astimezone(tz) + timedelta(days=days)).date()
    return datetime(day.year, day.month, day.day, hour, tzinfo=tz)


def seed_demo(orchestrator: Orchestrator) -> int:
    """Load the demo tenant and bookings, emit their events.

    Returns the number of events emitted.
    """
    ctx = orchestrator.ctx
    ctx.tenants.put(DEMO_TENANT)
    tz = ZoneInfo(DEMO_TENANT.timezone)
    now = ctx.clock()

    emitted = 0
    for i, (ref, name, email, phone, service, days, hour, minutes) in enumerate(DEMO_BOOKINGS, 1):
        start = _local_slot(now, tz, days, hour)
        appt = Appointment(
            id=f"demo-appt-{i}",
            reference_code=ref,
            client_name=name,
            client_email=email,
            client_phone=phone,
            service=service,
            start_time=start,
            end_time=start + timedelta(minutes=minutes),
            timezone=DEMO_TENANT.timezone,
        )
        ctx.appointments.put(DEMO_TENANT.id, appt)
        ctx.bus.emit(BookingCreated(tenant_id=DEMO_TENANT.id, appointment=appt))
        emitted += 1

    ctx.waitlist.add(WaitlistEntry(
        tenant_id=DEMO_TENANT.id,
        client_name="Alex Rivera",
        client_email="alex.rivera@example.com",
        preferred_service="Demo Consultation",
    ))
    opened = _local_slot(now, tz, 4, 13)
    ctx.bus.emit(SlotOpened(
        tenant_id=DEMO_TENANT.id,
        slot_start=opened,
        slot_end=opened + timedelta(minutes=30),
        service="Demo Consultation",
    ))
    emitted += 1

    logger.info("Seeded demo tenant %s with %d booking(s)", DEMO_TENANT.id, len(DEMO_BOOKINGS))
    return emitted
