"""The collaborators shared by event handlers and tools.

One ``RuntimeContext`` is built at start-up (see ``runtime.py``) and passed
explicitly to ``EventHandlers`` and ``default_tools``.  Nothing in the
runtime reaches for a module-level store or bus.
"""

from __future__ import annotations

from dataclasses import dataclass

from autonomy.audit import AuditLogger
from autonomy.clock import Clock, utcnow
from autonomy.config import FEATURE_SMS
from autonomy.delivery.gateway import OutboundGateway
from autonomy.interfaces import (
    AppointmentStore,
    CalendarWriter,
    JobStore,
    NotificationStore,
    OptOutStore,
    OutboxStore,
    ReminderStore,
    SessionStore,
    TenantStore,
    WaitlistStore,
)
from autonomy.orchestrator.event_bus import DomainEventBus
from autonomy.orchestrator.policy_engine import PolicyEngine
from autonomy.services.metrics import MetricsClient


@dataclass
class RuntimeContext:
    jobs: JobStore
    policy: PolicyEngine
    audit: AuditLogger
    metrics: MetricsClient
    bus: DomainEventBus
    gateway: OutboundGateway
    outbox: OutboxStore
    opt_outs: OptOutStore
    tenants: TenantStore
    appointments: AppointmentStore
    reminders: ReminderStore
    waitlist: WaitlistStore
    sessions: SessionStore
    notifications: NotificationStore
    calendar: CalendarWriter
    sms_enabled: bool = FEATURE_SMS
    clock: Clock = utcnow
