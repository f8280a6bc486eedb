"""Orchestrator: wires the bus, policy engine, tools, runner and gateway.

Start-up order
--------------
1. Handlers are registered on the bus.  Events emitted while autonomy is
   disabled are still audited and still create jobs; nothing runs them.
2. When ``AUTONOMY_ENABLED`` is on, the job runner starts.
3. When SMS is also on, an outbox poller thread runs one processor batch
   every ``SMS_OUTBOX_POLL_INTERVAL_SECONDS``.

``shutdown()`` reverses this and detaches every listener.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from typing import Any

from autonomy.audit import AuditLogger, LoggingAuditSink
from autonomy.clock import Clock, utcnow
from autonomy.config import AUTONOMY_ENABLED, FEATURE_SMS, SMS_OUTBOX_POLL_INTERVAL_SECONDS
from autonomy.delivery.gateway import OutboundGateway
from autonomy.domain.events import EVENT_NAMES
from autonomy.domain.models import PolicyRule, TenantConfig
from autonomy.interfaces import AuditSink, DeliveryTransport
from autonomy.orchestrator.context import RuntimeContext
from autonomy.orchestrator.event_bus import DomainEventBus
from autonomy.orchestrator.handlers import EventHandlers
from autonomy.orchestrator.job_runner import JobRunner
from autonomy.orchestrator.policy_engine import DEFAULT_POLICY_RULES, PolicyEngine
from autonomy.orchestrator.tool_registry import build_registry
from autonomy.services.metrics import MetricsClient
from autonomy.services.sms_sender import SmsSender
from autonomy.services.twilio_client import get_twilio_client, twilio_configured
from autonomy.stores import memory
from autonomy.tools import default_tools

logger = logging.getLogger(__name__)


class Orchestrator:
    def __init__(
        self,
        ctx: RuntimeContext,
        runner: JobRunner,
        *,
        autonomy_enabled: bool = AUTONOMY_ENABLED,
        outbox_poll_interval: float = SMS_OUTBOX_POLL_INTERVAL_SECONDS,
    ):
        self.ctx = ctx
        self.runner = runner
        self.handlers = EventHandlers(ctx)
        self._autonomy_enabled = autonomy_enabled
        self._outbox_poll_interval = outbox_poll_interval
        self._outbox_stop = threading.Event()
        self._outbox_thread: threading.Thread | None = None
        self._started = False

    @property
    def bus(self) -> DomainEventBus:
        return self.ctx.bus

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        if self._started:
            logger.warning("Orchestrator already started")
            return
        self.handlers.register(self.ctx.bus)
        self._started = True

        if not self._autonomy_enabled:
            logger.info("Autonomy disabled: handlers active, job runner not started")
            return

        self.runner.start()
        if self.ctx.sms_enabled:
            self._outbox_stop.clear()
            self._outbox_thread = threading.Thread(
                target=self._poll_outbox, name="sms-outbox", daemon=True,
            )
            self._outbox_thread.start()
            logger.info("SMS outbox poller started (interval=%.0fs)", self._outbox_poll_interval)

    def _poll_outbox(self) -> None:
        while not self._outbox_stop.wait(self._outbox_poll_interval):
            try:
                summary = self.ctx.gateway.process_outbox()
                if summary.processed:
                    logger.info("Outbox batch: %s", summary.model_dump())
            except Exception:
                logger.exception("Outbox poll failed")

    def shutdown(self) -> None:
        if not self._started:
            return
        if self._outbox_thread is not None:
            self._outbox_stop.set()
            self._outbox_thread.join()
            self._outbox_thread = None
        self.runner.stop()
        self.ctx.bus.remove_all_listeners()
        self._started = False
        logger.info("Orchestrator shut down")

    def status(self) -> dict[str, Any]:
        return {
            "autonomy_enabled": self._autonomy_enabled,
            "sms_enabled": self.ctx.sms_enabled,
            "started": self._started,
            "runner": self.runner.status(),
            "jobs": self.ctx.jobs.counts_by_status(),
            "outbox": self.ctx.outbox.health_stats(),
            "listeners": {name: self.ctx.bus.listener_count(name) for name in EVENT_NAMES},
            "outbox_poller_running": (
                self._outbox_thread is not None and self._outbox_thread.is_alive()
            ),
        }


def build_in_memory_orchestrator(
    *,
    tenants: Iterable[TenantConfig] = (),
    policies: Iterable[PolicyRule] | None = None,
    audit_sink: AuditSink | None = None,
    transport: DeliveryTransport | None = None,
    metrics: MetricsClient | None = None,
    clock: Clock = utcnow,
    autonomy_enabled: bool = AUTONOMY_ENABLED,
    sms_enabled: bool = FEATURE_SMS,
    outbox_poll_interval: float = SMS_OUTBOX_POLL_INTERVAL_SECONDS,
    **runner_options: Any,
) -> Orchestrator:
    """Compose a runtime on the in-memory stores.

    Without an explicit *transport* the SMS sender talks to Twilio when
    credentials are configured and to the simulator otherwise.
    Without *policies* the runtime starts from ``DEFAULT_POLICY_RULES``.
    """
    audit = AuditLogger(audit_sink or LoggingAuditSink())
    metrics = metrics or MetricsClient(start_flush_thread=False)

    jobs = memory.InMemoryJobStore(clock=clock)
    outbox = memory.InMemoryOutboxStore(clock=clock)
    opt_outs = memory.InMemoryOptOutStore()
    tenant_store = memory.InMemoryTenantStore(tenants)
    appointments = memory.InMemoryAppointmentStore()

    if transport is None:
        transport = SmsSender(
            opt_outs,
            memory.InMemoryRateLimitStore(clock=clock),
            client=get_twilio_client() if twilio_configured() else None,
        )

    ctx = RuntimeContext(
        jobs=jobs,
        policy=PolicyEngine(
            memory.InMemoryPolicyStore(DEFAULT_POLICY_RULES if policies is None else policies),
            audit,
            clock=clock,
        ),
        audit=audit,
        metrics=metrics,
        bus=DomainEventBus(audit),
        gateway=OutboundGateway(
            transport,
            outbox,
            opt_outs,
            audit,
            metrics,
            tenants=tenant_store,
            appointments=appointments,
            feature_enabled=sms_enabled,
            clock=clock,
        ),
        outbox=outbox,
        opt_outs=opt_outs,
        tenants=tenant_store,
        appointments=appointments,
        reminders=memory.InMemoryReminderStore(jobs),
        waitlist=memory.InMemoryWaitlistStore(),
        sessions=memory.InMemorySessionStore(),
        notifications=memory.InMemoryNotificationStore(),
        calendar=memory.InMemoryCalendarWriter(),
        sms_enabled=sms_enabled,
        clock=clock,
    )
    runner = JobRunner(
        jobs, build_registry(default_tools(ctx)), audit, clock=clock, **runner_options,
    )
    return Orchestrator(
        ctx,
        runner,
        autonomy_enabled=autonomy_enabled,
        outbox_poll_interval=outbox_poll_interval,
    )
