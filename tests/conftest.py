"""Shared test fixtures for the booking autonomy test suite."""

from __future__ import annotations

import os
import random
from datetime import UTC, datetime, timedelta

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py reads deterministic values
    (no Twilio credentials, no CloudWatch, autonomy off by default).
    """
    os.environ.setdefault("AUTONOMY_ENABLED", "false")
    os.environ.setdefault("FEATURE_SMS", "true")
    os.environ.setdefault("METRICS_ENABLED", "false")
    os.environ.setdefault("DEFAULT_TIMEZONE", "America/New_York")
    os.environ["TWILIO_ACCOUNT_SID"] = ""
    os.environ["TWILIO_AUTH_TOKEN"] = ""


# 11:00 in New York (EDT), well outside the default 21:00–08:00 quiet window.
BASE_TIME = datetime(2026, 3, 10, 15, 0, tzinfo=UTC)

ALL_ACTIONS = (
    "send_confirmation",
    "send_reminder",
    "send_sms_confirmation",
    "send_cancellation",
    "hold_followup",
    "retry_calendar_sync",
    "escalate_calendar_failure",
    "waitlist_notify",
)


class FixedClock:
    """A clock that only moves when told to."""

    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeTransport:
    """Records sends and replays queued ``TransportResult``s (success by default)."""

    def __init__(self):
        from autonomy.domain.models import TransportResult

        self._result_cls = TransportResult
        self.calls: list[tuple[str, str, str | None]] = []
        self.results: list = []

    def send(self, recipient, body, tenant_id=None):
        self.calls.append((recipient, body, tenant_id))
        if self.results:
            return self.results.pop(0)
        return self._result_cls(success=True, provider_message_id=f"SMtest{len(self.calls):04d}")

    def fail_next(self, n: int = 1, **kwargs) -> None:
        kwargs.setdefault("error", "connection reset")
        for _ in range(n):
            self.results.append(self._result_cls(success=False, **kwargs))


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def audit_sink():
    from autonomy.audit import InMemoryAuditSink

    return InMemoryAuditSink()


@pytest.fixture
def audit(audit_sink):
    from autonomy.audit import AuditLogger

    return AuditLogger(audit_sink)


@pytest.fixture
def metrics():
    from autonomy.services.metrics import MetricsClient

    return MetricsClient(enabled=False, start_flush_thread=False)


@pytest.fixture
def tenant():
    from autonomy.domain.models import TenantConfig

    return TenantConfig(id="t1", name="Acme Clinic", timezone="America/New_York")


@pytest.fixture
def transport():
    return FakeTransport()


def allow_rules(actions=ALL_ACTIONS, tenant_id: str | None = None):
    from autonomy.domain.models import PolicyEffect, PolicyRule

    return [
        PolicyRule(id=f"allow-{action}", tenant_id=tenant_id, action=action, effect=PolicyEffect.ALLOW)
        for action in actions
    ]


def make_appointment(start: datetime, **overrides):
    from autonomy.domain.models import Appointment

    fields = {
        "id": "appt-1",
        "reference_code": "APT-1001",
        "client_name": "Jane Doe",
        "client_email": "jane@example.com",
        "client_phone": "+15551234567",
        "service": "Cleaning",
        "start_time": start,
        "end_time": start + timedelta(minutes=30),
        "timezone": "America/New_York",
    }
    fields.update(overrides)
    return Appointment(**fields)


@pytest.fixture
def make_orchestrator(tenant, audit_sink, transport, metrics, clock):
    """Factory for a started in-memory runtime; shut down on teardown.

    Autonomy is off, so nothing runs in the background: tests drive the
    runner with ``run_once()`` and the outbox with ``process_outbox()``.
    """
    from autonomy.orchestrator.runtime import build_in_memory_orchestrator

    built = []

    def _make(actions=ALL_ACTIONS):
        orch = build_in_memory_orchestrator(
            tenants=[tenant],
            policies=allow_rules(actions),
            audit_sink=audit_sink,
            transport=transport,
            metrics=metrics,
            clock=clock,
            autonomy_enabled=False,
            sms_enabled=True,
            rng=random.Random(0),
        )
        orch.start()
        built.append(orch)
        return orch

    yield _make
    for orch in built:
        orch.shutdown()


@pytest.fixture
def orchestrator(make_orchestrator):
    """Every action allowed."""
    return make_orchestrator()


@pytest.fixture
def make_appt(clock):
    """Appointment factory; starts two days after the fixed clock by default."""

    def _make(**overrides):
        start = overrides.pop("start", clock.now + timedelta(days=2))
        return make_appointment(start, **overrides)

    return _make
