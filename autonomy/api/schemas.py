"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "booking-autonomy"


class AutonomyStatusResponse(BaseModel):
    """Snapshot of the runtime: switches, runner, queue depths, listeners."""

    autonomy_enabled: bool
    sms_enabled: bool
    started: bool
    runner: dict[str, Any]
    jobs: dict[str, int] = Field(..., description="Job counts keyed by status")
    outbox: dict[str, int] = Field(..., description="Outbox entry counts keyed by status")
    listeners: dict[str, int] = Field(..., description="Handler count per event name")
    outbox_poller_running: bool


class MetricsResponse(BaseModel):
    counters: dict[str, int]


class RecentEvent(BaseModel):
    name: str
    tenant_id: str
    timestamp: str


class RecentEventsResponse(BaseModel):
    events: list[RecentEvent]


class StatusCallbackResponse(BaseModel):
    """Twilio only needs a 2xx; ``matched`` is informational."""

    received: bool = True
    matched: bool = False
