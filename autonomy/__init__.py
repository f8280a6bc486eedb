"""Booking autonomy runtime: autonomous follow-up actions for a scheduling service.

Architecture Overview
=====================

Booking state changes arrive as **domain events** on an in-process bus.
Handlers turn them into **policy-gated jobs**; a **job runner** executes
those jobs through a closed **tool registry**; outbound SMS goes through a
**delivery gateway** that enforces kill switches, opt-outs, quiet hours,
rate limits and idempotency.  Every decision lands in a PII-redacted
**audit log**.

    event ─▶ bus ─▶ handler ─▶ policy ─▶ job ─▶ runner ─▶ tool ─▶ gateway / notifications

Key Design Decisions
--------------------
- **Default deny**: no matching policy rule means no action.
- **Allowlist**: a job type without a registered tool fails immediately and
  is never retried.
- **Threads, not asyncio**: the runner claims batches on a coordinator
  thread and runs them on a bounded ``ThreadPoolExecutor``.
- **Auditing is telemetry**: a failing audit sink never breaks an action.
- **Injected collaborators**: persistence, calendar and SMS provider are
  narrow protocols (``autonomy.interfaces``); ``autonomy.stores.memory``
  backs the demo server, the CLI and the tests.

Package Structure
-----------------
- ``autonomy/config.py`` — Centralized configuration from environment variables
- ``autonomy/audit.py`` — PII redaction and the audit logger
- ``autonomy/domain/`` — Models and domain events
- ``autonomy/orchestrator/`` — Event bus, policy engine, tool registry, job runner, handlers
- ``autonomy/tools/`` — The built-in tools (notifications, calendar retry, SMS)
- ``autonomy/delivery/`` — Outbound gateway and quiet hours
- ``autonomy/services/`` — Twilio client, SMS sender, metrics
- ``autonomy/stores/`` — In-memory store implementations
- ``autonomy/api/`` — FastAPI routes and Pydantic schemas
- ``autonomy/server.py`` — FastAPI application
- ``autonomy/main.py`` — Worker CLI
"""
