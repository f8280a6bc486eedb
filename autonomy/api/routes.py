"""FastAPI route definitions: health, autonomy introspection, Twilio webhooks."""

from __future__ import annotations

import asyncio
import logging
from urllib.parse import parse_qs
from xml.sax.saxutils import escape

from fastapi import APIRouter, HTTPException, Request, Response

from autonomy.api.schemas import (
    AutonomyStatusResponse,
    HealthResponse,
    MetricsResponse,
    RecentEventsResponse,
    StatusCallbackResponse,
)
from autonomy.audit import mask
from autonomy.orchestrator.runtime import Orchestrator

logger = logging.getLogger(__name__)

router = APIRouter()

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def _get_orchestrator(request: Request) -> Orchestrator:
    """Retrieve the orchestrator built during the FastAPI lifespan."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=503,
            detail="The autonomy runtime is still starting up. Please try again in a moment.",
        )
    return orchestrator


async def _read_form(request: Request) -> dict[str, str]:
    """Decode an ``application/x-www-form-urlencoded`` body (first value wins)."""
    raw = (await request.body()).decode("utf-8", errors="replace")
    return {key: values[0] for key, values in parse_qs(raw).items() if values}


def _twiml(message: str | None) -> Response:
    if message is None:
        body = EMPTY_TWIML
    else:
        body = (
            '<?xml version="1.0" encoding="UTF-8"?>'
            f"<Response><Message>{escape(message)}</Message></Response>"
        )
    return Response(content=body, media_type="application/xml")


# ── Introspection ────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.get("/autonomy/status", response_model=AutonomyStatusResponse)
async def autonomy_status(request: Request):
    return _get_orchestrator(request).status()


@router.get("/autonomy/metrics", response_model=MetricsResponse)
async def autonomy_metrics(request: Request):
    return MetricsResponse(counters=_get_orchestrator(request).ctx.metrics.snapshot())


@router.get("/autonomy/events", response_model=RecentEventsResponse)
async def recent_events(request: Request):
    """The most recent domain events, oldest first.  Names and tenants only."""
    return RecentEventsResponse(events=_get_orchestrator(request).bus.get_recent_events())


# ── Twilio webhooks ──────────────────────────────────────────────────


@router.post("/webhooks/twilio/status", response_model=StatusCallbackResponse)
async def twilio_status_callback(request: Request):
    """Delivery-status callback.  Always acknowledged so Twilio never retries.

    Authentication (signature validation) is handled in front of this service.
    """
    orchestrator = _get_orchestrator(request)
    form = await _read_form(request)
    message_sid = form.get("MessageSid") or form.get("SmsSid")
    status = form.get("MessageStatus") or form.get("SmsStatus")
    raw_code = form.get("ErrorCode")
    error_code = int(raw_code) if raw_code and raw_code.isdigit() else None

    logger.info("Twilio status callback: sid=%s status=%s", mask(message_sid), status)
    matched = await asyncio.to_thread(
        orchestrator.ctx.gateway.handle_status_callback, message_sid, status, error_code,
    )
    return StatusCallbackResponse(matched=matched)


@router.post("/webhooks/twilio/inbound")
async def twilio_inbound(request: Request, tenant_id: str | None = None):
    """Inbound SMS: applies STOP / START / HELP and replies with TwiML.

    Anything that is not a compliance keyword gets an empty response; the
    conversational SMS channel lives elsewhere.
    """
    orchestrator = _get_orchestrator(request)
    form = await _read_form(request)
    sender = form.get("From")
    if not sender:
        return _twiml(None)

    try:
        reply = await asyncio.to_thread(
            orchestrator.ctx.gateway.handle_inbound_keyword,
            sender, tenant_id, form.get("Body", ""),
        )
    except Exception:
        # Always 200 to Twilio; the failure is in our logs.
        logger.exception("Error handling inbound SMS from %s", mask(sender))
        reply = None
    return _twiml(reply)
