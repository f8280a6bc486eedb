"""Outbound delivery gateway: the single entry point for scheduled SMS.

Every outbound message passes the same gate sequence before it reaches the
transport.  Each gate is a hard stop that writes an audit entry and bumps a
named counter:

    1. global feature switch (``FEATURE_SMS``)
    2. per-tenant outbound switch
    3. recipient opt-out
    4. quiet hours → enqueue for the next allowed time
    5. transport → on failure, enqueue a retry (per-tenant retry switch)

The outbox processor (``process_outbox``) re-applies the recipient and
tenant gates to every due entry, because state may have changed since the
message was queued.  Anything that makes a queued message pointless is an
*abort* with a recorded reason, distinct from *failed* (retries exhausted).

Nothing here raises for an expected condition; callers get a ``SendResult``.
Audit payloads never carry the phone number or message body.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from pydantic import BaseModel

from autonomy.audit import AuditLogger, mask
from autonomy.clock import Clock, utcnow
from autonomy.config import (
    FEATURE_SMS,
    SMS_MAX_ATTEMPTS,
    SMS_OUTBOX_BATCH_SIZE,
    SMS_RATE_LIMIT_WINDOW_MINUTES,
    SMS_RETRY_BACKOFF_SECONDS,
)
from autonomy.delivery.quiet_hours import (
    is_quiet_hours,
    next_allowed_send_time,
    tenant_quiet_hours,
)
from autonomy.domain.models import OutboxEntry, SendRequest, TenantConfig
from autonomy.errors import ErrorKind
from autonomy.interfaces import (
    AppointmentStore,
    DeliveryTransport,
    OptOutStore,
    OutboxStore,
    TenantStore,
)
from autonomy.services.metrics import MetricsClient

logger = logging.getLogger(__name__)

ACTOR_GATEWAY = "outbound_sms_gateway"
ACTOR_PROCESSOR = "outbox_processor"

# Carrier-standard compliance keywords
STOP_KEYWORDS = frozenset({"stop", "stopall", "unsubscribe", "cancel", "end", "quit"})
START_KEYWORDS = frozenset({"start", "unstop", "subscribe", "resume"})
HELP_KEYWORDS = frozenset({"help", "info"})

STOP_REPLY = (
    "You have been unsubscribed and will no longer receive text messages "
    "from us. Reply START to re-subscribe."
)
START_REPLY = (
    "You have been re-subscribed! Reply STOP at any time to unsubscribe."
)
HELP_REPLY = (
    "To book: tell me a day/time. To cancel: send Ref + Full Name. "
    "To reschedule: send Ref + Full Name + new time. STOP to opt out."
)


class SendResult(BaseModel):
    """Outcome of ``OutboundGateway.send``."""

    sent: bool = False
    queued: bool = False
    error: str | None = None
    kind: ErrorKind | None = None
    outbox_id: str | None = None
    scheduled_at: datetime | None = None
    already_scheduled: bool = False
    simulated: bool = False
    provider_message_id_last4: str | None = None


class OutboxRunSummary(BaseModel):
    processed: int = 0
    sent: int = 0
    aborted: int = 0
    retried: int = 0
    rescheduled: int = 0
    failed: int = 0


def idempotency_key(message_type: str, linked_entity_id: str | None, scheduled_at: datetime) -> str:
    """Logical identity of a notification: ``type:entity:scheduled_at``."""
    return f"{message_type}:{linked_entity_id or 'none'}:{scheduled_at.isoformat()}"


def categorise_error(error: str | None) -> str:
    """Map a transport error string to a PII-free category for audit."""
    if not error:
        return "unknown"
    lower = error.lower()
    if "timeout" in lower or "connect" in lower or "network" in lower:
        return "network"
    if "rate" in lower:
        return "rate_limit"
    if "opt" in lower or "unsubscribed" in lower:
        return "opt_out"
    if "invalid" in lower or "21211" in lower:
        return "invalid_number"
    if "auth" in lower or "20003" in lower:
        return "auth_failure"
    return "unknown"


class OutboundGateway:
    """Kill switches, opt-out, quiet hours and retry around a transport."""

    def __init__(
        self,
        transport: DeliveryTransport,
        outbox: OutboxStore,
        opt_outs: OptOutStore,
        audit: AuditLogger,
        metrics: MetricsClient,
        *,
        tenants: TenantStore | None = None,
        appointments: AppointmentStore | None = None,
        feature_enabled: bool = FEATURE_SMS,
        max_attempts: int = SMS_MAX_ATTEMPTS,
        retry_backoff: tuple[int, ...] = SMS_RETRY_BACKOFF_SECONDS,
        rate_limit_window: timedelta = timedelta(minutes=SMS_RATE_LIMIT_WINDOW_MINUTES),
        clock: Clock = utcnow,
    ):
        self._transport = transport
        self._outbox = outbox
        self._opt_outs = opt_outs
        self._audit = audit
        self._metrics = metrics
        self._tenants = tenants
        self._appointments = appointments
        self._feature_enabled = feature_enabled
        self._max_attempts = max_attempts
        self._retry_backoff = retry_backoff
        self._rate_limit_window = rate_limit_window
        self._clock = clock

    @property
    def feature_enabled(self) -> bool:
        return self._feature_enabled

    # ── Send ─────────────────────────────────────────────────────────

    def send(self, request: SendRequest, tenant: TenantConfig) -> SendResult:
        """Send now, or queue, or refuse.  Never raises for business states."""
        now = self._clock()
        ref = {
            "message_type": request.message_type,
            "booking_id": request.linked_entity_id,
        }

        # 1. Global kill switch
        # No counter: the metrics funnel only covers tenants with SMS switched on.
        if not self._feature_enabled:
            self._log(request.tenant_id, "sms.blocked_feature_disabled", None, ACTOR_GATEWAY, ref)
            logger.info("Outbound SMS blocked: FEATURE_SMS=false")
            return SendResult(error="feature_disabled", kind=ErrorKind.FEATURE_DISABLED)

        # 2. Per-tenant outbound kill switch
        if not tenant.sms_outbound_enabled:
            self._metrics.inc("blocked_outbound_disabled")
            self._log(request.tenant_id, "sms.blocked_outbound_disabled", None, ACTOR_GATEWAY, ref)
            logger.info("Outbound SMS blocked: sms_outbound_enabled=false")
            return SendResult(error="outbound_disabled", kind=ErrorKind.OUTBOUND_DISABLED)

        # 3. Recipient opt-out
        if self._opt_outs.is_opted_out(request.recipient, request.tenant_id):
            self._metrics.inc("failed")
            self._log(request.tenant_id, "sms.blocked_opted_out", None, ACTOR_GATEWAY, ref)
            return SendResult(error="opted_out", kind=ErrorKind.RECIPIENT_OPTED_OUT)

        key = idempotency_key(
            request.message_type, request.linked_entity_id, request.scheduled_at or now,
        )

        # 4. Quiet hours
        qh = tenant_quiet_hours(tenant)
        if is_quiet_hours(now, qh):
            if tenant.sms_quiet_hours_enabled:
                next_send = next_allowed_send_time(now, qh)
                entry, created = self._enqueue(request, key, next_send)
                if created:
                    self._metrics.inc("queued")
                    self._log(
                        request.tenant_id, "sms.queued_due_to_quiet_hours", entry.id, ACTOR_GATEWAY,
                        {
                            **ref,
                            "scheduled_at": next_send,
                            "quiet_hours_start": qh.start,
                            "quiet_hours_end": qh.end,
                        },
                    )
                    logger.info("Outbound SMS queued (quiet hours) until %s", next_send.isoformat())
                return SendResult(
                    queued=True,
                    kind=ErrorKind.QUIET_HOURS_DEFERRAL,
                    outbox_id=entry.id,
                    scheduled_at=entry.scheduled_at,
                    already_scheduled=not created,
                )
            self._metrics.inc("blocked_quiet_hours_disabled")
            self._log(
                request.tenant_id, "sms.quiet_hours_bypassed", None, ACTOR_GATEWAY, ref,
            )

        # 5. Transport
        result = self._transport.send(request.recipient, request.body, request.tenant_id)

        if result.success:
            self._metrics.inc("sent")
            sid_last4 = result.provider_message_id[-4:] if result.provider_message_id else None
            self._log(
                request.tenant_id, "sms.outbound_sent", None, ACTOR_GATEWAY,
                {**ref, "message_sid_last4": sid_last4, "simulated": result.simulated},
            )
            return SendResult(
                sent=True,
                simulated=result.simulated,
                provider_message_id_last4=sid_last4,
            )

        if result.opted_out:
            self._opt_outs.opt_out(request.recipient, request.tenant_id)
            self._metrics.inc("failed")
            self._log(request.tenant_id, "sms.blocked_opted_out", None, ACTOR_GATEWAY, ref)
            return SendResult(error="opted_out", kind=ErrorKind.RECIPIENT_OPTED_OUT)

        if result.rate_limited:
            retry_at = now + self._rate_limit_window
            entry, created = self._enqueue(request, key, retry_at)
            if created:
                self._metrics.inc("queued")
                self._log(
                    request.tenant_id, "sms.deferred_rate_limited", entry.id, ACTOR_GATEWAY,
                    {**ref, "scheduled_at": retry_at},
                )
            return SendResult(
                queued=True,
                error="rate_limited",
                kind=ErrorKind.RATE_LIMITED,
                outbox_id=entry.id,
                scheduled_at=entry.scheduled_at,
                already_scheduled=not created,
            )

        # Genuine transport failure
        if not tenant.sms_retry_enabled:
            self._metrics.inc("blocked_retry_disabled")
            self._metrics.inc("failed")
            self._log(
                request.tenant_id, "sms.blocked_retry_disabled", None, ACTOR_GATEWAY,
                {**ref, "error_category": categorise_error(result.error)},
            )
            logger.info("Outbound SMS retry blocked: sms_retry_enabled=false")
            return SendResult(error=result.error, kind=ErrorKind.TRANSPORT_FAILURE)

        retry_at = now + timedelta(seconds=self._retry_backoff[0])
        entry, created = self._enqueue(request, key, retry_at, attempts=1)
        if created:
            self._metrics.inc("retry_scheduled")
            self._log(
                request.tenant_id, "sms.retry_scheduled", entry.id, ACTOR_GATEWAY,
                {
                    **ref,
                    "attempt": 1,
                    "retry_at": retry_at,
                    "error_category": categorise_error(result.error),
                },
            )
            logger.info("Outbound SMS transport failure, retry scheduled for %s", retry_at.isoformat())
        return SendResult(
            queued=True,
            error=result.error,
            kind=ErrorKind.TRANSPORT_FAILURE,
            outbox_id=entry.id,
            scheduled_at=entry.scheduled_at,
            already_scheduled=not created,
        )

    def _enqueue(
        self,
        request: SendRequest,
        key: str,
        scheduled_at: datetime,
        *,
        attempts: int = 0,
    ) -> tuple[OutboxEntry, bool]:
        entry, created = self._outbox.enqueue(
            tenant_id=request.tenant_id,
            recipient=request.recipient,
            body=request.body,
            message_type=request.message_type,
            linked_entity_id=request.linked_entity_id,
            scheduled_at=scheduled_at,
            idempotency_key=key,
            max_attempts=self._max_attempts,
            attempts=attempts,
            source_job_id=request.source_job_id,
        )
        if not created:
            logger.info("Outbox entry %s already scheduled, duplicate suppressed", entry.id[:8])
            self._log(
                request.tenant_id, "sms.duplicate_suppressed", entry.id, ACTOR_GATEWAY,
                {"message_type": request.message_type, "booking_id": request.linked_entity_id},
            )
        return entry, created

    # ── Outbox processor ─────────────────────────────────────────────

    def process_outbox(self, limit: int = SMS_OUTBOX_BATCH_SIZE) -> OutboxRunSummary:
        """Deliver due outbox entries, re-checking every gate first."""
        summary = OutboxRunSummary()
        if not self._feature_enabled:
            return summary

        entries = self._outbox.claim_batch(limit)
        summary.processed = len(entries)
        for entry in entries:
            try:
                self._process_entry(entry, summary)
            except Exception as exc:
                logger.exception("Unexpected error processing outbox entry %s", entry.id[:8])
                self._outbox.mark_failed(entry.id, f"unexpected error: {type(exc).__name__}")
                self._metrics.inc("failed")
                summary.failed += 1
        if entries:
            logger.info("Outbox run: %s", summary.model_dump())
        return summary

    def _process_entry(self, entry: OutboxEntry, summary: OutboxRunSummary) -> None:
        now = self._clock()

        if self._opt_outs.is_opted_out(entry.recipient, entry.tenant_id):
            self._abort(entry, "opt_out", summary)
            return

        if entry.linked_entity_id and not self._booking_active(entry):
            self._abort(entry, "booking_cancelled", summary)
            return

        tenant = self._tenants.get(entry.tenant_id) if self._tenants else None
        if tenant is not None:
            if not tenant.sms_outbound_enabled:
                self._metrics.inc("blocked_outbound_disabled")
                self._abort(entry, "outbound_disabled", summary)
                return
            if not tenant.sms_retry_enabled and entry.attempts > 1:
                self._metrics.inc("blocked_retry_disabled")
                self._abort(entry, "retry_disabled", summary)
                return
            qh = tenant_quiet_hours(tenant)
            if tenant.sms_quiet_hours_enabled and is_quiet_hours(now, qh):
                next_send = next_allowed_send_time(now, qh)
                self._outbox.reschedule(entry.id, next_send, "quiet_hours_reenter")
                self._metrics.inc("retry_aborted")
                self._log(
                    entry.tenant_id, "sms.requeued_quiet_hours", entry.id, ACTOR_PROCESSOR,
                    {**_entry_ref(entry), "scheduled_at": next_send},
                )
                summary.rescheduled += 1
                return

        self._log(
            entry.tenant_id, "sms.outbound_attempted", entry.id, ACTOR_PROCESSOR,
            {**_entry_ref(entry), "attempt": entry.attempts},
        )
        result = self._transport.send(entry.recipient, entry.body, entry.tenant_id)

        if result.success:
            self._outbox.mark_sent(entry.id, result.provider_message_id)
            self._metrics.inc("retry_succeeded")
            self._metrics.inc("sent")
            summary.sent += 1
            self._log(
                entry.tenant_id, "sms.outbound_sent", entry.id, ACTOR_PROCESSOR,
                {
                    **_entry_ref(entry),
                    "message_sid_last4": (
                        result.provider_message_id[-4:] if result.provider_message_id else None
                    ),
                    "simulated": result.simulated,
                },
            )
            logger.info("Delivered outbox entry %s", entry.id[:8])
            return

        if result.opted_out:
            self._opt_outs.opt_out(entry.recipient, entry.tenant_id)
            self._abort(entry, "opt_out", summary)
            return

        if result.rate_limited:
            retry_at = now + self._rate_limit_window
            self._outbox.reschedule(entry.id, retry_at, "rate_limited")
            summary.rescheduled += 1
            return

        error = result.error or "transport failure"
        if entry.attempts < entry.max_attempts:
            delay = self._retry_backoff[min(entry.attempts - 1, len(self._retry_backoff) - 1)]
            retry_at = now + timedelta(seconds=delay)
            self._outbox.schedule_retry(entry.id, retry_at, error)
            self._metrics.inc("retry_scheduled")
            summary.retried += 1
            self._log(
                entry.tenant_id, "sms.retry_scheduled", entry.id, ACTOR_PROCESSOR,
                {**_entry_ref(entry), "attempt": entry.attempts, "retry_at": retry_at},
            )
            logger.info(
                "Retry %d/%d scheduled for outbox entry %s",
                entry.attempts, entry.max_attempts, entry.id[:8],
            )
            return

        self._outbox.mark_failed(entry.id, error, result.error_code)
        self._metrics.inc("failed")
        summary.failed += 1
        self._log(
            entry.tenant_id, "sms.outbound_failed", entry.id, ACTOR_PROCESSOR,
            {
                **_entry_ref(entry),
                "attempt": entry.attempts,
                "error_category": categorise_error(result.error),
                "error_code": result.error_code,
            },
        )
        logger.warning("Max retries exhausted for outbox entry %s", entry.id[:8])

    def _booking_active(self, entry: OutboxEntry) -> bool:
        if self._appointments is None:
            return True
        appointment = self._appointments.find_by_id(entry.linked_entity_id, entry.tenant_id)
        return appointment is not None and appointment.status == "confirmed"

    def _abort(self, entry: OutboxEntry, reason: str, summary: OutboxRunSummary) -> None:
        self._outbox.abort(entry.id, reason)
        self._metrics.inc("retry_aborted")
        summary.aborted += 1
        self._log(
            entry.tenant_id, "sms.retry_aborted", entry.id, ACTOR_PROCESSOR,
            {**_entry_ref(entry), "abort_reason": reason},
        )
        logger.info("Aborted outbox entry %s: %s", entry.id[:8], reason)

    # ── Provider callbacks ───────────────────────────────────────────

    def handle_status_callback(
        self,
        message_sid: str | None,
        status: str | None,
        error_code: int | None = None,
    ) -> bool:
        """Record a provider delivery-status update.  Never raises.

        Returns True when the SID matched an outbox entry.
        """
        if not message_sid or not status:
            logger.info("Status callback missing MessageSid or MessageStatus, ignored")
            return False
        try:
            updated = self._outbox.update_provider_status(message_sid, status, error_code)
            self._log(
                updated.tenant_id if updated else None,
                "sms.provider_status_update",
                updated.id if updated else None,
                "twilio_status_callback",
                {
                    "message_sid_last4": message_sid[-4:],
                    "provider_status": status,
                    "error_code": error_code,
                    "matched": updated is not None,
                },
            )
        except Exception:
            logger.exception("Error processing status callback for %s", mask(message_sid))
            return False

        if updated is None:
            logger.info("Unknown message sid %s, status=%s (ignored)", mask(message_sid), status)
            return False
        logger.info("Outbox entry %s → %s", updated.id[:8], status)
        return True

    def handle_inbound_keyword(
        self, recipient: str, tenant_id: str | None, body: str,
    ) -> str | None:
        """Apply STOP / START / HELP.  Returns the reply text, or None when
        *body* is not a compliance keyword (or HELP from an opted-out number).
        """
        keyword = (body or "").strip().lower()

        if keyword in STOP_KEYWORDS:
            self._opt_outs.opt_out(recipient, tenant_id)
            self._metrics.inc("stop")
            self._log(tenant_id, "sms.opt_out", None, "customer", {"keyword": keyword}, "phone")
            logger.info("Opt-out recorded for %s", mask(recipient))
            return STOP_REPLY

        if keyword in START_KEYWORDS:
            self._opt_outs.opt_in(recipient, tenant_id)
            self._metrics.inc("start")
            self._log(tenant_id, "sms.opt_in", None, "customer", {"keyword": keyword}, "phone")
            logger.info("Opt-in recorded for %s", mask(recipient))
            return START_REPLY

        if keyword in HELP_KEYWORDS:
            if self._opt_outs.is_opted_out(recipient, tenant_id):
                return None
            self._metrics.inc("help")
            return HELP_REPLY

        return None

    def _log(
        self,
        tenant_id: str | None,
        event_type: str,
        entity_id: str | None,
        actor: str,
        payload: dict,
        entity_type: str = "sms_outbox",
    ) -> None:
        self._audit.log(
            tenant_id=tenant_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            actor=actor,
            payload=payload,
        )


def _entry_ref(entry: OutboxEntry) -> dict:
    return {"message_type": entry.message_type, "booking_id": entry.linked_entity_id}
