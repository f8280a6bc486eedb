"""SMS transport: validation, opt-out and rate limiting in front of Twilio.

``SmsSender`` satisfies ``DeliveryTransport``.  It never raises for an
expected condition; every outcome is a ``TransportResult``.

When Twilio is not configured the sender runs in *simulator* mode: the
message is logged (masked) and reported as delivered, so the autonomy
runtime can be demoed end to end without real SMS.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import timedelta

from autonomy.audit import mask
from autonomy.config import SMS_RATE_LIMIT_MAX, SMS_RATE_LIMIT_WINDOW_MINUTES
from autonomy.domain.models import TransportResult
from autonomy.errors import TransportError
from autonomy.interfaces import OptOutStore, RateLimitStore
from autonomy.services.twilio_client import (
    ERROR_TOO_MANY_REQUESTS,
    ERROR_UNSUBSCRIBED,
    TwilioClient,
)

logger = logging.getLogger(__name__)

E164_RE = re.compile(r"^\+[1-9]\d{6,14}$")


def is_valid_e164(phone: str) -> bool:
    return bool(E164_RE.match(phone or ""))


class SmsSender:
    """Sends one SMS through Twilio, or the simulator when *client* is None."""

    def __init__(
        self,
        opt_outs: OptOutStore,
        rate_limits: RateLimitStore,
        *,
        client: TwilioClient | None = None,
        rate_limit_max: int = SMS_RATE_LIMIT_MAX,
        rate_limit_window: timedelta = timedelta(minutes=SMS_RATE_LIMIT_WINDOW_MINUTES),
    ):
        self._opt_outs = opt_outs
        self._rate_limits = rate_limits
        self._client = client
        self._rate_limit_max = rate_limit_max
        self._rate_limit_window = rate_limit_window

    @property
    def simulated(self) -> bool:
        return self._client is None

    def send(self, recipient: str, body: str, tenant_id: str | None = None) -> TransportResult:
        if not is_valid_e164(recipient):
            return TransportResult(success=False, error="invalid_phone_number")

        if self._opt_outs.is_opted_out(recipient, tenant_id):
            logger.info("Blocked SMS to opted-out phone %s", mask(recipient))
            return TransportResult(success=False, error="opted_out", opted_out=True)

        if not self._rate_limits.try_acquire(
            recipient, self._rate_limit_max, self._rate_limit_window,
        ):
            logger.warning("SMS rate limit exceeded for %s", mask(recipient))
            return TransportResult(success=False, error="rate_limited", rate_limited=True)

        if self._client is None:
            sid = f"SIM_{uuid.uuid4().hex[:12]}"
            logger.info(
                "[sms-simulator] Would send %d chars to %s (sid %s)",
                len(body), mask(recipient), mask(sid),
            )
            return TransportResult(success=True, provider_message_id=sid, simulated=True)

        try:
            sid = self._client.send_message(recipient, body)
        except TransportError as exc:
            logger.warning(
                "Twilio send to %s failed: status=%s code=%s",
                mask(recipient), exc.status_code, exc.error_code,
            )
            if exc.error_code == ERROR_UNSUBSCRIBED:
                return TransportResult(
                    success=False,
                    error="opted_out",
                    opted_out=True,
                    error_code=exc.error_code,
                )
            if exc.status_code == 429 or exc.error_code == ERROR_TOO_MANY_REQUESTS:
                return TransportResult(
                    success=False,
                    error="rate_limited",
                    rate_limited=True,
                    error_code=exc.error_code,
                )
            return TransportResult(success=False, error=str(exc), error_code=exc.error_code)

        logger.info("Sent SMS to %s (sid %s)", mask(recipient), mask(sid))
        return TransportResult(success=True, provider_message_id=sid)
