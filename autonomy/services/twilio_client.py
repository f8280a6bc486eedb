"""HTTP client for the Twilio Messages API with connect-retry logic.

Twilio API docs: https://www.twilio.com/docs/messaging/api/message-resource
Requests use HTTP basic auth (account SID + auth token) and form-encoded
bodies.  No Twilio SDK is needed for the one endpoint we call.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

import httpx

from autonomy.config import (
    SMS_STATUS_CALLBACK_URL,
    TWILIO_ACCOUNT_SID,
    TWILIO_AUTH_TOKEN,
    TWILIO_BASE_URL,
    TWILIO_MESSAGING_SERVICE_SID,
    TWILIO_PHONE_NUMBER,
)
from autonomy.errors import TransportError

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 15.0

MAX_BODY_CHARS = 1500

# ── Twilio error codes we act on ────────────────────────────────────
ERROR_UNSUBSCRIBED = 21610  # recipient replied STOP at the carrier level
ERROR_TOO_MANY_REQUESTS = 20429


class TwilioClient:
    """Thin wrapper around ``POST /Accounts/{sid}/Messages.json``.

    Only connection failures are retried: the request never reached Twilio,
    so a retry cannot double-send.  Read timeouts and 5xx responses are
    raised immediately because the message may already be queued at the
    provider.
    """

    def __init__(
        self,
        account_sid: str | None = None,
        auth_token: str | None = None,
        *,
        from_number: str | None = None,
        messaging_service_sid: str | None = None,
        status_callback_url: str | None = None,
        base_url: str | None = None,
    ):
        self._account_sid = account_sid or TWILIO_ACCOUNT_SID
        self._from_number = from_number if from_number is not None else TWILIO_PHONE_NUMBER
        self._messaging_service_sid = (
            messaging_service_sid
            if messaging_service_sid is not None
            else TWILIO_MESSAGING_SERVICE_SID
        )
        self._status_callback_url = (
            status_callback_url
            if status_callback_url is not None
            else SMS_STATUS_CALLBACK_URL
        )
        self._client = httpx.Client(
            base_url=base_url or TWILIO_BASE_URL,
            auth=(self._account_sid, auth_token or TWILIO_AUTH_TOKEN),
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

    # ── Internal helpers ─────────────────────────────────────────────

    def _post(self, path: str, form: dict[str, str]) -> dict[str, Any]:
        """POST a form with exponential-backoff retries on connect errors."""
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = self._client.post(path, data=form)
            except httpx.ConnectError as exc:
                last_error = exc
                backoff = INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1))
                logger.warning(
                    "Twilio API attempt %d/%d failed (%s). Retrying in %.1fs…",
                    attempt,
                    MAX_RETRIES,
                    type(exc).__name__,
                    backoff,
                )
                time.sleep(backoff)
                continue
            except httpx.HTTPError as exc:
                raise TransportError(f"Twilio request failed: {type(exc).__name__}") from exc

            data = _json_or_empty(response)
            if response.status_code >= 400:
                code = data.get("code")
                raise TransportError(
                    f"Twilio error: {data.get('message') or f'HTTP {response.status_code}'}",
                    status_code=response.status_code,
                    error_code=code if isinstance(code, int) else None,
                )
            return data

        raise TransportError(
            f"Twilio API request failed after {MAX_RETRIES} retries: {last_error}"
        )

    # ── Public API methods ───────────────────────────────────────────

    def send_message(self, to: str, body: str) -> str:
        """Send an SMS and return the Twilio message SID.

        A messaging service SID is preferred over a bare ``From`` number
        when both are configured.  Bodies over 1500 characters are truncated.
        """
        if len(body) > MAX_BODY_CHARS:
            body = body[: MAX_BODY_CHARS - 3] + "..."

        form: dict[str, str] = {"To": to, "Body": body}
        if self._messaging_service_sid:
            form["MessagingServiceSid"] = self._messaging_service_sid
        else:
            form["From"] = self._from_number
        if self._status_callback_url:
            form["StatusCallback"] = self._status_callback_url

        data = self._post(f"/2010-04-01/Accounts/{self._account_sid}/Messages.json", form)
        sid = data.get("sid")
        if not sid:
            raise TransportError("Twilio response missing message sid")
        return sid

    def close(self) -> None:
        self._client.close()


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def twilio_configured() -> bool:
    """Whether credentials and a sender are present in the environment."""
    return bool(
        TWILIO_ACCOUNT_SID
        and TWILIO_AUTH_TOKEN
        and (TWILIO_PHONE_NUMBER or TWILIO_MESSAGING_SERVICE_SID)
    )


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: TwilioClient | None = None
_client_lock = threading.Lock()


def get_twilio_client() -> TwilioClient:
    """Return a module-level TwilioClient singleton.

    Uses double-checked locking so that the lock is only acquired during
    the first initialisation, not on every subsequent call.
    """
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = TwilioClient()
    return _client
