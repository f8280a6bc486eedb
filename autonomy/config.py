"""Centralized configuration for the booking autonomy runtime.

Every value is read once at import time from the environment (or a
``.env`` file in local dev).  Components take these as constructor
defaults so tests can inject their own values without patching the module.

Per-tenant switches (outbound/retry/quiet-hours kill switches, quiet window,
timezone) are *not* here: they live on ``TenantConfig`` and come from the
tenant store.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str) -> bool:
    """Read a ``"true"/"false"`` environment flag."""
    return os.getenv(name, default).strip().lower() == "true"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


# ── Kill switches ───────────────────────────────────────────────────
AUTONOMY_ENABLED: bool = _env_flag("AUTONOMY_ENABLED", "false")
FEATURE_SMS: bool = _env_flag("FEATURE_SMS", "true")

# ── Job runner ──────────────────────────────────────────────────────
AGENT_MAX_CONCURRENT_JOBS: int = _env_int("AGENT_MAX_CONCURRENT_JOBS", 3)
AGENT_JOB_POLL_INTERVAL_SECONDS: float = _env_float("AGENT_JOB_POLL_INTERVAL_SECONDS", 5.0)
AGENT_JOB_STALE_TIMEOUT_SECONDS: float = _env_float("AGENT_JOB_STALE_TIMEOUT_SECONDS", 300.0)
AGENT_STALE_RECLAIM_INTERVAL_SECONDS: float = _env_float(
    "AGENT_STALE_RECLAIM_INTERVAL_SECONDS", 60.0,
)
AGENT_SHUTDOWN_DRAIN_SECONDS: float = _env_float("AGENT_SHUTDOWN_DRAIN_SECONDS", 10.0)

JOB_DEFAULT_MAX_ATTEMPTS: int = 3
JOB_RETRY_BASE_SECONDS: float = _env_float("JOB_RETRY_BASE_SECONDS", 30.0)
JOB_RETRY_MAX_SECONDS: float = _env_float("JOB_RETRY_MAX_SECONDS", 900.0)
JOB_RETRY_JITTER: float = _env_float("JOB_RETRY_JITTER", 0.2)

# ── Outbound SMS ────────────────────────────────────────────────────
SMS_OUTBOX_POLL_INTERVAL_SECONDS: float = _env_float("SMS_OUTBOX_POLL_INTERVAL_SECONDS", 30.0)
SMS_OUTBOX_BATCH_SIZE: int = _env_int("SMS_OUTBOX_BATCH_SIZE", 5)
SMS_MAX_ATTEMPTS: int = _env_int("SMS_MAX_ATTEMPTS", 3)
# Index 0 = delay after the 1st failed attempt, index 1 = after the 2nd.
SMS_RETRY_BACKOFF_SECONDS: tuple[int, ...] = (2 * 60, 10 * 60)
SMS_RATE_LIMIT_MAX: int = _env_int("SMS_RATE_LIMIT_MAX", 3)
SMS_RATE_LIMIT_WINDOW_MINUTES: int = _env_int("SMS_RATE_LIMIT_WINDOW_MINUTES", 60)

DEFAULT_TIMEZONE: str = os.getenv("DEFAULT_TIMEZONE", "America/New_York")
DEFAULT_QUIET_HOURS_START: str = "21:00"
DEFAULT_QUIET_HOURS_END: str = "08:00"

# ── Workflows ───────────────────────────────────────────────────────
CALENDAR_RETRY_MAX: int = _env_int("CALENDAR_RETRY_MAX", 3)
# attempt 1 → 30s, 2 → 120s, 3 → 480s
CALENDAR_RETRY_BACKOFF_SECONDS: tuple[int, ...] = (30, 120, 480)
HOLD_FOLLOWUP_COOLDOWN_MINUTES: int = _env_int("HOLD_FOLLOWUP_COOLDOWN_MINUTES", 30)
WAITLIST_NOTIFY_LIMIT: int = 5

# ── Twilio ──────────────────────────────────────────────────────────
TWILIO_ACCOUNT_SID: str = os.getenv("TWILIO_ACCOUNT_SID", "")
TWILIO_AUTH_TOKEN: str = os.getenv("TWILIO_AUTH_TOKEN", "")
TWILIO_PHONE_NUMBER: str = os.getenv("TWILIO_PHONE_NUMBER", "")
TWILIO_MESSAGING_SERVICE_SID: str = os.getenv("TWILIO_MESSAGING_SERVICE_SID", "")
TWILIO_BASE_URL: str = "https://api.twilio.com"
SMS_STATUS_CALLBACK_URL: str = os.getenv("SMS_STATUS_CALLBACK_URL", "")

# ── Metrics ─────────────────────────────────────────────────────────
METRICS_ENABLED: bool = _env_flag("METRICS_ENABLED", "false")
METRICS_NAMESPACE: str = os.getenv("METRICS_NAMESPACE", "BookingAutonomy")

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = _env_int("SERVER_PORT", 8000)
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
# Load the demo tenant and bookings into the in-memory stores at start-up
SEED_DEMO_DATA: bool = _env_flag("SEED_DEMO_DATA", "false")
