"""Quiet hours: the tenant-local window in which outbound SMS is deferred.

Pure functions of a reference time and a ``QuietHoursConfig``.  Windows
may span midnight (the default ``21:00–08:00`` does).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta
from zoneinfo import ZoneInfo

from autonomy.config import (
    DEFAULT_QUIET_HOURS_END,
    DEFAULT_QUIET_HOURS_START,
    DEFAULT_TIMEZONE,
)
from autonomy.domain.models import TenantConfig


@dataclass(frozen=True)
class QuietHoursConfig:
    start: str = DEFAULT_QUIET_HOURS_START  # "HH:MM"
    end: str = DEFAULT_QUIET_HOURS_END
    timezone: str = DEFAULT_TIMEZONE


def tenant_quiet_hours(tenant: TenantConfig) -> QuietHoursConfig:
    return QuietHoursConfig(
        start=tenant.quiet_hours_start or DEFAULT_QUIET_HOURS_START,
        end=tenant.quiet_hours_end or DEFAULT_QUIET_HOURS_END,
        timezone=tenant.timezone or DEFAULT_TIMEZONE,
    )


def _parse_hhmm(value: str) -> time:
    hours, _, minutes = value.partition(":")
    return time(int(hours), int(minutes or 0))


def _minutes(t: time) -> int:
    return t.hour * 60 + t.minute


def is_quiet_hours(now: datetime, config: QuietHoursConfig) -> bool:
    """True when *now* falls inside the tenant-local quiet window.

    The window is half-open: ``start`` is quiet, ``end`` is not.
    """
    local = now.astimezone(ZoneInfo(config.timezone))
    current = local.hour * 60 + local.minute
    start = _minutes(_parse_hhmm(config.start))
    end = _minutes(_parse_hhmm(config.end))

    if start == end:
        return False
    if start < end:
        return start <= current < end
    # Overnight window
    return current >= start or current < end


def next_allowed_send_time(now: datetime, config: QuietHoursConfig) -> datetime:
    """The first moment at or after *now* that is outside quiet hours, in UTC.

    Outside quiet hours this is *now*.  Inside, it is the next local
    occurrence of ``end`` strictly after *now*, resolved through the
    tenant's zone so DST transitions land on the right wall-clock time.
    """
    if not is_quiet_hours(now, config):
        return now

    tz = ZoneInfo(config.timezone)
    local = now.astimezone(tz)
    end = _parse_hhmm(config.end)
    target = datetime.combine(local.date(), end, tzinfo=tz)
    if target <= local:
        target = datetime.combine(local.date() + timedelta(days=1), end, tzinfo=tz)
    return target.astimezone(UTC)
