"""PII redaction and the best-effort audit logger.

Redaction strategy
──────────────────
• Known PII field names (``client_email``, ``phone``, ...) are replaced with
  ``[REDACTED]`` wherever they appear, at any nesting depth.
• Field names matching a small set of patterns (``email``, ``token``,
  ``secret`` ...) are treated the same way, so new payload keys are covered
  without a code change.
• Everything else passes through.  The audit log is still an internal table
  and must not be exposed to untrusted consumers.

Auditing is telemetry: ``AuditLogger.log`` never raises, whatever the sink
does.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel

from autonomy.domain.models import AuditEntry
from autonomy.interfaces import AuditSink

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

PII_FIELDS = frozenset({
    "client_email",
    "client_name",
    "client_notes",
    "client_phone",
    "customer_email",
    "customer_phone",
    "display_name",
    "email",
    "name",
    "phone",
    "caller_phone",
    "callerPhone",
    "recipient",
    "first_name",
    "body",
    "access_token",
    "refresh_token",
    "google_oauth_tokens",
})

PII_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (r"email", r"phone", r"token", r"password", r"secret", r"ssn")
)


def is_pii_field(key: str) -> bool:
    if key in PII_FIELDS:
        return True
    return any(p.search(key) for p in PII_PATTERNS)


def redact_pii(value: Any) -> dict[str, Any]:
    """Return a deep copy of *value* with PII field values replaced.

    ``None`` or anything that is not a mapping (or pydantic model) yields
    an empty dict.

    >>> redact_pii({"client_email": "a@b.com", "reference_code": "APT-1"})
    {'client_email': '[REDACTED]', 'reference_code': 'APT-1'}
    """
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="python")
    if not isinstance(value, Mapping):
        return {}
    return _redact_mapping(value)


def _redact_mapping(obj: Mapping[Any, Any]) -> dict[str, Any]:
    return {str(key): _redact_value(str(key), item) for key, item in obj.items()}


def _redact_value(key: str, value: Any) -> Any:
    if is_pii_field(key):
        return REDACTED
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return _redact_mapping(value.model_dump(mode="python"))
    if isinstance(value, Mapping):
        return _redact_mapping(value)
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_redact_value(str(i), item) for i, item in enumerate(value)]
    return value


def mask(value: str | None, keep: int = 4) -> str:
    """``"SM1234abcd"`` → ``"…abcd"``; used for ids in logs."""
    if not value:
        return "none"
    return f"…{value[-keep:]}"


# ── Audit logger ─────────────────────────────────────────────────────


class AuditLogger:
    """Redacts, builds the ``AuditEntry`` and writes it to the sink."""

    def __init__(self, sink: AuditSink) -> None:
        self._sink = sink

    def log(
        self,
        *,
        tenant_id: str | None,
        event_type: str,
        entity_type: str,
        actor: str,
        entity_id: str | None = None,
        payload: Any = None,
    ) -> None:
        try:
            entry = AuditEntry(
                tenant_id=tenant_id,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                actor=actor,
                payload=redact_pii(payload),
            )
            self._sink.log(entry)
        except Exception:
            logger.exception("Audit log failed for %s", event_type)


class LoggingAuditSink:
    """Writes each entry as a JSON line to the ``autonomy.audit`` logger."""

    def __init__(self, log_name: str = "autonomy.audit") -> None:
        self._log = logging.getLogger(log_name)

    def log(self, entry: AuditEntry) -> None:
        self._log.info(json.dumps(entry.model_dump(mode="json"), sort_keys=True))


class InMemoryAuditSink:
    """Keeps entries in a list.  Used by tests and the demo server."""

    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    def log(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

    def by_type(self, event_type: str) -> list[AuditEntry]:
        return [e for e in self.entries if e.event_type == event_type]
