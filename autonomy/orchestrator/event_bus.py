"""Domain event bus: synchronous publish/subscribe with auto-audit.

``emit`` does three things, in order:

1. appends ``{name, tenant_id, timestamp}`` to a bounded ring buffer
   (newest 200, for the status endpoint);
2. writes a redacted ``domain.<name>`` audit entry (best-effort);
3. calls every handler registered for the event name, in registration
   order.  Each handler runs inside its own ``try`` so one failing handler
   never stops the others or propagates to the emitter.

The bus carries no business logic.  One instance is built at start-up and
passed to whoever needs it; tests call ``remove_all_listeners()``.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from typing import Any

from autonomy.audit import AuditLogger
from autonomy.domain.events import DomainEvent

logger = logging.getLogger(__name__)

RECENT_EVENTS_CAPACITY = 200

EventHandler = Callable[[Any], None]


class DomainEventBus:
    def __init__(self, audit: AuditLogger, *, capacity: int = RECENT_EVENTS_CAPACITY):
        self._audit = audit
        self._handlers: dict[str, list[EventHandler]] = {}
        self._recent: deque[dict[str, Any]] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def on(self, name: str, handler: EventHandler) -> None:
        with self._lock:
            self._handlers.setdefault(name, []).append(handler)

    def emit(self, event: DomainEvent) -> None:
        with self._lock:
            self._recent.append(
                {
                    "name": event.name,
                    "tenant_id": event.tenant_id,
                    "timestamp": event.timestamp.isoformat(),
                }
            )
            handlers = list(self._handlers.get(event.name, ()))

        self._audit.log(
            tenant_id=event.tenant_id,
            event_type=f"domain.{event.name}",
            entity_type="event",
            actor="event_bus",
            payload=event.model_dump(exclude={"name", "tenant_id", "timestamp"}),
        )

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s failed for %s",
                    getattr(handler, "__name__", repr(handler)),
                    event.name,
                )

    def listener_count(self, name: str) -> int:
        with self._lock:
            return len(self._handlers.get(name, ()))

    def get_recent_events(self) -> list[dict[str, Any]]:
        """Oldest first."""
        with self._lock:
            return list(self._recent)

    def remove_all_listeners(self) -> None:
        with self._lock:
            self._handlers.clear()
