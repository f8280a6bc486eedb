"""Delivery counters with optional CloudWatch publishing.

Every terminal path of the outbound delivery gateway (and a few booking
funnel events) increments exactly one of a fixed set of named counters.
The counters are always readable in-process (``snapshot()``) and exposed
on ``GET /api/autonomy/metrics``.

Design
------
* Counters live in a dict guarded by a ``threading.Lock``.
* Increments are also buffered as CloudWatch data points.  A daemon thread
  flushes the buffer every ``FLUSH_INTERVAL_SECONDS`` (default 60 s) when
  ``METRICS_ENABLED=true``; otherwise the buffer is discarded on flush.
* Each ``put_metric_data`` call sends up to 1 000 data points (the
  CloudWatch API limit per request).

Usage
-----
>>> from autonomy.services.metrics import MetricsClient
>>> metrics = MetricsClient(enabled=False)
>>> metrics.inc("sent")
>>> metrics.get("sent")
1
"""

from __future__ import annotations

import atexit
import logging
import threading
from datetime import UTC, datetime
from typing import Any

from autonomy.config import METRICS_ENABLED, METRICS_NAMESPACE

logger = logging.getLogger(__name__)

FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call

COUNTER_NAMES: tuple[str, ...] = (
    "sent",
    "failed",
    "queued",
    "retry_scheduled",
    "retry_succeeded",
    "retry_aborted",
    "blocked_outbound_disabled",
    "blocked_retry_disabled",
    "blocked_quiet_hours_disabled",
    "help",
    "stop",
    "start",
    "booking_web",
    "booking_sms",
    "confirmation_sent",
    "confirmation_failed",
)


class MetricsClient:
    """Named delivery counters plus a batched CloudWatch publisher."""

    def __init__(
        self,
        *,
        enabled: bool | None = None,
        namespace: str = METRICS_NAMESPACE,
        start_flush_thread: bool = True,
    ) -> None:
        self._enabled = METRICS_ENABLED if enabled is None else enabled
        self._namespace = namespace
        self._counters: dict[str, int] = dict.fromkeys(COUNTER_NAMES, 0)
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None  # lazy-init
        self._stop = threading.Event()

        if self._enabled and start_flush_thread:
            self._start_flush_thread()

    # ── Lazy CloudWatch client ────────────────────────────────────────

    def _get_cw_client(self):
        """Create the boto3 CloudWatch client on first use."""
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Public API ────────────────────────────────────────────────────

    def inc(self, name: str, amount: int = 1) -> None:
        """Increment counter *name*.  Unknown names raise ``KeyError``."""
        if name not in self._counters:
            raise KeyError(f"Unknown metric counter: {name}")
        with self._lock:
            self._counters[name] += amount
            if self._enabled:
                self._buffer.append(
                    {
                        "MetricName": f"SMS/{name}",
                        "Timestamp": datetime.now(UTC),
                        "Value": amount,
                        "Unit": "Count",
                    }
                )
        logger.debug("Metric: %s +%d", name, amount)

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters[name]

    def snapshot(self) -> dict[str, int]:
        """Return a copy of every counter."""
        with self._lock:
            return dict(self._counters)

    def reset(self) -> None:
        """Zero every counter and drop unsent data points."""
        with self._lock:
            for name in self._counters:
                self._counters[name] = 0
            self._buffer.clear()

    def flush(self) -> int:
        """Send buffered data points to CloudWatch.  Returns count sent."""
        with self._lock:
            if not self._buffer:
                return 0
            batch = self._buffer[:]
            self._buffer.clear()

        if not self._enabled:
            logger.debug("Metrics flush skipped (not enabled): %d items", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for i in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[i : i + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=self._namespace, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        return sent

    def close(self) -> None:
        """Stop the flush thread (if any) and flush once more."""
        self._stop.set()
        self.flush()

    # ── Internal ──────────────────────────────────────────────────────

    def _start_flush_thread(self) -> None:
        """Start a daemon thread that flushes metrics periodically."""

        def _loop():
            while not self._stop.wait(FLUSH_INTERVAL_SECONDS):
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        t = threading.Thread(target=_loop, daemon=True, name="metrics-flush")
        t.start()
        atexit.register(self.flush)  # flush on process exit
        logger.info(
            "Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS,
        )

