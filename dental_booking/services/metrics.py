"""CloudWatch custom metrics for every external call the backend makes.

Each call to Dentally, Stripe, ClickSend, Anthropic or the ElevenLabs
conversation socket becomes up to three data points in the
``DentalBooking`` namespace:

* ``ExternalAPI/RequestCount``  by Service and Status (success / failure)
* ``ExternalAPI/ErrorCount``    by Service and ErrorType, failures only
* ``ExternalAPI/Latency``       by Service and Operation, when timed

Points are buffered in memory and pushed by a daemon thread every
``FLUSH_INTERVAL_SECONDS``.  With ``METRICS_ENABLED`` unset (local runs,
tests) they are only logged at DEBUG.

Usage
-----
>>> from dental_booking.services.metrics import metrics
>>> with metrics.track("dentally", "GET /practitioners"):
...     client.list_practitioners()
>>> metrics.record("elevenlabs", "connect", error_type="ConnectionClosedError")
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "DentalBooking"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # PutMetricData limit


def _point(
    name: str, dimensions: dict[str, str], value: float, unit: str, at: datetime,
) -> dict[str, Any]:
    return {
        "MetricName": name,
        "Dimensions": [{"Name": k, "Value": v} for k, v in dimensions.items()],
        "Timestamp": at,
        "Value": value,
        "Unit": unit,
    }


class MetricsClient:
    """Buffers external-call metrics and ships them to CloudWatch in batches."""

    def __init__(self) -> None:
        self._enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._cw_client = None

        if self._enabled:
            threading.Thread(target=self._flush_loop, daemon=True, name="metrics-flush").start()
            atexit.register(self.close)
            logger.info("Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS)

    def record(
        self,
        service: str,
        operation: str,
        *,
        latency_ms: float | None = None,
        error_type: str | None = None,
    ) -> None:
        """Buffer one external call.  A non-empty *error_type* marks it failed."""
        now = datetime.now(UTC)
        status = "failure" if error_type else "success"
        points = [
            _point("ExternalAPI/RequestCount", {"Service": service, "Status": status}, 1, "Count", now),
        ]
        if error_type:
            points.append(_point(
                "ExternalAPI/ErrorCount", {"Service": service, "ErrorType": error_type}, 1, "Count", now,
            ))
        if latency_ms is not None:
            points.append(_point(
                "ExternalAPI/Latency", {"Service": service, "Operation": operation},
                latency_ms, "Milliseconds", now,
            ))
        with self._lock:
            self._buffer.extend(points)
        logger.debug(
            "Metric: %s %s %s%s", service, operation, status,
            f" error={error_type}" if error_type else "",
        )

    @contextmanager
    def track(self, service: str, operation: str) -> Iterator[None]:
        """Time the wrapped block; any exception is recorded by type and re-raised."""
        t0 = time.perf_counter()
        try:
            yield
        except Exception as exc:
            self.record(
                service, operation,
                latency_ms=(time.perf_counter() - t0) * 1000,
                error_type=type(exc).__name__,
            )
            raise
        self.record(service, operation, latency_ms=(time.perf_counter() - t0) * 1000)

    def flush(self) -> int:
        """Send buffered metrics to CloudWatch.  Returns count sent."""
        with self._lock:
            batch, self._buffer = self._buffer, []
        if not batch:
            return 0
        if not self._enabled:
            logger.debug("Metrics flush skipped (not enabled): %d items", len(batch))
            return 0

        sent = 0
        try:
            if self._cw_client is None:
                import boto3

                self._cw_client = boto3.client("cloudwatch")
            for i in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[i : i + MAX_BATCH_SIZE]
                self._cw_client.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        return sent

    def close(self) -> None:
        """Stop the flush thread and push whatever is still buffered."""
        self._stop.set()
        self.flush()

    def _flush_loop(self) -> None:
        while not self._stop.wait(FLUSH_INTERVAL_SECONDS):
            self.flush()


metrics = MetricsClient()
