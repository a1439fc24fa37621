"""CloudWatch metrics for provider calls and tool executions.

Every AI provider round (service ``openai``/``anthropic``, operation
``chat_completion``) and every tool execution (service ``tools``, operation
= tool name) is recorded as:

* ``Engine/RequestCount``: dimensions Service + Status (success/failure)
* ``Engine/ErrorCount``: dimensions Service + ErrorType, failures only
* ``Engine/Latency``: dimensions Service + Operation, in milliseconds

Data points are buffered and pushed in batches by a daemon thread.  With
``METRICS_ENABLED`` unset (tests, local runs) nothing leaves the process;
the buffer is still filled and drained so behaviour is identical.

>>> from messagehub.services.metrics import metrics
>>> metrics.record_success("openai", "chat_completion", latency_ms=812.0)
>>> metrics.record_failure("tools", "create_order", error_type="ValidationError")
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "MessageHub"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # PutMetricData limit


def _datum(name: str, dimensions: dict[str, str], value: float, unit: str, at: datetime) -> dict[str, Any]:
    return {
        "MetricName": f"Engine/{name}",
        "Dimensions": [{"Name": k, "Value": v} for k, v in dimensions.items()],
        "Timestamp": at,
        "Value": value,
        "Unit": unit,
    }


class MetricsClient:
    """Buffers metric data points and publishes them to CloudWatch."""

    def __init__(self) -> None:
        self._enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._cw_client = None

        if self._enabled:
            self._start_flush_thread()

    def _cloudwatch(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        now = datetime.now(UTC)
        self._extend([
            _datum("RequestCount", {"Service": service, "Status": "success"}, 1, "Count", now),
            _datum("Latency", {"Service": service, "Operation": operation}, latency_ms, "Milliseconds", now),
        ])

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        """Record a failed call; latency is only recorded when known."""
        now = datetime.now(UTC)
        points = [
            _datum("RequestCount", {"Service": service, "Status": "failure"}, 1, "Count", now),
            _datum("ErrorCount", {"Service": service, "ErrorType": error_type}, 1, "Count", now),
        ]
        if latency_ms > 0:
            points.append(
                _datum("Latency", {"Service": service, "Operation": operation}, latency_ms, "Milliseconds", now)
            )
        self._extend(points)
        logger.debug("%s %s failed (%s)", service, operation, error_type)

    def flush(self) -> int:
        """Publish and clear the buffer.  Returns the number of points sent."""
        with self._lock:
            batch, self._buffer = self._buffer, []
        if not batch or not self._enabled:
            return 0

        sent = 0
        try:
            cloudwatch = self._cloudwatch()
            for start in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[start:start + MAX_BATCH_SIZE]
                cloudwatch.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
        except Exception:
            logger.exception("Publishing %d metric points to CloudWatch failed", len(batch) - sent)
        else:
            logger.info("Published %d metric points", sent)
        return sent

    def close(self) -> None:
        """Stop the flush thread and publish what is left."""
        self._stop.set()
        self.flush()

    def _extend(self, points: list[dict[str, Any]]) -> None:
        with self._lock:
            self._buffer.extend(points)

    def _start_flush_thread(self) -> None:
        def _loop():
            while not self._stop.wait(FLUSH_INTERVAL_SECONDS):
                self.flush()

        threading.Thread(target=_loop, daemon=True, name="metrics-flush").start()
        atexit.register(self.close)
        logger.info("CloudWatch metrics enabled (flush every %ds)", FLUSH_INTERVAL_SECONDS)


metrics = MetricsClient()
