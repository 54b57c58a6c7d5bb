"""CloudWatch custom metrics for the booking firewall.

Three families are published under the ``BookingFirewall`` namespace:

* ``Validation/*``: one data point per decision, dimensioned by outcome,
  operation and hallucination type, plus the confidence score.
* ``ExternalCall/*``: count / latency / errors for every collaborator the
  firewall calls (validator LLM, scheduling store, settings store).
* ``Audit/DroppedWrites``: audit entries given up on after retries.

Data points are buffered in memory and pushed by a daemon thread every
``FLUSH_INTERVAL_SECONDS``.  Unless ``METRICS_ENABLED=true`` nothing
leaves the process; the points are only logged at DEBUG level.

>>> from src.services.metrics import metrics
>>> metrics.record_decision("create_appointment", "block", "invented_provider", confidence=None)
>>> metrics.record_call_failure("scheduling", "list_appointments", error_type="ReadTimeout")
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "BookingFirewall"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # PutMetricData limit per request


def _dims(**pairs: str) -> list[dict[str, str]]:
    return [{"Name": name, "Value": value} for name, value in pairs.items()]


class MetricsClient:
    """Buffered CloudWatch publisher."""

    def __init__(self) -> None:
        self._enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None

        if self._enabled:
            self._start_flush_thread()

    def _get_cw_client(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Validation decisions ─────────────────────────────────────────

    def record_decision(
        self,
        operation: str,
        outcome: str,
        hallucination_type: str,
        confidence: float | None = None,
        latency_ms: float = 0,
    ) -> None:
        self._put("Validation/Decisions", _dims(Operation=operation, Outcome=outcome), 1, "Count")
        if hallucination_type != "none":
            self._put(
                "Validation/Hallucinations",
                _dims(Operation=operation, Type=hallucination_type),
                1,
                "Count",
            )
        if confidence is not None:
            self._put("Validation/Confidence", _dims(Operation=operation), confidence, "None")
        if latency_ms > 0:
            self._put("Validation/Latency", _dims(Operation=operation), latency_ms, "Milliseconds")
        logger.debug(
            "Metric: decision %s %s type=%s confidence=%s",
            operation, outcome, hallucination_type, confidence,
        )

    # ── External collaborators ───────────────────────────────────────

    def record_call_success(self, service: str, operation: str, latency_ms: float) -> None:
        self._put("ExternalCall/RequestCount", _dims(Service=service, Status="success"), 1, "Count")
        self._put(
            "ExternalCall/Latency",
            _dims(Service=service, Operation=operation),
            latency_ms,
            "Milliseconds",
        )
        logger.debug("Metric: %s %s success latency=%.1fms", service, operation, latency_ms)

    def record_call_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        self._put("ExternalCall/RequestCount", _dims(Service=service, Status="failure"), 1, "Count")
        self._put("ExternalCall/ErrorCount", _dims(Service=service, ErrorType=error_type), 1, "Count")
        if latency_ms > 0:
            self._put(
                "ExternalCall/Latency",
                _dims(Service=service, Operation=operation),
                latency_ms,
                "Milliseconds",
            )
        logger.debug(
            "Metric: %s %s failure error=%s latency=%.1fms",
            service, operation, error_type, latency_ms,
        )

    # ── Audit health ─────────────────────────────────────────────────

    def record_audit_dropped(self, error_type: str) -> None:
        self._put("Audit/DroppedWrites", _dims(ErrorType=error_type), 1, "Count")

    # ── Flushing ─────────────────────────────────────────────────────

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
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        return sent

    def _put(self, name: str, dimensions: list[dict[str, str]], value: float, unit: str) -> None:
        point = {
            "MetricName": name,
            "Dimensions": dimensions,
            "Timestamp": datetime.now(UTC),
            "Value": value,
            "Unit": unit,
        }
        with self._lock:
            self._buffer.append(point)

    def _start_flush_thread(self) -> None:
        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        t = threading.Thread(target=_loop, daemon=True, name="metrics-flush")
        t.start()
        atexit.register(self.flush)
        logger.info("Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS)


metrics = MetricsClient()
