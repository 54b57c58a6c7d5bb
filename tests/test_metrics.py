"""Tests for the CloudWatch metrics client."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from src.services.metrics import NAMESPACE, MetricsClient


def _make_client(*, enabled: bool = False) -> MetricsClient:
    with patch.dict("os.environ", {"METRICS_ENABLED": str(enabled).lower()}):
        return MetricsClient()


def _dim_map(point: dict) -> dict[str, str]:
    return {d["Name"]: d["Value"] for d in point["Dimensions"]}


class TestDecisionMetrics:
    def test_allow_records_decision_and_confidence_only(self):
        client = _make_client()
        client.record_decision("create_appointment", "allow", "none", confidence=0.92)
        names = [m["MetricName"] for m in client._buffer]
        assert names == ["Validation/Decisions", "Validation/Confidence"]

    def test_block_records_hallucination_type(self):
        client = _make_client()
        client.record_decision("create_appointment", "block", "invented_provider")
        hallucination = next(
            m for m in client._buffer if m["MetricName"] == "Validation/Hallucinations"
        )
        dims = _dim_map(hallucination)
        assert dims["Type"] == "invented_provider"
        assert dims["Operation"] == "create_appointment"

    def test_latency_recorded_when_positive(self):
        client = _make_client()
        client.record_decision("create_patient", "allow", "none", latency_ms=42.0)
        latency = next(m for m in client._buffer if m["MetricName"] == "Validation/Latency")
        assert latency["Value"] == 42.0
        assert latency["Unit"] == "Milliseconds"


class TestExternalCallMetrics:
    def test_record_call_success_appends_two_data_points(self):
        client = _make_client()
        client.record_call_success("scheduling", "list_appointments", latency_ms=123.4)
        assert len(client._buffer) == 2
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"ExternalCall/RequestCount", "ExternalCall/Latency"}

    def test_record_call_failure_without_latency(self):
        client = _make_client()
        client.record_call_failure("validator_llm", "confidence", error_type="timeout")
        assert len(client._buffer) == 2
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"ExternalCall/RequestCount", "ExternalCall/ErrorCount"}

    def test_record_call_failure_with_latency_appends_three_points(self):
        client = _make_client()
        client.record_call_failure("settings", "GET", error_type="ConnectError", latency_ms=500.0)
        assert len(client._buffer) == 3

    def test_failure_dimensions_include_error_type(self):
        client = _make_client()
        client.record_call_failure("scheduling", "list_appointments", error_type="ReadTimeout")
        error_metric = next(
            m for m in client._buffer if m["MetricName"] == "ExternalCall/ErrorCount"
        )
        assert _dim_map(error_metric)["ErrorType"] == "ReadTimeout"

    def test_audit_dropped(self):
        client = _make_client()
        client.record_audit_dropped("OperationalError")
        assert client._buffer[0]["MetricName"] == "Audit/DroppedWrites"
        assert _dim_map(client._buffer[0]) == {"ErrorType": "OperationalError"}


class TestMetricsFlush:
    def test_flush_when_disabled_does_not_call_boto3(self):
        client = _make_client()
        client.record_call_success("scheduling", "list_appointments", latency_ms=100.0)
        assert client.flush() == 0

    def test_flush_clears_buffer(self):
        client = _make_client()
        client.record_call_success("scheduling", "list_appointments", latency_ms=100.0)
        assert len(client._buffer) == 2
        client.flush()
        assert len(client._buffer) == 0

    def test_flush_when_enabled_calls_put_metric_data(self):
        with patch.object(MetricsClient, "_start_flush_thread"):
            client = _make_client(enabled=True)
        mock_cw = MagicMock()
        client._cw_client = mock_cw

        client.record_call_success("scheduling", "list_appointments", latency_ms=100.0)
        sent = client.flush()

        assert sent == 2
        mock_cw.put_metric_data.assert_called_once()
        call_args = mock_cw.put_metric_data.call_args
        assert call_args[1]["Namespace"] == NAMESPACE == "BookingFirewall"
        assert len(call_args[1]["MetricData"]) == 2

    def test_flush_survives_cloudwatch_error(self):
        with patch.object(MetricsClient, "_start_flush_thread"):
            client = _make_client(enabled=True)
        client._cw_client = MagicMock()
        client._cw_client.put_metric_data.side_effect = RuntimeError("throttled")
        client.record_audit_dropped("OperationalError")
        assert client.flush() == 0
