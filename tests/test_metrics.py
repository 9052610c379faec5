"""Tests for the CloudWatch metrics client."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from sdr_agent.services.metrics import NAMESPACE, MetricsClient


def _make_client(*, enabled: bool = False) -> MetricsClient:
    with patch.dict("os.environ", {"METRICS_ENABLED": str(enabled).lower()}), \
            patch.object(MetricsClient, "_start_flush_thread"):
        return MetricsClient()


def _dimensions(datum) -> dict[str, str]:
    return {d["Name"]: d["Value"] for d in datum["Dimensions"]}


class TestMetricsRecording:
    """Verify that the record_* helpers buffer the right data."""

    def test_record_success_appends_count_and_latency(self):
        client = _make_client()
        client.record_success("evolution", "POST /message/sendText", latency_ms=123.4)
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"ExternalAPI/RequestCount", "ExternalAPI/Latency"}

    def test_record_failure_without_latency(self):
        client = _make_client()
        client.record_failure("anthropic", "llm_invoke", error_type="timeout")
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"ExternalAPI/RequestCount", "ExternalAPI/ErrorCount"}

    def test_failure_dimensions_include_error_type(self):
        client = _make_client()
        client.record_failure("google_calendar", "freeBusy", error_type="5xx", latency_ms=40.0)
        error_metric = next(m for m in client._buffer if m["MetricName"] == "ExternalAPI/ErrorCount")
        assert _dimensions(error_metric) == {"Service": "google_calendar", "ErrorType": "5xx"}
        assert len(client._buffer) == 3

    def test_record_count_with_dimensions(self):
        client = _make_client()
        client.record_count("Queue/DeadLettered", 2, Queue="whatsapp_messages")
        datum = client._buffer[0]
        assert datum["MetricName"] == "Queue/DeadLettered"
        assert datum["Value"] == 2
        assert datum["Unit"] == "Count"
        assert _dimensions(datum) == {"Queue": "whatsapp_messages"}


class TestTrack:
    def test_success_is_recorded(self):
        client = _make_client()
        with client.track("scheduling", "create_event"):
            pass
        count = next(m for m in client._buffer if m["MetricName"] == "ExternalAPI/RequestCount")
        assert _dimensions(count)["Status"] == "success"

    def test_failure_is_recorded_and_reraised(self):
        client = _make_client()
        with pytest.raises(KeyError), client.track("scheduling", "create_event"):
            raise KeyError("boom")
        error = next(m for m in client._buffer if m["MetricName"] == "ExternalAPI/ErrorCount")
        assert _dimensions(error)["ErrorType"] == "KeyError"


class TestMetricsFlush:
    """Verify flush behaviour with and without CloudWatch enabled."""

    def test_flush_when_disabled_sends_nothing_and_clears(self):
        client = _make_client()
        client.record_success("evolution", "GET /chat/findChats", latency_ms=100.0)
        assert client.flush() == 0
        assert client._buffer == []

    def test_flush_when_enabled_calls_put_metric_data(self):
        client = _make_client(enabled=True)
        mock_cw = MagicMock()
        client._cw_client = mock_cw  # inject mock

        client.record_success("evolution", "GET /chat/findChats", latency_ms=100.0)
        sent = client.flush()

        assert sent == 2
        kwargs = mock_cw.put_metric_data.call_args.kwargs
        assert kwargs["Namespace"] == NAMESPACE
        assert len(kwargs["MetricData"]) == 2

    def test_flush_batches_large_buffers(self):
        client = _make_client(enabled=True)
        mock_cw = MagicMock()
        client._cw_client = mock_cw
        for _ in range(1_500):
            client.record_count("Reactivation/Sent")

        assert client.flush() == 1_500
        assert mock_cw.put_metric_data.call_count == 2

    def test_flush_failure_is_logged_not_raised(self):
        client = _make_client(enabled=True)
        mock_cw = MagicMock()
        mock_cw.put_metric_data.side_effect = RuntimeError("throttled")
        client._cw_client = mock_cw
        client.record_count("Reactivation/Sent")
        assert client.flush() == 0

    def test_flush_empty_buffer_returns_zero(self):
        assert _make_client(enabled=True).flush() == 0
