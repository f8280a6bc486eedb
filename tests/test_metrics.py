"""Tests for the delivery counters and the CloudWatch publisher."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from autonomy.services.metrics import COUNTER_NAMES, MetricsClient


class TestCounters:
    """Named counters are always readable in-process."""

    def test_all_counters_start_at_zero(self):
        client = MetricsClient(enabled=False, start_flush_thread=False)
        assert client.snapshot() == dict.fromkeys(COUNTER_NAMES, 0)

    def test_inc_and_get(self):
        client = MetricsClient(enabled=False, start_flush_thread=False)
        client.inc("sent")
        client.inc("sent", 2)
        assert client.get("sent") == 3

    def test_unknown_counter_raises(self):
        client = MetricsClient(enabled=False, start_flush_thread=False)
        with pytest.raises(KeyError):
            client.inc("made_up")

    def test_snapshot_is_a_copy(self):
        client = MetricsClient(enabled=False, start_flush_thread=False)
        snap = client.snapshot()
        snap["sent"] = 99
        assert client.get("sent") == 0

    def test_reset(self):
        client = MetricsClient(enabled=True, start_flush_thread=False)
        client.inc("failed")
        client.reset()
        assert client.get("failed") == 0
        assert client._buffer == []


class TestMetricsBuffer:
    def test_disabled_client_buffers_nothing(self):
        client = MetricsClient(enabled=False, start_flush_thread=False)
        client.inc("queued")
        assert client._buffer == []

    def test_enabled_client_buffers_one_data_point_per_inc(self):
        client = MetricsClient(enabled=True, start_flush_thread=False)
        client.inc("retry_scheduled")
        [point] = client._buffer
        assert point["MetricName"] == "SMS/retry_scheduled"
        assert point["Value"] == 1
        assert point["Unit"] == "Count"

    def test_enabled_flag_defaults_from_environment_config(self):
        with patch("autonomy.services.metrics.METRICS_ENABLED", True):
            client = MetricsClient(start_flush_thread=False)
        client.inc("sent")
        assert len(client._buffer) == 1


class TestMetricsFlush:
    """Verify flush behaviour with and without CloudWatch enabled."""

    def test_flush_when_disabled_does_not_call_boto3(self):
        client = MetricsClient(enabled=False, start_flush_thread=False)
        with patch.object(client, "_get_cw_client") as get_client:
            client.inc("sent")
            assert client.flush() == 0
        get_client.assert_not_called()

    def test_flush_when_enabled_calls_put_metric_data(self):
        client = MetricsClient(enabled=True, namespace="TestNS", start_flush_thread=False)
        mock_cw = MagicMock()
        client._cw_client = mock_cw  # inject mock

        client.inc("sent")
        client.inc("failed")
        sent = client.flush()

        assert sent == 2
        mock_cw.put_metric_data.assert_called_once()
        call_args = mock_cw.put_metric_data.call_args
        assert call_args[1]["Namespace"] == "TestNS"
        assert len(call_args[1]["MetricData"]) == 2
        assert client._buffer == []

    def test_flush_splits_large_batches(self):
        client = MetricsClient(enabled=True, start_flush_thread=False)
        client._cw_client = MagicMock()
        client.inc("sent", 1)
        client._buffer = client._buffer * 1500

        assert client.flush() == 1500
        assert client._cw_client.put_metric_data.call_count == 2

    def test_flush_empty_buffer_returns_zero(self):
        client = MetricsClient(enabled=True, start_flush_thread=False)
        assert client.flush() == 0

    def test_cloudwatch_errors_are_logged_not_raised(self):
        client = MetricsClient(enabled=True, start_flush_thread=False)
        client._cw_client = MagicMock()
        client._cw_client.put_metric_data.side_effect = RuntimeError("throttled")
        client.inc("sent")
        assert client.flush() == 0

    def test_close_flushes(self):
        client = MetricsClient(enabled=True, start_flush_thread=False)
        client._cw_client = MagicMock()
        client.inc("stop")
        client.close()
        client._cw_client.put_metric_data.assert_called_once()
