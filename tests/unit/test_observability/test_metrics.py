"""Unit tests for metrics module."""

import pytest
from prometheus_client import REGISTRY

from cdc_relay.observability.metrics import MetricsExporter


def sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


@pytest.mark.unit
class TestMetricsExporter:
    """Test Prometheus metrics recorded by the relay."""

    @pytest.fixture
    def exporter(self):
        return MetricsExporter(port=0)

    def test_default_port_from_config(self):
        """Test the port falls back to the configured metrics port."""
        exporter = MetricsExporter()

        assert exporter.port == exporter.settings.observability.metrics_port

    def test_record_published(self, exporter):
        """Test published events count per partition and move the position gauge."""
        before = sample("relay_events_published_total", source="metrics_src", partition="2")

        exporter.record_published("metrics_src", 2, 77)

        assert sample("relay_events_published_total", source="metrics_src", partition="2") == before + 1
        assert sample("relay_source_position", source="metrics_src") == 77

    def test_record_applied(self, exporter):
        """Test applied events count per operation and observe duration."""
        before = sample("relay_events_applied_total", source="metrics_src", operation="UPDATE")

        exporter.record_applied("metrics_src", "UPDATE", 0.02)

        assert sample("relay_events_applied_total", source="metrics_src", operation="UPDATE") == before + 1
        assert sample("relay_apply_duration_seconds_count", source="metrics_src") >= 1

    def test_record_duplicate_and_checkpoint(self, exporter):
        """Test duplicate skips and lane checkpoints are exported."""
        before = sample("relay_duplicates_skipped_total", source="metrics_src", partition="0")

        exporter.record_duplicate("metrics_src", 0)
        exporter.update_checkpoint("metrics_src", 0, 12)

        assert sample("relay_duplicates_skipped_total", source="metrics_src", partition="0") == before + 1
        assert sample("relay_checkpoint_sequence", source="metrics_src", partition="0") == 12

    def test_record_error(self, exporter):
        """Test errors are counted by type."""
        before = sample("relay_errors_total", source="metrics_src", error_type="SinkUnavailable")

        exporter.record_error("metrics_src", "SinkUnavailable")

        assert sample("relay_errors_total", source="metrics_src", error_type="SinkUnavailable") == before + 1

    @pytest.mark.parametrize(
        "state,value", [("RUNNING", 1), ("PAUSED", 0), ("STOPPED", 0), ("FAILED", -1)]
    )
    def test_status_gauges(self, exporter, state, value):
        """Test relay and lane states map onto gauge values."""
        exporter.update_relay_status("metrics_src", state)
        exporter.update_lane_status("metrics_src", 3, state)

        assert sample("relay_status", source="metrics_src") == value
        assert sample("relay_lane_status", source="metrics_src", partition="3") == value
