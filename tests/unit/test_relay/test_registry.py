"""Unit tests for the relay registry (operational surface)."""

from unittest.mock import patch

import pytest

from cdc_relay.common.exceptions import DuplicateReader, RelayNotFound
from cdc_relay.relay.events import Operation
from cdc_relay.relay.registry import RelaySpec
from tests.test_utils import make_event, wait_for_condition


def sink_rows(sink):
    return sorted(sink.state().values(), key=lambda row: row["id"])


@pytest.mark.unit
class TestRelayRegistry:
    """Test register/start, status, reset and stop."""

    def test_register_rejects_duplicates(self, registry, customers_spec):
        """Test names and sources register once."""
        registry.register(customers_spec)

        with pytest.raises(DuplicateReader):
            registry.register(customers_spec)
        with pytest.raises(DuplicateReader):
            registry.register(
                RelaySpec(name="customers-2", source_id="customers", key_columns=["id"])
            )
        assert registry.names == ["customers"]

    def test_unknown_relay(self, registry):
        """Test lookups of unknown relays raise RelayNotFound."""
        with pytest.raises(RelayNotFound):
            registry.status("nope")

    def test_start_relays_changes_to_sink(self, registry, customers_spec, change_log, sink):
        """Test a started relay materializes the reference scenario."""
        registry.register(customers_spec)
        registry.start("customers")

        change_log.insert("customers", {"id": 333, "name": "akif"})
        change_log.insert("customers", {"id": 334, "name": "mehmet"})
        change_log.update("customers", {"id": 333, "name": "akif selim"})
        change_log.delete("customers", {"id": 334})

        wait_for_condition(
            lambda: sink_rows(sink) == [{"id": 333, "name": "akif selim"}]
            and sink.applied_sequence(make_event(334, Operation.DELETE, 4)) == 4,
            timeout_seconds=5,
        )
        assert sink.get({"id": 334}) is None

        status = registry.status("customers")
        assert status["healthy"] is True
        assert status["relay"]["state"] == "RUNNING"
        assert len(status["materializer"]["lanes"]) == 4
        assert status["failed_lanes"] == []

    def test_status_reports_failure(self, registry, customers_spec, change_log, offsets):
        """Test a failed relay is visible on the status surface."""
        for i in range(3):
            change_log.insert("customers", {"id": i, "name": "x"})
        offsets.save("customers", 1)
        change_log.purge("customers", 2)
        registry.register(customers_spec)
        registry.start("customers")

        wait_for_condition(
            lambda: registry.status("customers")["relay"]["state"] == "FAILED", timeout_seconds=5
        )

        status = registry.status("customers")
        assert status["healthy"] is False
        assert "resnapshot" in status["relay"]["error"]
        assert registry.health.get_overall_health().value == "unhealthy"

    def test_reset_resnapshots_source(
        self, registry, customers_spec, change_log, offsets, sink
    ):
        """Test reset rebuilds sink state from a fresh snapshot."""
        registry.register(customers_spec)
        registry.start("customers")
        change_log.insert("customers", {"id": 1, "name": "a"})
        change_log.insert("customers", {"id": 2, "name": "b"})
        wait_for_condition(lambda: len(sink.state()) == 2, timeout_seconds=5)
        registry.stop("customers", timeout=5)

        # Changes made while stopped are purged before the relay returns
        change_log.update("customers", {"id": 1, "name": "a2"})
        change_log.delete("customers", {"id": 2})
        change_log.insert("customers", {"id": 3, "name": "c"})
        change_log.purge("customers", change_log.last_sequence())
        registry.start("customers")
        wait_for_condition(
            lambda: registry.status("customers")["relay"]["state"] == "FAILED", timeout_seconds=5
        )

        registry.reset("customers")
        assert offsets.load("customers") is None
        registry.start("customers")

        wait_for_condition(
            lambda: sink_rows(sink) == [{"id": 1, "name": "a2"}, {"id": 3, "name": "c"}],
            timeout_seconds=5,
        )
        assert registry.status("customers")["healthy"] is True

    def test_reset_discards_reader_state(self, registry, customers_spec, change_log, sink):
        """Test reset truncates the sink and drops the reader state kept at the source."""
        registry.register(customers_spec)
        sink.upsert(make_event(1, Operation.CREATE, 1, {"id": 1, "name": "a"}))

        with patch.object(change_log, "discard") as discard:
            registry.reset("customers")

        discard.assert_called_once_with("customers")
        assert sink.state() == {}

    def test_stop_and_unregister(self, registry, customers_spec, health):
        """Test unregistering removes the relay and its status components."""
        registry.register(customers_spec)
        registry.start("customers")
        wait_for_condition(
            lambda: registry.status("customers")["relay"]["state"] == "RUNNING", timeout_seconds=5
        )

        registry.unregister("customers")

        assert registry.names == []
        assert health.get_component_health("relay:customers") is None

    def test_statuses_document(self, registry, customers_spec):
        """Test the full status document lists every relay."""
        registry.register(customers_spec)

        document = registry.statuses()

        assert [r["name"] for r in document["relays"]] == ["customers"]
