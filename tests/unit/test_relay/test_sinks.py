"""Unit tests for sinks and sink schemas."""

import pytest

from cdc_relay.common.exceptions import SchemaConflict
from cdc_relay.relay.events import Operation
from cdc_relay.relay.sinks import AppendOnlySink, InMemorySink, SinkSchema, event_row
from tests.test_utils import make_event


@pytest.mark.unit
class TestSinkSchema:
    """Test schema drift handling."""

    def test_new_columns_are_added(self):
        """Test unknown columns extend the schema with an inferred type."""
        schema = SinkSchema({"id": "int"})

        added = schema.check({"id": 1, "tier": "gold", "score": 1.5})

        assert sorted(added) == ["score", "tier"]
        assert schema.columns["tier"] == "text"
        assert schema.columns["score"] == "double precision"

    def test_type_mismatch_is_conflict(self):
        """Test a value of the wrong type raises SchemaConflict."""
        schema = SinkSchema({"id": "int", "name": "text"})

        with pytest.raises(SchemaConflict) as exc_info:
            schema.check({"id": "not-an-int", "name": "x"})

        assert exc_info.value.column == "id"
        assert exc_info.value.expected == "int"

    def test_bool_is_not_int(self):
        """Test booleans do not satisfy integer columns."""
        with pytest.raises(SchemaConflict):
            SinkSchema({"id": "int"}).check({"id": True})

    def test_null_matches_any_type(self):
        """Test None is accepted for any declared column."""
        assert SinkSchema({"id": "int", "name": "text"}).check({"id": 1, "name": None}) == []

    def test_strict_schema_rejects_unknown_columns(self):
        """Test unknown columns are conflicts when drift is not accepted."""
        schema = SinkSchema({"id": "int"}, accept_new_columns=False)

        with pytest.raises(SchemaConflict):
            schema.check({"id": 1, "tier": "gold"})

    def test_rejected_row_adds_no_columns(self):
        """Test a row with a new column and a type conflict leaves the schema unchanged."""
        schema = SinkSchema({"id": "int", "name": "text"})

        with pytest.raises(SchemaConflict):
            schema.check({"id": 1, "a_new": 5, "name": 3})

        assert "a_new" not in schema.columns

    def test_validate_does_not_extend(self):
        """Test validate reports new columns and extend adds them."""
        schema = SinkSchema({"id": "int"})

        added = schema.validate({"id": 1, "tier": "gold"})

        assert added == {"tier": "text"}
        assert "tier" not in schema.columns
        schema.extend(added)
        assert schema.columns["tier"] == "text"


@pytest.mark.unit
class TestInMemorySink:
    """Test the replace-by-key sink."""

    def test_reference_scenario(self):
        """Test create, create, update, delete leaves only the updated row."""
        sink = InMemorySink()
        sink.apply(make_event(333, Operation.CREATE, 1, {"name": "akif"}))
        sink.apply(make_event(334, Operation.CREATE, 2, {"name": "mehmet"}))
        sink.apply(make_event(333, Operation.UPDATE, 3, {"name": "akif selim"}))
        sink.apply(make_event(334, Operation.DELETE, 4))

        assert list(sink.state().values()) == [{"id": 333, "name": "akif selim"}]
        assert sink.get({"id": 334}) is None

    def test_applied_sequence_survives_delete(self):
        """Test a deleted key keeps its delete sequence."""
        sink = InMemorySink()
        sink.apply(make_event(1, Operation.CREATE, 1))
        delete = make_event(1, Operation.DELETE, 5)
        sink.apply(delete)

        assert sink.applied_sequence(delete) == 5

    def test_apply_twice_same_state(self):
        """Test applying an event twice equals applying it once."""
        event = make_event(1, Operation.CREATE, 1, {"name": "a"})
        sink = InMemorySink()
        sink.apply(event)
        once = sink.state(include_metadata=True)
        sink.apply(event)

        assert sink.state(include_metadata=True) == once

    def test_metadata_columns(self):
        """Test rows carry operation and sequence metadata."""
        sink = InMemorySink()
        sink.apply(make_event(1, Operation.UPDATE, 9, {"name": "a"}))

        row = sink.get({"id": 1})
        assert row["_operation"] == "UPDATE"
        assert row["_sequence"] == 9
        assert row["_source_table"] == "customers"

    def test_schema_conflict_raised(self):
        """Test the sink rejects rows that conflict with its schema."""
        sink = InMemorySink(SinkSchema({"id": "int", "name": "int"}))

        with pytest.raises(SchemaConflict):
            sink.apply(make_event(1, Operation.CREATE, 1, {"name": "text"}))
        assert sink.state() == {}

    def test_truncate(self):
        """Test truncate clears rows and applied sequences."""
        sink = InMemorySink()
        event = make_event(1, Operation.CREATE, 1)
        sink.apply(event)
        sink.truncate()

        assert sink.state() == {}
        assert sink.applied_sequence(event) is None


@pytest.mark.unit
class TestAppendOnlySink:
    """Test the insert-only sink."""

    def test_delete_appends_marker(self):
        """Test deletes append a tombstone row readers hide."""
        sink = AppendOnlySink()
        sink.apply(make_event(333, Operation.CREATE, 1, {"name": "akif"}))
        sink.apply(make_event(334, Operation.CREATE, 2, {"name": "mehmet"}))
        sink.apply(make_event(333, Operation.UPDATE, 3, {"name": "akif selim"}))
        sink.apply(make_event(334, Operation.DELETE, 4))

        assert list(sink.state().values()) == [{"id": 333, "name": "akif selim"}]
        tombstones = [r for r in sink.raw_rows if r["_deleted"]]
        assert len(tombstones) == 1
        assert tombstones[0]["id"] == 334
        assert tombstones[0]["_sequence"] == 4

    def test_highest_sequence_wins(self):
        """Test a late lower-sequence row does not become visible."""
        sink = AppendOnlySink()
        sink.apply(make_event(1, Operation.UPDATE, 5, {"name": "new"}))
        sink.apply(make_event(1, Operation.UPDATE, 3, {"name": "old"}))

        assert list(sink.state().values()) == [{"id": 1, "name": "new"}]
        assert sink.applied_sequence(make_event(1, Operation.DELETE, 9)) == 5


@pytest.mark.unit
def test_event_row_for_delete_uses_key():
    """Test delete rows carry the key columns and the deleted flag."""
    row = event_row(make_event(7, Operation.DELETE, 2), deleted=True)

    assert row["id"] == 7
    assert row["_deleted"] is True
    assert row["_operation"] == "DELETE"
