"""Unit tests for change log readers."""

import threading

import pytest

from cdc_relay.common.exceptions import DuplicateReader, SequenceGone, SourceUnavailable
from cdc_relay.relay.events import RawEntry
from cdc_relay.relay.log_reader import InMemoryChangeLog, ReaderLeases


def read_available(stream, count):
    """Read ``count`` entries from a stream."""
    entries = []
    for entry in stream:
        entries.append(entry)
        if len(entries) == count:
            break
    return entries


@pytest.mark.unit
class TestReaderLeases:
    """Test exclusive reader leases."""

    def test_second_holder_rejected(self):
        """Test a second stream for a source is refused."""
        leases = ReaderLeases()
        leases.acquire("customers", 1)

        with pytest.raises(DuplicateReader):
            leases.acquire("customers", 2)

    def test_release_frees_source(self):
        """Test a released lease can be taken again."""
        leases = ReaderLeases()
        leases.acquire("customers", 1)
        leases.release("customers", 1)

        leases.acquire("customers", 2)
        assert leases.is_held("customers")

    def test_release_by_other_holder_ignored(self):
        """Test only the holder releases its lease."""
        leases = ReaderLeases()
        leases.acquire("customers", 1)
        leases.release("customers", 2)

        assert leases.is_held("customers")


@pytest.mark.unit
class TestInMemoryChangeLog:
    """Test the in-memory change log."""

    def test_entries_in_commit_order(self, change_log):
        """Test entries are yielded in commit order with increasing sequence."""
        change_log.insert("customers", {"id": 333, "name": "akif"})
        change_log.insert("customers", {"id": 334, "name": "mehmet"})
        change_log.update("customers", {"id": 333, "name": "akif selim"})
        change_log.delete("customers", {"id": 334})

        with change_log.open("customers") as stream:
            entries = read_available(stream, 4)

        assert [e.op for e in entries] == ["c", "c", "u", "d"]
        assert [e.sequence for e in entries] == [1, 2, 3, 4]
        assert entries[2].before == {"id": 333, "name": "akif"}
        assert entries[3].key == {"id": 334}

    def test_resume_is_exclusive(self, change_log):
        """Test reading resumes strictly after the given sequence."""
        for i in range(5):
            change_log.insert("customers", {"id": i})

        with change_log.open("customers", resume_sequence=3) as stream:
            entries = read_available(stream, 2)

        assert [e.sequence for e in entries] == [4, 5]

    def test_duplicate_reader_rejected(self, change_log):
        """Test only one stream per source may be open."""
        stream = change_log.open("customers")
        try:
            with pytest.raises(DuplicateReader):
                change_log.open("customers")
        finally:
            stream.close()

        change_log.open("customers").close()

    def test_purged_position_raises_sequence_gone(self, change_log):
        """Test resuming before the retained log raises SequenceGone."""
        for i in range(5):
            change_log.insert("customers", {"id": i})
        assert change_log.purge("customers", 3) == 3

        with change_log.open("customers", resume_sequence=1) as stream:
            with pytest.raises(SequenceGone) as exc_info:
                next(iter(stream))

        assert exc_info.value.requested == 1
        assert exc_info.value.oldest_available == 4

    def test_resume_at_purge_boundary_is_fine(self, change_log):
        """Test resuming exactly at the purge point still works."""
        for i in range(5):
            change_log.insert("customers", {"id": i})
        change_log.purge("customers", 3)

        with change_log.open("customers", resume_sequence=3) as stream:
            entries = read_available(stream, 2)

        assert [e.sequence for e in entries] == [4, 5]

    def test_unavailable_source(self, change_log):
        """Test reads from an unavailable source raise SourceUnavailable."""
        change_log.set_available("customers", False)

        with change_log.open("customers") as stream:
            with pytest.raises(SourceUnavailable):
                next(iter(stream))

    def test_unknown_source(self, change_log):
        """Test unknown sources are unavailable."""
        with change_log.open("orders") as stream:
            with pytest.raises(SourceUnavailable):
                next(iter(stream))

    def test_stop_ends_blocked_iteration(self, change_log):
        """Test stop() from another thread ends a blocked read."""
        stream = change_log.open("customers")
        received = []

        def consume():
            for entry in stream:
                received.append(entry)

        worker = threading.Thread(target=consume)
        worker.start()
        stream.stop()
        worker.join(timeout=5)
        stream.close()

        assert not worker.is_alive()
        assert received == []

    def test_append_raw_must_advance(self, change_log):
        """Test raw entries cannot rewind the log."""
        change_log.insert("customers", {"id": 1})

        with pytest.raises(ValueError):
            change_log.append_raw(RawEntry("customers", 1, "c", after={"id": 2}))
        change_log.append_raw(RawEntry("customers", 10, "x", after={"id": 2}))
        assert change_log.last_sequence() == 10

    def test_snapshot_reflects_current_rows(self, change_log):
        """Test snapshots hold current rows at the latest position."""
        change_log.insert("customers", {"id": 333, "name": "akif"})
        change_log.insert("customers", {"id": 334, "name": "mehmet"})
        change_log.update("customers", {"id": 333, "name": "akif selim"})
        change_log.delete("customers", {"id": 334})

        position, entries = change_log.snapshot("customers")

        assert position == 4
        assert len(entries) == 1
        assert entries[0].op == "r"
        assert entries[0].sequence == 4
        assert entries[0].after == {"id": 333, "name": "akif selim"}


@pytest.mark.unit
class TestLogStream:
    """Test stream position tracking."""

    def test_acknowledge_delegates_to_reader(self):
        """Test acknowledgements reach the reader."""
        log = InMemoryChangeLog()
        log.create_source("customers", ["id"])
        acknowledged = []
        log.acknowledge = lambda source_id, sequence: acknowledged.append((source_id, sequence))

        with log.open("customers") as stream:
            stream.acknowledge(7)

        assert acknowledged == [("customers", 7)]

    def test_close_releases_lease(self, change_log):
        """Test closing a stream releases its lease."""
        stream = change_log.open("customers")
        assert change_log.leases.is_held("customers")

        stream.close()
        assert not change_log.leases.is_held("customers")
