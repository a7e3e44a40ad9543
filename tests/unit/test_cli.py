"""Unit tests for the command line interface."""

import logging
from unittest.mock import MagicMock, patch

import click
import httpx
import psycopg2
import pytest
from click.testing import CliRunner

from cdc_relay import __version__
from cdc_relay.cli.commands.run import parse_table
from cdc_relay.cli.main import cli
from cdc_relay.common.exceptions import SinkUnavailable
from cdc_relay.relay.checkpoint import JsonFileCheckpointStore
from cdc_relay.relay.events import Checkpoint, Operation
from cdc_relay.relay.log_reader import InMemoryChangeLog
from cdc_relay.relay.registry import RelayRegistry
from cdc_relay.relay.sinks import InMemorySink
from cdc_relay.relay.transport import InMemoryTransport
from tests.test_utils import make_event


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def restore_logging():
    """Undo the root handler changes made by commands calling setup_logging."""
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


@pytest.fixture
def checkpoint_dir(tmp_path):
    """Checkpoint directory holding one source offset and two lane records."""
    JsonFileCheckpointStore(str(tmp_path), "offsets").put(
        Checkpoint(source_id="public.customers", sequence=40)
    )
    lanes = JsonFileCheckpointStore(str(tmp_path), "lanes")
    lanes.put(Checkpoint(source_id="public.customers", sequence=40, partition=0, offset=3))
    lanes.put(Checkpoint(source_id="public.customers", sequence=38, partition=1, offset=1))
    lanes.put(Checkpoint(source_id="public.orders", sequence=7, partition=0, offset=0))
    return tmp_path


@pytest.mark.unit
class TestParseTable:
    """Test table argument parsing."""

    def test_schema_and_keys(self):
        """Test schema-qualified tables with composite keys."""
        assert parse_table("sales.orders=id, region") == ("sales.orders", ["id", "region"])

    def test_default_schema(self):
        """Test unqualified tables default to the public schema."""
        assert parse_table("customers=id") == ("public.customers", ["id"])

    @pytest.mark.parametrize("value", ["customers", "customers=", "=id"])
    def test_invalid(self, value):
        """Test arguments without table or keys are rejected."""
        with pytest.raises(click.BadParameter):
            parse_table(value)


@pytest.mark.unit
class TestCli:
    """Test CLI commands."""

    def test_version(self, runner):
        """Test --version prints the package version."""
        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self, runner):
        """Test every command is registered."""
        result = runner.invoke(cli, ["--help"])

        for command in ("run", "demo", "status", "checkpoints", "reset"):
            assert command in result.output

    def test_run_requires_table(self, runner):
        """Test run refuses to start without a table."""
        result = runner.invoke(cli, ["run"])

        assert result.exit_code == 2

    def test_run_requires_logical_replication(self, runner, restore_logging):
        """Test run refuses to start when the source is not configured for logical decoding."""
        source = MagicMock()
        source.check_logical_replication.return_value = False

        with patch(
            "cdc_relay.cli.commands.run.PostgresConnectionManager.from_config", return_value=source
        ), patch("cdc_relay.cli.commands.run.build_registry") as build:
            result = runner.invoke(cli, ["run", "--table", "public.customers=id"])

        assert result.exit_code == 1
        assert "wal_level=logical" in result.output
        build.assert_not_called()

    def test_run_unreachable_source(self, runner, restore_logging):
        """Test run aborts when the source database cannot be reached."""
        source = MagicMock()
        source.check_logical_replication.side_effect = psycopg2.OperationalError("refused")

        with patch(
            "cdc_relay.cli.commands.run.PostgresConnectionManager.from_config", return_value=source
        ), patch("cdc_relay.cli.commands.run.build_registry") as build:
            result = runner.invoke(cli, ["run", "--table", "public.customers=id"])

        assert result.exit_code == 1
        assert "Cannot reach source database" in result.output
        build.assert_not_called()

    def test_demo(self, runner, restore_logging):
        """Test the demo relays the reference changes into the sink."""
        result = runner.invoke(cli, ["demo", "--partitions", "2"])

        assert result.exit_code == 0, result.output
        assert "akif selim" in result.output
        assert "mehmet" not in result.output

    def test_demo_append_only(self, runner, restore_logging):
        """Test the append-only demo shows the delete marker row."""
        result = runner.invoke(cli, ["demo", "--append-only"])

        assert result.exit_code == 0, result.output
        assert "DELETE" in result.output
        assert "akif selim" in result.output

    def test_checkpoints_lists_records(self, runner, checkpoint_dir):
        """Test checkpoints shows offsets and lanes."""
        result = runner.invoke(cli, ["checkpoints", "--dir", str(checkpoint_dir)])

        assert result.exit_code == 0, result.output
        assert "public.customers" in result.output
        assert "public.orders" in result.output
        assert "offsets" in result.output

    def test_checkpoints_source_filter(self, runner, checkpoint_dir):
        """Test --source limits the listing to one source."""
        result = runner.invoke(
            cli, ["checkpoints", "--dir", str(checkpoint_dir), "--source", "public.orders"]
        )

        assert "public.orders" in result.output
        assert "public.customers" not in result.output

    def test_checkpoints_empty(self, runner, tmp_path):
        """Test an empty directory is reported."""
        result = runner.invoke(cli, ["checkpoints", "--dir", str(tmp_path)])

        assert "No checkpoints" in result.output

    def test_reset_force(self, runner, checkpoint_dir, relay_config):
        """Test reset truncates the sink, forgets the offset and moves lanes to the topic end."""
        transport = InMemoryTransport()
        transport.append("cdc.public.customers", 1, b"k", b"v")
        transport.append("cdc.public.customers", 1, b"k", b"v")
        sink = InMemorySink()
        sink.upsert(make_event(1, Operation.CREATE, 40, {"name": "a"}, source_id="public.customers"))
        change_log = InMemoryChangeLog()

        def registry(checkpoint_store, checkpoint_dir=None):
            return RelayRegistry(
                change_log,
                transport,
                lambda spec: sink,
                JsonFileCheckpointStore(checkpoint_dir, "offsets"),
                JsonFileCheckpointStore(checkpoint_dir, "lanes"),
                config=relay_config,
            )

        with patch("cdc_relay.cli.commands.reset.build_registry", side_effect=registry), patch.object(
            change_log, "discard"
        ) as discard:
            result = runner.invoke(
                cli,
                ["reset", "public.customers=id", "--dir", str(checkpoint_dir), "--force"],
            )

        assert result.exit_code == 0, result.output
        assert "fresh snapshot" in result.output
        assert sink.state() == {}
        discard.assert_called_once_with("public.customers")
        assert JsonFileCheckpointStore(str(checkpoint_dir), "offsets").load("public.customers") is None
        lanes = JsonFileCheckpointStore(str(checkpoint_dir), "lanes")
        assert lanes.get("public.customers", 0) is None
        assert lanes.get("public.customers", 1).offset == 1
        assert len(lanes.list("public.orders")) == 1

    def test_reset_requires_keys(self, runner):
        """Test reset needs the key columns of the table."""
        result = runner.invoke(cli, ["reset", "public.customers", "--force"])

        assert result.exit_code == 2

    def test_reset_failure_aborts(self, runner):
        """Test a backend failure aborts the reset and closes the registry."""
        registry = MagicMock()
        registry.reset.side_effect = SinkUnavailable("sink down")

        with patch("cdc_relay.cli.commands.reset.build_registry", return_value=registry):
            result = runner.invoke(cli, ["reset", "public.customers=id", "--force"])

        assert result.exit_code == 1
        assert "sink down" in result.output
        registry.close.assert_called_once()

    def test_reset_cancelled(self, runner, checkpoint_dir):
        """Test declining the prompt keeps the checkpoints."""
        with patch("cdc_relay.cli.commands.reset.build_registry") as build:
            result = runner.invoke(
                cli,
                ["reset", "public.customers=id", "--dir", str(checkpoint_dir)],
                input="n\n",
            )

        assert "cancelled" in result.output
        build.assert_not_called()
        assert JsonFileCheckpointStore(str(checkpoint_dir), "offsets").load("public.customers") == 40

    def test_status(self, runner):
        """Test status renders relays and lanes from the status endpoint."""
        response = MagicMock()
        response.json.return_value = {
            "relays": [
                {
                    "name": "public.customers",
                    "relay": {"state": "RUNNING", "position": 40, "published": 4, "error": None},
                    "materializer": {
                        "lanes": [
                            {
                                "partition": 0,
                                "state": "FAILED",
                                "checkpoint_offset": 3,
                                "checkpoint_sequence": 40,
                                "applied": 2,
                                "error": None,
                            }
                        ]
                    },
                }
            ]
        }
        with patch("cdc_relay.cli.commands.status.httpx.get", return_value=response) as mock_get:
            result = runner.invoke(cli, ["status", "--port", "9999"])

        assert result.exit_code == 0, result.output
        assert "public.customers" in result.output
        assert "FAILED" in result.output
        assert mock_get.call_args.args[0] == "http://localhost:9999/status"

    def test_status_unreachable(self, runner):
        """Test an unreachable relay aborts with an error."""
        with patch(
            "cdc_relay.cli.commands.status.httpx.get",
            side_effect=httpx.ConnectError("refused"),
        ):
            result = runner.invoke(cli, ["status", "--port", "9999"])

        assert result.exit_code == 1
        assert "Failed to get status" in result.output
