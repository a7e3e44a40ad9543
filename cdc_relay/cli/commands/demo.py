"""Demo command running the relay in-process against in-memory backends."""

import time
from typing import Callable

import click
from rich.console import Console
from rich.table import Table

from cdc_relay.common.config import RelayConfig
from cdc_relay.observability.logging_config import setup_logging
from cdc_relay.relay.checkpoint import InMemoryCheckpointStore
from cdc_relay.relay.log_reader import InMemoryChangeLog
from cdc_relay.relay.registry import RelayRegistry, RelaySpec
from cdc_relay.relay.sinks import AppendOnlySink, InMemorySink, Sink, SinkSchema
from cdc_relay.relay.transport import InMemoryTransport

console = Console()

SOURCE = "customers"


def _wait(condition: Callable[[], bool], timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.05)
    return condition()


@click.command()
@click.option("--append-only", is_flag=True, help="Use the append-only sink (delete markers)")
@click.option("--partitions", "-p", default=4, show_default=True, help="Transport partitions")
@click.option("--log-level", default="WARNING", show_default=True, help="Log level")
def demo(append_only: bool, partitions: int, log_level: str) -> None:
    """
    Relay the reference customer changes and print the sink table.

    Applies create 333, create 334, update 333 and delete 334, which leaves
    only customer 333 ("akif selim") visible.
    """
    setup_logging(log_level)
    console.print("\n[bold blue]CDC Relay Demo[/bold blue]\n")

    log = InMemoryChangeLog(poll_interval=0.05)
    log.create_source(SOURCE, ["id"])
    transport = InMemoryTransport()
    sink: Sink = (
        AppendOnlySink(SinkSchema({"id": "int", "name": "text"}))
        if append_only
        else InMemorySink(SinkSchema({"id": "int", "name": "text"}))
    )
    registry = RelayRegistry(
        log,
        transport,
        lambda spec: sink,
        InMemoryCheckpointStore(),
        InMemoryCheckpointStore(),
        config=RelayConfig(partition_count=partitions, poll_timeout_ms=100),
    )
    registry.register(
        RelaySpec(name=SOURCE, source_id=SOURCE, key_columns=["id"], snapshot_on_start=False)
    )

    log.insert(SOURCE, {"id": 333, "name": "akif"})
    log.insert(SOURCE, {"id": 334, "name": "mehmet"})
    log.update(SOURCE, {"id": 333, "name": "akif selim"})
    log.delete(SOURCE, {"id": 334})
    last = log.last_sequence()

    registry.start(SOURCE)
    handle = registry.get(SOURCE)
    done = _wait(
        lambda: (handle.relay.position or 0) >= last
        and sum(lane.applied + lane.duplicates for lane in handle.materializer.lanes) >= 4,
        timeout=10,
    )
    registry.stop(SOURCE, timeout=5)

    if not done:
        console.print("[red]✗ Demo did not converge[/red]")
        console.print(registry.status(SOURCE))
        raise click.Abort()

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("id")
    table.add_column("name")
    table.add_column("_operation")
    table.add_column("_sequence")
    rows = sink.raw_rows if isinstance(sink, AppendOnlySink) else list(
        sink.state(include_metadata=True).values()
    )
    for row in rows:
        deleted = row.get("_deleted", False)
        style = "red" if deleted else "green"
        table.add_row(
            str(row.get("id")),
            str(row.get("name", "")),
            f"[{style}]{row.get('_operation')}[/{style}]",
            str(row.get("_sequence")),
        )
    console.print(table)
    console.print(f"\n[green]✓ Visible rows: {sink.state()}[/green]\n")
