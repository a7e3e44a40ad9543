"""Run command for streaming Postgres tables through Kafka into a sink."""

import time
from typing import Dict, List, Optional, Tuple

import click
import psycopg2
from rich.console import Console

from cdc_relay.common.config import get_settings
from cdc_relay.observability.health import HealthChecker, HealthCheckServer
from cdc_relay.observability.logging_config import get_logger, setup_logging
from cdc_relay.observability.metrics import MetricsExporter
from cdc_relay.relay.checkpoint import CheckpointStore, JsonFileCheckpointStore
from cdc_relay.relay.kafka.transport import KafkaTransport
from cdc_relay.relay.postgres.checkpoint_store import PostgresCheckpointStore
from cdc_relay.relay.postgres.connection import PostgresConnectionManager
from cdc_relay.relay.postgres.log_reader import PostgresLogReader
from cdc_relay.relay.postgres.sink import PostgresSink
from cdc_relay.relay.registry import RelayRegistry, RelaySpec
from cdc_relay.relay.sinks import Sink, SinkSchema

console = Console()
logger = get_logger(__name__)


def parse_table(value: str) -> Tuple[str, List[str]]:
    """
    Parse a ``schema.table=key1,key2`` table argument.

    Returns:
        Source id and key columns

    Raises:
        click.BadParameter: If the argument has no key columns
    """
    source_id, sep, keys = value.partition("=")
    key_columns = [k.strip() for k in keys.split(",") if k.strip()]
    if not sep or not source_id or not key_columns:
        raise click.BadParameter(f"expected SCHEMA.TABLE=KEY[,KEY...], got {value!r}")
    if "." not in source_id:
        source_id = f"public.{source_id}"
    return source_id, key_columns


@click.command()
@click.option(
    "--table",
    "-t",
    "tables",
    multiple=True,
    required=True,
    help="Table to relay as SCHEMA.TABLE=KEY[,KEY...] (repeatable)",
)
@click.option(
    "--checkpoint-store",
    type=click.Choice(["json", "postgres"]),
    default="json",
    show_default=True,
    help="Where offsets and lane checkpoints are kept",
)
@click.option("--no-snapshot", is_flag=True, help="Start streaming without an initial snapshot")
@click.option("--log-level", default=None, help="Override the configured log level")
def run(tables: tuple, checkpoint_store: str, no_snapshot: bool, log_level: str) -> None:
    """
    Relay Postgres tables through Kafka into the sink database.

    Runs until interrupted; Ctrl-C stops every relay after its in-flight
    writes and leaves checkpoints on the last confirmed event.
    """
    setup_logging(log_level)
    settings = get_settings()
    specs = []
    for value in tables:
        source_id, key_columns = parse_table(value)
        specs.append(
            RelaySpec(
                name=source_id,
                source_id=source_id,
                key_columns=key_columns,
                snapshot_on_start=not no_snapshot,
            )
        )

    console.print("\n[bold blue]Starting CDC Relay[/bold blue]\n")

    source = PostgresConnectionManager.from_config(settings.postgres)
    try:
        logical = source.check_logical_replication()
    except psycopg2.Error as e:
        console.print(f"[red]✗ Cannot reach source database: {e}[/red]")
        raise click.Abort()
    if not logical:
        console.print("[red]✗ Source database must run with wal_level=logical[/red]")
        raise click.Abort()

    metrics = MetricsExporter()
    health = HealthChecker()
    registry = build_registry(checkpoint_store, source=source, metrics=metrics, health=health)
    server = HealthCheckServer(health, status_provider=registry.statuses)

    try:
        for spec in specs:
            registry.register(spec)
        metrics.start()
        server.start()
        registry.start_all()
    except Exception as e:
        console.print(f"[red]✗ Failed to start relay: {e}[/red]")
        registry.close()
        raise click.Abort()

    console.print(f"[green]✓ Relaying {len(specs)} table(s)[/green]")
    console.print(f"  • Status: [link]http://localhost:{server.port}/status[/link]")
    console.print(f"  • Metrics: [link]http://localhost:{metrics.port}/metrics[/link]")
    console.print("\nPress Ctrl-C to stop\n")

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping relays...[/yellow]")
    finally:
        registry.stop_all(timeout=30)
        server.stop()
        registry.close()
    console.print("[green]✓ Stopped[/green]\n")


def build_registry(
    checkpoint_store: str = "json",
    source: Optional[PostgresConnectionManager] = None,
    checkpoint_dir: Optional[str] = None,
    metrics: Optional[MetricsExporter] = None,
    health: Optional[HealthChecker] = None,
) -> RelayRegistry:
    """
    Wire a registry to the configured Postgres source, Kafka and sink database.

    Args:
        checkpoint_store: ``json`` or ``postgres``
        source: Source connection (default from config)
        checkpoint_dir: Directory of the JSON checkpoint store (default from config)
        metrics: Metrics exporter
        health: Status surface

    Returns:
        Registry with no relays registered
    """
    settings = get_settings()
    offsets, lane_checkpoints = _checkpoint_stores(checkpoint_store, checkpoint_dir)
    reader = PostgresLogReader(
        source or PostgresConnectionManager.from_config(settings.postgres),
        slot_prefix=settings.postgres.slot_name,
        output_plugin=settings.postgres.output_plugin,
    )
    transport = KafkaTransport(
        [s.strip() for s in settings.kafka.bootstrap_servers.split(",")],
        request_timeout_ms=settings.kafka.request_timeout_ms,
    )

    def sink_factory(spec: RelaySpec) -> Sink:
        return PostgresSink(
            PostgresConnectionManager.from_config(settings.sink_postgres),
            table=spec.source_id.split(".")[-1],
            key_columns=spec.key_columns,
            schema=SinkSchema(spec.schema),
            delete_mode=settings.relay.delete_mode,
        )

    return RelayRegistry(
        reader,
        transport,
        sink_factory,
        offsets,
        lane_checkpoints,
        config=settings.relay,
        topic_prefix=settings.kafka.topic_prefix,
        metrics=metrics,
        health=health,
    )


def _checkpoint_stores(
    kind: str, checkpoint_dir: Optional[str] = None
) -> Tuple[CheckpointStore, CheckpointStore]:
    settings = get_settings()
    if kind == "postgres":
        stores: Dict[str, CheckpointStore] = {
            namespace: PostgresCheckpointStore(
                PostgresConnectionManager.from_config(settings.sink_postgres), namespace
            )
            for namespace in ("offsets", "lanes")
        }
    else:
        stores = {
            namespace: JsonFileCheckpointStore(
                checkpoint_dir or settings.relay.checkpoint_dir, namespace
            )
            for namespace in ("offsets", "lanes")
        }
    return stores["offsets"], stores["lanes"]
