"""Reset command forcing a resnapshot of a source."""

from typing import Optional

import click
from rich.console import Console
from rich.prompt import Confirm

from cdc_relay.cli.commands.run import build_registry, parse_table
from cdc_relay.common.exceptions import RelayError
from cdc_relay.relay.registry import RelaySpec

console = Console()


@click.command()
@click.argument("table")
@click.option(
    "--checkpoint-store",
    type=click.Choice(["json", "postgres"]),
    default="json",
    show_default=True,
    help="Where offsets and lane checkpoints are kept",
)
@click.option("--dir", "directory", default=None, help="Checkpoint directory (default from config)")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt")
def reset(table: str, checkpoint_store: str, directory: Optional[str], force: bool) -> None:
    """
    Resnapshot TABLE, given as SCHEMA.TABLE=KEY[,KEY...].

    Truncates the sink table, drops the source's replication slot, forgets
    the published position and moves lane checkpoints past the records
    already in the topic. The next `run` snapshots the table before
    streaming. Stop the relay first.
    """
    source_id, key_columns = parse_table(table)

    if not force and not Confirm.ask(
        f"This truncates the sink table of {source_id} and drops its replication slot. Continue?"
    ):
        console.print("[yellow]Reset cancelled[/yellow]\n")
        return

    registry = build_registry(checkpoint_store, checkpoint_dir=directory)
    try:
        registry.register(RelaySpec(name=source_id, source_id=source_id, key_columns=key_columns))
        registry.reset(source_id)
    except RelayError as e:
        console.print(f"[red]✗ Reset of {source_id} failed: {e}[/red]")
        raise click.Abort()
    finally:
        registry.close()

    console.print(f"[green]✓ Reset {source_id}; the next run takes a fresh snapshot[/green]")
