"""Checkpoints command for listing stored positions."""

from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from cdc_relay.common.config import get_settings
from cdc_relay.relay.checkpoint import JsonFileCheckpointStore

console = Console()


@click.command()
@click.option("--dir", "directory", default=None, help="Checkpoint directory (default from config)")
@click.option("--source", "-s", default=None, help="Only show this source")
def checkpoints(directory: Optional[str], source: Optional[str]) -> None:
    """List source offsets and lane checkpoints in a checkpoint directory."""
    directory = directory or get_settings().relay.checkpoint_dir

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Kind")
    table.add_column("Source", no_wrap=True)
    table.add_column("Partition")
    table.add_column("Sequence")
    table.add_column("Offset")
    table.add_column("Updated")

    count = 0
    for namespace in ("offsets", "lanes"):
        for checkpoint in JsonFileCheckpointStore(directory, namespace).list(source):
            table.add_row(
                namespace,
                checkpoint.source_id,
                "-" if checkpoint.partition is None else str(checkpoint.partition),
                str(checkpoint.sequence),
                "-" if checkpoint.offset is None else str(checkpoint.offset),
                checkpoint.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
            )
            count += 1

    if not count:
        console.print(f"[yellow]No checkpoints in {directory}[/yellow]")
        return
    console.print(table)
