"""Main CLI entry point for the CDC relay."""

import click
from rich.console import Console

from cdc_relay import __version__
from cdc_relay.cli.commands.checkpoints import checkpoints
from cdc_relay.cli.commands.demo import demo
from cdc_relay.cli.commands.reset import reset
from cdc_relay.cli.commands.run import run
from cdc_relay.cli.commands.status import status

console = Console()


@click.group()
@click.version_option(version=__version__, prog_name="cdc-relay")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """
    CDC Relay - ordered, exactly-once-effect change data capture.

    Streams row changes from a source change log through a partitioned
    transport into an analytical sink:
    - PostgreSQL logical replication (wal2json) as the source
    - Kafka as the ordered, partitioned transport
    - PostgreSQL tables as the materialized sink
    """
    ctx.ensure_object(dict)


cli.add_command(run)
cli.add_command(demo)
cli.add_command(status)
cli.add_command(checkpoints)
cli.add_command(reset)


if __name__ == "__main__":
    cli()
