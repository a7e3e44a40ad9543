"""Status command for inspecting a running relay."""

from typing import Any, Dict

import click
import httpx
from rich.console import Console
from rich.table import Table

from cdc_relay.common.config import get_settings

console = Console()

STATE_COLORS = {
    "RUNNING": "green",
    "SNAPSHOTTING": "cyan",
    "STARTING": "cyan",
    "PAUSED": "yellow",
    "STOPPED": "white",
    "FAILED": "red",
}


def _colored(state: str) -> str:
    color = STATE_COLORS.get(state, "white")
    return f"[{color}]{state}[/{color}]"


@click.command()
@click.option("--host", default="localhost", show_default=True, help="Relay host")
@click.option("--port", type=int, default=None, help="Health server port (default from config)")
@click.option("--timeout", default=5.0, show_default=True, help="Request timeout in seconds")
def status(host: str, port: int, timeout: float) -> None:
    """Show relay and partition lane status of a running relay."""
    port = port or get_settings().observability.health_check_port
    url = f"http://{host}:{port}/status"

    try:
        response = httpx.get(url, timeout=timeout)
        response.raise_for_status()
        document: Dict[str, Any] = response.json()
    except httpx.HTTPError as e:
        console.print(f"[red]✗ Failed to get status from {url}: {e}[/red]")
        raise click.Abort()

    relays = document.get("relays", [])
    if not relays:
        console.print("[yellow]No relays registered[/yellow]")
        return

    console.print("\n[bold blue]CDC Relay Status[/bold blue]\n")
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Relay", no_wrap=True)
    table.add_column("Lane")
    table.add_column("State")
    table.add_column("Position")
    table.add_column("Applied")
    table.add_column("Error")

    for relay in relays:
        source = relay["relay"]
        table.add_row(
            relay["name"],
            "reader",
            _colored(source["state"]),
            str(source.get("position")),
            str(source.get("published", 0)),
            source.get("error") or "",
        )
        for lane in relay["materializer"]["lanes"]:
            table.add_row(
                "",
                f"#{lane['partition']}",
                _colored(lane["state"]),
                f"offset {lane.get('checkpoint_offset')} / seq {lane.get('checkpoint_sequence')}",
                str(lane.get("applied", 0)),
                lane.get("error") or "",
            )

    console.print(table)
    console.print()
