"""
Dropbridge CLI.

Usage:
    dropbridge serve                          # Run the signaling/relay server
    dropbridge receive --out ./downloads      # Wait for files as a receiver
    dropbridge peers                          # List receivers visible to a sender
    dropbridge send FILE --to Swift-Falcon-3F # Send a file to a receiver
"""

import asyncio
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, TextColumn, TransferSpeedColumn
from rich.table import Table

from client.peer import PeerClient
from config import API_HOST, API_PORT
from directory.models import PeerRole
from transfer.errors import TransferError
from transfer.models import TransferState, TransferVariant

console = Console()

DEFAULT_SERVER = f"http://localhost:{API_PORT}"


def setup_logging(verbose: bool = False):
    """Configure logging with rich output."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)],
    )


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--server", default=DEFAULT_SERVER, show_default=True, help="Server URL")
@click.pass_context
def cli(ctx, verbose, server):
    """Dropbridge - role-based peer file transfer."""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["server"] = server


@cli.command()
@click.option("--host", default=API_HOST, show_default=True)
@click.option("--port", default=API_PORT, show_default=True, type=int)
def serve(host, port):
    """Run the directory, signaling and relay server."""
    import uvicorn

    uvicorn.run("main:app", host=host, port=port, log_level="info")


async def _wait_for_receivers(client: PeerClient, timeout: float, target: str | None = None):
    """Poll the peer list until ``target`` (or anyone) is visible."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if target is None and client.peers:
            return
        if target is not None and client.find_peer(target):
            return
        await asyncio.sleep(0.2)


@cli.command()
@click.option("--wait", default=3.0, show_default=True, help="Seconds to wait for receivers")
@click.pass_context
def peers(ctx, wait):
    """List receivers visible to a sender."""

    async def run():
        client = PeerClient(ctx.obj["server"])
        await client.start()
        try:
            await client.set_role(PeerRole.SENDER)
            await _wait_for_receivers(client, wait)
        finally:
            await client.stop()

        if not client.peers:
            console.print("[yellow]No receivers online[/yellow]")
            return
        table = Table(title="Receivers")
        table.add_column("Name", style="cyan")
        table.add_column("ID", style="dim")
        for peer in client.peers:
            table.add_row(peer["name"], peer["id"])
        console.print(table)

    asyncio.run(run())


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--to", "target", required=True, help="Receiver name or id")
@click.option("--direct", is_flag=True, help="Use a peer-to-peer data channel")
@click.option("--wait", default=10.0, show_default=True, help="Seconds to wait for the receiver")
@click.pass_context
def send(ctx, file, target, direct, wait):
    """Send FILE to a receiver."""
    variant = TransferVariant.DIRECT if direct else TransferVariant.RELAYED

    async def run() -> bool:
        client = PeerClient(ctx.obj["server"])
        await client.start()
        console.print(f"Connected as [cyan]{client.name}[/cyan]")
        try:
            await client.set_role(PeerRole.SENDER)
            await _wait_for_receivers(client, wait, target)

            with Progress(
                TextColumn("[bold]{task.description}"),
                BarColumn(),
                TransferSpeedColumn(),
                console=console,
            ) as progress:
                task = progress.add_task(Path(file).name, total=Path(file).stat().st_size)

                async def on_event(event_type, data):
                    if event_type in ("transfer_progress", "transfer_state"):
                        progress.update(task, completed=data["transferred_bytes"])

                client.on_event(on_event)
                info = await client.send_file(target, file, variant)
        except TransferError as e:
            console.print(f"[red]{e}[/red]")
            return False
        finally:
            await client.stop()

        if info.state == TransferState.COMPLETED:
            console.print(f"[green]Sent '{info.meta.file_name}' to {info.peer_name}[/green]")
            return True
        console.print(f"[red]Transfer failed: {info.error_message}[/red]")
        return False

    if not asyncio.run(run()):
        raise SystemExit(1)


@cli.command()
@click.option("--out", "out_dir", default="./downloads", show_default=True, help="Where to save files")
@click.option("--count", default=0, help="Exit after this many files (0 = run forever)")
@click.pass_context
def receive(ctx, out_dir, count):
    """Wait for incoming files as a receiver."""
    target_dir = Path(out_dir)
    target_dir.mkdir(parents=True, exist_ok=True)

    async def run():
        client = PeerClient(ctx.obj["server"])
        finished = asyncio.Event()
        received = 0

        async def save(assembled, info):
            nonlocal received
            path = target_dir / Path(assembled.meta.file_name).name
            await asyncio.to_thread(path.write_bytes, assembled.data)
            received += 1
            console.print(f"[green]Saved {path} ({len(assembled.data)} bytes)[/green]")
            if count and received >= count:
                finished.set()

        async def on_event(event_type, data):
            if event_type == "notification" and data["type"] == "error":
                console.print(f"[red]{data['message']}[/red]")
            elif event_type == "disconnected":
                finished.set()

        client.on_file(save)
        client.on_event(on_event)
        await client.start()
        await client.set_role(PeerRole.RECEIVER)
        console.print(f"Receiving as [cyan]{client.name}[/cyan] - press Ctrl+C to stop")
        try:
            await finished.wait()
        finally:
            await client.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
