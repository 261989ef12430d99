#!/usr/bin/env python3
"""
fusionshare CLI

Command-line interface for room-based direct file sharing.

Usage:
    fusionshare serve                 # Run the signaling broker
    fusionshare send FILE             # Create a room and send a file
    fusionshare receive CODE_OR_URL   # Join a room and receive a file
    fusionshare config                # Print the effective configuration
"""

import asyncio
import json
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn
from rich.panel import Panel
from rich.logging import RichHandler

from .collaborators import build_join_url
from .config import load_config
from .endpoint import ShareEndpoint, friendly_error
from .errors import RoomError, TransferError, TransportError

console = Console()


def setup_logging(verbose: bool = False, level: str = 'INFO'):
    """Configure logging with rich output."""
    level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(), default=None,
              help='JSON config file')
@click.pass_context
def cli(ctx, verbose, config_path):
    """fusionshare - send files directly between two devices."""
    config = load_config(Path(config_path) if config_path else None)
    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.option('--host', default=None, help='Bind address')
@click.option('--port', default=None, type=int, help='Listen port')
@click.pass_context
def serve(ctx, host, port):
    """Run the signaling broker."""
    config = ctx.obj['config']
    if host:
        config.host = host
    if port:
        config.port = port

    from .signaling.server import run_broker_server

    console.print(Panel.fit(
        f"[bold green]Signaling Broker[/bold green]\n\n"
        f"Listening: [yellow]{config.host}:{config.port}[/yellow]\n"
        f"WebSocket: [cyan]ws://{config.host}:{config.port}/ws[/cyan]",
        title="Broker Info"
    ))

    try:
        asyncio.run(run_broker_server(config))
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--broker', default=None, help='Broker websocket URL')
@click.pass_context
def send(ctx, file_path, broker):
    """Create a room and send FILE to whoever joins it."""
    config = ctx.obj['config']
    if broker:
        config.broker_url = broker
    file_path = Path(file_path)

    async def run():
        endpoint = ShareEndpoint(config)

        def peer_left(text):
            # Before a file is under way the room stays open for the next peer
            if not endpoint.transfers.sender.is_active:
                console.print(f"[yellow]{text}, waiting for a new peer...[/yellow]")

        endpoint.on_peer_disconnected = peer_left

        try:
            code = await endpoint.create_room()
        except (TransportError, RoomError) as e:
            console.print(f"[red]✗ Could not create room: {e}[/red]")
            await endpoint.close()
            return

        console.print(Panel.fit(
            f"[bold green]Room Created[/bold green]\n\n"
            f"File: [cyan]{file_path.name}[/cyan]\n"
            f"Size: [yellow]{format_size(file_path.stat().st_size)}[/yellow]\n\n"
            f"[bold]Room code (share this):[/bold] [green]{code}[/green]\n"
            f"Join URL: [blue]{build_join_url(config.join_base_url, code)}[/blue]",
            title="Share"
        ))

        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
                console=console,
            ) as progress:
                task = progress.add_task("Waiting for peer...", total=100)
                await endpoint.wait_for_channel()

                def update_progress(p):
                    if p.role == 'sender':
                        progress.update(
                            task,
                            completed=p.progress_percent,
                            description=f"Sending... ({p.chunks_done}/{p.total_chunks} chunks)"
                        )

                endpoint.on_progress = update_progress
                session = await endpoint.send_file(file_path)
                await endpoint.wait_sent(session.file_id, stop_on_pause=True)
                progress.update(task, completed=100, description="Done!")

            console.print(f"\n[green]✓ Sent {file_path.name}[/green]")
        except (TransportError, TransferError) as e:
            console.print(f"\n[red]✗ Transfer failed: {e}[/red]")
        except KeyboardInterrupt:
            console.print("\n[yellow]Cancelled[/yellow]")
        finally:
            await endpoint.close()

    asyncio.run(run())


@cli.command()
@click.argument('code_or_url')
@click.option('--output', '-o', type=click.Path(file_okay=False), help='Download directory')
@click.option('--broker', default=None, help='Broker websocket URL')
@click.pass_context
def receive(ctx, code_or_url, output, broker):
    """Join a room by code or join URL and receive one file."""
    config = ctx.obj['config']
    if output:
        config.download_dir = Path(output)
    if broker:
        config.broker_url = broker

    async def run():
        endpoint = ShareEndpoint(config)

        try:
            code = await endpoint.join_room(code_or_url)
        except RoomError as e:
            console.print(f"[red]✗ {friendly_error(e.message)}[/red]")
            await endpoint.close()
            return
        except TransportError as e:
            console.print(f"[red]✗ Could not reach broker: {e}[/red]")
            await endpoint.close()
            return

        console.print(f"[green]Joined room {code}[/green]")

        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
                console=console,
            ) as progress:
                task = progress.add_task("Connecting to peer...", total=100)

                def update_progress(p):
                    if p.role == 'receiver':
                        progress.update(
                            task,
                            completed=p.progress_percent,
                            description=f"Receiving {p.file_name}... "
                                        f"({p.chunks_done}/{p.total_chunks} chunks)"
                        )

                endpoint.on_progress = update_progress
                await endpoint.wait_for_channel()
                progress.update(task, description="Waiting for file...")
                path = await endpoint.wait_received()
                progress.update(task, completed=100, description="Done!")

            console.print(f"\n[green]✓ Saved to: {path}[/green]")
        except (TransportError, TransferError) as e:
            console.print(f"\n[red]✗ Nothing received: {e}[/red]")
        except KeyboardInterrupt:
            console.print("\n[yellow]Cancelled[/yellow]")
        finally:
            await endpoint.close()

    asyncio.run(run())


@cli.command('config')
@click.pass_context
def show_config(ctx):
    """Print the effective configuration."""
    console.print_json(json.dumps(ctx.obj['config'].to_dict()))


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


if __name__ == '__main__':
    cli()
