#!/usr/bin/env python3
"""
File Transfer CLI

Command-line interface for the file transfer client and server.

Usage:
    filerelay serve                  # Run the server
    filerelay list                   # List files on the server
    filerelay upload FILE            # Upload a file
    filerelay download NAME          # Download a file
    filerelay config                 # Show effective configuration
"""

import json
import logging
import signal
import threading
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table
from rich.progress import (
    Progress, TextColumn, BarColumn, DownloadColumn, TransferSpeedColumn
)
from rich.panel import Panel
from rich.logging import RichHandler

from .config import Config, load_config
from .exceptions import TransferError
from .transfer import FileTransferClient, FileTransferServer, TransferCallback

console = Console()


def setup_logging(verbose: bool = False, level: str = 'INFO'):
    """Configure logging with rich output."""
    level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)],
        force=True,
    )


class ProgressCallback(TransferCallback):
    """Drives a rich progress bar from transfer callbacks."""

    def __init__(self, progress: Progress, task_id, label: str):
        self.progress = progress
        self.task_id = task_id
        self.label = label
        self.error: Optional[str] = None
        self.updates = 0

    def on_progress(self, transferred: int, total: int):
        self.updates += 1
        self.progress.update(self.task_id, completed=transferred, total=total)

    def on_complete(self):
        # Empty files never report progress
        if self.updates == 0:
            self.progress.update(self.task_id, total=0, completed=0)
        self.progress.update(self.task_id, description=f"{self.label} [green]done[/green]")

    def on_error(self, message: str):
        self.error = message
        self.progress.update(self.task_id, description=f"{self.label} [red]failed[/red]")


def _transfer_progress() -> Progress:
    return Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
        console=console,
    )


def _make_client(config: Config) -> FileTransferClient:
    return FileTransferClient(
        host=config.host,
        port=config.port,
        connect_timeout=config.connect_timeout,
    )


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help='JSON configuration file')
@click.option('--host', default=None, help='Server host (client commands)')
@click.option('--port', default=None, type=int, help='Server TCP port')
@click.pass_context
def cli(ctx, verbose, config_path, host, port):
    """File Transfer - upload, list and download files on a single server."""
    config = load_config(Path(config_path) if config_path else None)
    if host:
        config.host = host
    if port is not None:
        config.port = port

    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.option('--storage-dir', type=click.Path(file_okay=False), default=None,
              help='Directory holding uploaded files')
@click.option('--max-workers', type=int, default=None,
              help='Maximum concurrent connections (default: unbounded)')
@click.pass_context
def serve(ctx, storage_dir, max_workers):
    """Run the transfer server until interrupted."""
    config = ctx.obj['config']
    if storage_dir:
        config.storage_dir = Path(storage_dir)
    if max_workers is not None:
        config.max_workers = max_workers

    server = FileTransferServer(
        storage_dir=config.storage_dir,
        host=config.bind_host,
        max_workers=config.max_workers,
        accept_grace_period=config.accept_grace_period,
    )

    try:
        server.start(config.port)
    except TransferError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise SystemExit(1)

    console.print(Panel.fit(
        f"[bold green]Transfer Server Started[/bold green]\n\n"
        f"Address: [yellow]{server.address[0]}:{server.port}[/yellow]\n"
        f"Storage: [blue]{config.storage_dir}[/blue]\n"
        f"Workers: [yellow]{config.max_workers or 'unbounded'}[/yellow]",
        title="Server Info"
    ))
    console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")

    stopped = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stopped.set())

    try:
        while not stopped.wait(1):
            pass
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")
    finally:
        server.stop()
        console.print("[green]Server stopped[/green]")
        print_server_stats(server)


@cli.command('list')
@click.pass_context
def list_files(ctx):
    """List files stored on the server."""
    config = ctx.obj['config']
    client = _make_client(config)

    try:
        names = client.list_files()
    except TransferError as e:
        console.print(f"[red]✗ Failed to list files: {e}[/red]")
        raise SystemExit(1)

    if not names:
        console.print("[yellow]No files on server[/yellow]")
        return

    table = Table(title=f"Files on {config.host}:{config.port}")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Name", style="cyan")

    for index, name in enumerate(names, start=1):
        table.add_row(str(index), name)

    console.print(table)


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def upload(ctx, file_path):
    """Upload a file to the server."""
    config = ctx.obj['config']
    client = _make_client(config)
    path = Path(file_path)

    with _transfer_progress() as progress:
        task = progress.add_task(f"Uploading {path.name}", total=path.stat().st_size)
        callback = ProgressCallback(progress, task, f"Uploading {path.name}")
        try:
            client.upload_file(path, callback)
        except TransferError as e:
            progress.stop()
            console.print(f"[red]✗ Upload failed: {e}[/red]")
            raise SystemExit(1)

    console.print(f"[green]✓ Uploaded {path.name} ({format_size(path.stat().st_size)})[/green]")


@cli.command()
@click.argument('name')
@click.option('--output', '-o', type=click.Path(file_okay=False), default=None,
              help='Output directory')
@click.pass_context
def download(ctx, name, output):
    """Download a file from the server."""
    config = ctx.obj['config']
    client = _make_client(config)
    target_dir = Path(output) if output else config.download_dir

    with _transfer_progress() as progress:
        task = progress.add_task(f"Downloading {name}", total=None)
        callback = ProgressCallback(progress, task, f"Downloading {name}")
        try:
            result = client.download_file(name, target_dir, callback)
        except TransferError as e:
            progress.stop()
            console.print(f"[red]✗ Download failed: {e}[/red]")
            raise SystemExit(1)

    console.print(f"[green]✓ Downloaded to: {result}[/green]")


@cli.command('config')
@click.pass_context
def show_config(ctx):
    """Show the effective configuration."""
    config = ctx.obj['config']
    click.echo(json.dumps(config.to_dict(), indent=2))


def print_server_stats(server: FileTransferServer):
    """Print transfer counters and storage totals."""
    stats = server.get_stats()
    storage = server.storage.get_stats()

    table = Table(title="Server Statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Files served", str(stats['files_served']))
    table.add_row("Bytes sent", format_size(stats['bytes_sent']))
    table.add_row("Files received", str(stats['files_received']))
    table.add_row("Bytes received", format_size(stats['bytes_received']))
    table.add_row("Stored files", str(storage.total_files))
    table.add_row("Stored size", format_size(storage.total_bytes))

    console.print(table)


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


if __name__ == '__main__':
    cli()
