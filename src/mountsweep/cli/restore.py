# Copyright (c) Syntropy Systems
"""mountsweep restore command."""
from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from mountsweep.checkpoint import ServerCheckpoint, latest_backup, load_backup
from mountsweep.cli.common import console, resolve_settings
from mountsweep.errors import MountSweepError
from mountsweep.logging_setup import setup_logging
from mountsweep.management import MiddlewareClient
from mountsweep.remote import LocalExecutor


def restore(
    backup: Path | None = typer.Argument(
        None,
        help="Backup file to restore (default: the most recent one)",
        exists=True,
        dir_okay=False,
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run", "-n",
        help="Show what would be restored without changing the server",
    ),
) -> None:
    """Restore the server's share configuration from a backup.

    Use this after a sweep was killed before it could clean up.
    """
    settings = resolve_settings()

    if backup is None:
        backup = latest_backup(settings.backup_dir)
        if backup is None:
            console.print(f"[yellow]No backups found in {settings.backup_dir}[/yellow]")
            raise typer.Exit(1)

    try:
        export_path, snapshot = load_backup(backup)
    except (OSError, ValueError, MountSweepError) as e:
        console.print(f"[red]Error reading backup:[/red] {e}")
        raise typer.Exit(1) from e

    table = Table(title=f"Backup: {backup.name}")
    table.add_column("Namespace")
    table.add_column("ID", justify="right")
    table.add_column("Path")
    for namespace, records in snapshot.items():
        if not records:
            table.add_row(namespace, "-", "[dim](none; created shares are deleted)[/dim]")
        for record in records:
            table.add_row(namespace, str(record.get("id", "?")), str(record.get("path", "")))
    console.print(table)

    if dry_run:
        console.print("\n[yellow]Dry run - server not changed[/yellow]")
        return

    setup_logging(console)
    client = MiddlewareClient(
        LocalExecutor(default_timeout=settings.command_timeout),
        timeout=settings.command_timeout,
    )
    checkpoint = ServerCheckpoint(
        client, export_path or settings.export_path, settings.backup_dir
    )
    try:
        checkpoint.acquire()
        try:
            checkpoint.restore(snapshot)
        finally:
            checkpoint.release()
    except MountSweepError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    console.print(f"[green]Restored[/green] share configuration for {checkpoint.export_path}")
