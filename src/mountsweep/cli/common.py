# Copyright (c) Syntropy Systems
"""Helpers shared by CLI commands."""
from __future__ import annotations

import typer
from rich.console import Console

from mountsweep.appliers import SweepEnvironment
from mountsweep.config import SweepSettings, find_project_dir, load_config
from mountsweep.errors import ConfigError
from mountsweep.models.outcome import OutcomeStatus
from mountsweep.remote import LocalExecutor, RemoteExecutor

console = Console()

STATUS_STYLES = {
    OutcomeStatus.SUCCESS: "green",
    OutcomeStatus.PARTIAL: "yellow",
    OutcomeStatus.FAILED: "red",
    OutcomeStatus.MOUNT_FAILED: "red",
    OutcomeStatus.ERROR: "magenta",
}

# Reusable option declarations; every one can also come from the environment
RemoteHostOption = typer.Option(
    None, "--remote-host", "-H", envvar="MOUNTSWEEP_REMOTE_HOST", help="Client host to mount from"
)
RemoteUserOption = typer.Option(
    None, "--remote-user", "-u", envvar="MOUNTSWEEP_REMOTE_USER", help="SSH user on the client"
)
ServerHostOption = typer.Option(
    None,
    "--server-host",
    envvar="MOUNTSWEEP_SERVER_HOST",
    help="Server name as the client resolves it",
)
ExportPathOption = typer.Option(
    None, "--export-path", "-e", envvar="MOUNTSWEEP_EXPORT_PATH", help="Exported directory"
)


def styled_status(status: OutcomeStatus) -> str:
    style = STATUS_STYLES[status]
    return f"[{style}]{status.value}[/{style}]"


def resolve_settings(**overrides: object) -> SweepSettings:
    """Load the project config and apply command-line/environment overrides."""
    try:
        settings = load_config(find_project_dir())
        return settings.with_overrides(**overrides)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e


def build_environment(settings: SweepSettings) -> SweepEnvironment:
    """Executors for this host (server) and the client over ssh."""
    if not settings.remote_host:
        console.print(
            "[red]Error:[/red] No client host configured. "
            "Set remote_host in .mountsweep/config.yaml, pass --remote-host, "
            "or export MOUNTSWEEP_REMOTE_HOST."
        )
        raise typer.Exit(1)

    server = LocalExecutor(default_timeout=settings.command_timeout)
    client = RemoteExecutor(
        settings.remote_host,
        settings.remote_user,
        connect_timeout=settings.connect_timeout,
        default_timeout=settings.command_timeout,
    )
    return SweepEnvironment(settings=settings, server=server, client=client)
