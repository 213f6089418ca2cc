# Copyright (c) Syntropy Systems
"""mountsweep init command."""
from __future__ import annotations

from pathlib import Path

import typer
import yaml

from mountsweep.cli.common import ExportPathOption, RemoteHostOption, console
from mountsweep.config import PROJECT_DIR_NAME, SweepSettings


def init(
    path: Path = typer.Argument(
        Path(),
        help="Directory to initialize (default: current directory)",
    ),
    remote_host: str | None = RemoteHostOption,
    export_path: str | None = ExportPathOption,
) -> None:
    """Initialize a new mountsweep project.

    Creates a .mountsweep directory with a configuration file and the
    results and backup directories.
    """
    target = path.resolve()
    project_dir = target / PROJECT_DIR_NAME

    if project_dir.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {project_dir}")
        return

    defaults = SweepSettings()

    # Create directory structure
    project_dir.mkdir(parents=True)
    results_dir = project_dir / "results"
    results_dir.mkdir()
    backup_dir = project_dir / "backups"
    backup_dir.mkdir()

    # Create default config
    config = {
        "remote_host": remote_host or "",
        "remote_user": defaults.remote_user,
        "server_host": defaults.server_host,
        "export_path": export_path or defaults.export_path,
        "test_dirs": list(defaults.test_dirs),
        "zfs_base_dataset": defaults.zfs_base_dataset,
        "settle_timeout": defaults.settle_timeout,
        "command_timeout": defaults.command_timeout,
        "tier_priority": list(defaults.tier_priority),
    }

    config_path = project_dir / "config.yaml"
    with config_path.open("w") as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False)

    console.print(f"[green]Initialized mountsweep project:[/green] {project_dir}")
    console.print(f"  [dim]config:[/dim] {config_path}")
    console.print(f"  [dim]results:[/dim] {results_dir}")
    console.print(f"  [dim]backups:[/dim] {backup_dir}")
    if not remote_host:
        console.print("  Set [bold]remote_host[/bold] in the config before running a sweep")
