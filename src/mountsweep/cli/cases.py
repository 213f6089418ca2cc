# Copyright (c) Syntropy Systems
"""mountsweep cases command."""
from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from mountsweep.catalog import FAMILIES, build_plans
from mountsweep.cli.common import RemoteUserOption, console, resolve_settings
from mountsweep.config import SweepSettings
from mountsweep.errors import ConfigError
from mountsweep.sweep import SweepPlan, load_plan


def select_plans(
    family: str, cases_file: Path | None, settings: SweepSettings
) -> list[SweepPlan]:
    """Plans from a definition file, or the built-in plans of a family."""
    try:
        if cases_file is not None:
            return [load_plan(cases_file)]
        return build_plans(family, settings)
    except (OSError, ConfigError) as e:
        console.print(f"[red]Error loading cases:[/red] {e}")
        raise typer.Exit(1) from e


def print_plans(plans: list[SweepPlan]) -> int:
    """Print one table per plan and return the number of cases."""
    total = 0
    for plan in plans:
        table = Table(title=f"Sweep: {plan.name}")
        table.add_column("#", style="dim")
        table.add_column("Name")
        table.add_column("Kind")
        table.add_column("Family")
        table.add_column("Tier")
        table.add_column("Parameters")

        for i, case in enumerate(plan.cases):
            kind = case.kind.value
            if case.variant:
                kind = f"{kind}/{case.variant}"
            param_str = ", ".join(f"{k}={v}" for k, v in case.parameters.items())
            if len(param_str) > 60:
                param_str = param_str[:57] + "..."
            table.add_row(str(i), case.name, kind, case.log_family, case.tier_name, param_str)

        console.print(table)
        total += len(plan.cases)
    return total


def cases(
    family: str = typer.Argument(
        "all",
        help=f"Case family: {', '.join((*FAMILIES, 'all'))}",
    ),
    cases_file: Path | None = typer.Option(
        None,
        "--cases", "-c",
        help="Sweep definition YAML file (overrides the family)",
        exists=True,
    ),
    remote_user: str | None = RemoteUserOption,
) -> None:
    """List the configuration cases a sweep would run."""
    settings = resolve_settings(remote_user=remote_user)
    total = print_plans(select_plans(family, cases_file, settings))
    console.print(f"\n[bold]{total} cases[/bold]")
