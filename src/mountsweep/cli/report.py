# Copyright (c) Syntropy Systems
"""mountsweep report command."""
from __future__ import annotations

from typing import TYPE_CHECKING

import typer
from rich.table import Table

from mountsweep.catalog import FAMILIES, build_plans
from mountsweep.cli.common import console, resolve_settings, styled_status
from mountsweep.render import (
    REPORT_FILE,
    UNITS_DIR,
    family_title,
    render_markdown,
    systemd_units,
)
from mountsweep.report import recommend, summarize
from mountsweep.results import OutcomeLog

if TYPE_CHECKING:
    from collections.abc import Mapping
    from pathlib import Path

    from mountsweep.config import SweepSettings
    from mountsweep.models.case import ConfigurationCase
    from mountsweep.models.outcome import OutcomeRecord, Recommendation, SweepReport


def print_summary(report: SweepReport, recommendation: Recommendation) -> None:
    """Print per-family counts and the recommendation."""
    table = Table(title="Sweep Summary")
    table.add_column("Category")
    table.add_column("Success", justify="right")
    table.add_column("Partial", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Mount failed", justify="right")
    table.add_column("Error", justify="right")

    for family, counts in report.counts_by_family.items():
        table.add_row(
            family_title(family),
            f"[green]{counts['SUCCESS']}[/green]" if counts["SUCCESS"] else "0",
            str(counts["PARTIAL"]),
            str(counts["FAILED"]),
            str(counts["MOUNT_FAILED"]),
            str(counts["ERROR"]),
        )
    console.print(table)

    if recommendation.kind == "success":
        console.print(f"\n[green]Recommended:[/green] {recommendation.message}")
    elif recommendation.kind == "partial":
        console.print(f"\n[yellow]Best partial:[/yellow] {recommendation.message}")
    else:
        console.print(f"\n[red]Result:[/red] {recommendation.message}")


def print_records(records: list[OutcomeRecord]) -> None:
    table = Table(title="Outcomes")
    table.add_column("Family", style="dim")
    table.add_column("Case")
    table.add_column("Status")
    table.add_column("Visible", justify="right")
    table.add_column("Details")
    for record in records:
        table.add_row(
            record.family,
            record.case_name,
            styled_status(record.status),
            f"{record.visible_count}/{record.expected_count}",
            record.details,
        )
    console.print(table)


def write_outputs(
    results_dir: Path,
    report: SweepReport,
    recommendation: Recommendation,
    settings: SweepSettings,
    cases: Mapping[str, ConfigurationCase] | None = None,
) -> Path:
    """Write the Markdown report and, when possible, systemd units."""
    results_dir.mkdir(parents=True, exist_ok=True)
    report_path = results_dir / REPORT_FILE
    _ = report_path.write_text(
        render_markdown(report, recommendation, settings=settings, cases=cases)
    )

    chosen = recommendation.record
    case = cases.get(chosen.case_name) if cases and chosen else None
    if case is not None:
        units = systemd_units(case, settings)
        if units:
            units_dir = results_dir / UNITS_DIR
            units_dir.mkdir(exist_ok=True)
            for name, content in units.items():
                _ = (units_dir / name).write_text(content)
            console.print(f"  [dim]systemd units:[/dim] {units_dir}")
    return report_path


def report(
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Show every outcome, not only the summary",
    ),
) -> None:
    """Summarize recorded outcomes and recommend a configuration.

    Reads the results directory of the current project, including logs
    written by older versions of the toolkit.
    """
    settings = resolve_settings()
    outcome_log = OutcomeLog(settings.results_dir)
    records = outcome_log.read()

    if not records:
        console.print(
            f"[yellow]No outcomes recorded in {settings.results_dir}.[/yellow] "
            "Run 'mountsweep run' first."
        )
        raise typer.Exit(1)

    summary = summarize(records)
    recommendation = recommend(summary, settings.tier_priority)

    if verbose:
        print_records(records)
    print_summary(summary, recommendation)

    # Case parameters are only known for the built-in catalogs
    known: dict[str, ConfigurationCase] = {}
    for family in FAMILIES:
        for plan in build_plans(family, settings):
            for case in plan.cases:
                known.setdefault(case.name, case)

    report_path = write_outputs(settings.results_dir, summary, recommendation, settings, known)
    console.print(f"  [dim]report:[/dim] {report_path}")
