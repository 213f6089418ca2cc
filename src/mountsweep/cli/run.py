# Copyright (c) Syntropy Systems
"""mountsweep run command."""
from __future__ import annotations

import contextlib
import signal
from pathlib import Path
from types import FrameType

import typer

from mountsweep.catalog import FAMILIES, iter_cases
from mountsweep.checkpoint import ServerCheckpoint
from mountsweep.cli.cases import print_plans, select_plans
from mountsweep.cli.common import (
    ExportPathOption,
    RemoteHostOption,
    RemoteUserOption,
    ServerHostOption,
    build_environment,
    console,
    resolve_settings,
    styled_status,
)
from mountsweep.cli.report import print_summary, write_outputs
from mountsweep.driver import SweepDriver
from mountsweep.errors import MountSweepError
from mountsweep.logging_setup import setup_logging
from mountsweep.models.outcome import OutcomeRecord
from mountsweep.report import recommend, summarize
from mountsweep.results import OutcomeLog


def _sigterm_handler(signum: int, frame: FrameType | None) -> None:  # noqa: ARG001
    """Turn SIGTERM into KeyboardInterrupt so pending reverts still run."""
    raise KeyboardInterrupt


def _print_record(record: OutcomeRecord) -> None:
    console.print(
        f"  {styled_status(record.status)} {record.case_name} "
        f"[dim]({record.visible_count}/{record.expected_count})[/dim]"
    )


def run(
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
    remote_host: str | None = RemoteHostOption,
    remote_user: str | None = RemoteUserOption,
    server_host: str | None = ServerHostOption,
    export_path: str | None = ExportPathOption,
    smb_password: str | None = typer.Option(
        None,
        "--smb-password",
        envvar="MOUNTSWEEP_SMB_PASSWORD",
        help="Password of the SMB user (for SMB cases)",
        show_default=False,
    ),
    settle: float | None = typer.Option(
        None,
        "--settle",
        help="Seconds to wait between applying and probing",
    ),
    checkpoint: bool = typer.Option(
        True,
        "--checkpoint/--no-checkpoint",
        help="Back up and restore the server's shares around the sweep",
    ),
    append: bool = typer.Option(
        False,
        "--append",
        help="Keep outcomes of previous runs instead of starting fresh",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run", "-n",
        help="List the cases without touching either host",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Log every command sent to the server and the client",
    ),
) -> None:
    r"""Run a configuration sweep and report which configuration works.

    Each case is applied, given time to settle, probed from the client and
    reverted before the next one starts.

    Example sweep.yaml for --cases:

    \b
        name: cache-options
        expected_paths: [caddy, homer]
        matrix:
          name: "v{vers}-{cache}"
          kind: client-mount
          parameters:
            vers: {values: [3, 4]}
            cache: {values: [noac, "lookupcache=none"]}
          template:
            options: "rw,hard,vers={vers},{cache}"
    """
    settings = resolve_settings(
        remote_host=remote_host,
        remote_user=remote_user,
        server_host=server_host,
        export_path=export_path,
        smb_password=smb_password,
        settle_timeout=settle,
    )
    plans = select_plans(family, cases_file, settings)
    total = print_plans(plans)
    console.print(f"\n[bold]{total} cases[/bold] will be run")

    if dry_run:
        console.print("\n[yellow]Dry run - nothing applied[/yellow]")
        return

    env = build_environment(settings)
    outcome_log = OutcomeLog(settings.results_dir)
    if not append:
        outcome_log.clear()
    setup_logging(console, verbose=verbose, log_dir=settings.results_dir)

    driver = SweepDriver(env, outcome_log, on_record=_print_record)
    previous_handler = signal.signal(signal.SIGTERM, _sigterm_handler)
    try:
        driver.preflight([case for _, case in iter_cases(plans)])

        guard = (
            ServerCheckpoint(env.middleware, settings.export_path, settings.backup_dir)
            if checkpoint
            else contextlib.nullcontext()
        )
        with guard:
            for plan in plans:
                console.print(f"\n[bold]{plan.name}[/bold]")
                outcome_log.mark_phase(plan.name)
                _ = driver.run_plan(plan)
        outcome_log.mark_phase("complete")
    except KeyboardInterrupt as e:
        outcome_log.mark_phase("interrupted")
        console.print("\n[yellow]Interrupted; the current case was reverted[/yellow]")
        raise typer.Exit(130) from e
    except MountSweepError as e:
        outcome_log.mark_phase("aborted")
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    finally:
        _ = signal.signal(signal.SIGTERM, previous_handler)

    records = outcome_log.read()
    summary = summarize(records)
    recommendation = recommend(summary, settings.tier_priority)
    console.print()
    print_summary(summary, recommendation)

    cases = {case.name: case for plan in plans for case in plan.cases}
    report_path = write_outputs(settings.results_dir, summary, recommendation, settings, cases)
    console.print(f"  [dim]report:[/dim] {report_path}")
    console.print(f"  [dim]results:[/dim] {outcome_log.log_path}")
