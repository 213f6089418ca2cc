# Copyright (c) Syntropy Systems
"""Main CLI entry point for mountsweep."""

import typer

from mountsweep.cli.cases import cases
from mountsweep.cli.doctor import doctor
from mountsweep.cli.init_cmd import init
from mountsweep.cli.report import report
from mountsweep.cli.restore import restore
from mountsweep.cli.run import run

app = typer.Typer(
    name="mountsweep",
    help=(
        "Find the NFS/SMB configuration that makes nested datasets visible "
        "on a client. Apply, probe, revert, repeat."
    ),
    no_args_is_help=True,
    add_completion=False,
)

# Register commands
_ = app.command()(init)
_ = app.command()(doctor)
_ = app.command()(cases)
_ = app.command()(run)
_ = app.command()(report)
_ = app.command()(restore)


if __name__ == "__main__":
    app()
