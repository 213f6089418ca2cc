# Copyright (c) Syntropy Systems
"""Console and file logging for CLI runs."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from rich.logging import RichHandler

if TYPE_CHECKING:
    from pathlib import Path

    from rich.console import Console

LOG_FILE = "mountsweep.log"
FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(
    console: Console,
    *,
    verbose: bool = False,
    log_dir: Path | None = None,
) -> None:
    """Route the package's loggers to the rich console and a log file.

    The console shows INFO (DEBUG with ``verbose``); the file always
    records DEBUG, including every command sent to either host.
    """
    package_logger = logging.getLogger("mountsweep")
    package_logger.setLevel(logging.DEBUG)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(
        console=console,
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    package_logger.addHandler(console_handler)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / LOG_FILE)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        package_logger.addHandler(file_handler)

    package_logger.propagate = False
