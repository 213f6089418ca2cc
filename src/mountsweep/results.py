# Copyright (c) Syntropy Systems
"""Append-only outcome log.

Each outcome is written twice: as a ``RESULT:`` line in ``results.log``,
which other tools grep, and as a JSON line in ``outcomes.jsonl`` carrying
the full record.
"""
from __future__ import annotations

import logging
import re
from contextlib import suppress
from typing import TYPE_CHECKING

from pydantic import ValidationError

from mountsweep.models.outcome import OutcomeRecord, OutcomeStatus, utc_timestamp

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

RESULTS_LOG = "results.log"
OUTCOMES_JSONL = "outcomes.jsonl"
STATUS_FILE = "test_status.txt"

LINE_PREFIX = "RESULT"

# Statuses written by older versions of the toolkit
LEGACY_STATUSES: dict[str, OutcomeStatus] = {
    "NO_CONTENT": OutcomeStatus.FAILED,
    "NFS_MOUNT_FAILED": OutcomeStatus.MOUNT_FAILED,
    "BINDFS_MOUNT_FAILED": OutcomeStatus.MOUNT_FAILED,
    "SMB_MOUNT_FAILED": OutcomeStatus.MOUNT_FAILED,
    "EXPORT_FAILED": OutcomeStatus.ERROR,
    "NO_BINDFS": OutcomeStatus.ERROR,
}

# Informational lines that are not outcomes
IGNORED_STATUSES = ("SYSTEMD_UNIT_CREATED", "SYSTEMD_UNITS_CREATED")

# Tier implied by a family when reading bare log lines
FAMILY_TIERS = {
    "BINDFS": "bindfs",
    "SMB": "smb",
    "LOOPBACK": "loopback",
    "AUTOFS": "autofs",
    "MERGERFS": "mergerfs",
    "INDIVIDUAL": "individual",
}

_COUNTS = re.compile(r"(\d+)/(\d+)")


def format_line(record: OutcomeRecord) -> str:
    """Render a record as ``RESULT:<family>:<case>:<STATUS>[:<details>]``."""
    line = f"{LINE_PREFIX}:{record.family}:{record.case_name}:{record.status.value}"
    details = " ".join(record.details.split())
    if details:
        line = f"{line}:{details}"
    return line


def parse_line(line: str) -> OutcomeRecord | None:
    """Parse one ``RESULT:`` line. Returns None for other lines.

    Legacy statuses are mapped onto the current set and unknown ones become
    ERROR. Counts are recovered from a ``<visible>/<expected>`` detail.
    """
    text = line.strip()
    if not text.startswith(f"{LINE_PREFIX}:"):
        return None
    parts = text.split(":", 4)
    if len(parts) < 4:
        return None
    _, family, case_name, raw_status = parts[:4]
    details = parts[4] if len(parts) == 5 else ""

    if raw_status in IGNORED_STATUSES:
        return None
    try:
        status = OutcomeStatus(raw_status)
    except ValueError:
        status = LEGACY_STATUSES.get(raw_status, OutcomeStatus.ERROR)
        if raw_status not in LEGACY_STATUSES:
            details = f"unknown status {raw_status}" + (f": {details}" if details else "")

    visible = expected = 0
    match = _COUNTS.search(details)
    if match and int(match.group(1)) <= int(match.group(2)):
        visible, expected = int(match.group(1)), int(match.group(2))

    try:
        return OutcomeRecord(
            case_name=case_name,
            family=family,
            tier=FAMILY_TIERS.get(family.upper(), "direct-nfs"),
            status=status,
            visible_count=visible,
            expected_count=expected,
            details=details,
        )
    except ValidationError:
        logger.warning("Skipping malformed result line: %s", text)
        return None


class OutcomeLog:
    """Outcome files of one results directory."""

    results_dir: Path

    def __init__(self, results_dir: Path) -> None:
        self.results_dir = results_dir

    @property
    def log_path(self) -> Path:
        return self.results_dir / RESULTS_LOG

    @property
    def jsonl_path(self) -> Path:
        return self.results_dir / OUTCOMES_JSONL

    @property
    def status_path(self) -> Path:
        return self.results_dir / STATUS_FILE

    def append(self, record: OutcomeRecord) -> None:
        """Append a record to both files and flush them."""
        self.results_dir.mkdir(parents=True, exist_ok=True)
        with self.jsonl_path.open("a") as f:
            _ = f.write(record.model_dump_json() + "\n")
            f.flush()
        with self.log_path.open("a") as f:
            _ = f.write(format_line(record) + "\n")
            f.flush()

    def read(self) -> list[OutcomeRecord]:
        """Read records, tolerating a partial final line.

        The JSONL file is preferred; a directory holding only a
        ``results.log`` (for example from an older run) is parsed line by
        line.
        """
        records: list[OutcomeRecord] = []
        if self.jsonl_path.exists():
            with self.jsonl_path.open() as f:
                for raw_line in f:
                    line = raw_line.strip()
                    if line:
                        with suppress(ValidationError):
                            records.append(OutcomeRecord.model_validate_json(line))
            return records

        if self.log_path.exists():
            with self.log_path.open() as f:
                for raw_line in f:
                    record = parse_line(raw_line)
                    if record is not None:
                        records.append(record)
        return records

    def mark_phase(self, phase: str) -> None:
        """Record which sweep phase is running."""
        self.results_dir.mkdir(parents=True, exist_ok=True)
        with self.status_path.open("a") as f:
            _ = f.write(f"STATUS:{phase}:{utc_timestamp()}\n")

    def clear(self) -> None:
        """Remove previous outcome files before a fresh sweep."""
        for path in (self.log_path, self.jsonl_path, self.status_path):
            path.unlink(missing_ok=True)
