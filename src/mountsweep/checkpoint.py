# Copyright (c) Syntropy Systems
"""Backup and restore of the server's share configuration around a sweep."""
from __future__ import annotations

import fcntl
import json
import logging
from datetime import datetime, timezone
from typing import IO, TYPE_CHECKING, cast

from mountsweep.errors import CheckpointBusyError, ManagementError, MountSweepError
from mountsweep.management import (
    NFS_NAMESPACE,
    SMB_NAMESPACE,
    MiddlewareClient,
    ShareService,
    sanitize,
)
from mountsweep.models.base import JSONObject

if TYPE_CHECKING:
    from pathlib import Path
    from types import TracebackType

    from typing_extensions import Self

logger = logging.getLogger(__name__)

LOCK_FILE = "checkpoint.lock"
BACKUP_GLOB = "shares-*.json"

Snapshot = dict[str, list[JSONObject]]


class ServerCheckpoint:
    """Holds an exclusive lock and a snapshot of the shares for one path.

    Used as a context manager: entering locks and backs up, leaving
    restores the snapshot and releases the lock. A second checkpoint on
    the same backup directory fails fast with CheckpointBusyError.
    """

    client: MiddlewareClient
    export_path: str
    backup_dir: Path
    namespaces: tuple[str, ...]
    snapshot: Snapshot | None
    backup_file: Path | None
    _lock_file: IO[str] | None

    def __init__(
        self,
        client: MiddlewareClient,
        export_path: str,
        backup_dir: Path,
        namespaces: tuple[str, ...] = (NFS_NAMESPACE, SMB_NAMESPACE),
    ) -> None:
        self.client = client
        self.export_path = export_path
        self.backup_dir = backup_dir
        self.namespaces = namespaces
        self.snapshot = None
        self.backup_file = None
        self._lock_file = None

    def __enter__(self) -> Self:
        self.acquire()
        try:
            _ = self.backup()
        except BaseException:
            self.release()
            raise
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        try:
            if self.snapshot is not None:
                self.restore(self.snapshot)
        finally:
            self.release()

    @property
    def lock_path(self) -> Path:
        return self.backup_dir / LOCK_FILE

    def acquire(self) -> None:
        """Take the exclusive, non-blocking lock."""
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        lock_file = self.lock_path.open("a")
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            lock_file.close()
            msg = f"Another sweep holds {self.lock_path}"
            raise CheckpointBusyError(msg) from e
        self._lock_file = lock_file

    def release(self) -> None:
        """Drop the lock if held."""
        if self._lock_file is None:
            return
        try:
            fcntl.flock(self._lock_file.fileno(), fcntl.LOCK_UN)
        finally:
            self._lock_file.close()
            self._lock_file = None

    def backup(self) -> Path:
        """Snapshot the shares for the export path to a JSON file."""
        snapshot: Snapshot = {}
        for namespace in self.namespaces:
            record = ShareService(self.client, namespace).find_by_path(self.export_path)
            snapshot[namespace] = [record] if record is not None else []

        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        path = self.backup_dir / f"shares-{timestamp}.json"
        with path.open("w") as f:
            json.dump({"export_path": self.export_path, "shares": snapshot}, f, indent=2)

        self.snapshot = snapshot
        self.backup_file = path
        logger.info("Backed up share configuration to %s", path)
        return path

    def restore(self, snapshot: Snapshot) -> None:
        """Write the snapshot back and remove shares created since.

        Shares that were updated in place get their saved fields back
        (without the read-only ones), shares deleted since are recreated,
        and shares that did not exist are deleted. Each namespace is
        restored on its own; failures are logged and raised together once
        every namespace has been tried.
        """
        failed: list[str] = []
        first_error: MountSweepError | None = None
        for namespace, records in snapshot.items():
            try:
                self._restore_namespace(namespace, records)
            except MountSweepError as e:
                logger.error(
                    "Restoring %s shares for %s failed: %s", namespace, self.export_path, e
                )
                failed.append(f"{namespace}: {e}")
                first_error = first_error or e
        if first_error is not None:
            msg = f"Restore of {self.export_path} incomplete ({'; '.join(failed)})"
            raise ManagementError(msg) from first_error
        logger.info("Restored share configuration for %s", self.export_path)

    def _restore_namespace(self, namespace: str, records: list[JSONObject]) -> None:
        shares = ShareService(self.client, namespace)
        current = shares.find_by_path(self.export_path)
        saved_ids = {r.get("id") for r in records}

        if current is not None and current.get("id") not in saved_ids:
            logger.info(
                "Deleting %s share %s created during the sweep",
                namespace,
                current.get("id"),
            )
            self.client.delete(namespace, cast("int", current["id"]))

        for record in records:
            fields = sanitize(namespace, record)
            record_id = record.get("id")
            if current is not None and current.get("id") == record_id:
                _ = self.client.update(namespace, cast("int", record_id), fields)
            else:
                _ = self.client.create(namespace, fields)

        shares.restart()


def latest_backup(backup_dir: Path) -> Path | None:
    """Most recent backup file in a directory."""
    backups = sorted(backup_dir.glob(BACKUP_GLOB))
    return backups[-1] if backups else None


def load_backup(path: Path) -> tuple[str, Snapshot]:
    """Read a backup file as (export_path, snapshot)."""
    with path.open() as f:
        data = json.load(f)
    if not isinstance(data, dict) or "shares" not in data:
        msg = f"{path} is not a share backup"
        raise ManagementError(msg)
    return str(data.get("export_path", "")), cast("Snapshot", data["shares"])
