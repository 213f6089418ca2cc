# Copyright (c) Syntropy Systems
"""TrueNAS middleware calls through the ``midclt`` command line client."""
from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, cast

from mountsweep.errors import ManagementError, RemoteExitError

if TYPE_CHECKING:
    from mountsweep.models.base import JSONObject, JSONValue
    from mountsweep.remote import CommandExecutor

logger = logging.getLogger(__name__)

NFS_NAMESPACE = "sharing.nfs"
SMB_NAMESPACE = "sharing.smb"

# Fields that *.update rejects when a queried record is written back
READ_ONLY_FIELDS: dict[str, tuple[str, ...]] = {
    NFS_NAMESPACE: ("id", "locked"),
    SMB_NAMESPACE: ("id", "locked", "vuid", "path_local"),
}

# Service names used by service.restart / service.reload
SERVICE_FOR_NAMESPACE = {
    NFS_NAMESPACE: "nfs",
    SMB_NAMESPACE: "cifs",
}


class MiddlewareClient:
    """Calls middleware methods and decodes their JSON replies.

    Every parameter is passed as its own JSON-encoded argv token.
    """

    executor: CommandExecutor
    timeout: float

    def __init__(self, executor: CommandExecutor, timeout: float = 60.0) -> None:
        self.executor = executor
        self.timeout = timeout

    def call(self, method: str, *params: JSONValue) -> JSONValue:
        """Invoke a middleware method and return its decoded result."""
        argv = ["midclt", "call", method, *(json.dumps(p) for p in params)]
        try:
            result = self.executor.execute(argv, elevated=True, timeout=self.timeout)
        except RemoteExitError as e:
            msg = f"{method} failed: {e.stderr or e}"
            raise ManagementError(msg) from e

        output = result.stdout.strip()
        if not output:
            return None
        try:
            return cast("JSONValue", json.loads(output))
        except json.JSONDecodeError:
            # Some methods (service.restart on older releases) print plain text
            logger.debug("%s returned non-JSON output: %s", method, output)
            return output

    def query(
        self, namespace: str, filters: list[JSONValue] | None = None
    ) -> list[JSONObject]:
        """Return all records of a namespace matching the filters."""
        params: list[JSONValue] = [filters] if filters else []
        data = self.call(f"{namespace}.query", *params)
        if not isinstance(data, list):
            msg = f"{namespace}.query returned {type(data).__name__}, expected a list"
            raise ManagementError(msg)
        return [cast("JSONObject", item) for item in data if isinstance(item, dict)]

    def create(self, namespace: str, config: JSONObject) -> JSONObject:
        """Create a record and return it."""
        data = self.call(f"{namespace}.create", config)
        if not isinstance(data, dict) or "id" not in data:
            msg = f"{namespace}.create returned no record: {data!r}"
            raise ManagementError(msg)
        return cast("JSONObject", data)

    def update(self, namespace: str, record_id: int, config: JSONObject) -> JSONObject:
        """Update fields of an existing record."""
        data = self.call(f"{namespace}.update", record_id, config)
        if isinstance(data, dict):
            return cast("JSONObject", data)
        return {"id": record_id, **config}

    def delete(self, namespace: str, record_id: int) -> None:
        """Delete a record by id."""
        _ = self.call(f"{namespace}.delete", record_id)

    def restart_service(self, name: str) -> None:
        """Restart a middleware-managed service."""
        logger.info("Restarting %s service", name)
        _ = self.call("service.restart", name)

    def reload_service(self, name: str) -> None:
        """Reload a middleware-managed service's configuration."""
        logger.info("Reloading %s service", name)
        _ = self.call("service.reload", name)

    def service_running(self, name: str) -> bool:
        """Check whether a service reports itself running."""
        data = self.call("service.query", [["service", "=", name]])
        if isinstance(data, list) and data and isinstance(data[0], dict):
            return data[0].get("state") == "RUNNING" or data[0].get("running") is True
        return False


def _record_id(record: JSONObject) -> int:
    value = record.get("id")
    if not isinstance(value, int):
        msg = f"Record has no integer id: {record!r}"
        raise ManagementError(msg)
    return value


def sanitize(namespace: str, record: JSONObject) -> JSONObject:
    """Drop fields that the namespace's update call refuses."""
    drop = READ_ONLY_FIELDS.get(namespace, ("id",))
    return {k: v for k, v in record.items() if k not in drop}


class ShareService:
    """Share records of one namespace, looked up by filesystem path."""

    client: MiddlewareClient
    namespace: str

    def __init__(self, client: MiddlewareClient, namespace: str) -> None:
        self.client = client
        self.namespace = namespace

    @property
    def service_name(self) -> str:
        """Service that serves this namespace."""
        return SERVICE_FOR_NAMESPACE.get(self.namespace, self.namespace.split(".")[-1])

    def find_by_path(self, path: str) -> JSONObject | None:
        """Return the share whose path (or one of whose paths) is ``path``.

        The server-side ``path`` filter is tried first. Releases that keep
        the legacy ``paths`` list either reject that filter or match
        nothing, so both cases fall back to matching every record locally.
        """
        try:
            filtered = self.client.query(self.namespace, [["path", "=", path]])
        except ManagementError as e:
            logger.debug("path filter rejected by %s.query: %s", self.namespace, e)
            filtered = []

        for record in filtered:
            if _matches_path(record, path):
                return record

        for record in self.client.query(self.namespace):
            if _matches_path(record, path):
                return record
        return None

    def ensure(
        self, path: str, create_config: JSONObject, update_fields: JSONObject
    ) -> tuple[JSONObject, JSONObject | None]:
        """Create the share for ``path`` or update it in place.

        Returns the share and, when it already existed, its previous values
        for the updated fields. The second item is None when the share was
        created and empty when nothing had to change.
        """
        existing = self.find_by_path(path)
        if existing is None:
            config: JSONObject = {**create_config, **update_fields}
            created = self.client.create(self.namespace, config)
            logger.info("Created %s share %s for %s", self.namespace, created["id"], path)
            return created, None

        record_id = _record_id(existing)
        previous: JSONObject = {k: existing.get(k) for k in update_fields}
        if previous == update_fields:
            logger.info("%s share %s already configured", self.namespace, record_id)
            return existing, {}

        updated = self.client.update(self.namespace, record_id, update_fields)
        logger.info("Updated %s share %s for %s", self.namespace, record_id, path)
        return updated, previous

    def restore(self, record: JSONObject, previous: JSONObject | None) -> None:
        """Undo ensure(): delete a created share or write back old values."""
        record_id = _record_id(record)
        if previous is None:
            self.client.delete(self.namespace, record_id)
            logger.info("Deleted %s share %s", self.namespace, record_id)
        elif previous:
            _ = self.client.update(self.namespace, record_id, previous)
            logger.info("Restored %s share %s", self.namespace, record_id)

    def restart(self) -> None:
        """Restart the service so share changes take effect."""
        self.client.restart_service(self.service_name)


def _matches_path(record: JSONObject, path: str) -> bool:
    if record.get("path") == path:
        return True
    paths = record.get("paths")
    return isinstance(paths, list) and path in paths
