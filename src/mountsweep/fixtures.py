# Copyright (c) Syntropy Systems
"""ZFS helpers and the nested-dataset fixture used by the dataset sweeps."""
from __future__ import annotations

import contextlib
import logging
import posixpath
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from mountsweep.errors import ApplyError, RemoteExitError

if TYPE_CHECKING:
    from mountsweep.config import SweepSettings
    from mountsweep.remote import CommandExecutor

logger = logging.getLogger(__name__)

PARENT_NAME = "test-parent"
CHILD_NAME = "test-child"
PARENT_FILE = "parent-file.txt"
CHILD_FILE = "child-file.txt"
REGULAR_DIR = "regular-dir"
REGULAR_FILE = "regular-file.txt"


class ZfsDatasets:
    """Thin wrapper over the ``zfs`` command on the server."""

    server: CommandExecutor

    def __init__(self, server: CommandExecutor) -> None:
        self.server = server

    def exists(self, name: str) -> bool:
        """Check whether a dataset exists."""
        result = self.server.execute(
            ["zfs", "list", "-H", "-o", "name", name], elevated=True, check=False
        )
        return result.ok

    def create(self, name: str) -> None:
        """Create a dataset."""
        _ = self.server.execute(["zfs", "create", name], elevated=True)

    def destroy(self, name: str) -> None:
        """Destroy a dataset and everything below it."""
        _ = self.server.execute(["zfs", "destroy", "-r", name], elevated=True)

    def get(self, name: str, prop: str) -> tuple[str, str]:
        """Return (value, source) of a dataset property."""
        result = self.server.execute(
            ["zfs", "get", "-H", "-o", "value,source", prop, name], elevated=True
        )
        value, _, source = result.stdout.rstrip("\n").partition("\t")
        return value, source

    def set(self, name: str, prop: str, value: str) -> None:
        """Set a dataset property."""
        _ = self.server.execute(["zfs", "set", f"{prop}={value}", name], elevated=True)

    def inherit(self, name: str, prop: str) -> None:
        """Clear a locally set property so it inherits again."""
        _ = self.server.execute(["zfs", "inherit", prop, name], elevated=True)

    def mountpoint(self, name: str) -> str:
        """Return where a dataset is mounted."""
        value, _ = self.get(name, "mountpoint")
        return value

    def set_temporarily(
        self, name: str, prop: str, value: str, stack: contextlib.ExitStack
    ) -> None:
        """Set a property and register its restoration on ``stack``."""
        old_value, source = self.get(name, prop)
        if old_value == value:
            return
        self.set(name, prop, value)
        logger.info("Set %s=%s on %s (was %s, %s)", prop, value, name, old_value, source)
        if source == "local":
            _ = stack.callback(self.set, name, prop, old_value)
        else:
            _ = stack.callback(self.inherit, name, prop)


@dataclass(frozen=True)
class NestedLayout:
    """Names and paths of the test dataset tree.

    ``extra_children`` are sibling datasets below the parent, each holding
    ``<name>-file.txt``.
    """

    base_dataset: str
    extra_children: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_settings(
        cls, settings: SweepSettings, extra_children: tuple[str, ...] = ()
    ) -> NestedLayout:
        """Build the layout below the configured base dataset."""
        return cls(settings.zfs_base_dataset, extra_children)

    @property
    def parent_dataset(self) -> str:
        return f"{self.base_dataset}/{PARENT_NAME}"

    @property
    def child_dataset(self) -> str:
        return f"{self.parent_dataset}/{CHILD_NAME}"

    @property
    def parent_path(self) -> str:
        return f"/mnt/{self.parent_dataset}"

    @property
    def child_path(self) -> str:
        return f"/mnt/{self.child_dataset}"

    @property
    def expected_paths(self) -> tuple[str, ...]:
        """Marker files as seen from a mount of the parent."""
        return (
            PARENT_FILE,
            posixpath.join(CHILD_NAME, CHILD_FILE),
            posixpath.join(REGULAR_DIR, REGULAR_FILE),
        )

    def extra_dataset(self, name: str) -> str:
        return f"{self.parent_dataset}/test-{name}"

    def extra_path(self, name: str) -> str:
        return f"/mnt/{self.extra_dataset(name)}"


@contextlib.contextmanager
def nested_datasets(
    server: CommandExecutor, layout: NestedLayout
) -> Iterator[NestedLayout]:
    """Create the parent/child dataset tree, yield it, then destroy it.

    A leftover tree from an interrupted run is destroyed first.
    """
    zfs = ZfsDatasets(server)
    parent = layout.parent_dataset

    if zfs.exists(parent):
        logger.warning("Dataset %s already exists, destroying it", parent)
        zfs.destroy(parent)

    try:
        zfs.create(parent)
        _check_mountpoint(zfs, parent, layout.parent_path)
        server.write_file(
            posixpath.join(layout.parent_path, PARENT_FILE), "parent-test-file-content\n"
        )

        zfs.create(layout.child_dataset)
        _check_mountpoint(zfs, layout.child_dataset, layout.child_path)
        server.write_file(
            posixpath.join(layout.child_path, CHILD_FILE), "child-test-file-content\n"
        )

        regular_dir = posixpath.join(layout.parent_path, REGULAR_DIR)
        server.ensure_dir(regular_dir)
        server.write_file(
            posixpath.join(regular_dir, REGULAR_FILE), "regular-dir-test-file-content\n"
        )

        for name in layout.extra_children:
            dataset = layout.extra_dataset(name)
            zfs.create(dataset)
            _check_mountpoint(zfs, dataset, layout.extra_path(name))
            server.write_file(
                posixpath.join(layout.extra_path(name), f"{name}-file.txt"),
                f"{name}-test-file-content\n",
            )

        # Clients map to arbitrary users; the tree must be readable by all
        _ = server.execute(["chmod", "-R", "777", layout.parent_path], elevated=True)
    except ApplyError:
        _destroy_quietly(zfs, parent)
        raise
    except RemoteExitError as e:
        _destroy_quietly(zfs, parent)
        msg = f"Cannot create test datasets under {parent}: {e}"
        raise ApplyError(msg) from e

    logger.info("Created test dataset tree %s", parent)
    try:
        yield layout
    finally:
        logger.info("Destroying test dataset tree %s", parent)
        zfs.destroy(parent)


def _check_mountpoint(zfs: ZfsDatasets, dataset: str, expected: str) -> None:
    actual = zfs.mountpoint(dataset)
    if actual != expected:
        msg = f"{dataset} is mounted at {actual}, expected {expected}"
        raise ApplyError(msg)


def _destroy_quietly(zfs: ZfsDatasets, dataset: str) -> None:
    try:
        if zfs.exists(dataset):
            zfs.destroy(dataset)
    except RemoteExitError:
        logger.exception("Cleanup of %s failed", dataset)
