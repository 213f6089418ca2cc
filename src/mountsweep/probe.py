# Copyright (c) Syntropy Systems
"""Visibility probe for mounted trees and the outcome classifier."""
from __future__ import annotations

import logging
import posixpath
from typing import TYPE_CHECKING

from mountsweep.errors import ProbeError
from mountsweep.models.outcome import OutcomeStatus, ProbeResult

if TYPE_CHECKING:
    from mountsweep.models.outcome import ProbeTarget
    from mountsweep.remote import CommandExecutor

logger = logging.getLogger(__name__)


def classify(
    visible: int, total: int, *, mount_succeeded: bool = True
) -> OutcomeStatus:
    """Map visible/total counts to an outcome status.

    A failed mount is MOUNT_FAILED whatever the counts say. Otherwise all
    visible is SUCCESS, none visible is FAILED and anything between is
    PARTIAL.
    """
    if not mount_succeeded:
        return OutcomeStatus.MOUNT_FAILED
    if total <= 0:
        msg = f"total must be positive, got {total}"
        raise ValueError(msg)
    if not 0 <= visible <= total:
        msg = f"visible must be within 0..{total}, got {visible}"
        raise ValueError(msg)

    if visible == total:
        return OutcomeStatus.SUCCESS
    if visible == 0:
        return OutcomeStatus.FAILED
    return OutcomeStatus.PARTIAL


class MountProbe:
    """Counts regular files under each expected path of a mount.

    A directory is visible when at least one regular file is found beneath
    it. A regular file is visible when it exists.
    """

    executor: CommandExecutor
    max_depth: int | None

    def __init__(self, executor: CommandExecutor, max_depth: int | None = None) -> None:
        self.executor = executor
        self.max_depth = max_depth

    def probe(self, target: ProbeTarget) -> ProbeResult:
        """Inspect every expected path in declared order.

        Raises:
            ProbeError: The mount root is missing or not a directory

        """
        root = target.mount_root
        if not self.executor.path_is_dir(root):
            msg = f"Mount root {root} is not a directory"
            raise ProbeError(msg)

        depth = target.max_depth if target.max_depth is not None else self.max_depth
        counts: dict[str, int | None] = {}
        for rel in target.expected_paths:
            path = posixpath.join(root, rel.lstrip("/"))
            counts[rel] = self.count_files(path, depth)
            logger.debug("%s: %s", path, counts[rel])

        visible = sum(1 for n in counts.values() if n)
        return ProbeResult(
            visible_count=visible,
            total=len(target.expected_paths),
            per_path_file_counts=counts,
        )

    def count_files(self, path: str, max_depth: int | None = None) -> int | None:
        """Return the number of regular files at or under path, None if absent."""
        if self.executor.path_is_dir(path):
            argv = ["find", path]
            if max_depth is not None:
                argv += ["-maxdepth", str(max_depth)]
            argv += ["-type", "f", "-print0"]
            result = self.executor.execute(argv, elevated=True, check=False)
            if not result.ok:
                # find still lists what it could read
                logger.warning(
                    "find under %s exited %d: %s",
                    path,
                    result.exit_code,
                    result.stderr.strip(),
                )
            return result.stdout.count("\0")

        if self.executor.path_is_file(path):
            return 1
        return None
