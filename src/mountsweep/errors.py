# Copyright (c) Syntropy Systems
"""Exception hierarchy for mountsweep."""
from __future__ import annotations

from collections.abc import Sequence


class MountSweepError(Exception):
    """Base class for all mountsweep errors."""


class RemoteConnectionError(MountSweepError):
    """The remote host could not be reached or the call timed out."""


class CommandTimeoutError(RemoteConnectionError):
    """A command did not finish within its timeout."""


class RemoteExitError(MountSweepError):
    """A remote command ran but exited non-zero."""

    code: int
    argv: list[str]
    stderr: str

    def __init__(self, code: int, argv: Sequence[str], stderr: str = "") -> None:
        self.code = code
        self.argv = list(argv)
        self.stderr = stderr.strip()
        msg = f"'{' '.join(self.argv)}' exited with status {code}"
        if self.stderr:
            msg = f"{msg}: {self.stderr}"
        super().__init__(msg)


class ApplyError(MountSweepError):
    """A configuration could not be applied."""


class MountError(ApplyError):
    """The mount step of an apply failed."""


class ProbeError(MountSweepError):
    """The mount root could not be inspected."""


class ConfigError(MountSweepError):
    """A sweep definition or case parameter is invalid."""


class ManagementError(MountSweepError):
    """The server management API returned an unusable response."""


class EnvironmentCheckError(MountSweepError):
    """The local or remote environment cannot run a sweep."""


class CheckpointBusyError(MountSweepError):
    """Another sweep holds the server configuration checkpoint."""
