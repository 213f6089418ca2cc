# Copyright (c) Syntropy Systems
"""Command execution on the server and on the client over SSH.

Commands are always argument vectors. The remote command line is built by
quoting every token, so values containing spaces or shell metacharacters
reach the remote program unchanged.
"""
from __future__ import annotations

import contextlib
import logging
import os
import shlex
import signal
import subprocess
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from mountsweep.errors import (
    CommandTimeoutError,
    EnvironmentCheckError,
    RemoteConnectionError,
    RemoteExitError,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

# ssh reserves this exit status for its own failures
SSH_CONNECTION_FAILURE = 255


@dataclass
class CommandResult:
    """Exit status and captured output of one command."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """True when the command exited zero."""
        return self.exit_code == 0


class CommandRunner(Protocol):
    """Runs a local argv and returns its result."""

    def run(
        self,
        argv: Sequence[str],
        *,
        timeout: float,
        input: str | None = None,  # noqa: A002
    ) -> CommandResult: ...


class LocalRunner:
    """Runs commands as local subprocesses in their own process group.

    On timeout the whole group is terminated, then killed after
    ``kill_grace_period`` seconds.
    """

    kill_grace_period: float

    def __init__(self, kill_grace_period: float = 5.0) -> None:
        self.kill_grace_period = kill_grace_period

    def run(
        self,
        argv: Sequence[str],
        *,
        timeout: float,
        input: str | None = None,  # noqa: A002
    ) -> CommandResult:
        """Run argv and wait for it, raising CommandTimeoutError on timeout."""
        try:
            process = subprocess.Popen(  # noqa: S603
                list(argv),
                stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            msg = f"Command not found: {argv[0]}"
            raise EnvironmentCheckError(msg) from e

        try:
            stdout, stderr = process.communicate(input=input, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            self._kill_group(process)
            msg = f"'{shlex.join(argv)}' timed out after {timeout:g}s"
            raise CommandTimeoutError(msg) from e

        return CommandResult(process.returncode, stdout, stderr)

    def _kill_group(self, process: subprocess.Popen[str]) -> None:
        try:
            pgid = os.getpgid(process.pid)
        except (OSError, ProcessLookupError):
            return

        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(pgid, signal.SIGTERM)
        try:
            _ = process.communicate(timeout=self.kill_grace_period)
        except subprocess.TimeoutExpired:
            with contextlib.suppress(OSError, ProcessLookupError):
                os.killpg(pgid, signal.SIGKILL)
            with contextlib.suppress(subprocess.TimeoutExpired):
                _ = process.communicate(timeout=5.0)


class CommandExecutor:
    """Shared execute() contract and filesystem helpers.

    Subclasses decide how an argv is wrapped (locally or through ssh) and
    which exit statuses mean the transport itself failed.
    """

    runner: CommandRunner
    default_timeout: float
    use_sudo: bool

    def __init__(
        self,
        runner: CommandRunner | None = None,
        default_timeout: float = 60.0,
        *,
        use_sudo: bool = True,
    ) -> None:
        self.runner = runner if runner is not None else LocalRunner()
        self.default_timeout = default_timeout
        # Without sudo, elevated commands run as the login user
        self.use_sudo = use_sudo

    @property
    def label(self) -> str:
        """Short name used in log lines."""
        return "local"

    def build_command(self, argv: Sequence[str], *, elevated: bool = False) -> list[str]:
        """Return the local argv that runs ``argv`` on the target."""
        return _with_sudo(argv, elevated=elevated and self.use_sudo)

    def _check_transport(self, argv: Sequence[str], result: CommandResult) -> None:
        """Raise RemoteConnectionError if the transport failed."""

    def execute(
        self,
        argv: Sequence[str],
        *,
        elevated: bool = False,
        timeout: float | None = None,
        check: bool = True,
        input: str | None = None,  # noqa: A002
    ) -> CommandResult:
        """Run ``argv`` on the target.

        Args:
            argv: Command as a list of tokens (no shell)
            elevated: Prefix the command with ``sudo -n``
            timeout: Seconds before the call is abandoned
            check: Raise RemoteExitError on a non-zero exit
            input: Text fed to the command's stdin

        Raises:
            RemoteConnectionError: The target was unreachable or timed out
            RemoteExitError: The command failed and ``check`` is set

        """
        if not argv:
            msg = "argv must not be empty"
            raise ValueError(msg)

        command = self.build_command(argv, elevated=elevated)
        shown = _with_sudo(argv, elevated=elevated and self.use_sudo)
        logger.debug("[%s] %s", self.label, shlex.join(shown))

        result = self.runner.run(
            command,
            timeout=timeout if timeout is not None else self.default_timeout,
            input=input,
        )
        self._check_transport(argv, result)

        if check and not result.ok:
            raise RemoteExitError(result.exit_code, argv, result.stderr)
        return result

    # Filesystem helpers

    def path_is_dir(self, path: str) -> bool:
        """Check whether path is a directory."""
        return self.execute(["test", "-d", path], elevated=True, check=False).ok

    def path_is_file(self, path: str) -> bool:
        """Check whether path is a regular file."""
        return self.execute(["test", "-f", path], elevated=True, check=False).ok

    def ensure_dir(self, path: str) -> None:
        """Create a directory and its parents if missing."""
        _ = self.execute(["mkdir", "-p", path], elevated=True)

    def is_mounted(self, path: str) -> bool:
        """Check whether path is a mount point."""
        return self.execute(["mountpoint", "-q", path], elevated=True, check=False).ok

    def unmount(self, path: str, *, force: bool = False) -> bool:
        """Unmount path. Returns False if nothing was mounted there."""
        if not self.is_mounted(path):
            return False
        argv = ["umount", "-f", path] if force else ["umount", path]
        try:
            _ = self.execute(argv, elevated=True)
        except RemoteExitError as e:
            if "not mounted" in e.stderr:
                return False
            raise
        return True

    def command_exists(self, name: str, *, elevated: bool = False) -> bool:
        """Check whether a command is on the target's PATH."""
        result = self.execute(
            ["sh", "-c", 'command -v "$1" >/dev/null 2>&1', "sh", name],
            elevated=elevated,
            check=False,
        )
        return result.ok

    def write_file(self, path: str, content: str, *, mode: str | None = None) -> None:
        """Write content to a file through stdin, optionally chmod-ing it."""
        _ = self.execute(["tee", path], elevated=True, input=content)
        if mode is not None:
            _ = self.execute(["chmod", mode, path], elevated=True)

    def remove_file(self, path: str) -> None:
        """Delete a file if it exists."""
        _ = self.execute(["rm", "-f", path], elevated=True)

    def user_ids(self) -> tuple[int, int]:
        """Return (uid, gid) of the login user."""
        uid = self.execute(["id", "-u"]).stdout.strip()
        gid = self.execute(["id", "-g"]).stdout.strip()
        return int(uid), int(gid)


class LocalExecutor(CommandExecutor):
    """Runs commands on this host (the server under test)."""


class RemoteExecutor(CommandExecutor):
    """Runs commands on the client over ssh in batch mode."""

    host: str
    user: str
    connect_timeout: int

    def __init__(
        self,
        host: str,
        user: str,
        runner: CommandRunner | None = None,
        *,
        connect_timeout: int = 10,
        default_timeout: float = 60.0,
        use_sudo: bool = True,
    ) -> None:
        super().__init__(runner, default_timeout, use_sudo=use_sudo)
        if not host:
            msg = "A remote host is required"
            raise ValueError(msg)
        self.host = host
        self.user = user
        self.connect_timeout = connect_timeout

    @property
    def target(self) -> str:
        """The ssh destination."""
        return f"{self.user}@{self.host}" if self.user else self.host

    @property
    def label(self) -> str:
        return self.target

    def build_command(self, argv: Sequence[str], *, elevated: bool = False) -> list[str]:
        remote = shlex.join(_with_sudo(argv, elevated=elevated and self.use_sudo))
        return [
            "ssh",
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            "--",
            self.target,
            remote,
        ]

    def _check_transport(self, argv: Sequence[str], result: CommandResult) -> None:
        if result.exit_code == SSH_CONNECTION_FAILURE:
            detail = result.stderr.strip() or "ssh exited with status 255"
            msg = f"Cannot reach {self.target} running '{shlex.join(argv)}': {detail}"
            raise RemoteConnectionError(msg)

    def check_connectivity(self) -> None:
        """Raise RemoteConnectionError unless a no-op command succeeds."""
        try:
            _ = self.execute(["true"], timeout=self.connect_timeout + 5)
        except RemoteExitError as e:
            msg = f"Unexpected failure running 'true' on {self.target}: {e}"
            raise RemoteConnectionError(msg) from e


def _with_sudo(argv: Sequence[str], *, elevated: bool) -> list[str]:
    tokens = list(argv)
    if elevated and (not tokens or tokens[0] != "sudo"):
        return ["sudo", "-n", *tokens]
    return tokens
