# Copyright (c) Syntropy Systems
"""Pytest fixtures for mountsweep tests."""

import json
import os
import tempfile
from collections.abc import Callable, Generator, Sequence
from pathlib import Path

import pytest

from mountsweep.appliers import SweepEnvironment
from mountsweep.config import SweepSettings
from mountsweep.remote import CommandResult, LocalExecutor

# Store original cwd at module load time
_original_cwd = Path.cwd()

Response = CommandResult | BaseException | Callable[[list[str]], CommandResult]


class FakeRunner:
    """Command runner that records every argv and replays scripted results.

    Rules are matched in order against the space-joined argv; the first rule
    whose text appears in the command wins. A rule's response is a
    CommandResult, an exception to raise, or a callable taking the argv.
    Unmatched commands succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.inputs: list[str | None] = []
        self.rules: list[tuple[str, Response, int | None]] = []

    def on(self, text: str, response: Response, *, times: int | None = None) -> "FakeRunner":
        """Add a rule; with ``times`` it is dropped after that many matches."""
        self.rules.append((text, response, times))
        return self

    def run(
        self,
        argv: Sequence[str],
        *,
        timeout: float,  # noqa: ARG002
        input: str | None = None,  # noqa: A002
    ) -> CommandResult:
        command = list(argv)
        self.calls.append(command)
        self.inputs.append(input)
        joined = " ".join(command)
        for i, (text, response, times) in enumerate(self.rules):
            if text not in joined:
                continue
            if times is not None:
                if times <= 1:
                    del self.rules[i]
                else:
                    self.rules[i] = (text, response, times - 1)
            if isinstance(response, BaseException):
                raise response
            if callable(response):
                return response(command)
            return response
        return CommandResult(0)

    def commands(self, text: str) -> list[list[str]]:
        """Recorded calls containing text."""
        return [c for c in self.calls if text in " ".join(c)]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def mountsweep_project(temp_dir: Path) -> Generator[Path, None, None]:
    """Create a temporary mountsweep project directory."""
    project_dir = temp_dir / ".mountsweep"
    project_dir.mkdir()
    (project_dir / "results").mkdir()
    (project_dir / "backups").mkdir()
    (project_dir / "config.yaml").write_text(
        "remote_host: client.example\nserver_host: server.example\n"
    )

    # Change to temp directory
    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def settings(temp_dir: Path) -> SweepSettings:
    """Settings with no waiting and outputs inside the temp dir."""
    return SweepSettings(
        server_host="server.example",
        remote_host="client.example",
        test_dirs=("caddy", "vaultwarden"),
        settle_timeout=0.0,
        retry_backoff=0.0,
        results_dir=temp_dir / "results",
        backup_dir=temp_dir / "backups",
    )


@pytest.fixture
def fake_env(settings: SweepSettings, fake_runner: FakeRunner) -> SweepEnvironment:
    """Server and client executors that share one fake runner."""
    server = LocalExecutor(fake_runner, use_sudo=False)
    client = LocalExecutor(fake_runner, use_sudo=False)
    return SweepEnvironment(settings=settings, server=server, client=client)


class FakeMiddleware:
    """In-memory share records answering ``midclt call`` commands.

    With ``legacy_paths`` records carry a ``paths`` list and the server-side
    ``path`` filter is rejected, like older releases.
    """

    def __init__(self, *, legacy_paths: bool = False) -> None:
        self.legacy_paths = legacy_paths
        self.records: dict[str, list[dict[str, object]]] = {}
        self.methods: list[str] = []
        self._next_id = 1

    def add(self, namespace: str, **fields: object) -> dict[str, object]:
        record = {"id": self._next_id, "locked": False, **fields}
        self._next_id += 1
        self.records.setdefault(namespace, []).append(record)
        return record

    def __call__(self, argv: list[str]) -> CommandResult:
        start = argv.index("midclt")
        method = argv[start + 2]
        params = [json.loads(p) for p in argv[start + 3 :]]
        self.methods.append(method)

        if method.startswith("service."):
            return CommandResult(0, "true" if method != "service.query" else "[]")

        namespace, action = method.rsplit(".", 1)
        records = self.records.setdefault(namespace, [])
        if action == "query":
            if params and self.legacy_paths:
                return CommandResult(1, "", "[EINVAL] path: field not found")
            if params:
                _, _, value = params[0][0]
                records = [r for r in records if r.get("path") == value]
            return CommandResult(0, json.dumps(records))
        if action == "create":
            config = params[0]
            if "id" in config or "locked" in config:
                return CommandResult(1, "", "[EINVAL] read-only field")
            return CommandResult(0, json.dumps(self.add(namespace, **config)))
        if action == "update":
            record_id, config = params
            if "id" in config or "locked" in config:
                return CommandResult(1, "", "[EINVAL] read-only field")
            for record in records:
                if record["id"] == record_id:
                    record.update(config)
                    return CommandResult(0, json.dumps(record))
            return CommandResult(1, "", "[ENOENT] no such record")
        if action == "delete":
            (record_id,) = params
            self.records[namespace] = [r for r in records if r["id"] != record_id]
            return CommandResult(0, "true")
        return CommandResult(1, "", f"unknown method {method}")


@pytest.fixture
def middleware(fake_runner: FakeRunner) -> FakeMiddleware:
    """A fake middleware answering every midclt call of fake_runner."""
    fake = FakeMiddleware()
    _ = fake_runner.on("midclt", fake)
    return fake
