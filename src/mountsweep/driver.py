# Copyright (c) Syntropy Systems
"""Sweep driver: apply, settle, probe and revert each case in order."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from pydantic import ValidationError

from mountsweep.appliers import ESSENTIAL_CLIENT_COMMANDS, applier_class
from mountsweep.errors import (
    ConfigError,
    EnvironmentCheckError,
    MountError,
    MountSweepError,
    RemoteConnectionError,
)
from mountsweep.models.outcome import OutcomeRecord, OutcomeStatus, ProbeTarget
from mountsweep.probe import MountProbe, classify
from mountsweep.remote import RemoteExecutor

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from mountsweep.appliers import AppliedHandle, ConfigurationApplier, SweepEnvironment
    from mountsweep.models.case import ConfigurationCase
    from mountsweep.results import OutcomeLog
    from mountsweep.sweep import SweepPlan

logger = logging.getLogger(__name__)


class CaseState(str, Enum):
    """Lifecycle of one case inside a sweep."""

    PENDING = "pending"
    APPLYING = "applying"
    APPLY_FAILED = "apply_failed"
    APPLIED = "applied"
    PROBING = "probing"
    PROBED = "probed"
    PROBE_FAILED = "probe_failed"
    REVERTED = "reverted"


@dataclass
class CaseRun:
    """Progress of one attempt at a case."""

    case: ConfigurationCase
    state: CaseState = CaseState.PENDING
    history: list[CaseState] = field(default_factory=lambda: [CaseState.PENDING])
    revert_error: str | None = None

    def transition(self, state: CaseState) -> None:
        logger.debug("%s: %s -> %s", self.case.name, self.state.value, state.value)
        self.state = state
        self.history.append(state)


@dataclass
class _Verdict:
    status: OutcomeStatus
    visible: int = 0
    details: str = ""


class SweepDriver:
    """Runs cases strictly one after another.

    Every case yields exactly one OutcomeRecord, appended to the outcome log
    as soon as it exists. A failing case never stops the sweep. Connection
    failures get one retry after ``retry_backoff`` seconds; semantic
    failures are recorded as they are.
    """

    env: SweepEnvironment
    outcome_log: OutcomeLog | None
    probe: MountProbe
    expected_paths: tuple[str, ...]
    sleep: Callable[[float], None]
    on_record: Callable[[OutcomeRecord], None] | None
    runs: list[CaseRun]

    def __init__(
        self,
        env: SweepEnvironment,
        outcome_log: OutcomeLog | None = None,
        *,
        probe: MountProbe | None = None,
        expected_paths: Sequence[str] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        on_record: Callable[[OutcomeRecord], None] | None = None,
    ) -> None:
        self.env = env
        self.outcome_log = outcome_log
        self.probe = probe or MountProbe(env.client, env.settings.max_depth)
        self.expected_paths = tuple(expected_paths or env.settings.test_dirs)
        self.sleep = sleep
        self.on_record = on_record
        self.runs = []

    # Environment

    def preflight(self, cases: Sequence[ConfigurationCase]) -> None:
        """Check that the client is reachable and the essential commands exist.

        Tools only some variants use (bindfs, mergerfs, ...) are checked when
        their case is applied, so a missing one fails that case alone.

        Raises:
            EnvironmentCheckError: The sweep cannot start
            ConfigError: A case has no applier

        """
        client = self.env.client
        if isinstance(client, RemoteExecutor):
            try:
                client.check_connectivity()
            except RemoteConnectionError as e:
                raise EnvironmentCheckError(str(e)) from e

        server_cmds: set[str] = set()
        for case in cases:
            server_cmds.update(applier_class(case).server_commands)

        missing = [
            f"{cmd} (client)"
            for cmd in ESSENTIAL_CLIENT_COMMANDS
            if not client.command_exists(cmd, elevated=True)
        ]
        missing += [
            f"{cmd} (server)"
            for cmd in sorted(server_cmds)
            if not self.env.server.command_exists(cmd, elevated=True)
        ]
        if missing:
            msg = f"Required commands not found: {', '.join(missing)}"
            raise EnvironmentCheckError(msg)

    # Sweep

    def run_plan(self, plan: SweepPlan) -> list[OutcomeRecord]:
        """Run a plan's cases inside its fixture, if it has one."""
        cases = plan.cases
        if plan.expected_paths:
            cases = [
                c if c.expected_paths else c.model_copy(update={"expected_paths": plan.expected_paths})
                for c in cases
            ]
        with plan.fixture(self.env):
            return self.run(cases)

    def run(self, cases: Sequence[ConfigurationCase]) -> list[OutcomeRecord]:
        """Run every case in declared order and return their outcomes."""
        names = [c.name for c in cases]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            msg = f"Duplicate case names: {', '.join(duplicates)}"
            raise ConfigError(msg)

        return [self.run_case(case) for case in cases]

    def run_case(self, case: ConfigurationCase) -> OutcomeRecord:
        """Run one case to a single outcome record.

        On KeyboardInterrupt the case is reverted, recorded as an ERROR
        with details ``interrupted``, and the interrupt is re-raised.
        """
        logger.info("Case %s (%s)", case.name, case.kind.value)
        run = CaseRun(case)
        self.runs.append(run)
        try:
            try:
                verdict = self._attempt(case, run)
            except RemoteConnectionError as e:
                logger.warning(
                    "%s: %s; retrying in %gs", case.name, e, self.env.settings.retry_backoff
                )
                self.sleep(self.env.settings.retry_backoff)
                run = CaseRun(case)
                self.runs.append(run)
                try:
                    verdict = self._attempt(case, run)
                except RemoteConnectionError as retry_error:
                    verdict = _Verdict(OutcomeStatus.ERROR, details=str(retry_error))
        except KeyboardInterrupt:
            self._emit(self._record(case, _Verdict(OutcomeStatus.ERROR, details="interrupted")))
            raise
        except Exception as e:
            logger.exception("Case %s failed unexpectedly", case.name)
            verdict = _Verdict(OutcomeStatus.ERROR, details=f"unexpected {type(e).__name__}: {e}")

        if run.revert_error:
            verdict.details = f"{verdict.details}; revert failed: {run.revert_error}"
        record = self._record(case, verdict)
        self._emit(record)
        return record

    def _attempt(self, case: ConfigurationCase, run: CaseRun) -> _Verdict:
        try:
            applier = applier_class(case)(self.env)
            target = self._probe_target(case)
        except ConfigError as e:
            run.transition(CaseState.APPLY_FAILED)
            run.transition(CaseState.REVERTED)
            return _Verdict(OutcomeStatus.ERROR, details=str(e))

        expected = self._expected_for(case)
        handle: AppliedHandle | None = None
        run.transition(CaseState.APPLYING)
        try:
            try:
                handle = applier.apply(case)
            except MountError as e:
                run.transition(CaseState.APPLY_FAILED)
                return _Verdict(
                    OutcomeStatus.MOUNT_FAILED, details=f"0/{len(expected)} visible: {e}"
                )
            except RemoteConnectionError:
                run.transition(CaseState.APPLY_FAILED)
                raise
            except MountSweepError as e:
                run.transition(CaseState.APPLY_FAILED)
                return _Verdict(OutcomeStatus.ERROR, details=f"apply failed: {e}")
            run.transition(CaseState.APPLIED)

            if self.env.settings.settle_timeout > 0:
                self.sleep(self.env.settings.settle_timeout)

            run.transition(CaseState.PROBING)
            target = target.model_copy(update={"mount_root": handle.mount_root})
            try:
                result = self.probe.probe(target)
            except RemoteConnectionError:
                run.transition(CaseState.PROBE_FAILED)
                raise
            except MountSweepError as e:
                run.transition(CaseState.PROBE_FAILED)
                return _Verdict(OutcomeStatus.ERROR, details=f"probe failed: {e}")
            run.transition(CaseState.PROBED)

            status = classify(result.visible_count, result.total)
            return _Verdict(
                status,
                visible=result.visible_count,
                details=f"{result.visible_count}/{result.total} visible",
            )
        finally:
            self._revert(applier, handle, run)

    def _revert(
        self,
        applier: ConfigurationApplier,
        handle: AppliedHandle | None,
        run: CaseRun,
    ) -> None:
        if handle is not None:
            try:
                applier.revert(handle)
            except Exception as e:
                logger.exception("Reverting %s failed", run.case.name)
                run.revert_error = str(e)
        run.transition(CaseState.REVERTED)

    def _expected_for(self, case: ConfigurationCase) -> tuple[str, ...]:
        return tuple(case.expected_paths or self.expected_paths)

    def _probe_target(self, case: ConfigurationCase) -> ProbeTarget:
        """Validate the expected paths before anything is applied.

        The mount root is filled in once the case is applied.
        """
        try:
            return ProbeTarget(mount_root="/", expected_paths=self._expected_for(case))
        except ValidationError as e:
            problems = "; ".join(err["msg"] for err in e.errors())
            msg = f"Invalid expected paths for case '{case.name}': {problems}"
            raise ConfigError(msg) from e

    def _record(self, case: ConfigurationCase, verdict: _Verdict) -> OutcomeRecord:
        details = verdict.details
        expected = len(self._expected_for(case))
        if verdict.status is OutcomeStatus.ERROR and not details.startswith("0/"):
            details = f"0/{expected} visible: {details}" if details else f"0/{expected} visible"
        return OutcomeRecord(
            case_name=case.name,
            family=case.log_family,
            tier=case.tier_name,
            status=verdict.status,
            visible_count=verdict.visible,
            expected_count=expected,
            details=details,
        )

    def _emit(self, record: OutcomeRecord) -> None:
        logger.info(
            "%s -> %s (%d/%d)",
            record.case_name,
            record.status.value,
            record.visible_count,
            record.expected_count,
        )
        if self.outcome_log is not None:
            self.outcome_log.append(record)
        if self.on_record is not None:
            self.on_record(record)
