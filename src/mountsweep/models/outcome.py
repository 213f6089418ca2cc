# Copyright (c) Syntropy Systems
"""Pydantic models for probe results, outcomes and reports."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import Field, field_validator, model_validator
from typing_extensions import Self

from .base import FrozenModel, MountSweepBaseModel


def utc_timestamp() -> str:
    """Get current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class OutcomeStatus(str, Enum):
    """Tri-state visibility result plus the two error outcomes."""

    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    MOUNT_FAILED = "MOUNT_FAILED"
    ERROR = "ERROR"


class ProbeTarget(FrozenModel):
    """Where to look and what should be there."""

    mount_root: str
    expected_paths: tuple[str, ...]
    max_depth: int | None = None

    @field_validator("expected_paths")
    @classmethod
    def _check_paths(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if not value:
            msg = "a probe target needs at least one expected path"
            raise ValueError(msg)
        if len(set(value)) != len(value):
            msg = "expected paths must be unique"
            raise ValueError(msg)
        return value


class ProbeResult(FrozenModel):
    """Per-path file counts observed under a mount root.

    A count of None means the path does not exist.
    """

    visible_count: int
    total: int
    per_path_file_counts: dict[str, int | None] = Field(default_factory=dict)

    @property
    def visible_paths(self) -> list[str]:
        """Paths that showed at least one file, in check order."""
        return [p for p, n in self.per_path_file_counts.items() if n]


class OutcomeRecord(FrozenModel):
    """Result of one configuration case. Appended once, never mutated."""

    case_name: str
    family: str
    tier: str
    status: OutcomeStatus
    visible_count: int = 0
    expected_count: int = 0
    timestamp: str = Field(default_factory=utc_timestamp)
    details: str = ""

    @model_validator(mode="after")
    def _check_counts(self) -> Self:
        if not 0 <= self.visible_count <= self.expected_count:
            msg = (
                f"visible_count={self.visible_count} must be within "
                f"0..expected_count={self.expected_count}"
            )
            raise ValueError(msg)
        return self

    @property
    def ratio(self) -> float:
        """Fraction of expected paths that were visible."""
        if self.expected_count == 0:
            return 0.0
        return self.visible_count / self.expected_count


class SweepReport(MountSweepBaseModel):
    """Derived view over a list of outcome records."""

    records: list[OutcomeRecord] = Field(default_factory=list)
    counts_by_status: dict[str, int] = Field(default_factory=dict)
    counts_by_family: dict[str, dict[str, int]] = Field(default_factory=dict)

    def by_family(self, family: str) -> list[OutcomeRecord]:
        """Records of one family, in sweep order."""
        return [r for r in self.records if r.family == family]


class Recommendation(MountSweepBaseModel):
    """The configuration to adopt, or an explicit statement that none works."""

    kind: Literal["success", "partial", "none"]
    record: OutcomeRecord | None = None
    message: str
