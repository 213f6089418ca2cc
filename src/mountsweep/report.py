# Copyright (c) Syntropy Systems
"""Aggregation of outcome records and the recommendation rule."""
from __future__ import annotations

from collections.abc import Sequence

from mountsweep.config import DEFAULT_TIER_PRIORITY
from mountsweep.models.outcome import (
    OutcomeRecord,
    OutcomeStatus,
    Recommendation,
    SweepReport,
)

NO_VIABLE_CONFIGURATION = "no viable configuration"

# Never candidates for a partial recommendation
_UNUSABLE = (OutcomeStatus.MOUNT_FAILED, OutcomeStatus.ERROR)


def summarize(records: Sequence[OutcomeRecord]) -> SweepReport:
    """Count records by status and by family, keeping sweep order."""
    counts_by_status = {status.value: 0 for status in OutcomeStatus}
    counts_by_family: dict[str, dict[str, int]] = {}

    for record in records:
        counts_by_status[record.status.value] += 1
        family = counts_by_family.setdefault(
            record.family, {status.value: 0 for status in OutcomeStatus}
        )
        family[record.status.value] += 1

    return SweepReport(
        records=list(records),
        counts_by_status=counts_by_status,
        counts_by_family=counts_by_family,
    )


def tier_rank(tier: str, tier_priority: Sequence[str]) -> int:
    """Position of a tier in the priority list; unknown tiers rank last."""
    try:
        return list(tier_priority).index(tier)
    except ValueError:
        return len(tier_priority)


def recommend(
    report: SweepReport,
    tier_priority: Sequence[str] = DEFAULT_TIER_PRIORITY,
) -> Recommendation:
    """Pick the configuration to adopt.

    Priority:
    1. A SUCCESS in the best-ranked tier (earliest declared wins a tie)
    2. The usable record with the highest visible/expected ratio
    3. None, when no record shows anything

    The result depends only on the records and the priority list.
    """
    indexed = list(enumerate(report.records))

    successes = [(i, r) for i, r in indexed if r.status is OutcomeStatus.SUCCESS]
    if successes:
        _, best = min(successes, key=lambda p: (tier_rank(p[1].tier, tier_priority), p[0]))
        return Recommendation(
            kind="success",
            record=best,
            message=(
                f"Use {best.case_name} ({best.tier}): all {best.expected_count} "
                "expected paths are visible"
            ),
        )

    viable = [
        (i, r)
        for i, r in indexed
        if r.status not in _UNUSABLE and r.expected_count > 0 and r.visible_count > 0
    ]
    if not viable:
        return Recommendation(kind="none", message=NO_VIABLE_CONFIGURATION)

    _, best = min(
        viable,
        key=lambda p: (-p[1].ratio, tier_rank(p[1].tier, tier_priority), p[0]),
    )
    return Recommendation(
        kind="partial",
        record=best,
        message=(
            f"No configuration exposed every path; {best.case_name} ({best.tier}) "
            f"showed {best.visible_count}/{best.expected_count}"
        ),
    )
