"""
Resolution policies.

Each policy picks exactly one record out of a conflicted group, or defers the
group to a human. Three or more disagreeing records are never put to a vote:
a single winner is chosen by source type or timestamp.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from medsync.reconciliation.detector import DetectionResult
from medsync.reconciliation.records import (
    MANUAL_REVIEW,
    ConflictGroup,
    ResolutionOutcome,
    ResolutionPolicy,
    SourceRecord,
    SourceType,
)

logger = logging.getLogger(__name__)

# A picker returns (winning record, method tag)
Picker = Callable[[ConflictGroup], tuple[SourceRecord, str]]


def pick_first(group: ConflictGroup) -> tuple[SourceRecord, str]:
    """Fallback of last resort: the first record encountered."""
    return group.records[0], ResolutionPolicy.DEFAULT.value


def _pick_source_type(source_type: SourceType, policy: ResolutionPolicy) -> Picker:
    def pick(group: ConflictGroup) -> tuple[SourceRecord, str]:
        for record in group.records:
            if record.source_type is source_type:
                return record, policy.value
        return pick_first(group)

    return pick


def pick_latest(group: ConflictGroup) -> tuple[SourceRecord, str]:
    latest = group.records[0]
    for record in group.records[1:]:
        if record.collected_at > latest.collected_at:
            latest = record
    return latest, ResolutionPolicy.LATEST_TIMESTAMP.value


PICKERS: dict[ResolutionPolicy, Picker] = {
    ResolutionPolicy.EHR_PRIORITY: _pick_source_type(
        SourceType.EHR, ResolutionPolicy.EHR_PRIORITY
    ),
    ResolutionPolicy.PHARMACY_PRIORITY: _pick_source_type(
        SourceType.PHARMACY, ResolutionPolicy.PHARMACY_PRIORITY
    ),
    ResolutionPolicy.LATEST_TIMESTAMP: pick_latest,
    ResolutionPolicy.DEFAULT: pick_first,
}


def resolve_group(
    group: ConflictGroup, policy: ResolutionPolicy, now: datetime
) -> ResolutionOutcome:
    if policy is ResolutionPolicy.MANUAL:
        return ResolutionOutcome(
            key=group.key,
            resolved_record=None,
            resolution_method=MANUAL_REVIEW,
            resolution_timestamp=now,
            conflict_group_key=group.key,
            requires_manual_review=True,
            conflicts=group.conflicts,
            candidates=group.records,
        )

    record, method = PICKERS[policy](group)
    return ResolutionOutcome(
        key=group.key,
        resolved_record=record,
        resolution_method=method,
        resolution_timestamp=now,
        conflict_group_key=group.key,
        conflicts=group.conflicts,
        candidates=group.records,
    )


def resolve_conflicts(
    detection: DetectionResult,
    policy: ResolutionPolicy | str,
    now: datetime | None = None,
) -> list[ResolutionOutcome]:
    """
    One outcome per canonical key, in detection order.

    Conflicted groups go through the policy; everything else (singletons and
    groups whose members agree) passes through with its first record, tagged
    with the policy name and no conflict group key.
    """
    policy = ResolutionPolicy.parse(policy)
    now = now or datetime.now(timezone.utc)
    outcomes: list[ResolutionOutcome] = []

    for group in detection.groups:
        if group.has_conflicts:
            outcomes.append(resolve_group(group, policy, now))
        else:
            outcomes.append(
                ResolutionOutcome(
                    key=group.key,
                    resolved_record=group.records[0],
                    resolution_method=policy.value,
                    resolution_timestamp=now,
                    candidates=group.records,
                )
            )

    flagged = sum(1 for o in outcomes if o.requires_manual_review)
    logger.info(
        "Resolution (%s): %d outcomes, %d flagged for manual review",
        policy.value,
        len(outcomes),
        flagged,
    )
    return outcomes
