"""
Conflict detection across sources.

Records are grouped by canonical key in the order they were collected. In
every group of two or more, the first record is the reference and each later
record is compared against it on the tracked fields.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable

from medsync.reconciliation.keys import derive_key
from medsync.reconciliation.records import (
    SOURCE_AUTHORITY,
    Conflict,
    ConflictGroup,
    ConflictKind,
    ConflictValue,
    Recommendation,
    Severity,
    SourceRecord,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

DATE_TOLERANCE = timedelta(days=1)

# (attribute, conflict kind, severity) for exact-match fields
_EXACT_FIELDS: tuple[tuple[str, str, ConflictKind, Severity], ...] = (
    ("dosage", "dosage", ConflictKind.DOSAGE_MISMATCH, Severity.HIGH),
    ("frequency", "frequency", ConflictKind.FREQUENCY_MISMATCH, Severity.HIGH),
    ("status", "status", ConflictKind.STATUS_MISMATCH, Severity.MEDIUM),
)


@dataclass(frozen=True)
class DetectionResult:
    """Every key group of a pass, in first-seen order."""

    groups: tuple[ConflictGroup, ...]

    @property
    def conflicted(self) -> list[ConflictGroup]:
        return [g for g in self.groups if g.has_conflicts]

    @property
    def conflict_count(self) -> int:
        return len(self.conflicted)

    @property
    def keys(self) -> set[str]:
        return {g.key for g in self.groups}


def group_by_key(records: Iterable[SourceRecord]) -> dict[str, list[SourceRecord]]:
    grouped: dict[str, list[SourceRecord]] = {}
    for record in records:
        grouped.setdefault(derive_key(record), []).append(record)
    return grouped


def compare_records(reference: SourceRecord, other: SourceRecord) -> list[Conflict]:
    """Field-level differences between two records that share a key."""
    conflicts: list[Conflict] = []

    for attr, field_name, kind, severity in _EXACT_FIELDS:
        ref_value, other_value = getattr(reference, attr), getattr(other, attr)
        if ref_value != other_value:
            conflicts.append(
                Conflict(
                    kind=kind,
                    field=field_name,
                    values=(
                        ConflictValue(ref_value, reference.source_type),
                        ConflictValue(other_value, other.source_type),
                    ),
                    severity=severity,
                )
            )

    # Dates only count when both sides parse and differ by more than a day
    ref_date = parse_timestamp(reference.start_date)
    other_date = parse_timestamp(other.start_date)
    if ref_date and other_date and abs(ref_date - other_date) > DATE_TOLERANCE:
        conflicts.append(
            Conflict(
                kind=ConflictKind.DATE_MISMATCH,
                field="startDate",
                values=(
                    ConflictValue(reference.start_date, reference.source_type),
                    ConflictValue(other.start_date, other.source_type),
                ),
                severity=Severity.LOW,
            )
        )
    return conflicts


def recommend_resolution(
    conflicts: Iterable[Conflict], records: Iterable[SourceRecord]
) -> Recommendation:
    if any(c.severity is Severity.HIGH for c in conflicts):
        return Recommendation(
            priority="urgent",
            action="clinical_review",
            message="Dosage or frequency conflicts require immediate clinical review",
        )

    present = {r.source_type for r in records}
    for source_type in SOURCE_AUTHORITY:
        if source_type in present:
            label = source_type.value
            return Recommendation(
                priority="normal",
                action=f"use_{label.lower()}_data",
                message=f"Consider using {label} data as the authoritative source",
            )
    # Unreachable for a non-empty group
    return Recommendation(priority="normal", action="clinical_review", message="No source present")


def detect_conflicts(records: Iterable[SourceRecord]) -> DetectionResult:
    groups: list[ConflictGroup] = []

    for key, members in group_by_key(records).items():
        if len(members) < 2:
            groups.append(ConflictGroup(key=key, records=tuple(members)))
            continue

        reference = members[0]
        conflicts: list[Conflict] = []
        for other in members[1:]:
            conflicts.extend(compare_records(reference, other))

        groups.append(
            ConflictGroup(
                key=key,
                records=tuple(members),
                conflicts=tuple(conflicts),
                recommendation=recommend_resolution(conflicts, members)
                if conflicts
                else None,
            )
        )

    result = DetectionResult(groups=tuple(groups))
    logger.info(
        "Detection: %d keys, %d with conflicts", len(result.groups), result.conflict_count
    )
    return result
