"""
Value types shared by the reconciliation core.

Everything here is immutable once built: a SourceRecord is frozen at
collection time and the detector/resolver only ever produce new objects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from medsync.errors import ConfigurationError


class SourceType(str, Enum):
    EHR = "EHR"
    PHARMACY = "PHARMACY"
    INTERNAL = "INTERNAL"


# Most authoritative first
SOURCE_AUTHORITY: tuple[SourceType, ...] = (
    SourceType.EHR,
    SourceType.PHARMACY,
    SourceType.INTERNAL,
)


class ConflictKind(str, Enum):
    DOSAGE_MISMATCH = "dosage_mismatch"
    FREQUENCY_MISMATCH = "frequency_mismatch"
    STATUS_MISMATCH = "status_mismatch"
    DATE_MISMATCH = "date_mismatch"


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ResolutionPolicy(str, Enum):
    EHR_PRIORITY = "ehr_priority"
    PHARMACY_PRIORITY = "pharmacy_priority"
    LATEST_TIMESTAMP = "latest_timestamp"
    MANUAL = "manual"
    DEFAULT = "default"

    @classmethod
    def parse(cls, name: str | ResolutionPolicy) -> ResolutionPolicy:
        try:
            return cls(name)
        except ValueError:
            allowed = ", ".join(p.value for p in cls)
            raise ConfigurationError(
                f"Unknown resolution policy '{name}' (expected one of: {allowed})"
            ) from None


MANUAL_REVIEW = "manual_review"

# Raw payload keys that map onto SourceRecord attributes
_RAW_FIELDS = {
    "name": "name",
    "dosage": "dosage",
    "frequency": "frequency",
    "status": "status",
    "startDate": "start_date",
    "ndc": "ndc",
    "rxcui": "rxcui",
}


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (or datetime) into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class SourceRecord:
    """One medication entry as reported by one source."""

    source_type: SourceType
    source_id: str
    collected_at: datetime
    name: str | None = None
    dosage: str | None = None
    frequency: str | None = None
    status: str | None = None
    start_date: str | None = None
    ndc: str | None = None
    rxcui: str | None = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def from_raw(
        cls,
        raw: dict[str, Any],
        *,
        source_type: SourceType,
        source_id: str,
        collected_at: datetime,
    ) -> SourceRecord:
        known = {attr: raw.get(key) for key, attr in _RAW_FIELDS.items()}
        extra = {
            k: v for k, v in raw.items() if k not in _RAW_FIELDS and k != "collectedAt"
        }
        return cls(
            source_type=source_type,
            source_id=source_id,
            collected_at=parse_timestamp(raw.get("collectedAt")) or collected_at,
            extra=extra,
            **known,
        )

    def to_payload(self) -> dict[str, Any]:
        """Serialize back to the raw (camelCase) shape the adapters speak."""
        payload = dict(self.extra)
        for key, attr in _RAW_FIELDS.items():
            payload[key] = getattr(self, attr)
        payload["collectedAt"] = self.collected_at.isoformat()
        return payload


@dataclass(frozen=True)
class ConflictValue:
    value: Any
    source: SourceType


@dataclass(frozen=True)
class Conflict:
    """A field-level disagreement between the reference record and another one."""

    kind: ConflictKind
    field: str
    values: tuple[ConflictValue, ...]
    severity: Severity

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "field": self.field,
            "values": [{"value": v.value, "source": v.source.value} for v in self.values],
            "severity": self.severity.value,
        }


@dataclass(frozen=True)
class Recommendation:
    priority: str
    action: str
    message: str


@dataclass(frozen=True)
class ConflictGroup:
    """All records sharing one canonical key, plus what disagreed between them."""

    key: str
    records: tuple[SourceRecord, ...]
    conflicts: tuple[Conflict, ...] = ()
    recommendation: Recommendation | None = None

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    @property
    def reference(self) -> SourceRecord:
        return self.records[0]

    @property
    def medication_name(self) -> str | None:
        return self.reference.name


@dataclass(frozen=True)
class ResolutionOutcome:
    key: str
    resolved_record: SourceRecord | None
    resolution_method: str
    resolution_timestamp: datetime
    conflict_group_key: str | None = None
    requires_manual_review: bool = False
    conflicts: tuple[Conflict, ...] = ()
    candidates: tuple[SourceRecord, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "resolved_record": self.resolved_record.to_payload()
            if self.resolved_record
            else None,
            "resolution_method": self.resolution_method,
            "resolution_timestamp": self.resolution_timestamp.isoformat(),
            "conflict_group_key": self.conflict_group_key,
            "requires_manual_review": self.requires_manual_review,
            "conflicts": [c.to_dict() for c in self.conflicts],
        }
