"""Per-entity sync configuration, runtime state and run history."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from medsync.errors import ConfigurationError
from medsync.reconciliation.records import ResolutionPolicy, SourceType

FREQUENCY_TIERS = ("realtime", "standard", "maintenance")


class JobStatus(str, Enum):
    ACTIVE = "active"
    STOPPED = "stopped"


class PassState(str, Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    DETECTING = "detecting"
    RESOLVING = "resolving"
    PERSISTING = "persisting"
    REPORTING = "reporting"


@dataclass(frozen=True)
class SyncConfig:
    ehr_systems: tuple[str, ...] = ()
    pharmacies: tuple[str, ...] = ()
    sync_frequency: str = "standard"
    resolution_policy: ResolutionPolicy = ResolutionPolicy.MANUAL
    auto_reconcile: bool = True
    notification_preferences: dict[str, bool] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        if self.sync_frequency not in FREQUENCY_TIERS:
            raise ConfigurationError(
                f"Unknown sync frequency '{self.sync_frequency}' "
                f"(expected one of: {', '.join(FREQUENCY_TIERS)})"
            )
        # Frozen: normalize through object.__setattr__
        object.__setattr__(self, "resolution_policy", ResolutionPolicy.parse(self.resolution_policy))
        object.__setattr__(self, "ehr_systems", tuple(self.ehr_systems))
        object.__setattr__(self, "pharmacies", tuple(self.pharmacies))

    @property
    def sources(self) -> list[tuple[SourceType, str]]:
        """External sources in collection order: EHR systems, then pharmacies."""
        return [(SourceType.EHR, s) for s in self.ehr_systems] + [
            (SourceType.PHARMACY, p) for p in self.pharmacies
        ]

    def wants_notification(self, notification_type: str) -> bool:
        return self.notification_preferences.get(notification_type, True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ehr_systems": list(self.ehr_systems),
            "pharmacies": list(self.pharmacies),
            "sync_frequency": self.sync_frequency,
            "resolution_policy": self.resolution_policy.value,
            "auto_reconcile": self.auto_reconcile,
            "notification_preferences": dict(self.notification_preferences),
        }


@dataclass
class SyncReport:
    entity_id: str
    timestamp: datetime
    total_sources: int
    total_medications: int
    conflicts: int
    updates: int
    errors: int
    manual_review: int = 0
    rejected: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "timestamp": self.timestamp.isoformat(),
            "total_sources": self.total_sources,
            "total_medications": self.total_medications,
            "conflicts": self.conflicts,
            "updates": self.updates,
            "errors": self.errors,
            "manual_review": self.manual_review,
            "rejected": self.rejected,
        }


@dataclass
class SyncJob:
    entity_id: str
    config: SyncConfig
    status: JobStatus = JobStatus.ACTIVE
    state: PassState = PassState.IDLE
    last_run_at: datetime | None = None
    last_errors: list[dict[str, Any]] = field(default_factory=list)
    last_conflicts: list[dict[str, Any]] = field(default_factory=list)
    last_report: SyncReport | None = None


@dataclass
class SyncHistory:
    """Rolling aggregate of finished passes for one entity."""

    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    conflicts_resolved: int = 0
    last_run: datetime | None = None
    reports: deque[SyncReport] = field(default_factory=lambda: deque(maxlen=50))

    def record_success(self, report: SyncReport) -> None:
        self.total_runs += 1
        self.successful_runs += 1
        self.conflicts_resolved += report.conflicts - report.manual_review
        self.last_run = report.timestamp
        self.reports.append(report)

    def record_failure(self, at: datetime) -> None:
        self.total_runs += 1
        self.failed_runs += 1
        self.last_run = at
