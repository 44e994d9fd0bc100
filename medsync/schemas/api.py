"""Pydantic models for API request/response serialization."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from medsync.reconciliation.records import ResolutionPolicy
from medsync.sync.jobs import SyncConfig, SyncReport
from medsync.sync.runner import PassResult
from medsync.sync.service import SyncStatus


# ---------------------------------------------------------------------------
# Sync configuration
# ---------------------------------------------------------------------------

class SyncConfigRequest(BaseModel):
    """Per-patient sync configuration."""
    ehr_systems: list[str] = Field(default_factory=list, max_length=20)
    pharmacies: list[str] = Field(default_factory=list, max_length=20)
    sync_frequency: Literal["realtime", "standard", "maintenance"] = "standard"
    resolution_policy: ResolutionPolicy = ResolutionPolicy.MANUAL
    auto_reconcile: bool = True
    notification_preferences: dict[str, bool] = Field(default_factory=dict)

    def to_config(self) -> SyncConfig:
        return SyncConfig(
            ehr_systems=tuple(self.ehr_systems),
            pharmacies=tuple(self.pharmacies),
            sync_frequency=self.sync_frequency,
            resolution_policy=self.resolution_policy,
            auto_reconcile=self.auto_reconcile,
            notification_preferences=dict(self.notification_preferences),
        )


# ---------------------------------------------------------------------------
# Pass results
# ---------------------------------------------------------------------------

class SyncReportResponse(BaseModel):
    timestamp: datetime
    total_sources: int
    total_medications: int
    conflicts: int
    updates: int
    errors: int
    manual_review: int = 0
    rejected: int = 0

    @classmethod
    def from_report(cls, report: SyncReport) -> SyncReportResponse:
        return cls(
            timestamp=report.timestamp,
            total_sources=report.total_sources,
            total_medications=report.total_medications,
            conflicts=report.conflicts,
            updates=report.updates,
            errors=report.errors,
            manual_review=report.manual_review,
            rejected=report.rejected,
        )


class StageSummary(BaseModel):
    status: str
    duration_ms: float | None = None
    error: str | None = None


class OutcomeResponse(BaseModel):
    key: str
    resolution_method: str
    requires_manual_review: bool
    conflict_group_key: str | None = None
    resolved_record: dict[str, Any] | None = None
    conflicts: list[dict[str, Any]] = []


class SyncRunResponse(BaseModel):
    entity_id: str
    status: str
    report: SyncReportResponse | None = None
    error: str | None = None
    stages: dict[str, StageSummary] = {}
    outcomes: list[OutcomeResponse] = []

    @classmethod
    def from_result(cls, result: PassResult) -> SyncRunResponse:
        outcomes = []
        for outcome in result.outcomes:
            data = outcome.to_dict()
            outcomes.append(
                OutcomeResponse(
                    key=data["key"],
                    resolution_method=data["resolution_method"],
                    requires_manual_review=data["requires_manual_review"],
                    conflict_group_key=data["conflict_group_key"],
                    resolved_record=data["resolved_record"],
                    conflicts=data["conflicts"],
                )
            )
        return cls(
            entity_id=result.entity_id,
            status=result.status,
            report=SyncReportResponse.from_report(result.report) if result.report else None,
            error=result.error,
            stages={name: StageSummary(**info) for name, info in result.stages.items()},
            outcomes=outcomes,
        )


class InitializeResponse(BaseModel):
    entity_id: str
    message: str = "Medication synchronization initialized successfully"
    next_sync_at: datetime
    initial_sync: SyncRunResponse


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

class SyncHistoryResponse(BaseModel):
    total_runs: int
    successful_runs: int
    failed_runs: int
    conflicts_resolved: int
    last_run: datetime | None = None
    recent_reports: list[SyncReportResponse] = []


class SyncStatusResponse(BaseModel):
    entity_id: str
    status: str
    state: str
    last_sync: datetime | None = None
    next_sync: datetime | None = None
    conflicts: int
    errors: int
    last_errors: list[dict[str, Any]] = []
    sources: dict[str, int]
    config: dict[str, Any]
    history: SyncHistoryResponse

    @classmethod
    def from_status(cls, status: SyncStatus) -> SyncStatusResponse:
        job, history = status.job, status.history
        return cls(
            entity_id=job.entity_id,
            status=job.status.value,
            state=job.state.value,
            last_sync=job.last_run_at,
            next_sync=status.next_sync_at,
            conflicts=len(job.last_conflicts),
            errors=len(job.last_errors),
            last_errors=job.last_errors,
            sources=status.sources,
            config=job.config.to_dict(),
            history=SyncHistoryResponse(
                total_runs=history.total_runs,
                successful_runs=history.successful_runs,
                failed_runs=history.failed_runs,
                conflicts_resolved=history.conflicts_resolved,
                last_run=history.last_run,
                recent_reports=[SyncReportResponse.from_report(r) for r in history.reports],
            ),
        )


class MessageResponse(BaseModel):
    entity_id: str
    message: str


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: str = "healthy"
    environment: str
    database: str = "connected"
