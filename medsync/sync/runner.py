"""
One reconciliation pass for one entity.

    idle -> collecting -> detecting -> resolving -> persisting -> reporting -> idle

The pass runs as a five-stage StageGraph. Moving the job out of IDLE is the
pass-exclusion check: a second pass for the same entity is rejected with
SyncInProgressError while one is in flight. Any stage failure returns the job
to IDLE, records the error on the job and publishes ``sync_failed``; nothing
is persisted unless every stage before ``persist`` succeeded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from medsync.reconciliation.detector import DetectionResult, detect_conflicts
from medsync.reconciliation.records import ResolutionOutcome, ResolutionPolicy
from medsync.reconciliation.resolver import resolve_conflicts
from medsync.sync.collector import CollectionResult, SourceCollector
from medsync.sync.dag import StageGraph
from medsync.sync.events import EventType, SyncEvent
from medsync.sync.jobs import PassState, SyncJob, SyncReport
from medsync.sync.ports import ApplyResult, MedicationStore
from medsync.sync.store import SyncJobStore

logger = logging.getLogger(__name__)

STAGE_STATES = {
    "collect": PassState.COLLECTING,
    "detect": PassState.DETECTING,
    "resolve": PassState.RESOLVING,
    "persist": PassState.PERSISTING,
    "report": PassState.REPORTING,
}


@dataclass
class PassResult:
    entity_id: str
    status: str  # completed | failed
    report: SyncReport | None = None
    outcomes: list[ResolutionOutcome] = field(default_factory=list)
    stages: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status == "completed"

    @property
    def conflicts(self) -> int:
        return self.report.conflicts if self.report else 0

    @property
    def manual_review(self) -> list[ResolutionOutcome]:
        return [o for o in self.outcomes if o.requires_manual_review]


def _conflict_summary(detection: DetectionResult) -> list[dict[str, Any]]:
    summary = []
    for group in detection.conflicted:
        summary.append(
            {
                "medication_key": group.key,
                "medication_name": group.medication_name,
                "conflicts": [c.to_dict() for c in group.conflicts],
                "recommended_resolution": {
                    "priority": group.recommendation.priority,
                    "action": group.recommendation.action,
                    "message": group.recommendation.message,
                }
                if group.recommendation
                else None,
            }
        )
    return summary


class ReconciliationRunner:
    def __init__(
        self,
        store: SyncJobStore,
        collector: SourceCollector,
        persistence: MedicationStore,
        emit: Callable[[SyncEvent], None],
    ):
        self.store = store
        self.collector = collector
        self.persistence = persistence
        self.emit = emit

    def build_pass(self, job: SyncJob) -> StageGraph:
        entity_id = job.entity_id
        config = job.config
        # Without auto-reconcile every conflicted group goes to a human
        policy = config.resolution_policy if config.auto_reconcile else ResolutionPolicy.MANUAL

        async def collect(ctx: dict[str, Any]) -> dict[str, Any]:
            collection = await self.collector.collect(entity_id, config.sources)
            return {"collection": collection}

        def detect(ctx: dict[str, Any]) -> dict[str, Any]:
            collection: CollectionResult = ctx["collection"]
            detection = detect_conflicts(collection.all_records())
            for group in detection.conflicted:
                self.emit(
                    SyncEvent(
                        EventType.CONFLICT_DETECTED,
                        entity_id,
                        {
                            "medication_key": group.key,
                            "medication_name": group.medication_name,
                            "conflicts": [c.to_dict() for c in group.conflicts],
                        },
                    )
                )
            return {"detection": detection}

        def resolve(ctx: dict[str, Any]) -> dict[str, Any]:
            return {"outcomes": resolve_conflicts(ctx["detection"], policy)}

        async def persist(ctx: dict[str, Any]) -> dict[str, Any]:
            applied = await self.persistence.apply_resolved(entity_id, ctx["outcomes"])
            return {"applied": applied}

        def report(ctx: dict[str, Any]) -> dict[str, Any]:
            collection: CollectionResult = ctx["collection"]
            detection: DetectionResult = ctx["detection"]
            outcomes: list[ResolutionOutcome] = ctx["outcomes"]
            applied: ApplyResult = ctx["applied"]
            return {
                "report": SyncReport(
                    entity_id=entity_id,
                    timestamp=datetime.now(timezone.utc),
                    total_sources=len(collection.sources),
                    total_medications=collection.record_count,
                    conflicts=detection.conflict_count,
                    updates=applied.updated_count,
                    errors=len(collection.errors),
                    manual_review=sum(1 for o in outcomes if o.requires_manual_review),
                    rejected=len(collection.rejected),
                )
            }

        graph = StageGraph("reconcile")
        graph.add_stage("collect", collect)
        graph.add_stage("detect", detect, depends_on=["collect"])
        graph.add_stage("resolve", resolve, depends_on=["detect"])
        graph.add_stage("persist", persist, depends_on=["resolve"])
        graph.add_stage("report", report, depends_on=["persist"])
        return graph

    async def run_pass(self, entity_id: str) -> PassResult:
        """Raises EntityNotConfiguredError or SyncInProgressError before any work starts."""
        job = await self.store.begin_pass(entity_id)
        finished = False
        try:
            self.emit(SyncEvent(EventType.SYNC_STARTED, entity_id))
            graph = self.build_pass(job)

            async def on_stage_start(stage_name: str) -> None:
                await self.store.set_state(entity_id, STAGE_STATES[stage_name])

            summary = await graph.run({"entity_id": entity_id}, on_stage_start=on_stage_start)
            collection: CollectionResult | None = graph.result_of("collect").get("collection")
            source_errors = [e.to_dict() for e in collection.errors] if collection else []

            failed = graph.failed_stage
            if failed is not None:
                error = f"{failed.name} stage failed: {failed.error}"
                await self.store.fail_pass(
                    entity_id,
                    source_errors + [{"source": f"stage:{failed.name}", "error": failed.error}],
                )
                finished = True
                logger.error("Reconciliation pass for %s failed: %s", entity_id, error)
                self.emit(SyncEvent(EventType.SYNC_FAILED, entity_id, {"error": error}))
                return PassResult(entity_id, "failed", stages=summary["stages"], error=error)

            report: SyncReport = graph.result_of("report")["report"]
            detection: DetectionResult = graph.result_of("detect")["detection"]
            outcomes: list[ResolutionOutcome] = graph.result_of("resolve")["outcomes"]
            await self.store.complete_pass(
                entity_id, report, _conflict_summary(detection), source_errors
            )
            finished = True
            logger.info(
                "Reconciliation pass for %s completed: %d records, %d conflicts, %d updates",
                entity_id,
                report.total_medications,
                report.conflicts,
                report.updates,
            )
            self.emit(SyncEvent(EventType.SYNC_COMPLETED, entity_id, {"report": report.to_dict()}))
            return PassResult(
                entity_id, "completed", report=report, outcomes=outcomes, stages=summary["stages"]
            )
        finally:
            if not finished:
                await self.store.release(entity_id)
