"""
Medication sync service: the API surface the outer layers use.

Wires the job store, collector, runner and scheduler together and turns
lifecycle events into notifications.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from medsync.errors import EntityNotConfiguredError, SyncInProgressError
from medsync.reconciliation.records import SourceType
from medsync.sync.collector import SourceCollector
from medsync.sync.events import (
    EventChannel,
    EventType,
    LoggingNotifier,
    NotificationDispatcher,
    SyncEvent,
)
from medsync.sync.jobs import JobStatus, SyncConfig, SyncHistory, SyncJob
from medsync.sync.ports import MedicationStore, Notifier, SourceAdapter
from medsync.sync.runner import PassResult, ReconciliationRunner
from medsync.sync.scheduler import SyncScheduler
from medsync.sync.store import SyncJobStore

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_RETRY = timedelta(minutes=15)


@dataclass
class InitializeResult:
    entity_id: str
    next_sync_at: datetime
    initial_pass: PassResult


@dataclass
class SyncStatus:
    job: SyncJob
    history: SyncHistory
    next_sync_at: datetime | None

    @property
    def sources(self) -> dict[str, int]:
        return {
            "ehr": len(self.job.config.ehr_systems),
            "pharmacy": len(self.job.config.pharmacies),
        }


class MedicationSyncService:
    def __init__(
        self,
        adapters: Mapping[SourceType, SourceAdapter],
        persistence: MedicationStore,
        intervals: Mapping[str, float],
        notifier: Notifier | None = None,
        fetch_timeout_seconds: float = 30.0,
        history_limit: int = 50,
        failure_retry: timedelta = DEFAULT_FAILURE_RETRY,
    ):
        self.store = SyncJobStore(history_limit=history_limit)
        self.events = EventChannel()
        self.notifications = NotificationDispatcher(notifier or LoggingNotifier())
        self.collector = SourceCollector(adapters, persistence, timeout_seconds=fetch_timeout_seconds)
        self.runner = ReconciliationRunner(self.store, self.collector, persistence, self._emit)
        self.scheduler = SyncScheduler(intervals, self._scheduled_tick)
        self.failure_retry = failure_retry

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, entity_id: str, config: SyncConfig) -> InitializeResult:
        """Register (or reconfigure) an entity, start its timer and run the first pass."""
        self.scheduler.interval_for(config.sync_frequency)
        await self.store.register(entity_id, config)
        self.scheduler.reschedule(entity_id, config.sync_frequency)
        self._emit(SyncEvent(EventType.SYNC_INITIALIZED, entity_id, {"config": config.to_dict()}))

        try:
            initial = await self.runner.run_pass(entity_id)
        except SyncInProgressError as exc:
            # Re-initialized while a pass is running; that pass stands in for the first one
            logger.info("Initial sync for %s deferred: %s", entity_id, exc)
            initial = PassResult(entity_id, "failed", error=str(exc))

        if initial.success:
            self._notify(
                entity_id,
                config,
                "initial_sync_complete",
                {
                    "medications_found": initial.report.total_medications,
                    "conflicts": initial.report.conflicts,
                    "sources": len(config.sources),
                },
            )
        else:
            self._notify(entity_id, config, "initial_sync_failed", {"error": initial.error})

        return InitializeResult(
            entity_id=entity_id,
            next_sync_at=self.scheduler.next_sync_time(config.sync_frequency),
            initial_pass=initial,
        )

    async def start(self, entity_id: str) -> None:
        """Resume ticking for a configured entity. No-op if already active."""
        job, _ = self.store.snapshot(entity_id)
        if self.scheduler.is_active(entity_id):
            return
        self.scheduler.start(entity_id, job.config.sync_frequency)
        await self.store.set_status(entity_id, JobStatus.ACTIVE)

    async def stop(self, entity_id: str) -> None:
        if entity_id not in self.store:
            raise EntityNotConfiguredError(entity_id)
        self.scheduler.stop(entity_id)
        await self.store.set_status(entity_id, JobStatus.STOPPED)
        self._emit(SyncEvent(EventType.SYNC_STOPPED, entity_id))

    async def shutdown(self) -> None:
        await self.scheduler.shutdown(wait=True)
        await self.notifications.wait_idle()

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def run_once(self, entity_id: str) -> PassResult:
        return await self.runner.run_pass(entity_id)

    async def trigger_manual_sync(self, entity_id: str) -> PassResult:
        logger.info("Manual sync requested for %s", entity_id)
        return await self.run_once(entity_id)

    async def _scheduled_tick(self, entity_id: str) -> PassResult | None:
        try:
            return await self.runner.run_pass(entity_id)
        except SyncInProgressError:
            logger.info("Skipping scheduled sync for %s: pass already in progress", entity_id)
            return None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self, entity_id: str) -> SyncStatus:
        job, history = self.store.snapshot(entity_id)
        return SyncStatus(job=job, history=history, next_sync_at=self.scheduler.next_run_at(entity_id))

    # ------------------------------------------------------------------
    # Events -> notifications
    # ------------------------------------------------------------------

    def _emit(self, event: SyncEvent) -> None:
        self.events.publish(event)

        if event.type == EventType.SYNC_COMPLETED:
            conflicts = event.payload["report"]["conflicts"]
            if conflicts > 0:
                self._notify_event(event, "conflicts_detected", {"conflict_count": conflicts})
        elif event.type == EventType.SYNC_FAILED:
            retry_at = self.scheduler.next_run_at(event.entity_id) or (
                datetime.now(timezone.utc) + self.failure_retry
            )
            self._notify_event(
                event,
                "sync_failed",
                {"error": event.payload.get("error"), "retry_at": retry_at.isoformat()},
            )
        elif event.type == EventType.CONFLICT_DETECTED:
            logger.info(
                "Conflict detected for %s: %s",
                event.entity_id,
                event.payload.get("medication_name") or event.payload.get("medication_key"),
            )

    def _notify_event(self, event: SyncEvent, notification_type: str, payload: dict[str, Any]) -> None:
        if event.entity_id not in self.store:
            return
        job, _ = self.store.snapshot(event.entity_id)
        self._notify(event.entity_id, job.config, notification_type, payload)

    def _notify(
        self, entity_id: str, config: SyncConfig, notification_type: str, payload: dict[str, Any]
    ) -> None:
        if config.wants_notification(notification_type):
            self.notifications.dispatch(entity_id, notification_type, payload)
