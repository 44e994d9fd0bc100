"""
In-memory job store.

Holds one SyncJob and one SyncHistory per entity. Each entity has its own
asyncio.Lock so passes for different entities never contend. Readers always
get deep copies.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from medsync.errors import EntityNotConfiguredError, SyncInProgressError
from medsync.sync.jobs import JobStatus, PassState, SyncConfig, SyncHistory, SyncJob, SyncReport

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    job: SyncJob
    history: SyncHistory
    lock: asyncio.Lock


class SyncJobStore:
    def __init__(self, history_limit: int = 50):
        self.history_limit = history_limit
        self._entries: dict[str, _Entry] = {}

    def _entry(self, entity_id: str) -> _Entry:
        try:
            return self._entries[entity_id]
        except KeyError:
            raise EntityNotConfiguredError(entity_id) from None

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._entries

    async def register(self, entity_id: str, config: SyncConfig) -> SyncJob:
        """
        Create the job for an entity, or replace its configuration. History and
        any in-flight pass state survive a re-registration.
        """
        entry = self._entries.get(entity_id)
        if entry is None:
            entry = _Entry(
                job=SyncJob(entity_id=entity_id, config=config),
                history=SyncHistory(reports=deque(maxlen=self.history_limit)),
                lock=asyncio.Lock(),
            )
            self._entries[entity_id] = entry
        else:
            async with entry.lock:
                entry.job.config = config
                entry.job.status = JobStatus.ACTIVE
        return copy.deepcopy(entry.job)

    async def set_status(self, entity_id: str, status: JobStatus) -> None:
        entry = self._entry(entity_id)
        async with entry.lock:
            entry.job.status = status

    async def begin_pass(self, entity_id: str) -> SyncJob:
        """Atomically move an idle job to COLLECTING; reject if a pass is in flight."""
        entry = self._entry(entity_id)
        async with entry.lock:
            if entry.job.state != PassState.IDLE:
                raise SyncInProgressError(entity_id, entry.job.state.value)
            entry.job.state = PassState.COLLECTING
            return copy.deepcopy(entry.job)

    async def set_state(self, entity_id: str, state: PassState) -> None:
        entry = self._entry(entity_id)
        async with entry.lock:
            entry.job.state = state

    async def complete_pass(
        self,
        entity_id: str,
        report: SyncReport,
        conflicts: list[dict[str, Any]],
        errors: list[dict[str, Any]],
    ) -> None:
        entry = self._entry(entity_id)
        async with entry.lock:
            entry.job.state = PassState.IDLE
            entry.job.last_run_at = report.timestamp
            entry.job.last_conflicts = conflicts
            entry.job.last_errors = errors
            entry.job.last_report = report
            entry.history.record_success(report)

    async def fail_pass(self, entity_id: str, errors: list[dict[str, Any]]) -> None:
        entry = self._entry(entity_id)
        now = datetime.now(timezone.utc)
        async with entry.lock:
            entry.job.state = PassState.IDLE
            entry.job.last_run_at = now
            entry.job.last_errors = errors
            entry.history.record_failure(now)

    async def release(self, entity_id: str) -> None:
        """Return the job to IDLE if a pass left it anywhere else."""
        entry = self._entries.get(entity_id)
        if entry is None:
            return
        async with entry.lock:
            if entry.job.state != PassState.IDLE:
                logger.warning(
                    "Releasing %s from state %s", entity_id, entry.job.state.value
                )
                entry.job.state = PassState.IDLE

    def snapshot(self, entity_id: str) -> tuple[SyncJob, SyncHistory]:
        entry = self._entry(entity_id)
        return copy.deepcopy(entry.job), copy.deepcopy(entry.history)
