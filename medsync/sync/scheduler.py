"""
Per-entity timers.

Every active entity owns one ScheduleHandle: a sleeping asyncio task that
fires the tick callback at the entity's tier interval. Each tick runs in its
own task, so cancelling a handle stops future ticks without interrupting a
pass that is already running. A tick that fires while the previous one is
still running is skipped; ticks never queue up.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Mapping

from medsync.errors import ConfigurationError, EntityNotConfiguredError

logger = logging.getLogger(__name__)

TickCallback = Callable[[str], Awaitable[object]]


@dataclass
class ScheduleHandle:
    entity_id: str
    frequency: str
    interval_seconds: float
    task: asyncio.Task | None = None
    next_run_at: datetime | None = None
    ticks: int = 0
    skipped: int = 0
    in_flight: asyncio.Task | None = field(default=None, repr=False)
    cancelled: bool = False

    @property
    def active(self) -> bool:
        return self.task is not None and not self.task.done() and not self.cancelled

    def cancel(self) -> None:
        self.cancelled = True
        if self.task is not None:
            self.task.cancel()


class SyncScheduler:
    def __init__(self, intervals: Mapping[str, float], on_tick: TickCallback):
        self.intervals = dict(intervals)
        self.on_tick = on_tick
        self._handles: dict[str, ScheduleHandle] = {}

    def interval_for(self, frequency: str) -> float:
        try:
            return self.intervals[frequency]
        except KeyError:
            raise ConfigurationError(f"Unknown sync frequency '{frequency}'") from None

    def next_sync_time(self, frequency: str) -> datetime:
        return datetime.now(timezone.utc) + timedelta(seconds=self.interval_for(frequency))

    def is_active(self, entity_id: str) -> bool:
        handle = self._handles.get(entity_id)
        return handle is not None and handle.active

    def next_run_at(self, entity_id: str) -> datetime | None:
        handle = self._handles.get(entity_id)
        return handle.next_run_at if handle is not None and handle.active else None

    def start(self, entity_id: str, frequency: str) -> ScheduleHandle:
        """Start ticking for an entity. No-op if it is already active."""
        existing = self._handles.get(entity_id)
        if existing is not None and existing.active:
            return existing

        handle = ScheduleHandle(
            entity_id=entity_id,
            frequency=frequency,
            interval_seconds=self.interval_for(frequency),
        )
        if existing is not None:
            handle.in_flight = existing.in_flight
        handle.task = asyncio.get_running_loop().create_task(
            self._loop(handle), name=f"sync-timer-{entity_id}"
        )
        self._handles[entity_id] = handle
        logger.info(
            "Scheduled %s every %ss (%s)", entity_id, handle.interval_seconds, frequency
        )
        return handle

    def stop(self, entity_id: str) -> None:
        """Cancel future ticks. A pass already running is left to finish."""
        handle = self._handles.get(entity_id)
        if handle is None or not handle.active:
            raise EntityNotConfiguredError(entity_id, f"No active sync found for entity '{entity_id}'")
        handle.cancel()
        logger.info("Stopped schedule for %s", entity_id)

    def reschedule(self, entity_id: str, frequency: str) -> ScheduleHandle:
        handle = self._handles.get(entity_id)
        if handle is not None and handle.active:
            handle.cancel()
        return self.start(entity_id, frequency)

    async def _loop(self, handle: ScheduleHandle) -> None:
        while True:
            handle.next_run_at = datetime.now(timezone.utc) + timedelta(
                seconds=handle.interval_seconds
            )
            await asyncio.sleep(handle.interval_seconds)
            handle.ticks += 1

            if handle.in_flight is not None and not handle.in_flight.done():
                handle.skipped += 1
                logger.info("Skipping tick for %s: previous pass still running", handle.entity_id)
                continue

            handle.in_flight = asyncio.get_running_loop().create_task(
                self._fire(handle.entity_id), name=f"sync-pass-{handle.entity_id}"
            )

    async def _fire(self, entity_id: str) -> None:
        try:
            await self.on_tick(entity_id)
        except Exception:
            # One entity's failure must never take down the other timers
            logger.exception("Scheduled sync for %s raised", entity_id)

    async def shutdown(self, wait: bool = True) -> None:
        """Cancel every timer; optionally wait for in-flight passes to finish."""
        timers = [h.task for h in self._handles.values() if h.task is not None]
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)

        in_flight = [
            h.in_flight
            for h in self._handles.values()
            if h.in_flight is not None and not h.in_flight.done()
        ]
        if wait and in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)
        self._handles.clear()
