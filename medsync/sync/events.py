"""
Sync lifecycle events and fire-and-forget notifications.

Events are plain values published on an EventChannel. Consumers either
subscribe (each subscriber gets its own asyncio.Queue) or poll the bounded
recent-event log.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from medsync.sync.ports import Notifier

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    SYNC_INITIALIZED = "sync_initialized"
    SYNC_STARTED = "sync_started"
    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"
    CONFLICT_DETECTED = "conflict_detected"
    SYNC_STOPPED = "sync_stopped"


@dataclass(frozen=True)
class SyncEvent:
    type: EventType
    entity_id: str
    payload: dict[str, Any] = field(default_factory=dict, hash=False)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EventChannel:
    def __init__(self, history_size: int = 200, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: list[asyncio.Queue[SyncEvent]] = []
        self._recent: deque[SyncEvent] = deque(maxlen=history_size)

    def subscribe(self) -> asyncio.Queue[SyncEvent]:
        queue: asyncio.Queue[SyncEvent] = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[SyncEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, event: SyncEvent) -> None:
        self._recent.append(event)
        for queue in self._subscribers:
            if queue.full():
                # Slow subscriber: drop its oldest event
                queue.get_nowait()
                logger.warning("Subscriber queue full; dropped oldest event")
            queue.put_nowait(event)
        logger.debug("Event %s for %s", event.type.value, event.entity_id)

    def recent(self, entity_id: str | None = None) -> list[SyncEvent]:
        return [e for e in self._recent if entity_id is None or e.entity_id == entity_id]


class LoggingNotifier:
    """Default notifier: writes the notification to the log and nothing else."""

    async def notify(self, entity_id: str, event_type: str, payload: dict[str, Any]) -> None:
        logger.info("Notification %s for %s: %s", event_type, entity_id, payload)


class NotificationDispatcher:
    """Sends notifications in background tasks; failures are logged only."""

    def __init__(self, notifier: Notifier):
        self.notifier = notifier
        self._pending: set[asyncio.Task] = set()

    def dispatch(self, entity_id: str, event_type: str, payload: dict[str, Any]) -> None:
        task = asyncio.get_running_loop().create_task(
            self._send(entity_id, event_type, payload)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, entity_id: str, event_type: str, payload: dict[str, Any]) -> None:
        try:
            await self.notifier.notify(entity_id, event_type, payload)
        except Exception:
            logger.exception("Failed to send %s notification for %s", event_type, entity_id)

    async def wait_idle(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending))
