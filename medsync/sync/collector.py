"""
Source collection for one reconciliation pass.

Each configured source is fetched with its own timeout. A failing source is
recorded in the error list and collection moves on to the next one; the
locally stored records are always collected last as the INTERNAL source.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Sequence

from medsync.reconciliation.records import SourceRecord, SourceType
from medsync.schemas.medication import MEDICATION_RECORD_SCHEMA
from medsync.services.validation import validate_against_schema
from medsync.sync.ports import MedicationStore, SourceAdapter

logger = logging.getLogger(__name__)

INTERNAL_SYSTEM = "internal"


@dataclass
class SourceBatch:
    type: SourceType
    system: str
    records: list[SourceRecord]
    timestamp: datetime


@dataclass
class SourceError:
    source: str
    error: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {"source": self.source, "error": self.error, "timestamp": self.timestamp.isoformat()}


@dataclass
class RejectedRecord:
    source: str
    record: Any
    errors: list[str]


@dataclass
class CollectionResult:
    sources: list[SourceBatch] = field(default_factory=list)
    errors: list[SourceError] = field(default_factory=list)
    rejected: list[RejectedRecord] = field(default_factory=list)

    def all_records(self) -> list[SourceRecord]:
        return [record for batch in self.sources for record in batch.records]

    @property
    def record_count(self) -> int:
        return sum(len(batch.records) for batch in self.sources)


def source_label(source_type: SourceType, system: str) -> str:
    if source_type is SourceType.INTERNAL:
        return "INTERNAL"
    return f"{source_type.value}_{system}"


class SourceCollector:
    def __init__(
        self,
        adapters: Mapping[SourceType, SourceAdapter],
        store: MedicationStore,
        timeout_seconds: float = 30.0,
    ):
        self.adapters = dict(adapters)
        self.store = store
        self.timeout_seconds = timeout_seconds

    async def collect(
        self, entity_id: str, sources: Sequence[tuple[SourceType, str]]
    ) -> CollectionResult:
        result = CollectionResult()

        for source_type, system in sources:
            adapter = self.adapters.get(source_type)
            if adapter is None:
                result.errors.append(
                    SourceError(
                        source=source_label(source_type, system),
                        error=f"No adapter registered for source type {source_type.value}",
                        timestamp=datetime.now(timezone.utc),
                    )
                )
                continue
            await self._collect_one(
                result, source_type, system, lambda: adapter.fetch_records(entity_id, system)
            )

        await self._collect_one(
            result,
            SourceType.INTERNAL,
            INTERNAL_SYSTEM,
            lambda: self.store.current_records(entity_id),
        )

        logger.info(
            "Collected %d records from %d sources for %s (%d errors, %d rejected)",
            result.record_count,
            len(result.sources),
            entity_id,
            len(result.errors),
            len(result.rejected),
        )
        return result

    async def _collect_one(
        self,
        result: CollectionResult,
        source_type: SourceType,
        system: str,
        fetch: Callable[[], Awaitable[list[dict[str, Any]]]],
    ) -> None:
        label = source_label(source_type, system)
        try:
            raw_records = await asyncio.wait_for(fetch(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Source %s timed out after %ss", label, self.timeout_seconds)
            result.errors.append(
                SourceError(
                    source=label,
                    error=f"Timed out after {self.timeout_seconds}s",
                    timestamp=datetime.now(timezone.utc),
                )
            )
            return
        except Exception as exc:
            logger.warning("Source %s failed: %s", label, exc)
            result.errors.append(
                SourceError(source=label, error=str(exc), timestamp=datetime.now(timezone.utc))
            )
            return

        timestamp = datetime.now(timezone.utc)
        records: list[SourceRecord] = []
        for raw in raw_records or []:
            errors = validate_against_schema(raw, MEDICATION_RECORD_SCHEMA)
            if errors:
                result.rejected.append(RejectedRecord(source=label, record=raw, errors=errors))
                continue
            records.append(
                SourceRecord.from_raw(
                    raw, source_type=source_type, source_id=system, collected_at=timestamp
                )
            )

        result.sources.append(
            SourceBatch(type=source_type, system=system, records=records, timestamp=timestamp)
        )
