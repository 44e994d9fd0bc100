"""Boundaries to the collaborators the sync service talks to."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from medsync.reconciliation.records import ResolutionOutcome


class SourceAdapter(Protocol):
    """EHR or pharmacy connector. Returns raw medication dicts or raises."""

    async def fetch_records(self, entity_id: str, system: str) -> list[dict[str, Any]]: ...


@dataclass(frozen=True)
class ApplyResult:
    updated_count: int
    flagged_count: int = 0


class MedicationStore(Protocol):
    """Local persistence for reconciled records; also the implicit INTERNAL source."""

    async def current_records(self, entity_id: str) -> list[dict[str, Any]]: ...

    async def apply_resolved(
        self, entity_id: str, outcomes: Sequence[ResolutionOutcome]
    ) -> ApplyResult: ...


class Notifier(Protocol):
    async def notify(self, entity_id: str, event_type: str, payload: dict[str, Any]) -> None: ...
