"""
Stores for reconciled medications.

Both stores serve two purposes in a pass: their current contents are the
INTERNAL source, and ``apply_resolved`` writes the pass's outcomes back in
one all-or-nothing step. Outcomes flagged for manual review never overwrite
a stored record; they only mark it for review.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from medsync.models.medication import ReconciledMedication
from medsync.reconciliation.records import ResolutionOutcome
from medsync.services.audit import log_action
from medsync.services.encryption import EncryptionService
from medsync.sync.ports import ApplyResult

logger = logging.getLogger(__name__)

ACTOR = "medication_sync"


def _comparable(payload: dict[str, Any] | None) -> dict[str, Any] | None:
    if payload is None:
        return None
    return {k: v for k, v in payload.items() if k != "collectedAt"}


def _review_detail(outcome: ResolutionOutcome) -> dict[str, Any]:
    return {
        "conflicts": [c.to_dict() for c in outcome.conflicts],
        "candidates": [
            {"source": r.source_type.value, "system": r.source_id, "record": r.to_payload()}
            for r in outcome.candidates
        ],
        "flagged_at": outcome.resolution_timestamp.isoformat(),
    }


class InMemoryMedicationStore:
    """Dict-backed store for development and tests."""

    def __init__(self):
        self.records: dict[str, dict[str, dict[str, Any]]] = {}
        self.review_queue: dict[str, dict[str, dict[str, Any]]] = {}

    def seed(self, entity_id: str, key: str, payload: dict[str, Any]) -> None:
        self.records.setdefault(entity_id, {})[key] = dict(payload)

    async def current_records(self, entity_id: str) -> list[dict[str, Any]]:
        return [dict(p) for p in self.records.get(entity_id, {}).values()]

    async def apply_resolved(
        self, entity_id: str, outcomes: Sequence[ResolutionOutcome]
    ) -> ApplyResult:
        records = copy.deepcopy(self.records.get(entity_id, {}))
        queue = copy.deepcopy(self.review_queue.get(entity_id, {}))
        updated = flagged = 0

        for outcome in outcomes:
            if outcome.requires_manual_review:
                queue[outcome.key] = _review_detail(outcome)
                flagged += 1
                continue
            if outcome.resolved_record is None:
                continue
            payload = outcome.resolved_record.to_payload()
            if _comparable(records.get(outcome.key)) != _comparable(payload):
                records[outcome.key] = payload
                updated += 1
            queue.pop(outcome.key, None)

        self.records[entity_id] = records
        self.review_queue[entity_id] = queue
        return ApplyResult(updated_count=updated, flagged_count=flagged)


class SqlMedicationStore:
    """SQLAlchemy-backed store; payloads are encrypted at rest."""

    def __init__(self, session_factory: sessionmaker, encryption: EncryptionService | None = None):
        self.session_factory = session_factory
        self.encryption = encryption or EncryptionService()

    async def current_records(self, entity_id: str) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._current_records, entity_id)

    async def apply_resolved(
        self, entity_id: str, outcomes: Sequence[ResolutionOutcome]
    ) -> ApplyResult:
        return await asyncio.to_thread(self._apply_resolved, entity_id, list(outcomes))

    def _current_records(self, entity_id: str) -> list[dict[str, Any]]:
        with self.session_factory() as db:
            rows = db.scalars(
                select(ReconciledMedication)
                .where(ReconciledMedication.entity_id == entity_id)
                .where(ReconciledMedication.encrypted_payload.is_not(None))
                .order_by(ReconciledMedication.canonical_key)
            ).all()
            return [self.encryption.decrypt_json(row.encrypted_payload) for row in rows]

    def _apply_resolved(self, entity_id: str, outcomes: list[ResolutionOutcome]) -> ApplyResult:
        updated = flagged = 0
        # One transaction per pass: commits on success, rolls back on any error
        with self.session_factory.begin() as db:
            existing = {
                row.canonical_key: row
                for row in db.scalars(
                    select(ReconciledMedication).where(ReconciledMedication.entity_id == entity_id)
                )
            }
            for outcome in outcomes:
                row = existing.get(outcome.key)
                if outcome.requires_manual_review:
                    row = self._flag(db, entity_id, outcome, row)
                    flagged += 1
                    log_action(
                        db,
                        actor=ACTOR,
                        action="flag_for_review",
                        resource_type="ReconciledMedication",
                        resource_id=row.id,
                        detail={"entity_id": entity_id, "key": outcome.key},
                    )
                elif outcome.resolved_record is not None:
                    row, changed = self._write(db, entity_id, outcome, row)
                    if changed:
                        updated += 1
                        log_action(
                            db,
                            actor=ACTOR,
                            action="reconcile",
                            resource_type="ReconciledMedication",
                            resource_id=row.id,
                            detail={
                                "entity_id": entity_id,
                                "key": outcome.key,
                                "method": outcome.resolution_method,
                            },
                        )

        logger.info("Applied %d updates, %d flagged for %s", updated, flagged, entity_id)
        return ApplyResult(updated_count=updated, flagged_count=flagged)

    def _flag(
        self,
        db: Session,
        entity_id: str,
        outcome: ResolutionOutcome,
        row: ReconciledMedication | None,
    ) -> ReconciledMedication:
        if row is None:
            row = ReconciledMedication(
                entity_id=entity_id,
                canonical_key=outcome.key,
                encrypted_payload=None,
                resolution_method=outcome.resolution_method,
                resolved_at=outcome.resolution_timestamp,
            )
            db.add(row)
        row.requires_manual_review = True
        row.review_detail = _review_detail(outcome)
        db.flush()
        return row

    def _write(
        self,
        db: Session,
        entity_id: str,
        outcome: ResolutionOutcome,
        row: ReconciledMedication | None,
    ) -> tuple[ReconciledMedication, bool]:
        payload = outcome.resolved_record.to_payload()
        if row is None:
            row = ReconciledMedication(entity_id=entity_id, canonical_key=outcome.key)
            db.add(row)
            changed = True
        else:
            current = (
                self.encryption.decrypt_json(row.encrypted_payload)
                if row.encrypted_payload
                else None
            )
            changed = _comparable(current) != _comparable(payload)

        if changed:
            row.encrypted_payload = self.encryption.encrypt_json(payload)
            row.resolution_method = outcome.resolution_method
            row.resolved_at = outcome.resolution_timestamp
        row.requires_manual_review = False
        row.review_detail = None
        db.flush()
        return row, changed

    def pending_reviews(self, entity_id: str) -> list[dict[str, Any]]:
        with self.session_factory() as db:
            rows = db.scalars(
                select(ReconciledMedication)
                .where(ReconciledMedication.entity_id == entity_id)
                .where(ReconciledMedication.requires_manual_review.is_(True))
            ).all()
            return [{"key": row.canonical_key, **(row.review_detail or {})} for row in rows]
