"""
Tables for reconciled medications and the audit trail.

Medication payloads are PHI and are stored encrypted; only the canonical key
and resolution metadata are kept in clear for querying.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB

from medsync.models.database import Base

JSONVariant = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Reconciled medication – one row per entity and canonical key
# ---------------------------------------------------------------------------
class ReconciledMedication(Base):
    __tablename__ = "reconciled_medications"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    entity_id = Column(String(128), nullable=False, comment="Subject entity, e.g. patient id")
    canonical_key = Column(String(128), nullable=False, comment="ndc_* | rxcui_* | name_*")
    encrypted_payload = Column(
        Text, nullable=True, comment="Fernet-encrypted record; NULL until first resolved"
    )
    resolution_method = Column(String(32), nullable=False)
    requires_manual_review = Column(Boolean, default=False, nullable=False)
    review_detail = Column(JSONVariant, nullable=True, comment="Conflicts awaiting review")
    resolved_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("entity_id", "canonical_key", name="uq_entity_medication_key"),
        Index("ix_reconciled_entity", "entity_id"),
    )


# ---------------------------------------------------------------------------
# Audit Log – immutable compliance trail
# ---------------------------------------------------------------------------
class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    actor = Column(String(128), nullable=False, comment="User or service identity")
    action = Column(String(64), nullable=False, comment="reconcile | flag_for_review")
    resource_type = Column(String(64), nullable=False)
    resource_id = Column(Uuid(as_uuid=True), nullable=False)
    detail = Column(JSONVariant, comment="Context for the action")
    timestamp = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_audit_timestamp", "timestamp"),)
