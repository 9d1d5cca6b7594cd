"""
Audit trail model.

Every state change to a compliance item or gap writes exactly one entry,
inside the same transaction as the change itself.
"""
from sqlalchemy import Column, Integer, JSON, String, Enum as SQLEnum, event

from compliance_engine.database import Base, UTCDateTime
from compliance_engine.models.enums import EntityType


class AuditEntry(Base):
    """
    Immutable record of one state change.

    Invariants:
    - Once written, never edited or deleted
    - Append-only; `id` is the insertion sequence and breaks timestamp ties
    """
    __tablename__ = "audit_entries"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    timestamp = Column(UTCDateTime, nullable=False, index=True)
    actor_id = Column(String, nullable=False, index=True)
    actor_name = Column(String, nullable=True)
    entity_type = Column(SQLEnum(EntityType), nullable=False)
    entity_id = Column(String, nullable=False, index=True)
    # The item itself, or the parent item of a gap
    item_id = Column(String, nullable=True, index=True)
    action = Column(String, nullable=False, index=True)
    before_snapshot = Column(JSON, nullable=True)  # null on creation
    after_snapshot = Column(JSON, nullable=False)
    context_json = Column(JSON, nullable=True)  # e.g. parent item transition for gap actions

    @property
    def actor(self):
        return {"id": self.actor_id, "display_name": self.actor_name}


@event.listens_for(AuditEntry, "before_update")
def _refuse_update(mapper, connection, target):
    raise ValueError(f"IMMUTABILITY VIOLATION: audit entry {target.id} cannot be updated")


@event.listens_for(AuditEntry, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise ValueError(f"IMMUTABILITY VIOLATION: audit entry {target.id} cannot be deleted")


class AuditAction:
    """Enumeration of audit actions."""
    # Item lifecycle
    ITEM_CREATED = "item_created"
    SCORE_UPDATED = "score_updated"
    STATUS_SET = "status_set"
    ITEM_RENEWED = "item_renewed"
    REVIEW_RECORDED = "review_recorded"
    EVIDENCE_ADDED = "evidence_added"

    # Written by the refresh sweep only when something changed
    STATUS_DERIVED = "status_derived"

    # Gap lifecycle
    GAP_OPENED = "gap_opened"
    GAP_STARTED = "gap_started"
    GAP_RESOLVED = "gap_resolved"
