"""
Append-only audit log.

Entries are written through the caller's session so they commit or roll
back together with the change they describe. A failed append raises
AuditWriteFailure and takes the whole change down with it.
"""
import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from compliance_engine.models.audit import AuditEntry
from compliance_engine.models.domain import ComplianceItem, Gap
from compliance_engine.models.enums import EntityType
from compliance_engine.models.records import AuditFilter, PersonRef
from compliance_engine.services.errors import AuditWriteFailure, NotFound, ValidationFailed

logger = logging.getLogger(__name__)

_ENTITY_MODELS = {
    EntityType.COMPLIANCE_ITEM: ComplianceItem,
    EntityType.GAP: Gap,
}


class AuditLog:
    """Validates and appends audit entries; queries them newest first."""

    def __init__(self):
        # Appends from different item scopes serialise here so insertion
        # order breaks ties between equal timestamps.
        self._write_lock = threading.Lock()

    def append(
        self,
        db: Session,
        *,
        timestamp: Optional[datetime],
        actor: Optional[PersonRef],
        entity_type: EntityType,
        entity_id: str,
        action: str,
        before: Optional[Dict[str, Any]],
        after: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
        item_id: Optional[str] = None,
    ) -> AuditEntry:
        if timestamp is None:
            raise ValidationFailed("Audit entry requires a timestamp", field="timestamp")
        if actor is None:
            raise ValidationFailed("Audit entry requires an actor", field="actor")
        if not action:
            raise ValidationFailed("Audit entry requires an action", field="action")
        if after is None:
            raise ValidationFailed("Audit entry requires an after snapshot", field="after_snapshot")

        model = _ENTITY_MODELS.get(entity_type)
        if model is None:
            raise ValidationFailed(f"Unknown entity type {entity_type!r}", field="entity_type")
        if not entity_id or db.get(model, entity_id) is None:
            raise NotFound(
                f"Audit entry refers to unknown {entity_type.value} {entity_id}",
                field="entity_id",
                entity_id=entity_id,
            )

        entry = AuditEntry(
            timestamp=timestamp,
            actor_id=actor.id,
            actor_name=actor.display_name,
            entity_type=entity_type,
            entity_id=entity_id,
            item_id=item_id,
            action=action,
            before_snapshot=before,
            after_snapshot=after,
            context_json=context,
        )
        with self._write_lock:
            try:
                self._write(db, entry)
            except SQLAlchemyError as exc:
                logger.warning("Audit write failed for %s %s (%s): %s", entity_type.value, entity_id, action, exc)
                raise AuditWriteFailure(
                    f"Could not record {action} for {entity_type.value} {entity_id}",
                    field="audit",
                    entity_id=entity_id,
                ) from exc
        logger.debug("Audit %s %s %s by %s", action, entity_type.value, entity_id, actor.id)
        return entry

    def _write(self, db: Session, entry: AuditEntry) -> None:
        db.add(entry)
        db.flush()

    def query(self, db: Session, audit_filter: Optional[AuditFilter] = None) -> List[AuditEntry]:
        """Matching entries, newest first; later insertions first on equal timestamps."""
        stmt = select(AuditEntry)
        if audit_filter is not None:
            if audit_filter.entity_id is not None:
                stmt = stmt.where(AuditEntry.entity_id == audit_filter.entity_id)
            if audit_filter.item_id is not None:
                stmt = stmt.where(AuditEntry.item_id == audit_filter.item_id)
            if audit_filter.entity_type is not None:
                stmt = stmt.where(AuditEntry.entity_type == audit_filter.entity_type)
            if audit_filter.actor_id is not None:
                stmt = stmt.where(AuditEntry.actor_id == audit_filter.actor_id)
            if audit_filter.action is not None:
                stmt = stmt.where(AuditEntry.action == audit_filter.action)
            if audit_filter.since is not None:
                stmt = stmt.where(AuditEntry.timestamp >= audit_filter.since)
            if audit_filter.until is not None:
                stmt = stmt.where(AuditEntry.timestamp <= audit_filter.until)
        stmt = stmt.order_by(AuditEntry.timestamp.desc(), AuditEntry.id.desc())
        return list(db.scalars(stmt))
