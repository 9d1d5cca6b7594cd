"""
Gap tracker - remediation units raised against a compliance item.

Opening a gap can push its parent to at-risk or non-compliant; resolving
the last one lets the parent fall back to whatever its dates or score say.
Each call writes one audit entry for the gap, with the parent's status
before and after carried in the entry's context.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional

from compliance_engine.models.audit import AuditAction
from compliance_engine.models.domain import ComplianceItem, Gap
from compliance_engine.models.enums import EntityType, GapSeverity, GapStatus, ItemStatus
from compliance_engine.models.records import GapRecord, PersonRef
from compliance_engine.services.clock import ensure_utc
from compliance_engine.services.errors import InvalidTransition, ValidationFailed
from compliance_engine.services.lifecycle import ComplianceLifecycle, gap_record

logger = logging.getLogger(__name__)


class GapTracker:
    """Opens, progresses and resolves gaps, keeping the parent item's status in step."""

    def __init__(self, lifecycle: ComplianceLifecycle):
        self.lifecycle = lifecycle
        self.db = lifecycle.db
        self.clock = lifecycle.clock
        self.audit_log = lifecycle.audit_log
        self.store = lifecycle.store

    def open_gap(
        self,
        item_id: str,
        description: str,
        severity,
        assigned_to: Optional[PersonRef],
        due_at: Optional[datetime],
        actor: PersonRef,
    ) -> GapRecord:
        """
        Raise a gap against an item.

        Side effect: a compliant parent becomes non-compliant for a high or
        critical gap and at-risk for anything lower.
        """
        description = (description or "").strip()
        if not description:
            raise ValidationFailed("Gap description is required", field="description", entity_id=item_id)
        try:
            severity = GapSeverity(severity)
        except ValueError:
            raise ValidationFailed(f"Unknown severity {severity!r}", field="severity", entity_id=item_id) from None

        item = self.store.get(item_id)
        if item.status == ItemStatus.ARCHIVED:
            raise InvalidTransition(
                f"Cannot open a gap on archived item {item_id}",
                field="status",
                entity_id=item_id,
            )

        now = self.clock.now()
        stored = (item.status, item.risk_level)
        self.lifecycle.sync(item, now)
        parent_before = (item.status, item.risk_level)

        gap = Gap(
            id=str(uuid.uuid4()),
            description=description,
            severity=severity,
            status=GapStatus.OPEN,
            assigned_to_id=assigned_to.id if assigned_to else None,
            assigned_to_name=assigned_to.display_name if assigned_to else None,
            due_at=ensure_utc(due_at),
            created_at=now,
            updated_at=now,
        )
        item.gaps.append(gap)
        self._settle_parent(item, parent_before, now)
        self.db.flush()

        after = gap_record(gap)
        self.audit_log.append(
            self.db,
            timestamp=now,
            actor=actor,
            entity_type=EntityType.GAP,
            entity_id=gap.id,
            item_id=item.id,
            action=AuditAction.GAP_OPENED,
            before=None,
            after=after.model_dump(mode="json"),
            context=self._parent_context(item, parent_before),
        )
        logger.info("Opened %s gap %s on item %s", severity.value, gap.id, item.id)
        self.lifecycle.note_transition(item, stored, now)
        return after

    def start_gap(self, gap_id: str, actor: PersonRef) -> GapRecord:
        """open -> in-progress. The gap still counts as open for its parent."""
        gap = self.store.get_gap(gap_id)
        if gap.status != GapStatus.OPEN:
            raise InvalidTransition(
                f"Only open gaps can be started; gap {gap_id} is {gap.status.value}",
                field="status",
                entity_id=gap_id,
            )

        def change(gap, now):
            gap.status = GapStatus.IN_PROGRESS

        return self._mutate(gap, AuditAction.GAP_STARTED, actor, change)

    def resolve_gap(self, gap_id: str, resolution_notes: str, actor: PersonRef) -> GapRecord:
        """
        Close a gap.

        Resolution notes are mandatory. Once no open gaps remain the parent's
        status is re-derived and may return to compliant.
        """
        notes = (resolution_notes or "").strip()
        if not notes:
            raise ValidationFailed(
                "Resolution notes are required to resolve a gap",
                field="resolution_notes",
                entity_id=gap_id,
            )
        gap = self.store.get_gap(gap_id)
        if gap.status == GapStatus.RESOLVED:
            raise InvalidTransition(f"Gap {gap_id} is already resolved", field="status", entity_id=gap_id)

        def change(gap, now):
            gap.status = GapStatus.RESOLVED
            gap.resolution_notes = notes
            gap.resolved_at = now
            gap.resolved_by_id = actor.id

        record = self._mutate(gap, AuditAction.GAP_RESOLVED, actor, change)
        logger.info("Resolved gap %s on item %s", gap.id, gap.item_id)
        return record

    def _mutate(self, gap: Gap, action: str, actor: PersonRef, change) -> GapRecord:
        item = gap.item
        now = self.clock.now()
        stored = (item.status, item.risk_level)
        self.lifecycle.sync(item, now)
        parent_before = (item.status, item.risk_level)
        before = gap_record(gap).model_dump(mode="json")

        change(gap, now)
        gap.updated_at = now
        self._settle_parent(item, parent_before, now)
        self.db.flush()

        after = gap_record(gap)
        self.audit_log.append(
            self.db,
            timestamp=now,
            actor=actor,
            entity_type=EntityType.GAP,
            entity_id=gap.id,
            item_id=item.id,
            action=action,
            before=before,
            after=after.model_dump(mode="json"),
            context=self._parent_context(item, parent_before),
        )
        self.lifecycle.note_transition(item, stored, now)
        return after

    def _settle_parent(self, item: ComplianceItem, parent_before: tuple, now: datetime) -> None:
        self.lifecycle.sync(item, now)
        if (item.status, item.risk_level) != parent_before:
            item.updated_at = now

    @staticmethod
    def _parent_context(item: ComplianceItem, parent_before: tuple) -> dict:
        status_before, risk_before = parent_before
        return {
            "item_id": item.id,
            "item_status_before": status_before.value,
            "item_status_after": item.status.value,
            "item_risk_level_before": risk_before.value,
            "item_risk_level_after": item.risk_level.value,
        }
