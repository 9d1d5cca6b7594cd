"""
Lifecycle of a compliance item - every item mutation goes through here.

Each public method:
- loads the item and brings its derived status up to date
- applies exactly one change
- re-derives status and risk
- appends exactly one audit entry in the same session

The caller owns the transaction: nothing here commits.
"""
import logging
import uuid
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from compliance_engine.models.audit import AuditAction
from compliance_engine.models.domain import ComplianceItem, Gap
from compliance_engine.models.enums import (
    EntityType,
    ItemKind,
    ItemStatus,
    MANUAL_STATUSES,
    RiskLevel,
)
from compliance_engine.models.records import (
    ComplianceItemCreate,
    ComplianceItemRecord,
    GapRecord,
    PersonRef,
)
from compliance_engine.services.audit_log import AuditLog
from compliance_engine.services.clock import TimeSource, ensure_utc
from compliance_engine.services.errors import InvalidTransition, ValidationFailed
from compliance_engine.services.events import ITEM_STATUS_CHANGED, ComplianceEvent
from compliance_engine.services.risk_engine import RiskPolicy, assess
from compliance_engine.services.store import ComplianceItemStore

logger = logging.getLogger(__name__)

_KIND_FIELDS = {
    ItemKind.CREDENTIAL_CHECK: frozenset({"issuing_body", "certificate_number", "check_level"}),
    ItemKind.REGULATORY_REQUIREMENT: frozenset({"regulator", "reference_code"}),
    ItemKind.STANDARD: frozenset({"regulator", "reference_code"}),
}
_VARIANT_FIELDS = ("issuing_body", "certificate_number", "check_level", "regulator", "reference_code")


def item_record(item, now: Optional[datetime] = None, policy: Optional[RiskPolicy] = None) -> ComplianceItemRecord:
    """
    Snapshot an item.

    With `now` and `policy` the derived status and risk are applied to the
    snapshot only; the item itself is left untouched.
    """
    record = ComplianceItemRecord.model_validate(item)
    if now is None:
        return record
    assessment = assess(record, now, policy)
    return record.model_copy(update={"status": assessment.status, "risk_level": assessment.risk_level})


def gap_record(gap: Gap) -> GapRecord:
    return GapRecord.model_validate(gap)


def _clean_evidence_ref(ref) -> str:
    if not isinstance(ref, str) or not ref.strip():
        raise ValidationFailed("Evidence references must be non-empty strings", field="evidence_refs")
    return ref.strip()


class ComplianceLifecycle:
    """Enforces the item lifecycle and writes its audit trail."""

    def __init__(self, db: Session, clock: TimeSource, policy: RiskPolicy, audit_log: AuditLog):
        self.db = db
        self.clock = clock
        self.policy = policy
        self.audit_log = audit_log
        self.store = ComplianceItemStore(db)
        self.events: List[ComplianceEvent] = []

    def sync(self, item: ComplianceItem, now: datetime) -> bool:
        """
        Write the derived status and risk level onto the item.

        Returns True when either value changed.
        """
        assessment = assess(item, now, self.policy)
        changed = (item.status, item.risk_level) != (assessment.status, assessment.risk_level)
        item.status = assessment.status
        item.risk_level = assessment.risk_level
        return changed

    def note_transition(self, item: ComplianceItem, previous: tuple, now: datetime) -> None:
        """Record an event when the persisted status or risk level moved."""
        previous_status, previous_risk = previous
        if (previous_status, previous_risk) == (item.status, item.risk_level):
            return
        logger.info(
            "Item %s moved %s/%s -> %s/%s",
            item.id,
            previous_status.value if previous_status else None,
            previous_risk.value if previous_risk else None,
            item.status.value,
            item.risk_level.value,
        )
        self.events.append(ComplianceEvent(
            name=ITEM_STATUS_CHANGED,
            item_id=item.id,
            occurred_at=now,
            previous_status=previous_status,
            status=item.status,
            previous_risk_level=previous_risk,
            risk_level=item.risk_level,
        ))

    def create_item(self, spec: ComplianceItemCreate, actor: PersonRef) -> ComplianceItemRecord:
        """
        Start tracking an item.

        The item starts pending when asked to, otherwise with its derived
        status. Score-driven items without an expiry must say so with
        `no_expiry`; a missing expiry is never read as "never expires".
        """
        self._check_spec(spec)
        now = self.clock.now()

        item = ComplianceItem(
            id=str(uuid.uuid4()),
            kind=spec.kind,
            title=spec.title.strip(),
            description=spec.description,
            category=spec.category,
            owner_id=spec.owner.id,
            owner_name=spec.owner.display_name,
            issuing_body=spec.issuing_body,
            certificate_number=spec.certificate_number,
            check_level=spec.check_level,
            regulator=spec.regulator,
            reference_code=spec.reference_code,
            issued_at=spec.issued_at,
            expires_at=spec.expires_at,
            no_expiry=spec.no_expiry,
            last_reviewed_at=spec.last_reviewed_at,
            next_review_at=spec.next_review_at,
            compliance_score=spec.compliance_score,
            status=ItemStatus.PENDING if spec.pending else ItemStatus.COMPLIANT,
            risk_level=RiskLevel.LOW,
            evidence_refs=[_clean_evidence_ref(ref) for ref in spec.evidence_refs],
            created_at=now,
            updated_at=now,
        )
        self.sync(item, now)
        self.store.put(item)

        after = item_record(item)
        self.audit_log.append(
            self.db,
            timestamp=now,
            actor=actor,
            entity_type=EntityType.COMPLIANCE_ITEM,
            entity_id=item.id,
            item_id=item.id,
            action=AuditAction.ITEM_CREATED,
            before=None,
            after=after.model_dump(mode="json"),
        )
        logger.info("Created %s item %s (%s) as %s", item.kind.value, item.id, item.category, item.status.value)
        self.note_transition(item, (None, None), now)
        return after

    def update_score(self, item_id: str, score, actor: PersonRef) -> ComplianceItemRecord:
        if isinstance(score, bool) or not isinstance(score, int) or not 0 <= score <= 100:
            raise ValidationFailed(
                f"Compliance score must be an integer from 0 to 100, got {score!r}",
                field="compliance_score",
                entity_id=item_id,
            )
        item = self.store.get(item_id)
        if item.kind == ItemKind.CREDENTIAL_CHECK:
            raise ValidationFailed(
                "Credential checks are status-driven and do not carry a compliance score",
                field="compliance_score",
                entity_id=item_id,
            )
        self._refuse_if_archived(item, "rescore")

        def change(item, now):
            item.compliance_score = score

        return self._mutate(item, AuditAction.SCORE_UPDATED, actor, change)

    def set_manual_status(self, item_id: str, status, actor: PersonRef) -> ComplianceItemRecord:
        """
        Move an item to or from pending/archived.

        Asking for a derived status (compliant, at-risk, non-compliant) on a
        pending or archived item clears the override; the item then takes
        whatever status derivation gives it.
        """
        try:
            status = ItemStatus(status)
        except ValueError:
            raise ValidationFailed(f"Unknown status {status!r}", field="status", entity_id=item_id) from None

        item = self.store.get(item_id)
        current = assess(item, self.clock.now(), self.policy).status

        if status == current:
            raise InvalidTransition(f"Item is already {status.value}", field="status", entity_id=item_id)

        if status in MANUAL_STATUSES:
            def change(item, now):
                item.status = status
                item.archived_at = now if status == ItemStatus.ARCHIVED else None
        elif current in MANUAL_STATUSES:
            def change(item, now):
                # Any derived value re-enables derivation; sync picks the real one
                item.status = ItemStatus.COMPLIANT
                item.archived_at = None
        else:
            raise InvalidTransition(
                f"Cannot set {status.value} manually: {current.value} is derived from dates, score and gaps. "
                "Only pending and archived can be set or cleared by hand.",
                field="status",
                entity_id=item_id,
            )

        return self._mutate(item, AuditAction.STATUS_SET, actor, change, context={"requested_status": status.value})

    def renew_item(self, item_id: str, issued_at: datetime, expires_at: datetime, actor: PersonRef) -> ComplianceItemRecord:
        """Record a renewed credential: new issue and expiry dates."""
        issued_at = ensure_utc(issued_at)
        expires_at = ensure_utc(expires_at)
        if issued_at is None:
            raise ValidationFailed("Renewal requires an issue date", field="issued_at", entity_id=item_id)
        if expires_at is None:
            raise ValidationFailed("Renewal requires an expiry date", field="expires_at", entity_id=item_id)
        if expires_at <= issued_at:
            raise ValidationFailed("Expiry must be after issue date", field="expires_at", entity_id=item_id)

        item = self.store.get(item_id)
        self._refuse_if_archived(item, "renew")

        def change(item, now):
            item.issued_at = issued_at
            item.expires_at = expires_at
            item.no_expiry = False

        return self._mutate(item, AuditAction.ITEM_RENEWED, actor, change)

    def record_review(
        self,
        item_id: str,
        reviewed_at: datetime,
        next_review_at: Optional[datetime],
        actor: PersonRef,
    ) -> ComplianceItemRecord:
        reviewed_at = ensure_utc(reviewed_at)
        next_review_at = ensure_utc(next_review_at)
        if reviewed_at is None:
            raise ValidationFailed("Review date is required", field="reviewed_at", entity_id=item_id)
        if next_review_at is not None and next_review_at <= reviewed_at:
            raise ValidationFailed("Next review must be after the review", field="next_review_at", entity_id=item_id)

        item = self.store.get(item_id)
        self._refuse_if_archived(item, "review")

        def change(item, now):
            item.last_reviewed_at = reviewed_at
            item.next_review_at = next_review_at

        return self._mutate(item, AuditAction.REVIEW_RECORDED, actor, change)

    def add_evidence(self, item_id: str, evidence_ref: str, actor: PersonRef) -> ComplianceItemRecord:
        ref = _clean_evidence_ref(evidence_ref)
        item = self.store.get(item_id)
        self._refuse_if_archived(item, "attach evidence to")
        if ref in (item.evidence_refs or []):
            raise ValidationFailed(f"Evidence {ref} is already attached", field="evidence_refs", entity_id=item_id)

        def change(item, now):
            # Reassign so the JSON column registers the change
            item.evidence_refs = list(item.evidence_refs or []) + [ref]

        return self._mutate(item, AuditAction.EVIDENCE_ADDED, actor, change, context={"evidence_ref": ref})

    def refresh_item(self, item_id: str, actor: PersonRef) -> Optional[ComplianceItemRecord]:
        """
        Persist the derived status of one item.

        Writes an audit entry only when status or risk level actually moved;
        returns None otherwise.
        """
        item = self.store.get(item_id)
        now = self.clock.now()
        stored = (item.status, item.risk_level)
        before = item_record(item).model_dump(mode="json")
        if not self.sync(item, now):
            return None
        self.db.flush()

        after = item_record(item)
        self.audit_log.append(
            self.db,
            timestamp=now,
            actor=actor,
            entity_type=EntityType.COMPLIANCE_ITEM,
            entity_id=item.id,
            item_id=item.id,
            action=AuditAction.STATUS_DERIVED,
            before=before,
            after=after.model_dump(mode="json"),
        )
        self.note_transition(item, stored, now)
        return after

    def _mutate(
        self,
        item: ComplianceItem,
        action: str,
        actor: PersonRef,
        change: Callable[[ComplianceItem, datetime], None],
        context: Optional[dict] = None,
    ) -> ComplianceItemRecord:
        now = self.clock.now()
        stored = (item.status, item.risk_level)

        # The before snapshot is what a read at `now` would have returned
        self.sync(item, now)
        before = item_record(item).model_dump(mode="json")

        change(item, now)
        item.updated_at = now
        self.sync(item, now)
        self.db.flush()

        after = item_record(item)
        self.audit_log.append(
            self.db,
            timestamp=now,
            actor=actor,
            entity_type=EntityType.COMPLIANCE_ITEM,
            entity_id=item.id,
            item_id=item.id,
            action=action,
            before=before,
            after=after.model_dump(mode="json"),
            context=context,
        )
        self.note_transition(item, stored, now)
        return after

    def _refuse_if_archived(self, item: ComplianceItem, verb: str) -> None:
        if item.status == ItemStatus.ARCHIVED:
            raise InvalidTransition(
                f"Cannot {verb} archived item {item.id}; restore it first",
                field="status",
                entity_id=item.id,
            )

    def _check_spec(self, spec: ComplianceItemCreate) -> None:
        if spec.expires_at is None and not spec.no_expiry:
            raise ValidationFailed(
                "expires_at is required unless no_expiry is explicitly set",
                field="expires_at",
            )
        if spec.expires_at is not None and spec.no_expiry:
            raise ValidationFailed("An item with an expiry date cannot be marked no_expiry", field="no_expiry")
        if spec.issued_at is not None and spec.expires_at is not None and spec.expires_at <= spec.issued_at:
            raise ValidationFailed("Expiry must be after issue date", field="expires_at")
        if (
            spec.last_reviewed_at is not None
            and spec.next_review_at is not None
            and spec.next_review_at <= spec.last_reviewed_at
        ):
            raise ValidationFailed("Next review must be after the last review", field="next_review_at")
        if spec.kind == ItemKind.CREDENTIAL_CHECK and spec.compliance_score is not None:
            raise ValidationFailed(
                "Credential checks are status-driven and do not carry a compliance score",
                field="compliance_score",
            )

        allowed = _KIND_FIELDS[spec.kind]
        for name in _VARIANT_FIELDS:
            if name not in allowed and getattr(spec, name) is not None:
                raise ValidationFailed(f"{name} does not apply to {spec.kind.value} items", field=name)

        refs = [_clean_evidence_ref(ref) for ref in spec.evidence_refs]
        if len(set(refs)) != len(refs):
            raise ValidationFailed("Evidence references must be unique", field="evidence_refs")
