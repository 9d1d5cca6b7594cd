"""
ComplianceFacade - the one entry point UI and API code calls.

Commands run in their own unit of work: one session, one transaction,
committed only if the change and its audit entry both made it. Commands
that touch an existing item hold that item's lock for the whole unit of
work. Queries read one consistent snapshot per call and never write.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Union

from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from compliance_engine.config import Settings, get_settings
from compliance_engine.models.records import (
    AggregateReport,
    AuditEntryRecord,
    AuditFilter,
    ComplianceItemCreate,
    ComplianceItemRecord,
    Deadline,
    GapFilter,
    GapRecord,
    ItemFilter,
    PersonRef,
)
from compliance_engine.services.aggregator import ComplianceAggregator
from compliance_engine.services.audit_log import AuditLog
from compliance_engine.services.clock import SystemClock, TimeSource
from compliance_engine.services.errors import ComplianceError, PersistenceFailure, ValidationFailed
from compliance_engine.services.events import ComplianceEvent, EventSink
from compliance_engine.services.gap_tracker import GapTracker
from compliance_engine.services.lifecycle import ComplianceLifecycle, gap_record, item_record
from compliance_engine.services.locks import KeyedLock
from compliance_engine.services.risk_engine import RiskPolicy, risk_rank
from compliance_engine.services.store import ComplianceItemStore, LazySequence

logger = logging.getLogger(__name__)

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)

ActorLike = Union[PersonRef, dict, str]


def _validation_failed(exc: PydanticValidationError) -> ValidationFailed:
    first = exc.errors()[0]
    field = ".".join(str(part) for part in first["loc"]) or None
    return ValidationFailed(first["msg"], field=field)


def _coerce(model, value):
    if value is None or isinstance(value, model):
        return value
    if isinstance(value, BaseModel):
        value = value.model_dump()
    try:
        return model.model_validate(value)
    except PydanticValidationError as exc:
        raise _validation_failed(exc) from None


def _matches_derived(record: ComplianceItemRecord, item_filter: Optional[ItemFilter]) -> bool:
    if item_filter is None:
        return True
    if item_filter.status is not None and record.status != item_filter.status:
        return False
    if item_filter.risk_level is not None and record.risk_level != item_filter.risk_level:
        return False
    return True


def _triage_order(record: ComplianceItemRecord):
    # Highest risk first, then soonest expiry; undated items last
    return (-risk_rank(record.risk_level), record.expires_at or _FAR_FUTURE, record.title, record.id)


class ComplianceFacade:

    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Optional[TimeSource] = None,
        policy: Optional[RiskPolicy] = None,
        audit_log: Optional[AuditLog] = None,
        event_sink: Optional[EventSink] = None,
        upcoming_deadline_days: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.policy = policy or RiskPolicy.from_settings(get_settings())
        self.audit_log = audit_log or AuditLog()
        self.event_sink = event_sink
        if upcoming_deadline_days is None:
            upcoming_deadline_days = get_settings().upcoming_deadline_days
        self.aggregator = ComplianceAggregator(upcoming_deadline_days)
        self.locks = KeyedLock()

    @classmethod
    def from_settings(cls, session_factory: sessionmaker, settings: Optional[Settings] = None, **kwargs):
        settings = settings or get_settings()
        return cls(
            session_factory,
            policy=RiskPolicy.from_settings(settings),
            upcoming_deadline_days=settings.upcoming_deadline_days,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def create_item(self, spec: Union[ComplianceItemCreate, dict], *, actor: ActorLike) -> ComplianceItemRecord:
        spec = _coerce(ComplianceItemCreate, spec)
        actor = self._actor(actor)
        with self._unit_of_work() as lifecycle:
            return lifecycle.create_item(spec, actor)

    def update_score(self, item_id: str, new_score: int, *, actor: ActorLike) -> ComplianceItemRecord:
        actor = self._actor(actor)
        with self.locks.hold(item_id), self._unit_of_work() as lifecycle:
            return lifecycle.update_score(item_id, new_score, actor)

    def set_manual_status(self, item_id: str, status, *, actor: ActorLike) -> ComplianceItemRecord:
        actor = self._actor(actor)
        with self.locks.hold(item_id), self._unit_of_work() as lifecycle:
            return lifecycle.set_manual_status(item_id, status, actor)

    def renew_item(self, item_id: str, issued_at: datetime, expires_at: datetime, *, actor: ActorLike) -> ComplianceItemRecord:
        actor = self._actor(actor)
        with self.locks.hold(item_id), self._unit_of_work() as lifecycle:
            return lifecycle.renew_item(item_id, issued_at, expires_at, actor)

    def record_review(
        self,
        item_id: str,
        reviewed_at: datetime,
        next_review_at: Optional[datetime] = None,
        *,
        actor: ActorLike,
    ) -> ComplianceItemRecord:
        actor = self._actor(actor)
        with self.locks.hold(item_id), self._unit_of_work() as lifecycle:
            return lifecycle.record_review(item_id, reviewed_at, next_review_at, actor)

    def add_evidence(self, item_id: str, evidence_ref: str, *, actor: ActorLike) -> ComplianceItemRecord:
        actor = self._actor(actor)
        with self.locks.hold(item_id), self._unit_of_work() as lifecycle:
            return lifecycle.add_evidence(item_id, evidence_ref, actor)

    def open_gap(
        self,
        item_id: str,
        description: str,
        severity,
        assigned_to: Optional[ActorLike] = None,
        due_at: Optional[datetime] = None,
        *,
        actor: ActorLike,
    ) -> GapRecord:
        actor = self._actor(actor)
        assigned_to = self._actor(assigned_to, field="assigned_to") if assigned_to is not None else None
        with self.locks.hold(item_id), self._unit_of_work() as lifecycle:
            return GapTracker(lifecycle).open_gap(item_id, description, severity, assigned_to, due_at, actor)

    def start_gap(self, gap_id: str, *, actor: ActorLike) -> GapRecord:
        actor = self._actor(actor)
        item_id = self._parent_of(gap_id)
        with self.locks.hold(item_id), self._unit_of_work() as lifecycle:
            return GapTracker(lifecycle).start_gap(gap_id, actor)

    def resolve_gap(self, gap_id: str, resolution_notes: str, *, actor: ActorLike) -> GapRecord:
        actor = self._actor(actor)
        item_id = self._parent_of(gap_id)
        with self.locks.hold(item_id), self._unit_of_work() as lifecycle:
            return GapTracker(lifecycle).resolve_gap(gap_id, resolution_notes, actor)

    def refresh_item(self, item_id: str, *, actor: ActorLike) -> Optional[ComplianceItemRecord]:
        """Persist one item's derived status. None when nothing changed."""
        actor = self._actor(actor)
        with self.locks.hold(item_id), self._unit_of_work() as lifecycle:
            return lifecycle.refresh_item(item_id, actor)

    def refresh(self, *, actor: ActorLike) -> List[ComplianceItemRecord]:
        """
        Sweep every item and persist time-driven status changes.

        Each item is refreshed under its own lock and transaction. Returns
        the items that changed.
        """
        actor = self._actor(actor)
        with self._snapshot() as db:
            item_ids = [item.id for item in ComplianceItemStore(db).query()]
        changed = []
        for item_id in item_ids:
            record = self.refresh_item(item_id, actor=actor)
            if record is not None:
                changed.append(record)
        logger.info("Refresh sweep: %d of %d items changed", len(changed), len(item_ids))
        return changed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_item(self, item_id: str) -> ComplianceItemRecord:
        with self._snapshot() as db:
            item = ComplianceItemStore(db).get(item_id)
            return item_record(item, self.clock.now(), self.policy)

    def list_items(self, item_filter: Optional[Union[ItemFilter, dict]] = None) -> LazySequence[ComplianceItemRecord]:
        """Items matching the filter, highest risk first then soonest expiry."""
        item_filter = _coerce(ItemFilter, item_filter)

        def produce():
            records = self._derived_records(item_filter)
            yield from sorted(records, key=_triage_order)

        return LazySequence(produce)

    def list_gaps(self, item_id: str, gap_filter: Optional[Union[GapFilter, dict]] = None) -> LazySequence[GapRecord]:
        """Gaps of one item, due date ascending with undated gaps last."""
        gap_filter = _coerce(GapFilter, gap_filter)
        with self._snapshot() as db:
            ComplianceItemStore(db).get(item_id)

        def produce():
            with self._snapshot() as db:
                for gap in ComplianceItemStore(db).gaps_for(item_id, gap_filter):
                    yield gap_record(gap)

        return LazySequence(produce)

    def aggregate(self, scope: Optional[Union[ItemFilter, dict]] = None) -> AggregateReport:
        scope = _coerce(ItemFilter, scope)
        now = self.clock.now()
        return self.aggregator.report(self._derived_records(scope, now), now)

    def upcoming_deadlines(self, within_days: int, scope: Optional[Union[ItemFilter, dict]] = None) -> List[Deadline]:
        scope = _coerce(ItemFilter, scope)
        now = self.clock.now()
        return self.aggregator.upcoming_deadlines(self._derived_records(scope, now), within_days, now)

    def audit_trail(self, audit_filter: Optional[Union[AuditFilter, dict]] = None) -> LazySequence[AuditEntryRecord]:
        """Audit entries, newest first."""
        audit_filter = _coerce(AuditFilter, audit_filter)

        def produce():
            with self._snapshot() as db:
                for entry in self.audit_log.query(db, audit_filter):
                    yield AuditEntryRecord.model_validate(entry)

        return LazySequence(produce)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _derived_records(self, item_filter: Optional[ItemFilter], now: Optional[datetime] = None) -> List[ComplianceItemRecord]:
        with self._snapshot() as db:
            now = now or self.clock.now()
            records = [
                item_record(item, now, self.policy)
                for item in ComplianceItemStore(db).query(item_filter)
            ]
        return [record for record in records if _matches_derived(record, item_filter)]

    def _parent_of(self, gap_id: str) -> str:
        with self._snapshot() as db:
            return ComplianceItemStore(db).get_gap(gap_id).item_id

    @staticmethod
    def _actor(actor: Optional[ActorLike], field: str = "actor") -> PersonRef:
        if actor is None:
            raise ValidationFailed("Every change must name who is making it", field=field)
        if isinstance(actor, str):
            actor = {"id": actor}
        try:
            return _coerce(PersonRef, actor)
        except ValidationFailed as exc:
            raise ValidationFailed(exc.message, field=field) from None

    @contextmanager
    def _unit_of_work(self):
        db = self.session_factory()
        lifecycle = ComplianceLifecycle(db, self.clock, self.policy, self.audit_log)
        try:
            yield lifecycle
            db.commit()
        except ComplianceError:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Storage error, change rolled back: %s", exc)
            raise PersistenceFailure(f"Storage error: {exc}") from exc
        finally:
            db.close()
        self._publish(lifecycle.events)

    @contextmanager
    def _snapshot(self):
        db = self.session_factory()
        try:
            yield db
        except SQLAlchemyError as exc:
            logger.warning("Storage error during read: %s", exc)
            raise PersistenceFailure(f"Storage error: {exc}") from exc
        finally:
            db.close()

    def _publish(self, events: Iterable[ComplianceEvent]) -> None:
        if self.event_sink is None:
            return
        for event in events:
            try:
                self.event_sink.publish(event)
            except Exception:
                # The change is already committed; delivery is the sink's problem
                logger.exception("Event sink failed for %s on item %s", event.name, event.item_id)
