"""
Repository over compliance items and their gaps.

The store only persists and queries. It never derives status itself; the
lifecycle and gap services decide what gets written.
"""
from typing import Callable, Generic, Iterator, List, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from compliance_engine.models.domain import ComplianceItem, Gap
from compliance_engine.models.records import GapFilter, ItemFilter
from compliance_engine.services.errors import NotFound

T = TypeVar("T")


class LazySequence(Generic[T]):
    """
    A finite sequence that does no work until iterated.

    Each iteration calls the producer again, so the sequence can be walked
    any number of times and every walk sees fresh storage.
    """

    def __init__(self, producer: Callable[[], Iterator[T]]):
        self._producer = producer

    def __iter__(self) -> Iterator[T]:
        return iter(self._producer())

    def to_list(self) -> List[T]:
        return list(self)


class ComplianceItemStore:
    """get/put/query over ComplianceItem and Gap rows for one session."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, item_id: str) -> ComplianceItem:
        item = self.db.get(ComplianceItem, item_id)
        if item is None:
            raise NotFound(f"Compliance item {item_id} not found", field="item_id", entity_id=item_id)
        return item

    def get_gap(self, gap_id: str) -> Gap:
        gap = self.db.get(Gap, gap_id)
        if gap is None:
            raise NotFound(f"Gap {gap_id} not found", field="gap_id", entity_id=gap_id)
        return gap

    def put(self, item: ComplianceItem) -> ComplianceItem:
        self.db.add(item)
        self.db.flush()
        return item

    def query(self, item_filter: Optional[ItemFilter] = None) -> List[ComplianceItem]:
        """
        Items matching the stored-column parts of the filter.

        status and risk_level are derived values, so callers filter on those
        after derivation rather than here.
        """
        stmt = select(ComplianceItem).options(selectinload(ComplianceItem.gaps))
        if item_filter is not None:
            if item_filter.kind is not None:
                stmt = stmt.where(ComplianceItem.kind == item_filter.kind)
            if item_filter.category is not None:
                stmt = stmt.where(ComplianceItem.category == item_filter.category)
            if item_filter.owner_id is not None:
                stmt = stmt.where(ComplianceItem.owner_id == item_filter.owner_id)
        return list(self.db.scalars(stmt.order_by(ComplianceItem.created_at, ComplianceItem.id)))

    def gaps_for(self, item_id: str, gap_filter: Optional[GapFilter] = None) -> List[Gap]:
        """Gaps of one item, due date ascending with undated gaps last."""
        stmt = select(Gap).where(Gap.item_id == item_id)
        if gap_filter is not None:
            if gap_filter.status is not None:
                stmt = stmt.where(Gap.status == gap_filter.status)
            if gap_filter.severity is not None:
                stmt = stmt.where(Gap.severity == gap_filter.severity)
            if gap_filter.assigned_to_id is not None:
                stmt = stmt.where(Gap.assigned_to_id == gap_filter.assigned_to_id)
        stmt = stmt.order_by(Gap.due_at.is_(None), Gap.due_at, Gap.created_at, Gap.id)
        return list(self.db.scalars(stmt))
