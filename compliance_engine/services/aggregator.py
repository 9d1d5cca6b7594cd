"""
Dashboard rollups.

The aggregator only ever sees record snapshots, already derived at the
moment of the query, so nothing it computes can leak back into storage.
Archived items are left out of every figure.
"""
from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from compliance_engine.models.enums import ItemStatus, RiskLevel
from compliance_engine.models.records import AggregateReport, ComplianceItemRecord, Deadline, GapRecord
from compliance_engine.services.errors import ValidationFailed
from compliance_engine.services.risk_engine import days_until


def _active(items: Iterable[ComplianceItemRecord]) -> List[ComplianceItemRecord]:
    return [item for item in items if item.status != ItemStatus.ARCHIVED]


def _mean_score(items: Iterable[ComplianceItemRecord]) -> Optional[float]:
    # Unscored items are skipped, not counted as zero
    scores = [item.compliance_score for item in items if item.compliance_score is not None]
    if not scores:
        return None
    return sum(scores) / len(scores)


class ComplianceAggregator:

    def __init__(self, upcoming_deadline_days: int = 30):
        self.upcoming_deadline_days = upcoming_deadline_days

    def overall_score(self, items: Iterable[ComplianceItemRecord]) -> Optional[float]:
        """Mean score over non-archived scored items; None when there are none."""
        return _mean_score(_active(items))

    def category_scores(self, items: Iterable[ComplianceItemRecord]) -> Dict[str, Optional[float]]:
        by_category: Dict[str, List[ComplianceItemRecord]] = {}
        for item in _active(items):
            by_category.setdefault(item.category, []).append(item)
        return {category: _mean_score(members) for category, members in sorted(by_category.items())}

    def counts_by_status(self, items: Iterable[ComplianceItemRecord]) -> Dict[str, int]:
        return dict(Counter(item.status.value for item in _active(items)))

    def counts_by_category(self, items: Iterable[ComplianceItemRecord]) -> Dict[str, int]:
        return dict(Counter(item.category for item in _active(items)))

    def counts_by_risk(self, items: Iterable[ComplianceItemRecord]) -> Dict[str, int]:
        return dict(Counter(item.risk_level.value for item in _active(items)))

    def counts_by_owner(self, items: Iterable[ComplianceItemRecord]) -> Dict[str, int]:
        return dict(Counter(item.owner.id for item in _active(items)))

    def critical_issues(self, items: Iterable[ComplianceItemRecord]) -> int:
        return sum(
            1 for item in _active(items)
            if item.status == ItemStatus.NON_COMPLIANT and item.risk_level == RiskLevel.CRITICAL
        )

    def open_gaps(self, items: Iterable[ComplianceItemRecord]) -> List[GapRecord]:
        return [gap for item in _active(items) for gap in item.open_gaps]

    def overdue_gaps(self, items: Iterable[ComplianceItemRecord], now: datetime) -> List[GapRecord]:
        """Unresolved gaps whose due date has passed, most overdue first."""
        overdue = [gap for gap in self.open_gaps(items) if gap.due_at is not None and gap.due_at < now]
        return sorted(overdue, key=lambda gap: gap.due_at)

    def upcoming_deadlines(
        self,
        items: Iterable[ComplianceItemRecord],
        within_days: int,
        now: datetime,
    ) -> List[Deadline]:
        """
        Items with an expiry or next review inside [now, now + within_days].

        One entry per item, for whichever of its dates comes first; soonest first.
        """
        if within_days < 0:
            raise ValidationFailed("within_days must not be negative", field="within_days")
        horizon = now + timedelta(days=within_days)

        deadlines = []
        for item in _active(items):
            candidates = [
                (when, deadline_type)
                for when, deadline_type in ((item.expires_at, "expiry"), (item.next_review_at, "review"))
                if when is not None and now <= when <= horizon
            ]
            if not candidates:
                continue
            when, deadline_type = min(candidates, key=lambda candidate: candidate[0])
            deadlines.append(Deadline(
                item_id=item.id,
                title=item.title,
                kind=item.kind,
                category=item.category,
                owner=item.owner,
                deadline_type=deadline_type,
                due_at=when,
                days_remaining=days_until(when, now),
                status=item.status,
            ))
        return sorted(deadlines, key=lambda deadline: (deadline.due_at, deadline.item_id))

    def report(self, items: Iterable[ComplianceItemRecord], now: datetime) -> AggregateReport:
        items = _active(items)
        return AggregateReport(
            generated_at=now,
            item_count=len(items),
            overall_score=self.overall_score(items),
            category_scores=self.category_scores(items),
            counts_by_status=self.counts_by_status(items),
            counts_by_category=self.counts_by_category(items),
            counts_by_risk=self.counts_by_risk(items),
            counts_by_owner=self.counts_by_owner(items),
            critical_issues=self.critical_issues(items),
            open_gap_count=len(self.open_gaps(items)),
            overdue_gap_count=len(self.overdue_gaps(items, now)),
            upcoming_deadlines=self.upcoming_deadlines(items, self.upcoming_deadline_days, now),
        )
