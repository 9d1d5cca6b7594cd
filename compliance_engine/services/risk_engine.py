"""
Risk engine - the single place where status and risk are derived.

Everything here is a pure function of an item's fields, its open gaps and
"now". The functions accept either ORM items or pydantic records: they only
read `kind`, `category`, `status`, `risk_level`, `expires_at`,
`compliance_score` and the `severity`/`status` of each entry in `gaps`.

Derivation rules:
- pending and archived are manual; derivation leaves them alone
- with an expiry date: past expiry is non-compliant, inside the warning
  window is at-risk, otherwise compliant
- without one the item is score-driven: at or above the compliant threshold
  is compliant, below it at-risk
- open gaps set a floor: high/critical -> non-compliant, others -> at-risk
- the final status is the more severe of the base and the floor
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Iterable, Optional

from compliance_engine.models.enums import (
    GapSeverity,
    ItemKind,
    ItemStatus,
    RiskLevel,
    UNRESOLVED_GAP_STATUSES,
)

_STATUS_RANK = {
    ItemStatus.COMPLIANT: 0,
    ItemStatus.AT_RISK: 1,
    ItemStatus.NON_COMPLIANT: 2,
}

_RISK_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}

_BLOCKING_SEVERITIES = frozenset({GapSeverity.HIGH, GapSeverity.CRITICAL})


@dataclass(frozen=True)
class RiskPolicy:
    """Thresholds that drive derivation. Built from Settings in production."""
    kind_warning_days: Dict[ItemKind, int] = field(default_factory=lambda: {
        ItemKind.CREDENTIAL_CHECK: 90,
        ItemKind.REGULATORY_REQUIREMENT: 30,
        ItemKind.STANDARD: 30,
    })
    category_warning_days: Dict[str, int] = field(default_factory=dict)
    safety_critical_categories: FrozenSet[str] = frozenset({"safety", "safeguarding", "infection-control"})
    compliant_score_threshold: int = 80

    @classmethod
    def from_settings(cls, settings) -> "RiskPolicy":
        return cls(
            kind_warning_days={
                ItemKind.CREDENTIAL_CHECK: settings.credential_check_warning_days,
                ItemKind.REGULATORY_REQUIREMENT: settings.regulatory_requirement_warning_days,
                ItemKind.STANDARD: settings.standard_warning_days,
            },
            category_warning_days=dict(settings.category_warning_days),
            safety_critical_categories=frozenset(
                category.strip().lower() for category in settings.safety_critical_categories
            ),
            compliant_score_threshold=settings.compliant_score_threshold,
        )

    def warning_window(self, kind: ItemKind, category: str) -> timedelta:
        """Category override wins over the kind default."""
        days = self.category_warning_days.get(category.lower())
        if days is None:
            days = self.kind_warning_days.get(kind, 30)
        return timedelta(days=days)

    def is_safety_critical(self, category: str) -> bool:
        return category.lower() in self.safety_critical_categories


@dataclass(frozen=True)
class Assessment:
    status: ItemStatus
    risk_level: RiskLevel


def worst_status(*statuses: Optional[ItemStatus]) -> ItemStatus:
    candidates = [status for status in statuses if status is not None]
    return max(candidates, key=lambda status: _STATUS_RANK[status])


def risk_rank(level: RiskLevel) -> int:
    return _RISK_RANK[level]


def status_from_dates(expires_at: datetime, now: datetime, warning_window: timedelta) -> ItemStatus:
    if now > expires_at:
        return ItemStatus.NON_COMPLIANT
    if expires_at - now <= warning_window:
        return ItemStatus.AT_RISK
    return ItemStatus.COMPLIANT


def status_from_score(score: Optional[int], policy: RiskPolicy) -> ItemStatus:
    if score is None or score >= policy.compliant_score_threshold:
        return ItemStatus.COMPLIANT
    return ItemStatus.AT_RISK


def status_from_gaps(severities: Iterable[GapSeverity]) -> Optional[ItemStatus]:
    """The floor imposed by open gaps, or None when there are none."""
    floor = None
    for severity in severities:
        if severity in _BLOCKING_SEVERITIES:
            return ItemStatus.NON_COMPLIANT
        floor = ItemStatus.AT_RISK
    return floor


def open_gap_severities(item) -> list:
    return [gap.severity for gap in item.gaps if gap.status in UNRESOLVED_GAP_STATUSES]


def derive_status(item, now: datetime, policy: RiskPolicy) -> ItemStatus:
    """Derived status, ignoring any manual override."""
    if item.expires_at is not None:
        base = status_from_dates(item.expires_at, now, policy.warning_window(item.kind, item.category))
    else:
        base = status_from_score(item.compliance_score, policy)
    return worst_status(base, status_from_gaps(open_gap_severities(item)))


def risk_level_for(status: ItemStatus, category: str, policy: RiskPolicy) -> RiskLevel:
    if status == ItemStatus.NON_COMPLIANT:
        if policy.is_safety_critical(category):
            return RiskLevel.CRITICAL
        return RiskLevel.HIGH
    if status == ItemStatus.AT_RISK:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def assess(item, now: datetime, policy: RiskPolicy) -> Assessment:
    """
    What the item's status and risk level should be at `now`.

    Archived items keep both values exactly as they were. Pending items keep
    their status and sit at low risk.
    """
    if item.status == ItemStatus.ARCHIVED:
        return Assessment(item.status, item.risk_level)
    if item.status == ItemStatus.PENDING:
        return Assessment(ItemStatus.PENDING, risk_level_for(ItemStatus.PENDING, item.category, policy))
    status = derive_status(item, now, policy)
    return Assessment(status, risk_level_for(status, item.category, policy))


def days_until(target: datetime, now: datetime) -> int:
    """Whole days from now until target; negative once target has passed."""
    return (target - now).days
