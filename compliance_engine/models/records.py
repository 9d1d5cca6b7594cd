"""
Pydantic records handed to callers.

Records are snapshots: they are built inside one session and never write
back. The same records serialise into audit entry snapshots, so what a
caller receives is exactly what the audit trail stores.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from compliance_engine.models.enums import (
    EntityType,
    GapSeverity,
    GapStatus,
    ItemKind,
    ItemStatus,
    RiskLevel,
)
from compliance_engine.services.clock import ensure_utc


class PersonRef(BaseModel):
    """Weak reference to a staff member or department: id plus display name."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    display_name: Optional[str] = None


class GapRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    item_id: str
    description: str
    severity: GapSeverity
    status: GapStatus
    assigned_to: Optional[PersonRef]
    due_at: Optional[datetime]
    resolution_notes: Optional[str]
    resolved_at: Optional[datetime]
    resolved_by_id: Optional[str]
    created_at: datetime
    updated_at: datetime


class ComplianceItemRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: ItemKind
    title: str
    description: Optional[str]
    category: str
    owner: PersonRef

    issuing_body: Optional[str]
    certificate_number: Optional[str]
    check_level: Optional[str]
    regulator: Optional[str]
    reference_code: Optional[str]

    issued_at: Optional[datetime]
    expires_at: Optional[datetime]
    no_expiry: bool
    last_reviewed_at: Optional[datetime]
    next_review_at: Optional[datetime]

    compliance_score: Optional[int]
    status: ItemStatus
    risk_level: RiskLevel
    evidence_refs: List[str]
    archived_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    gaps: List[GapRecord] = Field(default_factory=list)

    @property
    def open_gaps(self) -> List[GapRecord]:
        return [gap for gap in self.gaps if gap.status != GapStatus.RESOLVED]


class AuditEntryRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    timestamp: datetime
    actor: PersonRef
    entity_type: EntityType
    entity_id: str
    item_id: Optional[str] = None
    action: str
    before_snapshot: Optional[Dict[str, Any]]
    after_snapshot: Dict[str, Any]
    context: Optional[Dict[str, Any]] = Field(
        default=None, validation_alias=AliasChoices("context_json", "context")
    )


class ComplianceItemCreate(BaseModel):
    """
    What an administrator supplies to start tracking an item.

    Shape and ranges are checked here; rules that span fields (kind-specific
    fields, expiry vs. no_expiry) are checked by the lifecycle service so
    they can name the offending field.
    """
    kind: ItemKind
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    category: str = Field(..., min_length=1, max_length=64)
    owner: PersonRef

    issuing_body: Optional[str] = None
    certificate_number: Optional[str] = None
    check_level: Optional[str] = None
    regulator: Optional[str] = None
    reference_code: Optional[str] = None

    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    no_expiry: bool = False
    last_reviewed_at: Optional[datetime] = None
    next_review_at: Optional[datetime] = None

    compliance_score: Optional[int] = Field(None, ge=0, le=100)
    evidence_refs: List[str] = Field(default_factory=list)
    pending: bool = False

    @field_validator("category")
    @classmethod
    def _normalise_category(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("issued_at", "expires_at", "last_reviewed_at", "next_review_at")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class ItemFilter(BaseModel):
    """Filter for listing items; also the scope of an aggregate report."""
    kind: Optional[ItemKind] = None
    category: Optional[str] = None
    status: Optional[ItemStatus] = None
    owner_id: Optional[str] = None
    risk_level: Optional[RiskLevel] = None

    @field_validator("category")
    @classmethod
    def _normalise_category(cls, value: Optional[str]) -> Optional[str]:
        return value.strip().lower() if value is not None else None


class GapFilter(BaseModel):
    status: Optional[GapStatus] = None
    severity: Optional[GapSeverity] = None
    assigned_to_id: Optional[str] = None


class AuditFilter(BaseModel):
    entity_id: Optional[str] = None
    item_id: Optional[str] = None
    entity_type: Optional[EntityType] = None
    actor_id: Optional[str] = None
    action: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None

    @field_validator("since", "until")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class Deadline(BaseModel):
    """An expiry or review date falling inside a reporting horizon."""
    item_id: str
    title: str
    kind: ItemKind
    category: str
    owner: PersonRef
    deadline_type: str  # "expiry" or "review"
    due_at: datetime
    days_remaining: int
    status: ItemStatus


class AggregateReport(BaseModel):
    """
    Rollup over the non-archived items in scope.

    `overall_score` and the per-category scores are None when no item in the
    set carries a score. None means "no data", never 0%.
    """
    generated_at: datetime
    item_count: int
    overall_score: Optional[float]
    category_scores: Dict[str, Optional[float]]
    counts_by_status: Dict[str, int]
    counts_by_category: Dict[str, int]
    counts_by_risk: Dict[str, int]
    counts_by_owner: Dict[str, int]
    critical_issues: int
    open_gap_count: int
    overdue_gap_count: int
    upcoming_deadlines: List[Deadline]
