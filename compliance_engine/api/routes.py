"""API routes over the compliance facade."""
from datetime import datetime
from functools import lru_cache
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from compliance_engine.api.schemas import (
    ErrorResponse,
    EvidenceAttach,
    GapCreate,
    GapResolve,
    RenewalRequest,
    ReviewRequest,
    ScoreUpdate,
    StatusUpdate,
)
from compliance_engine.database import SessionLocal
from compliance_engine.models.enums import EntityType, GapSeverity, GapStatus, ItemKind, ItemStatus, RiskLevel
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
from compliance_engine.services.errors import (
    AuditWriteFailure,
    ComplianceError,
    InvalidTransition,
    NotFound,
    PersistenceFailure,
    ValidationFailed,
)
from compliance_engine.services.facade import ComplianceFacade

router = APIRouter(responses={
    404: {"model": ErrorResponse, "description": "Unknown item or gap"},
    409: {"model": ErrorResponse, "description": "Transition not allowed"},
    422: {"model": ErrorResponse, "description": "Invalid input"},
})

ERROR_STATUS = {
    ValidationFailed: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NotFound: status.HTTP_404_NOT_FOUND,
    InvalidTransition: status.HTTP_409_CONFLICT,
    PersistenceFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
    AuditWriteFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def compliance_error_handler(request: Request, exc: ComplianceError) -> JSONResponse:
    """Engine errors become JSON with the error kind and the offending field/id."""
    code = ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(status_code=code, content={"detail": exc.to_dict()})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed requests answer in the same shape as ValidationFailed."""
    first = exc.errors()[0]
    loc = [str(part) for part in first["loc"]]
    # loc starts with "body", "query", "path" or "header"
    field = ".".join(loc[1:] if len(loc) > 1 else loc) or None
    error = ValidationFailed(first["msg"], field=field)
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": error.to_dict()})


@lru_cache
def get_facade() -> ComplianceFacade:
    """Dependency for the process-wide facade (it owns the per-item locks)."""
    return ComplianceFacade.from_settings(SessionLocal)


def get_actor(
    x_actor_id: str = Header(..., min_length=1),
    x_actor_name: Optional[str] = Header(None),
) -> PersonRef:
    """Who is making the change, for audit attribution."""
    return PersonRef(id=x_actor_id, display_name=x_actor_name)


# Item endpoints
@router.post("/items", response_model=ComplianceItemRecord, status_code=status.HTTP_201_CREATED)
def create_item(
    spec: ComplianceItemCreate,
    facade: ComplianceFacade = Depends(get_facade),
    actor: PersonRef = Depends(get_actor),
):
    """Start tracking a credential check, regulatory requirement or standard."""
    return facade.create_item(spec, actor=actor)


@router.get("/items", response_model=List[ComplianceItemRecord])
def list_items(
    kind: Optional[ItemKind] = None,
    category: Optional[str] = None,
    item_status: Optional[ItemStatus] = Query(None, alias="status"),
    owner_id: Optional[str] = None,
    risk_level: Optional[RiskLevel] = None,
    facade: ComplianceFacade = Depends(get_facade),
):
    """List items, highest risk first then soonest expiry."""
    item_filter = ItemFilter(
        kind=kind, category=category, status=item_status, owner_id=owner_id, risk_level=risk_level
    )
    return facade.list_items(item_filter).to_list()


@router.get("/items/{item_id}", response_model=ComplianceItemRecord)
def get_item(item_id: str, facade: ComplianceFacade = Depends(get_facade)):
    return facade.get_item(item_id)


@router.put("/items/{item_id}/score", response_model=ComplianceItemRecord)
def update_score(
    item_id: str,
    body: ScoreUpdate,
    facade: ComplianceFacade = Depends(get_facade),
    actor: PersonRef = Depends(get_actor),
):
    return facade.update_score(item_id, body.score, actor=actor)


@router.put("/items/{item_id}/status", response_model=ComplianceItemRecord)
def set_manual_status(
    item_id: str,
    body: StatusUpdate,
    facade: ComplianceFacade = Depends(get_facade),
    actor: PersonRef = Depends(get_actor),
):
    """
    Set or clear a manual status.
    Only pending and archived can be set; a derived status clears them.
    """
    return facade.set_manual_status(item_id, body.status, actor=actor)


@router.put("/items/{item_id}/renewal", response_model=ComplianceItemRecord)
def renew_item(
    item_id: str,
    body: RenewalRequest,
    facade: ComplianceFacade = Depends(get_facade),
    actor: PersonRef = Depends(get_actor),
):
    return facade.renew_item(item_id, body.issued_at, body.expires_at, actor=actor)


@router.put("/items/{item_id}/review", response_model=ComplianceItemRecord)
def record_review(
    item_id: str,
    body: ReviewRequest,
    facade: ComplianceFacade = Depends(get_facade),
    actor: PersonRef = Depends(get_actor),
):
    return facade.record_review(item_id, body.reviewed_at, body.next_review_at, actor=actor)


@router.post("/items/{item_id}/evidence", response_model=ComplianceItemRecord)
def add_evidence(
    item_id: str,
    body: EvidenceAttach,
    facade: ComplianceFacade = Depends(get_facade),
    actor: PersonRef = Depends(get_actor),
):
    return facade.add_evidence(item_id, body.evidence_ref, actor=actor)


# Gap endpoints
@router.post("/items/{item_id}/gaps", response_model=GapRecord, status_code=status.HTTP_201_CREATED)
def open_gap(
    item_id: str,
    body: GapCreate,
    facade: ComplianceFacade = Depends(get_facade),
    actor: PersonRef = Depends(get_actor),
):
    """
    Open a gap against an item.
    Side effect: a compliant item becomes at-risk, or non-compliant for high/critical gaps.
    """
    return facade.open_gap(
        item_id, body.description, body.severity, body.assigned_to, body.due_at, actor=actor
    )


@router.get("/items/{item_id}/gaps", response_model=List[GapRecord])
def list_gaps(
    item_id: str,
    gap_status: Optional[GapStatus] = Query(None, alias="status"),
    severity: Optional[GapSeverity] = None,
    assigned_to_id: Optional[str] = None,
    facade: ComplianceFacade = Depends(get_facade),
):
    gap_filter = GapFilter(status=gap_status, severity=severity, assigned_to_id=assigned_to_id)
    return facade.list_gaps(item_id, gap_filter).to_list()


@router.put("/gaps/{gap_id}/start", response_model=GapRecord)
def start_gap(
    gap_id: str,
    facade: ComplianceFacade = Depends(get_facade),
    actor: PersonRef = Depends(get_actor),
):
    return facade.start_gap(gap_id, actor=actor)


@router.put("/gaps/{gap_id}/resolve", response_model=GapRecord)
def resolve_gap(
    gap_id: str,
    body: GapResolve,
    facade: ComplianceFacade = Depends(get_facade),
    actor: PersonRef = Depends(get_actor),
):
    """
    Resolve a gap. Notes are required.
    Side effect: with no open gaps left the item's status is re-derived.
    """
    return facade.resolve_gap(gap_id, body.resolution_notes, actor=actor)


# Reporting endpoints
@router.get("/aggregate", response_model=AggregateReport)
def aggregate(
    kind: Optional[ItemKind] = None,
    category: Optional[str] = None,
    owner_id: Optional[str] = None,
    facade: ComplianceFacade = Depends(get_facade),
):
    """Dashboard rollup. overall_score is null when nothing in scope is scored."""
    return facade.aggregate(ItemFilter(kind=kind, category=category, owner_id=owner_id))


@router.get("/deadlines", response_model=List[Deadline])
def upcoming_deadlines(
    within_days: int = Query(30, ge=0),
    facade: ComplianceFacade = Depends(get_facade),
):
    return facade.upcoming_deadlines(within_days)


@router.get("/audit", response_model=List[AuditEntryRecord])
def audit_trail(
    entity_id: Optional[str] = None,
    item_id: Optional[str] = None,
    entity_type: Optional[EntityType] = None,
    actor_id: Optional[str] = None,
    action: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    facade: ComplianceFacade = Depends(get_facade),
):
    """
    Audit entries, newest first.
    Filter on item_id for an item's full history, gap entries included.
    """
    audit_filter = AuditFilter(
        entity_id=entity_id,
        item_id=item_id,
        entity_type=entity_type,
        actor_id=actor_id,
        action=action,
        since=since,
        until=until,
    )
    return facade.audit_trail(audit_filter).to_list()


@router.post("/refresh", response_model=List[ComplianceItemRecord])
def refresh(
    facade: ComplianceFacade = Depends(get_facade),
    actor: PersonRef = Depends(get_actor),
):
    """Persist time-driven status changes. Returns the items that changed."""
    return facade.refresh(actor=actor)
