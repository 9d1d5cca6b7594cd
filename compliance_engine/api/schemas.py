"""Pydantic request bodies for the HTTP adapter. Responses reuse the engine's records."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from compliance_engine.models.enums import GapSeverity, ItemStatus
from compliance_engine.models.records import PersonRef


class ScoreUpdate(BaseModel):
    # Range is checked by the engine so the error names the field consistently
    score: int


class StatusUpdate(BaseModel):
    status: ItemStatus


class RenewalRequest(BaseModel):
    issued_at: datetime
    expires_at: datetime


class ReviewRequest(BaseModel):
    reviewed_at: datetime
    next_review_at: Optional[datetime] = None


class EvidenceAttach(BaseModel):
    evidence_ref: str = Field(..., min_length=1)


class GapCreate(BaseModel):
    description: str = Field(..., min_length=1, max_length=500)
    severity: GapSeverity
    assigned_to: Optional[PersonRef] = None
    due_at: Optional[datetime] = None


class GapResolve(BaseModel):
    resolution_notes: str


class ErrorDetail(BaseModel):
    """Body of every engine error response (under `detail`)."""
    error: str
    message: str
    field: Optional[str] = None
    entity_id: Optional[str] = None


class ErrorResponse(BaseModel):
    detail: ErrorDetail
