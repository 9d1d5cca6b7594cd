"""Domain models - compliance items and the gaps raised against them."""
from sqlalchemy import Boolean, Column, ForeignKey, Integer, JSON, String, Enum as SQLEnum
from sqlalchemy.orm import relationship

from compliance_engine.database import Base, UTCDateTime
from compliance_engine.models.enums import (
    GapSeverity,
    GapStatus,
    ItemKind,
    ItemStatus,
    RiskLevel,
)


class ComplianceItem(Base):
    """
    A trackable certification, regulatory requirement or background check.

    One table holds every kind; `kind` tells which of the optional
    kind-specific columns are meaningful.

    Invariants enforced in the service layer:
    - status/risk_level are re-derived on every write unless status is manual
    - items are never deleted, only archived
    - compliance_score is null for credential checks
    """
    __tablename__ = "compliance_items"

    id = Column(String(36), primary_key=True)
    kind = Column(SQLEnum(ItemKind), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(String, nullable=True)
    category = Column(String, nullable=False, index=True)

    # Weak reference to the responsible person or department
    owner_id = Column(String, nullable=False, index=True)
    owner_name = Column(String, nullable=True)

    # credential-check only
    issuing_body = Column(String, nullable=True)
    certificate_number = Column(String, nullable=True)
    check_level = Column(String, nullable=True)

    # regulatory-requirement / standard only
    regulator = Column(String, nullable=True)
    reference_code = Column(String, nullable=True)

    issued_at = Column(UTCDateTime, nullable=True)
    expires_at = Column(UTCDateTime, nullable=True)
    no_expiry = Column(Boolean, nullable=False, default=False)
    last_reviewed_at = Column(UTCDateTime, nullable=True)
    next_review_at = Column(UTCDateTime, nullable=True)

    compliance_score = Column(Integer, nullable=True)
    status = Column(SQLEnum(ItemStatus), nullable=False, index=True)
    risk_level = Column(SQLEnum(RiskLevel), nullable=False, default=RiskLevel.LOW)
    evidence_refs = Column(JSON, nullable=False, default=list)
    archived_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)

    gaps = relationship(
        "Gap",
        back_populates="item",
        cascade="all, delete-orphan",
        order_by="Gap.created_at",
    )

    @property
    def owner(self):
        return {"id": self.owner_id, "display_name": self.owner_name}


class Gap(Base):
    """
    A shortfall against exactly one compliance item, with its own remediation lifecycle.

    Invariants:
    - Status moves open -> in-progress -> resolved (open -> resolved allowed)
    - resolution_notes, resolved_at and resolved_by are set when resolved
    - Deleted with its parent item
    """
    __tablename__ = "gaps"

    id = Column(String(36), primary_key=True)
    item_id = Column(String(36), ForeignKey("compliance_items.id"), nullable=False, index=True)
    description = Column(String, nullable=False)
    severity = Column(SQLEnum(GapSeverity), nullable=False)
    status = Column(SQLEnum(GapStatus), nullable=False, default=GapStatus.OPEN)

    assigned_to_id = Column(String, nullable=True, index=True)
    assigned_to_name = Column(String, nullable=True)
    due_at = Column(UTCDateTime, nullable=True)

    # Required when resolved
    resolution_notes = Column(String, nullable=True)
    resolved_at = Column(UTCDateTime, nullable=True)
    resolved_by_id = Column(String, nullable=True)

    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)

    item = relationship("ComplianceItem", back_populates="gaps")

    @property
    def assigned_to(self):
        if self.assigned_to_id is None:
            return None
        return {"id": self.assigned_to_id, "display_name": self.assigned_to_name}
