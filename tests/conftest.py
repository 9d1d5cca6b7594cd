"""Pytest configuration and shared fixtures."""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from compliance_engine.database import Base
from compliance_engine.models.domain import ComplianceItem, Gap  # noqa: F401
from compliance_engine.models.audit import AuditEntry  # noqa: F401
from compliance_engine.models.enums import ItemKind
from compliance_engine.models.records import ComplianceItemCreate, PersonRef
from compliance_engine.services.clock import FixedClock
from compliance_engine.services.events import CollectingSink
from compliance_engine.services.facade import ComplianceFacade
from compliance_engine.services.risk_engine import RiskPolicy

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    """Fresh in-memory database for each test, shared across sessions."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def policy():
    return RiskPolicy()


@pytest.fixture
def sink():
    return CollectingSink()


@pytest.fixture
def facade(session_factory, clock, policy, sink):
    return ComplianceFacade(
        session_factory,
        clock=clock,
        policy=policy,
        event_sink=sink,
        upcoming_deadline_days=30,
    )


@pytest.fixture
def actor():
    return PersonRef(id="admin_1", display_name="Clinic Manager")


def credential_spec(expires_in_days=200, **overrides):
    """A DBS check expiring `expires_in_days` after NOW."""
    fields = dict(
        kind=ItemKind.CREDENTIAL_CHECK,
        title="Enhanced DBS check",
        category="safeguarding",
        owner=PersonRef(id="staff_7", display_name="Dr. Sarah Smith"),
        issuing_body="Disclosure and Barring Service",
        certificate_number="001234567890",
        check_level="enhanced",
        issued_at=NOW - timedelta(days=500),
        expires_at=NOW + timedelta(days=expires_in_days),
    )
    fields.update(overrides)
    return ComplianceItemCreate(**fields)


def requirement_spec(score=90, **overrides):
    """A score-driven Ofqual requirement without an expiry date."""
    fields = dict(
        kind=ItemKind.REGULATORY_REQUIREMENT,
        title="Centre assessment standards",
        category="quality-assurance",
        owner=PersonRef(id="qa_lead", display_name="Quality Lead"),
        regulator="Ofqual",
        reference_code="OFQ-C1",
        no_expiry=True,
        compliance_score=score,
    )
    fields.update(overrides)
    return ComplianceItemCreate(**fields)


@pytest.fixture
def sample_item(facade, actor):
    """A compliant credential check, well outside its warning window."""
    return facade.create_item(credential_spec(), actor=actor)


@pytest.fixture
def sample_requirement(facade, actor):
    return facade.create_item(requirement_spec(), actor=actor)
