"""
Tests for gaps and their effect on the parent item.

These tests prove:
- Opening a gap escalates the parent according to severity
- Resolving requires notes and lets the parent fall back to its derived status
- A non-compliant item always has an unresolved gap unless it has simply expired
"""
from datetime import timedelta

import pytest

from compliance_engine.models.enums import GapSeverity, GapStatus, ItemStatus, RiskLevel
from compliance_engine.models.records import GapFilter
from compliance_engine.services.errors import InvalidState, InvalidTransition, NotFound, ValidationFailed
from conftest import NOW, requirement_spec


class TestOpeningGaps:
    """Gap severity decides how far the parent falls."""

    def test_high_gap_makes_item_non_compliant(self, facade, actor, sample_item):
        """A high gap makes a compliant item non-compliant."""
        gap = facade.open_gap(sample_item.id, "Certificate copy missing", "high", actor=actor)

        assert gap.status == GapStatus.OPEN
        assert gap.severity == GapSeverity.HIGH
        assert gap.item_id == sample_item.id

        item = facade.get_item(sample_item.id)
        assert item.status == ItemStatus.NON_COMPLIANT
        assert item.risk_level == RiskLevel.CRITICAL
        assert [open_gap.id for open_gap in item.open_gaps] == [gap.id]

    def test_low_gap_makes_item_at_risk(self, facade, actor, sample_requirement):
        """A low gap makes a compliant item at-risk."""
        facade.open_gap(sample_requirement.id, "Minutes not filed", GapSeverity.LOW, actor=actor)
        item = facade.get_item(sample_requirement.id)
        assert item.status == ItemStatus.AT_RISK
        assert item.risk_level == RiskLevel.MEDIUM

    def test_high_gap_escalates_at_risk_item(self, facade, actor):
        """A critical gap escalates an at-risk item to non-compliant."""
        item = facade.create_item(requirement_spec(score=60), actor=actor)
        facade.open_gap(item.id, "Moderation overdue", "critical", actor=actor)
        assert facade.get_item(item.id).status == ItemStatus.NON_COMPLIANT

    def test_low_gap_does_not_improve_expired_item(self, facade, actor, clock, sample_item):
        """A low gap never lifts an expired item to at-risk."""
        clock.advance(days=201)
        facade.open_gap(sample_item.id, "Renewal form unsigned", "low", actor=actor)
        assert facade.get_item(sample_item.id).status == ItemStatus.NON_COMPLIANT

    def test_assignee_and_due_date_kept(self, facade, actor, sample_item):
        """Assignee and due date are stored on the gap."""
        gap = facade.open_gap(
            sample_item.id,
            "Chase DBS update service",
            "medium",
            assigned_to={"id": "hr_1", "display_name": "HR Officer"},
            due_at=NOW + timedelta(days=14),
            actor=actor,
        )
        assert gap.assigned_to.id == "hr_1"
        assert gap.due_at == NOW + timedelta(days=14)

    def test_description_required(self, facade, actor, sample_item):
        """Gaps need a description."""
        with pytest.raises(ValidationFailed) as exc_info:
            facade.open_gap(sample_item.id, "   ", "high", actor=actor)
        assert exc_info.value.field == "description"

    def test_unknown_severity_refused(self, facade, actor, sample_item):
        """Unknown severities are refused."""
        with pytest.raises(ValidationFailed) as exc_info:
            facade.open_gap(sample_item.id, "Something", "urgent", actor=actor)
        assert exc_info.value.field == "severity"

    def test_unknown_item_not_found(self, facade, actor):
        """Gaps against unknown items raise NotFound."""
        with pytest.raises(NotFound):
            facade.open_gap("missing", "Something", "low", actor=actor)

    def test_opening_gap_touches_parent_updated_at(self, facade, actor, clock, sample_item):
        """A gap that flips the parent stamps the parent's updated_at."""
        clock.advance(hours=2)
        facade.open_gap(sample_item.id, "Certificate copy missing", "high", actor=actor)
        assert facade.get_item(sample_item.id).updated_at == clock.now()


class TestResolvingGaps:
    """Resolution needs notes; the parent recovers once nothing is left open."""

    def test_resolve_restores_compliance(self, facade, actor, sample_item):
        """Resolving the last gap returns the item to compliant."""
        gap = facade.open_gap(sample_item.id, "Certificate copy missing", "high", actor=actor)
        resolved = facade.resolve_gap(gap.id, "Copy scanned and filed", actor=actor)

        assert resolved.status == GapStatus.RESOLVED
        assert resolved.resolution_notes == "Copy scanned and filed"
        assert resolved.resolved_at == NOW
        assert resolved.resolved_by_id == actor.id

        item = facade.get_item(sample_item.id)
        assert item.status == ItemStatus.COMPLIANT
        assert item.risk_level == RiskLevel.LOW
        assert item.open_gaps == []

    def test_resolve_falls_back_to_date_status(self, facade, actor, clock, sample_item):
        """After resolution the item takes whatever its dates say."""
        gap = facade.open_gap(sample_item.id, "Certificate copy missing", "high", actor=actor)
        clock.advance(days=150)
        facade.resolve_gap(gap.id, "Filed", actor=actor)
        assert facade.get_item(sample_item.id).status == ItemStatus.AT_RISK

    def test_other_open_gap_keeps_floor(self, facade, actor, sample_item):
        """Remaining open gaps keep their floor after another is resolved."""
        high = facade.open_gap(sample_item.id, "Certificate copy missing", "high", actor=actor)
        facade.open_gap(sample_item.id, "Photo ID not checked", "low", actor=actor)

        facade.resolve_gap(high.id, "Filed", actor=actor)
        assert facade.get_item(sample_item.id).status == ItemStatus.AT_RISK

    def test_notes_required(self, facade, actor, sample_item):
        """Resolution notes are required and refusals change nothing."""
        gap = facade.open_gap(sample_item.id, "Certificate copy missing", "high", actor=actor)
        with pytest.raises(ValidationFailed) as exc_info:
            facade.resolve_gap(gap.id, "  ", actor=actor)
        assert exc_info.value.field == "resolution_notes"
        assert facade.get_item(sample_item.id).status == ItemStatus.NON_COMPLIANT

    def test_cannot_resolve_twice(self, facade, actor, sample_item):
        """Resolving an already resolved gap is refused."""
        gap = facade.open_gap(sample_item.id, "Certificate copy missing", "high", actor=actor)
        facade.resolve_gap(gap.id, "Filed", actor=actor)
        with pytest.raises(InvalidState):
            facade.resolve_gap(gap.id, "Filed again", actor=actor)

    def test_unknown_gap_not_found(self, facade, actor):
        """Unknown gap ids raise NotFound."""
        with pytest.raises(NotFound) as exc_info:
            facade.resolve_gap("missing", "Filed", actor=actor)
        assert exc_info.value.field == "gap_id"

    def test_start_then_resolve(self, facade, actor, sample_item):
        """Gaps move open to in-progress to resolved, and only open gaps can start."""
        gap = facade.open_gap(sample_item.id, "Certificate copy missing", "high", actor=actor)
        started = facade.start_gap(gap.id, actor=actor)
        assert started.status == GapStatus.IN_PROGRESS
        # In progress still counts against the item
        assert facade.get_item(sample_item.id).status == ItemStatus.NON_COMPLIANT

        with pytest.raises(InvalidTransition):
            facade.start_gap(gap.id, actor=actor)

        facade.resolve_gap(gap.id, "Filed", actor=actor)
        assert facade.get_item(sample_item.id).status == ItemStatus.COMPLIANT

    def test_gap_on_archived_item_can_still_be_resolved(self, facade, actor, sample_item):
        """Gaps on archived items can be closed without un-archiving."""
        gap = facade.open_gap(sample_item.id, "Certificate copy missing", "high", actor=actor)
        facade.set_manual_status(sample_item.id, ItemStatus.ARCHIVED, actor=actor)

        resolved = facade.resolve_gap(gap.id, "Staff member left", actor=actor)
        assert resolved.status == GapStatus.RESOLVED
        assert facade.get_item(sample_item.id).status == ItemStatus.ARCHIVED


class TestNonCompliantHasOpenGap:
    """Score and gap driven non-compliance always points at an unresolved gap."""

    def test_low_score_alone_never_non_compliant(self, facade, actor):
        """A score of zero alone only makes an item at-risk."""
        item = facade.create_item(requirement_spec(score=0), actor=actor)
        assert item.status == ItemStatus.AT_RISK

    def test_every_non_compliant_undated_item_has_open_gap(self, facade, actor):
        """Every non-compliant undated item has an unresolved gap."""
        first = facade.create_item(requirement_spec(score=10), actor=actor)
        second = facade.create_item(requirement_spec(score=95, reference_code="OFQ-C2"), actor=actor)
        gap = facade.open_gap(first.id, "No moderation sample", "high", actor=actor)
        facade.open_gap(second.id, "Late submission", "critical", actor=actor)
        facade.resolve_gap(gap.id, "Sample taken", actor=actor)

        for item in facade.list_items():
            if item.status == ItemStatus.NON_COMPLIANT and item.expires_at is None:
                assert item.open_gaps


class TestListingGaps:
    """Gaps list by due date, undated last."""

    def test_ordering_and_filter(self, facade, actor, sample_item):
        """Gaps list by due date with undated last, and filters apply."""
        undated = facade.open_gap(sample_item.id, "Undated", "low", actor=actor)
        later = facade.open_gap(sample_item.id, "Later", "low", due_at=NOW + timedelta(days=20), actor=actor)
        sooner = facade.open_gap(sample_item.id, "Sooner", "high", due_at=NOW + timedelta(days=5), actor=actor)

        gaps = facade.list_gaps(sample_item.id)
        assert [gap.id for gap in gaps] == [sooner.id, later.id, undated.id]

        high_only = facade.list_gaps(sample_item.id, GapFilter(severity=GapSeverity.HIGH)).to_list()
        assert [gap.id for gap in high_only] == [sooner.id]

        facade.resolve_gap(sooner.id, "Done", actor=actor)
        open_only = facade.list_gaps(sample_item.id, {"status": "open"}).to_list()
        assert [gap.id for gap in open_only] == [later.id, undated.id]

    def test_unknown_item_not_found(self, facade):
        """Gaps against unknown items raise NotFound."""
        with pytest.raises(NotFound):
            facade.list_gaps("missing")
