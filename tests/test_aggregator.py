"""
Tests for dashboard rollups and upcoming deadlines.
"""
from datetime import timedelta

import pytest

from compliance_engine.models.enums import ItemKind, ItemStatus
from compliance_engine.models.records import ItemFilter, PersonRef
from compliance_engine.services.errors import ValidationFailed
from conftest import NOW, credential_spec, requirement_spec


class TestScores:
    """Scores average over scored, non-archived items only."""

    def test_no_items_means_no_score(self, facade):
        """An empty scope has no overall score."""
        report = facade.aggregate()
        assert report.item_count == 0
        assert report.overall_score is None
        assert report.category_scores == {}

    def test_unscored_items_mean_no_score(self, facade, sample_item):
        """Items without scores leave the mean undefined."""
        report = facade.aggregate()
        assert report.item_count == 1
        assert report.overall_score is None
        assert report.category_scores == {"safeguarding": None}

    def test_mean_skips_unscored_items(self, facade, actor, sample_item):
        """Unscored items are left out of the mean."""
        facade.create_item(requirement_spec(score=90), actor=actor)
        facade.create_item(requirement_spec(score=75, reference_code="OFQ-C2"), actor=actor)

        report = facade.aggregate()
        assert report.overall_score == 82.5
        assert report.category_scores["quality-assurance"] == 82.5
        assert report.category_scores["safeguarding"] is None

    def test_mean_is_not_rounded(self, facade, actor):
        """The mean is returned at full precision."""
        for score in (90, 85, 81):
            facade.create_item(requirement_spec(score=score), actor=actor)
        report = facade.aggregate()
        assert report.overall_score == pytest.approx(256 / 3)
        assert report.category_scores["quality-assurance"] == pytest.approx(256 / 3)

    def test_archived_items_excluded(self, facade, actor, sample_requirement):
        """Archived items are left out of scores and counts."""
        low = facade.create_item(requirement_spec(score=10), actor=actor)
        facade.set_manual_status(low.id, ItemStatus.ARCHIVED, actor=actor)

        report = facade.aggregate()
        assert report.item_count == 1
        assert report.overall_score == 90.0
        assert "archived" not in report.counts_by_status

    def test_scope_filters_items(self, facade, actor, sample_item, sample_requirement):
        """The scope filter narrows the items aggregated."""
        report = facade.aggregate(ItemFilter(kind=ItemKind.CREDENTIAL_CHECK))
        assert report.item_count == 1
        assert report.overall_score is None


class TestCounts:
    """Counts reflect derived status at the time of the report."""

    def test_counts_follow_the_clock(self, facade, actor, clock, sample_item, sample_requirement):
        """Counts use status derived at report time."""
        clock.advance(days=201)
        report = facade.aggregate()

        assert report.counts_by_status == {"non-compliant": 1, "compliant": 1}
        assert report.counts_by_risk == {"critical": 1, "low": 1}
        assert report.counts_by_category == {"safeguarding": 1, "quality-assurance": 1}
        assert report.counts_by_owner == {"staff_7": 1, "qa_lead": 1}
        assert report.critical_issues == 1

    def test_gap_counts(self, facade, actor, clock, sample_item):
        """Open and overdue gap counts skip resolved gaps."""
        facade.open_gap(sample_item.id, "Overdue", "low", due_at=NOW + timedelta(days=1), actor=actor)
        facade.open_gap(sample_item.id, "Not due", "low", due_at=NOW + timedelta(days=10), actor=actor)
        done = facade.open_gap(sample_item.id, "Done", "low", due_at=NOW + timedelta(days=1), actor=actor)
        facade.resolve_gap(done.id, "Fixed", actor=actor)

        clock.advance(days=2)
        report = facade.aggregate()
        assert report.open_gap_count == 2
        assert report.overdue_gap_count == 1


class TestUpcomingDeadlines:
    """Expiry and review dates inside the horizon, soonest first."""

    def test_deadlines_inside_horizon(self, facade, actor):
        """Only dates inside the horizon are listed, soonest first."""
        soon = facade.create_item(credential_spec(expires_in_days=10), actor=actor)
        facade.create_item(credential_spec(expires_in_days=45), actor=actor)
        facade.create_item(credential_spec(expires_in_days=-3), actor=actor)

        deadlines = facade.upcoming_deadlines(30)
        assert [deadline.item_id for deadline in deadlines] == [soon.id]
        assert deadlines[0].deadline_type == "expiry"
        assert deadlines[0].days_remaining == 10
        assert deadlines[0].status == ItemStatus.AT_RISK

    def test_review_dates_count(self, facade, actor):
        """Next review dates count as deadlines."""
        item = facade.create_item(
            requirement_spec(last_reviewed_at=NOW - timedelta(days=300), next_review_at=NOW + timedelta(days=5)),
            actor=actor,
        )
        deadlines = facade.upcoming_deadlines(7)
        assert [(d.item_id, d.deadline_type) for d in deadlines] == [(item.id, "review")]

    def test_one_entry_per_item_earliest_date(self, facade, actor):
        """Each item appears once, under its earliest date."""
        item = facade.create_item(
            credential_spec(expires_in_days=20, next_review_at=NOW + timedelta(days=12)),
            actor=actor,
        )
        deadlines = facade.upcoming_deadlines(30)
        assert len(deadlines) == 1
        assert deadlines[0].item_id == item.id
        assert deadlines[0].deadline_type == "review"

    def test_horizon_is_inclusive(self, facade, actor):
        """A date exactly at the horizon is included."""
        facade.create_item(credential_spec(expires_in_days=30), actor=actor)
        assert len(facade.upcoming_deadlines(30)) == 1
        assert facade.upcoming_deadlines(29) == []

    def test_archived_items_excluded(self, facade, actor):
        """Archived items have no upcoming deadlines."""
        item = facade.create_item(credential_spec(expires_in_days=10), actor=actor)
        facade.set_manual_status(item.id, ItemStatus.ARCHIVED, actor=actor)
        assert facade.upcoming_deadlines(30) == []

    def test_scope_by_owner(self, facade, actor):
        """Deadlines can be scoped to one owner."""
        mine = facade.create_item(credential_spec(expires_in_days=10), actor=actor)
        facade.create_item(
            credential_spec(expires_in_days=10, owner=PersonRef(id="staff_8")),
            actor=actor,
        )
        deadlines = facade.upcoming_deadlines(30, ItemFilter(owner_id="staff_7"))
        assert [deadline.item_id for deadline in deadlines] == [mine.id]

    def test_negative_horizon_refused(self, facade):
        """Negative horizons are refused."""
        with pytest.raises(ValidationFailed) as exc_info:
            facade.upcoming_deadlines(-1)
        assert exc_info.value.field == "within_days"

    def test_report_includes_default_horizon(self, facade, actor):
        """Reports carry deadlines for the configured horizon."""
        facade.create_item(credential_spec(expires_in_days=10), actor=actor)
        facade.create_item(credential_spec(expires_in_days=40), actor=actor)
        assert len(facade.aggregate().upcoming_deadlines) == 1
