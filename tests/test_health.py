"""
Unit tests for health score calculation and the health service.
"""

import os
import random
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from ai_usage_health.core.errors import NotFoundError
from ai_usage_health.core.health import (
    HealthService,
    calculate_composite,
    calculate_health_score,
    determine_trend,
    ratio_score,
    round_half_up,
)
from ai_usage_health.storage.models import (
    PatternOccurrence,
    RecommendationCategory,
    RecommendationStatus,
    Trend,
    utc_now,
)
from ai_usage_health.storage.repository import HealthRepository

MCP = RecommendationCategory.MCP_SERVER
SKILL = RecommendationCategory.SKILL
CONTEXT = RecommendationCategory.CONTEXT
ACTIVE = RecommendationStatus.ACTIVE
APPLIED = RecommendationStatus.APPLIED
DISMISSED = RecommendationStatus.DISMISSED
EXPIRED = RecommendationStatus.EXPIRED


class TestScoringFunctions:
    """Test the pure scoring helpers."""

    def test_round_half_up(self):
        assert round_half_up(Decimal("2.5")) == 3
        assert round_half_up(Decimal("61.25")) == 61
        assert round_half_up(Decimal("0.5")) == 1

    def test_ratio_score_of_empty_category(self):
        assert ratio_score(0, 0) == 100
        assert ratio_score(0, 0, empty_score=75) == 75

    def test_ratio_score_rounds_half_up(self):
        """Test that 2.5% rounds to 3 rather than banker's rounding to 2."""
        assert ratio_score(1, 40) == 3
        assert ratio_score(1, 3) == 33
        assert ratio_score(2, 3) == 67

    def test_composite_weights(self):
        assert calculate_composite(25, 100, 75, 50) == 61
        assert calculate_composite(100, 100, 100, 100) == 100
        assert calculate_composite(0, 0, 0, 0) == 0

    def test_composite_is_bounded_for_random_inputs(self):
        rng = random.Random(1234)
        for _ in range(500):
            scores = [rng.randint(0, 100) for _ in range(4)]
            composite = calculate_composite(*scores)
            assert 0 <= composite <= 100
            assert min(scores) <= composite <= max(scores)

    def test_ratio_score_is_bounded_for_random_inputs(self):
        rng = random.Random(99)
        for _ in range(500):
            total = rng.randint(1, 200)
            applied = rng.randint(0, total)
            assert 0 <= ratio_score(applied, total) <= 100


class TestDetermineTrend:
    """Test trend classification against the previous composite."""

    def test_first_snapshot_is_stable(self):
        assert determine_trend(80, None) is Trend.STABLE

    @pytest.mark.parametrize("composite,previous,expected", [
        (75, 70, Trend.IMPROVING),
        (74, 70, Trend.STABLE),
        (65, 70, Trend.DECLINING),
        (66, 70, Trend.STABLE),
        (70, 70, Trend.STABLE),
    ])
    def test_threshold_boundaries(self, composite, previous, expected):
        assert determine_trend(composite, previous) is expected

    def test_random_pairs(self):
        rng = random.Random(7)
        for _ in range(500):
            composite = rng.randint(0, 100)
            previous = rng.randint(0, 100)
            trend = determine_trend(composite, previous)
            diff = composite - previous
            if diff >= 5:
                assert trend is Trend.IMPROVING
            elif diff <= -5:
                assert trend is Trend.DECLINING
            else:
                assert trend is Trend.STABLE


class HealthTestBase:
    """Shared fixture: a fresh database with one registered machine."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        self.repository = HealthRepository(self.db_path)
        self.repository.initialize_schema()
        self.machine = self.repository.add_machine("test-machine")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _add(self, category, status, count=1, savings=0):
        for _ in range(count):
            self.repository.add_recommendation(self.machine.id, category, savings, status=status)

    def _add_pattern(self, pattern_type, confidence):
        self.repository.apply_aggregate_updates(
            [PatternOccurrence(self.machine.id, pattern_type, datetime(2024, 1, 1), confidence)],
            [],
        )

    def _setup_mixed_ledger(self):
        """mcp 3 active + 1 applied, skill 2 applied, no context, 2 patterns (1 high confidence)."""
        self._add(MCP, ACTIVE, count=3, savings=2000)
        self._add(MCP, APPLIED, savings=1500)
        self._add(SKILL, APPLIED, count=2, savings=500)
        self._add_pattern("database_queries", 1.0)
        self._add_pattern("debugging", 0.5)


class TestCalculateHealthScore(HealthTestBase):
    """Test snapshot calculation against the repository."""

    def test_empty_machine_scores_100(self):
        """Test a machine with no ledger entries and no patterns."""
        score = calculate_health_score(self.machine.id, self.repository)

        assert score.mcp_score == 100
        assert score.skill_score == 100
        assert score.context_score == 100
        assert score.pattern_score == 100
        assert score.composite == 100
        assert score.trend is Trend.STABLE
        assert score.previous_score is None
        assert score.id is not None

    def test_mixed_ledger(self):
        """Test sub-scores and composite for a partially applied ledger."""
        self._setup_mixed_ledger()

        score = calculate_health_score(self.machine.id, self.repository)

        assert score.mcp_score == 25
        assert score.skill_score == 100
        assert score.context_score == 75
        assert score.pattern_score == 50
        assert score.composite == 61
        assert score.active_recommendations == 3
        assert score.applied_recommendations == 3

    def test_waste_and_savings(self):
        """Test that waste sums active and savings sums applied entries."""
        self._setup_mixed_ledger()
        self._add(CONTEXT, DISMISSED, savings=9999)

        score = calculate_health_score(self.machine.id, self.repository)

        assert score.estimated_waste == 6000
        assert score.estimated_savings == 2500
        assert score.dismissed_recommendations == 1

    def test_dismissed_and_expired_are_ignored(self):
        """Test that closed-without-action entries do not affect sub-scores."""
        self._add(MCP, APPLIED)
        self._add(MCP, DISMISSED, count=3)
        self._add(MCP, EXPIRED, count=2)
        self._add(SKILL, ACTIVE)

        score = calculate_health_score(self.machine.id, self.repository)

        assert score.mcp_score == 100
        assert score.skill_score == 0
        assert score.active_recommendations == 1
        assert score.applied_recommendations == 1

    def test_only_dismissed_entries_count_as_unassessed(self):
        """Test that a ledger of dismissed entries keeps every category at 100."""
        self._add(CONTEXT, DISMISSED)
        self._add(MCP, EXPIRED)

        score = calculate_health_score(self.machine.id, self.repository)

        assert score.context_score == 100
        assert score.composite == 100

    def test_context_category_with_entries(self):
        self._add(CONTEXT, ACTIVE)
        self._add(CONTEXT, APPLIED)

        assert calculate_health_score(self.machine.id, self.repository).context_score == 50

    def test_other_categories_do_not_affect_sub_scores(self):
        """Test that hook/permission/workflow entries only affect counts."""
        self._add(RecommendationCategory.HOOK, ACTIVE, savings=100)
        self._add(RecommendationCategory.WORKFLOW, APPLIED)

        score = calculate_health_score(self.machine.id, self.repository)

        assert score.mcp_score == 100
        assert score.skill_score == 100
        assert score.context_score == 75
        assert score.active_recommendations == 1
        assert score.estimated_waste == 100

    def test_trend_against_previous_snapshot(self):
        """Test that a drop from 100 to 61 is declining."""
        first = calculate_health_score(self.machine.id, self.repository, now=datetime(2024, 1, 1))
        self._setup_mixed_ledger()
        second = calculate_health_score(self.machine.id, self.repository, now=datetime(2024, 1, 2))

        assert first.composite == 100
        assert second.previous_score == 100
        assert second.composite == 61
        assert second.trend is Trend.DECLINING

    def test_recalculation_without_changes_is_stable(self):
        calculate_health_score(self.machine.id, self.repository, now=datetime(2024, 1, 1))
        second = calculate_health_score(self.machine.id, self.repository, now=datetime(2024, 1, 2))

        assert second.previous_score == 100
        assert second.trend is Trend.STABLE

    def test_snapshots_are_appended(self):
        calculate_health_score(self.machine.id, self.repository, now=datetime(2024, 1, 1))
        calculate_health_score(self.machine.id, self.repository, now=datetime(2024, 1, 2))

        assert len(self.repository.health_score_history(self.machine.id)) == 2

    def test_default_snapshot_time_is_utc(self):
        """Test that snapshots share the naive UTC frame of session reports."""
        score = calculate_health_score(self.machine.id, self.repository)
        expected = datetime.now(timezone.utc).replace(tzinfo=None)

        assert score.timestamp.tzinfo is None
        assert abs((expected - score.timestamp).total_seconds()) < 5
        assert HealthService(self.repository).clock is utc_now

    def test_persist_false_writes_nothing(self):
        score = calculate_health_score(self.machine.id, self.repository, persist=False)

        assert score.id is None
        assert self.repository.latest_health_score(self.machine.id) is None

    def test_unknown_machine(self):
        with pytest.raises(NotFoundError):
            calculate_health_score("missing", self.repository)

    def test_random_ledgers_stay_in_bounds(self):
        """Test score bounds over randomly generated ledgers."""
        rng = random.Random(42)
        categories = list(RecommendationCategory)
        statuses = list(RecommendationStatus)
        for i in range(10):
            machine = self.repository.add_machine(f"random-{i}")
            for _ in range(rng.randint(0, 12)):
                self.repository.add_recommendation(
                    machine.id,
                    rng.choice(categories),
                    rng.randint(0, 10000),
                    status=rng.choice(statuses),
                )
            score = calculate_health_score(machine.id, self.repository, persist=False)
            for value in (score.composite, score.mcp_score, score.skill_score,
                          score.context_score, score.pattern_score):
                assert 0 <= value <= 100

    def test_to_dict_keys(self):
        score = calculate_health_score(self.machine.id, self.repository)
        data = score.to_dict()

        assert data["composite"] == 100
        assert data["mcpScore"] == 100
        assert data["skillScore"] == 100
        assert data["contextScore"] == 100
        assert data["patternScore"] == 100
        assert data["activeRecommendations"] == 0
        assert data["appliedRecommendations"] == 0
        assert data["estimatedWaste"] == 0
        assert data["estimatedSavings"] == 0
        assert data["previousScore"] is None
        assert data["trend"] == "stable"
        assert isinstance(data["timestamp"], str)


class FakeClock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class TestHealthService(HealthTestBase):
    """Test the read and recalculate paths of the service."""

    def setup_method(self):
        super().setup_method()
        self.clock = FakeClock(datetime(2024, 6, 1, 12, 0, 0))
        self.service = HealthService(self.repository, clock=self.clock)

    def test_report_calculates_first_snapshot(self):
        """Test that a machine without history gets scored on first read."""
        report = self.service.get_health_report(self.machine.id)

        assert report.current.composite == 100
        assert report.current.timestamp == self.clock.now
        assert len(report.history) == 1
        assert report.insights[0] == "Excellent! Your configuration is highly optimized."

    def test_report_does_not_recalculate_existing_snapshot(self):
        first = self.service.get_health_report(self.machine.id)
        self._setup_mixed_ledger()
        second = self.service.get_health_report(self.machine.id)

        assert second.current.id == first.current.id
        assert second.current.composite == 100
        assert len(self.repository.health_score_history(self.machine.id)) == 1

    def test_report_for_unknown_machine(self):
        with pytest.raises(NotFoundError):
            self.service.get_health_report("missing")

    def test_report_insights_for_mixed_ledger(self):
        """Test rendered advisories for a partially applied ledger."""
        self._setup_mixed_ledger()
        report = self.service.get_health_report(self.machine.id)

        assert report.current.composite == 61
        assert "Moderate optimization. Consider applying more recommendations." in report.insights
        assert "MCP servers could significantly reduce your token usage." in report.insights
        assert "You could save ~6000 tokens/month by applying recommendations." in report.insights
        assert "Review 3 active recommendation(s)." in report.insights

    def test_recalculate_always_appends(self):
        first = self.service.recalculate(self.machine.id)
        self._add(MCP, ACTIVE)
        self.clock.advance(hours=1)
        second = self.service.recalculate(self.machine.id)

        assert first.success is True
        assert second.score.composite == 60
        assert second.score.previous_score == 100
        assert second.score.trend is Trend.DECLINING
        assert len(self.repository.health_score_history(self.machine.id)) == 2

    def test_recalculate_unknown_machine(self):
        with pytest.raises(NotFoundError):
            self.service.recalculate("missing")

    def test_history_is_capped_and_oldest_first(self):
        """Test that the report carries the last 30 snapshots in chart order."""
        for _ in range(35):
            self.service.recalculate(self.machine.id)
            self.clock.advance(hours=1)

        report = self.service.get_health_report(self.machine.id)

        assert len(report.history) == 30
        timestamps = [s.timestamp for s in report.history]
        assert timestamps == sorted(timestamps)
        assert report.history[-1].id == report.current.id

    def test_get_history_is_newest_first(self):
        for _ in range(3):
            self.service.recalculate(self.machine.id)
            self.clock.advance(hours=1)

        history = self.service.get_history(self.machine.id, limit=2)

        assert len(history) == 2
        assert history[0].timestamp > history[1].timestamp

    def test_trend_series_window(self):
        """Test that only snapshots within the window are returned, oldest first."""
        start = self.clock.now
        for days_ago in (40, 10, 1):
            calculate_health_score(self.machine.id, self.repository, now=start - timedelta(days=days_ago))

        series = self.service.get_trend_series(self.machine.id, days_back=30)

        assert [p.date for p in series] == [
            (start - timedelta(days=10)).date(),
            (start - timedelta(days=1)).date(),
        ]
        assert all(p.score == 100 for p in series)

    def test_quick_check_fresh_snapshot(self):
        self._add(MCP, ACTIVE, savings=700)
        self.service.recalculate(self.machine.id)
        self.clock.advance(hours=1)

        check = self.service.quick_check(self.machine.id)

        assert check.score == 60
        assert check.active_issues == 1
        assert check.potential_savings == 700
        assert check.needs_recalculation is False

    def test_quick_check_stale_snapshot(self):
        self.service.recalculate(self.machine.id)
        self.clock.advance(hours=25)

        check = self.service.quick_check(self.machine.id)

        assert check.needs_recalculation is True
        assert len(self.repository.health_score_history(self.machine.id)) == 1

    def test_quick_check_never_scored(self):
        check = self.service.quick_check(self.machine.id)

        assert check.score == 100
        assert check.needs_recalculation is False
        assert check.last_updated == self.clock.now

    def test_refresh_if_stale_keeps_fresh_snapshot(self):
        first = self.service.recalculate(self.machine.id).score
        self.clock.advance(hours=2)

        assert self.service.refresh_if_stale(self.machine.id).id == first.id

    def test_refresh_if_stale_recalculates_old_snapshot(self):
        first = self.service.recalculate(self.machine.id).score
        self.clock.advance(hours=3)

        refreshed = self.service.refresh_if_stale(self.machine.id, max_age_hours=2)

        assert refreshed.id != first.id
        assert refreshed.timestamp == self.clock.now
