"""
Health score calculation.

Computes a weighted composite optimization score from the recommendation
ledger and usage patterns, determines the trend against the previous
snapshot and appends the result to the machine's score history.

Weights (fixed):
- MCP servers: 0.35
- Skills:      0.30
- Context:     0.20
- Patterns:    0.15
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional, Sequence

from .errors import NotFoundError
from .insights import DEFAULT_WASTE_THRESHOLD, generate_insights
from ai_usage_health.storage.models import (
    HealthScore,
    Recommendation,
    RecommendationCategory,
    RecommendationStatus,
    Trend,
    UsagePattern,
    utc_now,
)
from ai_usage_health.storage.repository import HealthRepository

logger = logging.getLogger(__name__)

WEIGHTS = {
    "mcp": Decimal("0.35"),
    "skill": Decimal("0.30"),
    "context": Decimal("0.20"),
    "pattern": Decimal("0.15"),
}

# Score of a category with no active or applied recommendations
EMPTY_CATEGORY_SCORE = 100
# Context score when other categories have been assessed but context has not
UNASSESSED_CONTEXT_SCORE = 75

HIGH_CONFIDENCE_THRESHOLD = 0.8
TREND_THRESHOLD = 5
DEFAULT_HISTORY_LIMIT = 30
DEFAULT_STALE_AFTER_HOURS = 24


@dataclass(frozen=True)
class CategoryCounts:
    """Active and applied recommendation counts for one category."""
    active: int = 0
    applied: int = 0

    @property
    def total(self) -> int:
        return self.active + self.applied


@dataclass(frozen=True)
class HealthReport:
    """Current snapshot, chartable history and rendered insights."""
    current: HealthScore
    history: List[HealthScore]  # oldest -> newest
    insights: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current": self.current.to_dict(),
            "history": [score.to_dict() for score in self.history],
            "insights": list(self.insights),
        }


@dataclass(frozen=True)
class RecalculationResult:
    success: bool
    score: HealthScore

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "score": self.score.to_dict()}


@dataclass(frozen=True)
class TrendPoint:
    date: date
    score: int
    trend: Trend


@dataclass(frozen=True)
class QuickHealthCheck:
    """Lightweight view of the latest snapshot for dashboards."""
    score: int
    trend: Trend
    active_issues: int
    potential_savings: int
    last_updated: Optional[datetime]
    needs_recalculation: bool


def round_half_up(value: Decimal) -> int:
    """Round to the nearest integer, .5 always rounding up."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def ratio_score(applied: int, total: int, empty_score: int = EMPTY_CATEGORY_SCORE) -> int:
    """Percentage of recommendations applied, or ``empty_score`` if none exist."""
    if total == 0:
        return empty_score
    return round_half_up(Decimal(100) * applied / total)


def count_by_category(recommendations: Sequence[Recommendation]) -> Dict[RecommendationCategory, CategoryCounts]:
    """Count active and applied recommendations per category.

    Dismissed and expired recommendations are left out entirely.
    """
    active: Counter = Counter()
    applied: Counter = Counter()
    for rec in recommendations:
        if rec.status is RecommendationStatus.ACTIVE:
            active[rec.category] += 1
        elif rec.status is RecommendationStatus.APPLIED:
            applied[rec.category] += 1
    return {
        category: CategoryCounts(active=active[category], applied=applied[category])
        for category in RecommendationCategory
    }


def calculate_pattern_score(patterns: Sequence[UsagePattern]) -> int:
    """Share of patterns detected with high confidence."""
    high_confidence = sum(1 for p in patterns if p.confidence >= HIGH_CONFIDENCE_THRESHOLD)
    return ratio_score(high_confidence, len(patterns))


def calculate_composite(mcp: int, skill: int, context: int, pattern: int) -> int:
    """Weighted composite of the four sub-scores."""
    weighted = (
        WEIGHTS["mcp"] * mcp
        + WEIGHTS["skill"] * skill
        + WEIGHTS["context"] * context
        + WEIGHTS["pattern"] * pattern
    )
    return round_half_up(weighted)


def determine_trend(composite: int, previous: Optional[int]) -> Trend:
    """Compare a composite score with the previous one.

    A change of at least TREND_THRESHOLD points in either direction counts as
    improving or declining; anything smaller is stable.
    """
    if previous is None:
        return Trend.STABLE
    diff = composite - previous
    if diff >= TREND_THRESHOLD:
        return Trend.IMPROVING
    if diff <= -TREND_THRESHOLD:
        return Trend.DECLINING
    return Trend.STABLE


def calculate_health_score(
    machine_id: str,
    repository: HealthRepository,
    persist: bool = True,
    now: Optional[datetime] = None,
) -> HealthScore:
    """Calculate a health score snapshot for a machine.

    Args:
        machine_id: Machine to score
        repository: Repository holding ledger, aggregates and history
        persist: Append the snapshot to the history (disable for comparisons)
        now: Snapshot timestamp (defaults to the current time)

    Returns:
        The new snapshot; carries its row id when persisted

    Raises:
        NotFoundError: If the machine is not registered
    """
    if not repository.machine_exists(machine_id):
        raise NotFoundError(f"Machine not found: {machine_id}", key=machine_id)

    recommendations = repository.list_recommendations(machine_id)
    counts = count_by_category(recommendations)

    mcp = counts[RecommendationCategory.MCP_SERVER]
    skill = counts[RecommendationCategory.SKILL]
    context = counts[RecommendationCategory.CONTEXT]

    ledger_assessed = any(c.total > 0 for c in counts.values())
    empty_context = UNASSESSED_CONTEXT_SCORE if ledger_assessed else EMPTY_CATEGORY_SCORE

    mcp_score = ratio_score(mcp.applied, mcp.total)
    skill_score = ratio_score(skill.applied, skill.total)
    context_score = ratio_score(context.applied, context.total, empty_score=empty_context)
    pattern_score = calculate_pattern_score(repository.list_usage_patterns(machine_id))

    composite = calculate_composite(mcp_score, skill_score, context_score, pattern_score)

    active = [r for r in recommendations if r.status is RecommendationStatus.ACTIVE]
    applied = [r for r in recommendations if r.status is RecommendationStatus.APPLIED]
    dismissed = [r for r in recommendations if r.status is RecommendationStatus.DISMISSED]

    previous = repository.latest_health_score(machine_id)
    previous_score = previous.composite if previous else None

    score = HealthScore(
        machine_id=machine_id,
        composite=composite,
        mcp_score=mcp_score,
        skill_score=skill_score,
        context_score=context_score,
        pattern_score=pattern_score,
        active_recommendations=len(active),
        applied_recommendations=len(applied),
        dismissed_recommendations=len(dismissed),
        estimated_waste=sum(r.estimated_token_savings for r in active),
        estimated_savings=sum(r.estimated_token_savings for r in applied),
        previous_score=previous_score,
        trend=determine_trend(composite, previous_score),
        timestamp=now or utc_now(),
    )

    if not persist:
        return score

    stored = repository.insert_health_score(score)
    logger.info(
        "Health score for machine %s: %d (%s, previous=%s)",
        machine_id, composite, stored.trend.value, previous_score,
    )
    return stored


@dataclass
class HealthService:
    """Read and recalculate paths over a machine's score history."""
    repository: HealthRepository
    waste_threshold: int = DEFAULT_WASTE_THRESHOLD
    history_limit: int = DEFAULT_HISTORY_LIMIT
    stale_after_hours: float = DEFAULT_STALE_AFTER_HOURS
    clock: Callable[[], datetime] = field(default=utc_now, repr=False)

    def _require_machine(self, machine_id: str) -> None:
        if not self.repository.machine_exists(machine_id):
            raise NotFoundError(f"Machine not found: {machine_id}", key=machine_id)

    def get_latest(self, machine_id: str) -> Optional[HealthScore]:
        return self.repository.latest_health_score(machine_id)

    def get_history(self, machine_id: str, limit: Optional[int] = None) -> List[HealthScore]:
        """Snapshots for a machine, newest first."""
        return self.repository.health_score_history(machine_id, limit or self.history_limit)

    def get_health_report(self, machine_id: str, history_limit: Optional[int] = None) -> HealthReport:
        """Return the current score, its history and insights.

        A snapshot is calculated only when the machine has none yet.

        Raises:
            NotFoundError: If the machine is not registered
        """
        self._require_machine(machine_id)
        current = self.get_latest(machine_id)
        if current is None:
            current = calculate_health_score(machine_id, self.repository, now=self.clock())

        history = list(reversed(self.get_history(machine_id, history_limit)))
        return HealthReport(
            current=current,
            history=history,
            insights=generate_insights(current, waste_threshold=self.waste_threshold),
        )

    def recalculate(self, machine_id: str) -> RecalculationResult:
        """Always compute and append a fresh snapshot."""
        score = calculate_health_score(machine_id, self.repository, now=self.clock())
        return RecalculationResult(success=True, score=score)

    def get_trend_series(self, machine_id: str, days_back: int = 30) -> List[TrendPoint]:
        """Daily chart points for the last ``days_back`` days, oldest first."""
        cutoff = self.clock() - timedelta(days=days_back)
        return [
            TrendPoint(date=s.timestamp.date(), score=s.composite, trend=s.trend)
            for s in self.repository.health_scores_since(machine_id, cutoff)
        ]

    def quick_check(self, machine_id: str) -> QuickHealthCheck:
        """Summarize the latest snapshot without recalculating a fresh one.

        Calculates only if the machine has never been scored.
        """
        self._require_machine(machine_id)
        latest = self.get_latest(machine_id)
        if latest is None:
            latest = calculate_health_score(machine_id, self.repository, now=self.clock())
            needs_recalculation = False
        else:
            needs_recalculation = self._is_stale(latest, self.stale_after_hours)
        return QuickHealthCheck(
            score=latest.composite,
            trend=latest.trend,
            active_issues=latest.active_recommendations,
            potential_savings=latest.estimated_waste,
            last_updated=latest.timestamp,
            needs_recalculation=needs_recalculation,
        )

    def refresh_if_stale(self, machine_id: str, max_age_hours: Optional[float] = None) -> HealthScore:
        """Return the latest snapshot, recalculating it once it is too old."""
        self._require_machine(machine_id)
        max_age = self.stale_after_hours if max_age_hours is None else max_age_hours
        latest = self.get_latest(machine_id)
        if latest is not None and not self._is_stale(latest, max_age):
            return latest
        return calculate_health_score(machine_id, self.repository, now=self.clock())

    def _is_stale(self, score: HealthScore, max_age_hours: float) -> bool:
        return self.clock() - score.timestamp >= timedelta(hours=max_age_hours)
