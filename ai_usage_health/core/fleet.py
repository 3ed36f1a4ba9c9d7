"""
Cross-machine health reporting.

Compares machines and summarizes the latest snapshots of a whole fleet.
Nothing here writes to storage.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict

from .health import calculate_health_score, round_half_up
from ai_usage_health.storage.models import HealthScore
from ai_usage_health.storage.repository import HealthRepository


@dataclass(frozen=True)
class MachineComparison:
    """Side-by-side scores of two machines (first minus second)."""
    machine1: HealthScore
    machine2: HealthScore
    total_diff: int
    mcp_diff: int
    skill_diff: int
    context_diff: int
    pattern_diff: int
    winner: str  # "machine1", "machine2" or "tie"


@dataclass
class AggregateHealthStats:
    machine_count: int = 0
    average_score: int = 0
    highest_score: int = 0
    lowest_score: int = 0
    total_active_issues: int = 0
    total_potential_savings: int = 0
    score_distribution: Dict[str, int] = field(
        default_factory=lambda: {"excellent": 0, "good": 0, "fair": 0, "needs_work": 0}
    )


def compare_machines(machine_id_1: str, machine_id_2: str, repository: HealthRepository) -> MachineComparison:
    """Score two machines without persisting and diff the results.

    Raises:
        NotFoundError: If either machine is not registered
    """
    first = calculate_health_score(machine_id_1, repository, persist=False)
    second = calculate_health_score(machine_id_2, repository, persist=False)

    if first.composite > second.composite:
        winner = "machine1"
    elif second.composite > first.composite:
        winner = "machine2"
    else:
        winner = "tie"

    return MachineComparison(
        machine1=first,
        machine2=second,
        total_diff=first.composite - second.composite,
        mcp_diff=first.mcp_score - second.mcp_score,
        skill_diff=first.skill_score - second.skill_score,
        context_diff=first.context_score - second.context_score,
        pattern_diff=first.pattern_score - second.pattern_score,
        winner=winner,
    )


def _distribution_bucket(score: int) -> str:
    if score >= 90:
        return "excellent"
    if score >= 70:
        return "good"
    if score >= 50:
        return "fair"
    return "needs_work"


def aggregate_health_stats(repository: HealthRepository) -> AggregateHealthStats:
    """Summarize the latest snapshot of every registered machine.

    Machines that were never scored only count toward machine_count.
    """
    machines = repository.list_machines()
    stats = AggregateHealthStats(machine_count=len(machines))

    latest = [repository.latest_health_score(m.id) for m in machines]
    scored = [s for s in latest if s is not None]
    if not scored:
        return stats

    composites = [s.composite for s in scored]
    stats.average_score = round_half_up(Decimal(sum(composites)) / len(composites))
    stats.highest_score = max(composites)
    stats.lowest_score = min(composites)
    stats.total_active_issues = sum(s.active_recommendations for s in scored)
    stats.total_potential_savings = sum(s.estimated_waste for s in scored)
    for composite in composites:
        stats.score_distribution[_distribution_bucket(composite)] += 1
    return stats
