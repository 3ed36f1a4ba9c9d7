"""
Insight generation for health score snapshots.

Pure functions only: the same snapshot always renders the same advisories.
"""

from dataclasses import dataclass
from typing import List

from ai_usage_health.storage.models import HealthScore

# Monthly token waste above which a savings advisory is shown
DEFAULT_WASTE_THRESHOLD = 5000

# Sub-scores below this get a category-specific advisory
LOW_SCORE_THRESHOLD = 50


@dataclass(frozen=True)
class HealthGrade:
    grade: str
    label: str
    color: str


def band_message(composite: int) -> str:
    """Overall assessment for a composite score."""
    if composite >= 90:
        return "Excellent! Your configuration is highly optimized."
    if composite >= 70:
        return "Good configuration with room for improvement."
    if composite >= 50:
        return "Moderate optimization. Consider applying more recommendations."
    return "Significant optimization opportunities available."


def generate_insights(score: HealthScore, waste_threshold: int = DEFAULT_WASTE_THRESHOLD) -> List[str]:
    """Render advisory strings for a snapshot.

    Rules are evaluated independently, in order:
    1. Overall band message (always present)
    2. MCP advisory if mcp_score < 50
    3. Skill advisory if skill_score < 50
    4. Context advisory if context_score < 50
    5. Savings advisory if estimated_waste > waste_threshold
    6. Action prompt if there are active recommendations

    Args:
        score: Snapshot to describe
        waste_threshold: Monthly token waste that triggers rule 5

    Returns:
        Ordered list of advisories
    """
    insights = [band_message(score.composite)]

    if score.mcp_score < LOW_SCORE_THRESHOLD:
        insights.append("MCP servers could significantly reduce your token usage.")

    if score.skill_score < LOW_SCORE_THRESHOLD:
        insights.append("Custom skills can automate repetitive workflows.")

    if score.context_score < LOW_SCORE_THRESHOLD:
        insights.append("Your context files could benefit from optimization.")

    if score.estimated_waste > waste_threshold:
        insights.append(
            f"You could save ~{score.estimated_waste} tokens/month by applying recommendations."
        )

    if score.active_recommendations > 0:
        insights.append(f"Review {score.active_recommendations} active recommendation(s).")

    return insights


def get_health_grade(score: int) -> HealthGrade:
    """Letter grade for a composite score."""
    if score >= 90:
        return HealthGrade("A", "Excellent", "green")
    if score >= 80:
        return HealthGrade("B", "Good", "blue")
    if score >= 70:
        return HealthGrade("C", "Fair", "yellow")
    if score >= 60:
        return HealthGrade("D", "Needs Work", "orange")
    return HealthGrade("F", "Critical", "red")
