"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple


def utc_now() -> datetime:
    """Current time as a naive UTC datetime.

    Every stored timestamp uses this frame so that reported, defaulted and
    snapshot times compare directly.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


class RecommendationCategory(Enum):
    """Categories a recommendation can belong to."""
    MCP_SERVER = "mcp_server"
    SKILL = "skill"
    CONTEXT = "context"
    HOOK = "hook"
    PERMISSION = "permission"
    WORKFLOW = "workflow"


class RecommendationStatus(Enum):
    """Lifecycle status of a recommendation.

    APPLIED, DISMISSED and EXPIRED are terminal.
    """
    ACTIVE = "active"
    APPLIED = "applied"
    DISMISSED = "dismissed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not RecommendationStatus.ACTIVE


class Trend(Enum):
    """Direction of the health score relative to the previous snapshot."""
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


@dataclass(frozen=True)
class Machine:
    """A registered developer machine."""
    id: str
    name: str
    hostname: Optional[str] = None
    platform: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class SessionActivity:
    """Immutable record of one tracked session.

    Append-only history: rows are written once per ingested report and are
    never modified or deleted.
    """
    machine_id: str
    session_id: str
    timestamp: datetime
    project_id: Optional[str] = None
    duration: int = 0
    tools_used: Tuple[str, ...] = ()
    commands_run: Tuple[str, ...] = ()
    files_accessed: Tuple[str, ...] = ()
    errors: Tuple[str, ...] = ()
    startup_tokens: int = 0
    total_tokens: int = 0
    tool_tokens: int = 0
    context_tokens: int = 0
    detected_techs: Tuple[str, ...] = ()
    detected_patterns: Tuple[str, ...] = ()
    id: Optional[int] = None


@dataclass(frozen=True)
class UsagePattern:
    """Rolling aggregate for one (machine, pattern type) pair."""
    machine_id: str
    pattern_type: str
    occurrences: int
    first_seen: datetime
    last_seen: datetime
    confidence: float
    project_ids: FrozenSet[str] = frozenset()
    technologies: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TechnologyUsage:
    """Rolling aggregate for one (machine, technology) pair."""
    machine_id: str
    technology: str
    session_count: int
    command_count: int
    project_count: int
    last_used: datetime


@dataclass(frozen=True)
class Recommendation:
    """Ledger entry read by the health score calculator."""
    id: str
    machine_id: str
    category: RecommendationCategory
    status: RecommendationStatus
    estimated_token_savings: int = 0
    title: str = ""
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class HealthScore:
    """Immutable, timestamped health score snapshot.

    Waste and savings are monthly token estimates summed from the
    recommendation ledger.
    """
    machine_id: str
    composite: int
    mcp_score: int
    skill_score: int
    context_score: int
    pattern_score: int
    active_recommendations: int
    applied_recommendations: int
    estimated_waste: int
    estimated_savings: int
    trend: Trend
    timestamp: datetime
    previous_score: Optional[int] = None
    dismissed_recommendations: int = 0
    id: Optional[int] = field(default=None, compare=False)

    def __post_init__(self):
        """Validate every score lies in [0, 100]."""
        for name in ("composite", "mcp_score", "skill_score", "context_score", "pattern_score"):
            value = getattr(self, name)
            if not 0 <= value <= 100:
                raise ValueError(f"{name} must be between 0 and 100, got {value}")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the external snapshot shape."""
        return {
            "composite": self.composite,
            "mcpScore": self.mcp_score,
            "skillScore": self.skill_score,
            "contextScore": self.context_score,
            "patternScore": self.pattern_score,
            "activeRecommendations": self.active_recommendations,
            "appliedRecommendations": self.applied_recommendations,
            "dismissedRecommendations": self.dismissed_recommendations,
            "estimatedWaste": self.estimated_waste,
            "estimatedSavings": self.estimated_savings,
            "previousScore": self.previous_score,
            "trend": self.trend.value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class PatternOccurrence:
    """One sighting of a pattern tag, applied as an insert-or-increment."""
    machine_id: str
    pattern_type: str
    seen_at: datetime
    confidence: float
    project_id: Optional[str] = None
    technologies: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TechnologyOccurrence:
    """One sighting of a technology tag, applied as an insert-or-increment."""
    machine_id: str
    technology: str
    used_at: datetime
    command_matches: int = 0
    has_project: bool = False
