"""
Pattern and technology aggregation.

Folds one session's detected tags into the per-machine rolling counters.

Ingestion order:
1. Reject unknown machines before any write
2. Append the SessionActivity record (independent history)
3. Apply every pattern and technology upsert in a single transaction
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from .errors import NotFoundError
from .matching import SubstringMatcher, TechnologyMatcher, count_matching_commands
from .validation import SessionReport
from ai_usage_health.storage.models import PatternOccurrence, TechnologyOccurrence
from ai_usage_health.storage.repository import HealthRepository

logger = logging.getLogger(__name__)

# Confidence assigned when a pattern is first seen. It is not recomputed on
# later occurrences.
INITIAL_CONFIDENCE = 1.0


@dataclass(frozen=True)
class IngestResult:
    """Outcome of ingesting one session report."""
    session_row_id: int
    patterns_tracked: int
    technologies_tracked: int


def build_pattern_occurrences(report: SessionReport) -> List[PatternOccurrence]:
    """Map each detected pattern tag to an insert-or-increment request."""
    return [
        PatternOccurrence(
            machine_id=report.machine_id,
            pattern_type=pattern_type,
            seen_at=report.timestamp,
            confidence=INITIAL_CONFIDENCE,
            project_id=report.project_id,
            technologies=report.detected_techs,
        )
        for pattern_type in report.detected_patterns
    ]


def build_technology_occurrences(
    report: SessionReport,
    matcher: TechnologyMatcher,
) -> List[TechnologyOccurrence]:
    """Map each detected technology tag to an insert-or-increment request.

    command_matches is the number of submitted commands the matcher
    attributes to the technology.
    """
    return [
        TechnologyOccurrence(
            machine_id=report.machine_id,
            technology=technology,
            used_at=report.timestamp,
            command_matches=count_matching_commands(technology, report.commands_run, matcher),
            has_project=report.project_id is not None,
        )
        for technology in report.detected_techs
    ]


def ingest_session(
    report: SessionReport,
    repository: HealthRepository,
    matcher: Optional[TechnologyMatcher] = None,
) -> IngestResult:
    """Record a validated session and update the machine's aggregates.

    Args:
        report: Validated session report
        repository: Repository to write to
        matcher: Strategy deciding which commands mention a technology
            (defaults to case-insensitive substring matching)

    Returns:
        IngestResult with the stored session row id and tag counts

    Raises:
        NotFoundError: If the machine is not registered
        StorageError: If the database fails; aggregate changes for this
            session are rolled back entirely
    """
    if not repository.machine_exists(report.machine_id):
        raise NotFoundError(f"Machine not found: {report.machine_id}", key=report.machine_id)

    matcher = matcher or SubstringMatcher()
    patterns = build_pattern_occurrences(report)
    technologies = build_technology_occurrences(report, matcher)

    session_row_id = repository.insert_session_activity(report.to_activity())
    repository.apply_aggregate_updates(patterns, technologies)

    logger.info(
        "Ingested session %s for machine %s (%d patterns, %d technologies)",
        report.session_id, report.machine_id, len(patterns), len(technologies),
    )
    return IngestResult(
        session_row_id=session_row_id,
        patterns_tracked=len(patterns),
        technologies_tracked=len(technologies),
    )
