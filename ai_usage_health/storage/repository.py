"""
Repository pattern for data access.

Handles database operations and data persistence logic.
"""

import logging
import sqlite3
import uuid
from dataclasses import replace
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from ai_usage_health.core.errors import InvalidTransitionError, NotFoundError, StorageError

from .db import DEFAULT_DB_PATH, get_connection, transaction
from .models import (
    HealthScore,
    Machine,
    PatternOccurrence,
    Recommendation,
    RecommendationCategory,
    RecommendationStatus,
    SessionActivity,
    TechnologyOccurrence,
    TechnologyUsage,
    Trend,
    UsagePattern,
    utc_now,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS machine (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    hostname TEXT,
    platform TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS session_activity (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    machine_id TEXT NOT NULL REFERENCES machine(id),
    session_id TEXT NOT NULL,
    project_id TEXT,
    duration INTEGER NOT NULL DEFAULT 0,
    startup_tokens INTEGER NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0,
    tool_tokens INTEGER NOT NULL DEFAULT 0,
    context_tokens INTEGER NOT NULL DEFAULT 0,
    timestamp TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS session_activity_item (
    activity_id INTEGER NOT NULL REFERENCES session_activity(id),
    kind TEXT NOT NULL,
    position INTEGER NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (activity_id, kind, position)
);

CREATE TABLE IF NOT EXISTS usage_pattern (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    machine_id TEXT NOT NULL REFERENCES machine(id),
    pattern_type TEXT NOT NULL,
    occurrences INTEGER NOT NULL,
    first_seen TEXT NOT NULL,
    last_seen TEXT NOT NULL,
    confidence REAL NOT NULL,
    UNIQUE (machine_id, pattern_type)
);

CREATE TABLE IF NOT EXISTS usage_pattern_project (
    pattern_id INTEGER NOT NULL REFERENCES usage_pattern(id),
    project_id TEXT NOT NULL,
    PRIMARY KEY (pattern_id, project_id)
);

CREATE TABLE IF NOT EXISTS usage_pattern_technology (
    pattern_id INTEGER NOT NULL REFERENCES usage_pattern(id),
    position INTEGER NOT NULL,
    technology TEXT NOT NULL,
    PRIMARY KEY (pattern_id, position)
);

CREATE TABLE IF NOT EXISTS technology_usage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    machine_id TEXT NOT NULL REFERENCES machine(id),
    technology TEXT NOT NULL,
    session_count INTEGER NOT NULL,
    command_count INTEGER NOT NULL,
    project_count INTEGER NOT NULL,
    last_used TEXT NOT NULL,
    UNIQUE (machine_id, technology)
);

CREATE TABLE IF NOT EXISTS recommendation (
    id TEXT PRIMARY KEY,
    machine_id TEXT NOT NULL REFERENCES machine(id),
    category TEXT NOT NULL,
    status TEXT NOT NULL,
    estimated_token_savings INTEGER NOT NULL DEFAULT 0,
    title TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS health_score (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    machine_id TEXT NOT NULL REFERENCES machine(id),
    composite INTEGER NOT NULL,
    mcp_score INTEGER NOT NULL,
    skill_score INTEGER NOT NULL,
    context_score INTEGER NOT NULL,
    pattern_score INTEGER NOT NULL,
    active_recommendations INTEGER NOT NULL,
    applied_recommendations INTEGER NOT NULL,
    dismissed_recommendations INTEGER NOT NULL,
    estimated_waste INTEGER NOT NULL,
    estimated_savings INTEGER NOT NULL,
    previous_score INTEGER,
    trend TEXT NOT NULL,
    timestamp TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_health_score_machine_ts
    ON health_score (machine_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_recommendation_machine
    ON recommendation (machine_id);
CREATE INDEX IF NOT EXISTS idx_session_activity_machine
    ON session_activity (machine_id, timestamp);
"""

# Order in which list fields of a session are written to session_activity_item.
_SESSION_LIST_FIELDS = (
    "tools_used",
    "commands_run",
    "files_accessed",
    "errors",
    "detected_techs",
    "detected_patterns",
)

_HEALTH_SCORE_COLUMNS = """
    id, machine_id, composite, mcp_score, skill_score, context_score,
    pattern_score, active_recommendations, applied_recommendations,
    dismissed_recommendations, estimated_waste, estimated_savings,
    previous_score, trend, timestamp
"""


class HealthRepository:
    """Repository for machines, session telemetry, aggregates, the
    recommendation ledger and health score snapshots.

    Each call opens its own connection and closes it before returning, so a
    single instance can be shared between threads.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = get_connection(self.db_path)
        try:
            yield conn
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        finally:
            conn.close()

    def initialize_schema(self) -> None:
        """Create all tables if they don't exist."""
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    # -- machines -------------------------------------------------------

    def add_machine(
        self,
        name: str,
        hostname: Optional[str] = None,
        platform: Optional[str] = None,
        machine_id: Optional[str] = None,
    ) -> Machine:
        """Register a machine and return it."""
        if not name or not name.strip():
            raise ValueError("name is required and cannot be empty")
        machine = Machine(
            id=machine_id or uuid.uuid4().hex,
            name=name,
            hostname=hostname,
            platform=platform,
            created_at=utc_now(),
        )
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO machine (id, name, hostname, platform, created_at) VALUES (?, ?, ?, ?, ?)",
                (machine.id, machine.name, machine.hostname, machine.platform, machine.created_at.isoformat()),
            )
        return machine

    def get_machine(self, machine_id: str) -> Optional[Machine]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name, hostname, platform, created_at FROM machine WHERE id = ?",
                (machine_id,),
            ).fetchone()
        return _row_to_machine(row) if row else None

    def machine_exists(self, machine_id: str) -> bool:
        return self.get_machine(machine_id) is not None

    def list_machines(self) -> List[Machine]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, name, hostname, platform, created_at FROM machine ORDER BY created_at, id"
            ).fetchall()
        return [_row_to_machine(row) for row in rows]

    # -- session telemetry ----------------------------------------------

    def insert_session_activity(self, activity: SessionActivity) -> int:
        """Append a session record and return its row id.

        The record and its list items are written in one transaction. Rows in
        this table are never updated or deleted.
        """
        with self._connect() as conn:
            with transaction(conn):
                cursor = conn.execute("""
                    INSERT INTO session_activity
                    (machine_id, session_id, project_id, duration, startup_tokens,
                     total_tokens, tool_tokens, context_tokens, timestamp)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    activity.machine_id,
                    activity.session_id,
                    activity.project_id,
                    activity.duration,
                    activity.startup_tokens,
                    activity.total_tokens,
                    activity.tool_tokens,
                    activity.context_tokens,
                    activity.timestamp.isoformat(),
                ))
                activity_id = cursor.lastrowid
                items = [
                    (activity_id, kind, position, value)
                    for kind in _SESSION_LIST_FIELDS
                    for position, value in enumerate(getattr(activity, kind))
                ]
                conn.executemany(
                    "INSERT INTO session_activity_item (activity_id, kind, position, value) VALUES (?, ?, ?, ?)",
                    items,
                )
        return activity_id

    def fetch_session_activities(self, machine_id: str, limit: int = 100) -> List[SessionActivity]:
        """Fetch session records for a machine, newest first."""
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT id, machine_id, session_id, project_id, duration, startup_tokens,
                       total_tokens, tool_tokens, context_tokens, timestamp
                FROM session_activity
                WHERE machine_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
            """, (machine_id, limit)).fetchall()
            activities = []
            for row in rows:
                items: Dict[str, List[str]] = {kind: [] for kind in _SESSION_LIST_FIELDS}
                for kind, value in conn.execute(
                    "SELECT kind, value FROM session_activity_item WHERE activity_id = ? ORDER BY kind, position",
                    (row[0],),
                ):
                    items[kind].append(value)
                activities.append(SessionActivity(
                    id=row[0],
                    machine_id=row[1],
                    session_id=row[2],
                    project_id=row[3],
                    duration=row[4],
                    startup_tokens=row[5],
                    total_tokens=row[6],
                    tool_tokens=row[7],
                    context_tokens=row[8],
                    timestamp=datetime.fromisoformat(row[9]),
                    **{kind: tuple(values) for kind, values in items.items()},
                ))
        return activities

    def count_session_activities(self, machine_id: Optional[str] = None) -> int:
        with self._connect() as conn:
            if machine_id is None:
                row = conn.execute("SELECT COUNT(*) FROM session_activity").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM session_activity WHERE machine_id = ?", (machine_id,)
                ).fetchone()
        return row[0]

    # -- usage aggregates -----------------------------------------------

    def apply_aggregate_updates(
        self,
        patterns: Sequence[PatternOccurrence],
        technologies: Sequence[TechnologyOccurrence],
    ) -> None:
        """Apply every pattern and technology upsert for one session atomically.

        Each upsert is a store-level insert-or-increment on the aggregate's
        unique key. If any statement fails, the whole batch is rolled back.

        Raises:
            StorageError: If the database rejects any statement
        """
        if not patterns and not technologies:
            return
        with self._connect() as conn:
            try:
                with transaction(conn):
                    for occurrence in patterns:
                        _upsert_pattern(conn, occurrence)
                    for occurrence in technologies:
                        _upsert_technology(conn, occurrence)
            except Exception:
                logger.warning(
                    "Rolled back aggregate update of %d pattern(s) and %d technology(ies)",
                    len(patterns), len(technologies),
                )
                raise

    def list_usage_patterns(self, machine_id: str) -> List[UsagePattern]:
        """Return all usage patterns for a machine ordered by pattern type."""
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT id, machine_id, pattern_type, occurrences, first_seen, last_seen, confidence
                FROM usage_pattern
                WHERE machine_id = ?
                ORDER BY pattern_type
            """, (machine_id,)).fetchall()
            return [_load_pattern(conn, row) for row in rows]

    def get_usage_pattern(self, machine_id: str, pattern_type: str) -> Optional[UsagePattern]:
        with self._connect() as conn:
            row = conn.execute("""
                SELECT id, machine_id, pattern_type, occurrences, first_seen, last_seen, confidence
                FROM usage_pattern
                WHERE machine_id = ? AND pattern_type = ?
            """, (machine_id, pattern_type)).fetchone()
            return _load_pattern(conn, row) if row else None

    def list_technology_usage(self, machine_id: str) -> List[TechnologyUsage]:
        """Return all technology aggregates for a machine, most sessions first."""
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT machine_id, technology, session_count, command_count, project_count, last_used
                FROM technology_usage
                WHERE machine_id = ?
                ORDER BY session_count DESC, technology
            """, (machine_id,)).fetchall()
        return [_row_to_technology(row) for row in rows]

    def get_technology_usage(self, machine_id: str, technology: str) -> Optional[TechnologyUsage]:
        with self._connect() as conn:
            row = conn.execute("""
                SELECT machine_id, technology, session_count, command_count, project_count, last_used
                FROM technology_usage
                WHERE machine_id = ? AND technology = ?
            """, (machine_id, technology)).fetchone()
        return _row_to_technology(row) if row else None

    # -- recommendation ledger ------------------------------------------

    def add_recommendation(
        self,
        machine_id: str,
        category: RecommendationCategory,
        estimated_token_savings: int = 0,
        status: RecommendationStatus = RecommendationStatus.ACTIVE,
        title: str = "",
    ) -> Recommendation:
        """Add a ledger entry for a machine."""
        if estimated_token_savings < 0:
            raise ValueError("estimated_token_savings cannot be negative")
        if not self.machine_exists(machine_id):
            raise NotFoundError(f"Machine not found: {machine_id}", key=machine_id)
        recommendation = Recommendation(
            id=uuid.uuid4().hex,
            machine_id=machine_id,
            category=category,
            status=status,
            estimated_token_savings=estimated_token_savings,
            title=title,
            created_at=utc_now(),
        )
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO recommendation
                (id, machine_id, category, status, estimated_token_savings, title, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                recommendation.id,
                recommendation.machine_id,
                recommendation.category.value,
                recommendation.status.value,
                recommendation.estimated_token_savings,
                recommendation.title,
                recommendation.created_at.isoformat(),
            ))
        return recommendation

    def get_recommendation(self, recommendation_id: str) -> Optional[Recommendation]:
        with self._connect() as conn:
            row = conn.execute("""
                SELECT id, machine_id, category, status, estimated_token_savings, title, created_at
                FROM recommendation WHERE id = ?
            """, (recommendation_id,)).fetchone()
        return _row_to_recommendation(row) if row else None

    def update_recommendation_status(
        self,
        recommendation_id: str,
        status: RecommendationStatus,
    ) -> Recommendation:
        """Move a recommendation to a new status.

        Terminal statuses (applied, dismissed, expired) are final.

        Raises:
            NotFoundError: If the recommendation does not exist
            InvalidTransitionError: If the current status is terminal
        """
        with self._connect() as conn:
            with transaction(conn):
                row = conn.execute(
                    "SELECT status FROM recommendation WHERE id = ?", (recommendation_id,)
                ).fetchone()
                if row is None:
                    raise NotFoundError(
                        f"Recommendation not found: {recommendation_id}",
                        entity="recommendation",
                        key=recommendation_id,
                    )
                current = RecommendationStatus(row[0])
                if current is not status:
                    if current.is_terminal:
                        raise InvalidTransitionError(
                            f"Recommendation {recommendation_id} is {current.value} and cannot become {status.value}"
                        )
                    conn.execute(
                        "UPDATE recommendation SET status = ? WHERE id = ?",
                        (status.value, recommendation_id),
                    )
        return self.get_recommendation(recommendation_id)

    def list_recommendations(self, machine_id: str) -> List[Recommendation]:
        """Return every ledger entry for a machine, oldest first."""
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT id, machine_id, category, status, estimated_token_savings, title, created_at
                FROM recommendation
                WHERE machine_id = ?
                ORDER BY created_at, id
            """, (machine_id,)).fetchall()
        return [_row_to_recommendation(row) for row in rows]

    # -- health score snapshots -----------------------------------------

    def insert_health_score(self, score: HealthScore) -> HealthScore:
        """Append a snapshot and return it with its row id.

        Snapshots form an append-only time series; there is no update path.
        """
        with self._connect() as conn:
            cursor = conn.execute("""
                INSERT INTO health_score
                (machine_id, composite, mcp_score, skill_score, context_score, pattern_score,
                 active_recommendations, applied_recommendations, dismissed_recommendations,
                 estimated_waste, estimated_savings, previous_score, trend, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                score.machine_id,
                score.composite,
                score.mcp_score,
                score.skill_score,
                score.context_score,
                score.pattern_score,
                score.active_recommendations,
                score.applied_recommendations,
                score.dismissed_recommendations,
                score.estimated_waste,
                score.estimated_savings,
                score.previous_score,
                score.trend.value,
                score.timestamp.isoformat(),
            ))
            row_id = cursor.lastrowid
        return replace(score, id=row_id)

    def latest_health_score(self, machine_id: str) -> Optional[HealthScore]:
        history = self.health_score_history(machine_id, limit=1)
        return history[0] if history else None

    def health_score_history(self, machine_id: str, limit: int = 30) -> List[HealthScore]:
        """Return up to ``limit`` snapshots for a machine, newest first."""
        with self._connect() as conn:
            rows = conn.execute(f"""
                SELECT {_HEALTH_SCORE_COLUMNS}
                FROM health_score
                WHERE machine_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
            """, (machine_id, limit)).fetchall()
        return [_row_to_health_score(row) for row in rows]

    def health_scores_since(self, machine_id: str, cutoff: datetime) -> List[HealthScore]:
        """Return snapshots at or after ``cutoff``, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(f"""
                SELECT {_HEALTH_SCORE_COLUMNS}
                FROM health_score
                WHERE machine_id = ? AND timestamp >= ?
                ORDER BY timestamp ASC, id ASC
            """, (machine_id, cutoff.isoformat())).fetchall()
        return [_row_to_health_score(row) for row in rows]


def _upsert_pattern(conn: sqlite3.Connection, occurrence: PatternOccurrence) -> None:
    seen_at = occurrence.seen_at.isoformat()
    conn.execute("""
        INSERT INTO usage_pattern
        (machine_id, pattern_type, occurrences, first_seen, last_seen, confidence)
        VALUES (?, ?, 1, ?, ?, ?)
        ON CONFLICT (machine_id, pattern_type) DO UPDATE SET
            occurrences = occurrences + 1,
            last_seen = excluded.last_seen
    """, (occurrence.machine_id, occurrence.pattern_type, seen_at, seen_at, occurrence.confidence))
    pattern_id, occurrences = conn.execute(
        "SELECT id, occurrences FROM usage_pattern WHERE machine_id = ? AND pattern_type = ?",
        (occurrence.machine_id, occurrence.pattern_type),
    ).fetchone()
    if occurrences == 1:
        conn.executemany(
            "INSERT INTO usage_pattern_technology (pattern_id, position, technology) VALUES (?, ?, ?)",
            [(pattern_id, position, tech) for position, tech in enumerate(occurrence.technologies)],
        )
    if occurrence.project_id:
        conn.execute(
            "INSERT OR IGNORE INTO usage_pattern_project (pattern_id, project_id) VALUES (?, ?)",
            (pattern_id, occurrence.project_id),
        )
    logger.debug(
        "Upserted pattern %s for machine %s (occurrences=%d)",
        occurrence.pattern_type, occurrence.machine_id, occurrences,
    )


def _upsert_technology(conn: sqlite3.Connection, occurrence: TechnologyOccurrence) -> None:
    conn.execute("""
        INSERT INTO technology_usage
        (machine_id, technology, session_count, command_count, project_count, last_used)
        VALUES (?, ?, 1, ?, ?, ?)
        ON CONFLICT (machine_id, technology) DO UPDATE SET
            session_count = session_count + 1,
            command_count = command_count + excluded.command_count,
            last_used = excluded.last_used
    """, (
        occurrence.machine_id,
        occurrence.technology,
        occurrence.command_matches,
        1 if occurrence.has_project else 0,
        occurrence.used_at.isoformat(),
    ))
    logger.debug(
        "Upserted technology %s for machine %s (+%d commands)",
        occurrence.technology, occurrence.machine_id, occurrence.command_matches,
    )


def _load_pattern(conn: sqlite3.Connection, row: Tuple) -> UsagePattern:
    pattern_id = row[0]
    project_ids = frozenset(
        r[0] for r in conn.execute(
            "SELECT project_id FROM usage_pattern_project WHERE pattern_id = ?", (pattern_id,)
        )
    )
    technologies = tuple(
        r[0] for r in conn.execute(
            "SELECT technology FROM usage_pattern_technology WHERE pattern_id = ? ORDER BY position",
            (pattern_id,),
        )
    )
    return UsagePattern(
        machine_id=row[1],
        pattern_type=row[2],
        occurrences=row[3],
        first_seen=datetime.fromisoformat(row[4]),
        last_seen=datetime.fromisoformat(row[5]),
        confidence=row[6],
        project_ids=project_ids,
        technologies=technologies,
    )


def _row_to_machine(row: Tuple) -> Machine:
    return Machine(
        id=row[0],
        name=row[1],
        hostname=row[2],
        platform=row[3],
        created_at=datetime.fromisoformat(row[4]),
    )


def _row_to_technology(row: Tuple) -> TechnologyUsage:
    return TechnologyUsage(
        machine_id=row[0],
        technology=row[1],
        session_count=row[2],
        command_count=row[3],
        project_count=row[4],
        last_used=datetime.fromisoformat(row[5]),
    )


def _row_to_recommendation(row: Tuple) -> Recommendation:
    return Recommendation(
        id=row[0],
        machine_id=row[1],
        category=RecommendationCategory(row[2]),
        status=RecommendationStatus(row[3]),
        estimated_token_savings=row[4],
        title=row[5],
        created_at=datetime.fromisoformat(row[6]),
    )


def _row_to_health_score(row: Tuple) -> HealthScore:
    return HealthScore(
        id=row[0],
        machine_id=row[1],
        composite=row[2],
        mcp_score=row[3],
        skill_score=row[4],
        context_score=row[5],
        pattern_score=row[6],
        active_recommendations=row[7],
        applied_recommendations=row[8],
        dismissed_recommendations=row[9],
        estimated_waste=row[10],
        estimated_savings=row[11],
        previous_score=row[12],
        trend=Trend(row[13]),
        timestamp=datetime.fromisoformat(row[14]),
    )


# Global repository instance
_default_repository: Optional[HealthRepository] = None


def get_repository(db_path: str = DEFAULT_DB_PATH) -> HealthRepository:
    """Get a repository instance.

    Returns the shared instance when ``db_path`` matches the one it was
    created with; otherwise a new shared instance replaces it.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of HealthRepository
    """
    global _default_repository
    if _default_repository is None or _default_repository.db_path != db_path:
        _default_repository = HealthRepository(db_path)
    return _default_repository


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    HealthRepository(db_path).initialize_schema()
