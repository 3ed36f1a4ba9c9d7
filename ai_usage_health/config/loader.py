"""
Configuration management and loading.

Handles application settings loaded from YAML.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ai_usage_health.core.insights import DEFAULT_WASTE_THRESHOLD
from ai_usage_health.core.matching import MATCHERS
from ai_usage_health.storage.db import DEFAULT_DB_PATH

MAX_HISTORY_LIMIT = 365


class LogLevel(Enum):
    """Log levels accepted in the logging section."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass(frozen=True)
class DatabaseConfig:
    """Location of the SQLite database."""
    path: str = DEFAULT_DB_PATH

    def __post_init__(self):
        if not self.path or not self.path.strip():
            raise ValueError("database.path cannot be empty")


@dataclass(frozen=True)
class MatchingConfig:
    """Technology-to-command matching strategy."""
    strategy: str = "substring"

    def __post_init__(self):
        if self.strategy not in MATCHERS:
            raise ValueError(f"matching.strategy must be one of: {sorted(MATCHERS)}")


@dataclass(frozen=True)
class InsightConfig:
    """Thresholds used when rendering insights."""
    waste_threshold: int = DEFAULT_WASTE_THRESHOLD

    def __post_init__(self):
        if self.waste_threshold <= 0:
            raise ValueError("insights.waste_threshold must be > 0")


@dataclass(frozen=True)
class HistoryConfig:
    """How much score history is returned and when a score is stale."""
    limit: int = 30
    stale_after_hours: float = 24.0

    def __post_init__(self):
        if not 1 <= self.limit <= MAX_HISTORY_LIMIT:
            raise ValueError(f"history.limit must be between 1 and {MAX_HISTORY_LIMIT}")
        if self.stale_after_hours <= 0:
            raise ValueError("history.stale_after_hours must be > 0")


@dataclass(frozen=True)
class LoggingConfig:
    level: LogLevel = LogLevel.WARNING


@dataclass(frozen=True)
class HealthConfig:
    """Complete application configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    insights: InsightConfig = field(default_factory=InsightConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def default_config() -> HealthConfig:
    """Configuration used when no file is given."""
    return HealthConfig()


def load_health_config(path: str) -> HealthConfig:
    """Load and validate configuration from a YAML file.

    Every section is optional; missing keys fall back to defaults. Unknown
    keys and wrongly typed values are rejected rather than ignored.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated HealthConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        return default_config()

    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {'database', 'matching', 'insights', 'history', 'logging'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    database = _section(raw_config, 'database', {'path'})
    matching = _section(raw_config, 'matching', {'strategy'})
    insights = _section(raw_config, 'insights', {'waste_threshold'})
    history = _section(raw_config, 'history', {'limit', 'stale_after_hours'})
    logging_section = _section(raw_config, 'logging', {'level'})

    return HealthConfig(
        database=DatabaseConfig(
            path=_get_str(database, 'path', 'database', DEFAULT_DB_PATH),
        ),
        matching=MatchingConfig(
            strategy=_get_str(matching, 'strategy', 'matching', 'substring').lower(),
        ),
        insights=InsightConfig(
            waste_threshold=_get_int(insights, 'waste_threshold', 'insights', DEFAULT_WASTE_THRESHOLD),
        ),
        history=HistoryConfig(
            limit=_get_int(history, 'limit', 'history', 30),
            stale_after_hours=_get_number(history, 'stale_after_hours', 'history', 24.0),
        ),
        logging=LoggingConfig(
            level=_parse_log_level(logging_section),
        ),
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict[str, Any]:
    """Extract and validate one optional configuration section.

    Raises:
        ValueError: If the section is not a mapping or has unknown keys
    """
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _get_str(data: Dict, key: str, path: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ValueError(f"'{key}' in {path} must be a string")
    return value


def _get_int(data: Dict, key: str, path: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _get_number(data: Dict, key: str, path: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _parse_log_level(data: Dict) -> LogLevel:
    level = _get_str(data, 'level', 'logging', LogLevel.WARNING.value)
    try:
        return LogLevel(level.upper())
    except ValueError:
        valid_levels = [level.value for level in LogLevel]
        raise ValueError(f"'level' in logging must be one of: {valid_levels}")


def resolve_config(path: Optional[str]) -> HealthConfig:
    """Load ``path`` if given, otherwise return the defaults."""
    return load_health_config(path) if path else default_config()
