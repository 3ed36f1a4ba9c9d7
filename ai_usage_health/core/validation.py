"""
Session report validation.

Turns a raw session report mapping into a typed SessionReport, rejecting
malformed input before anything downstream touches storage.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import ValidationError
from ai_usage_health.storage.models import SessionActivity, utc_now

logger = logging.getLogger(__name__)

REQUIRED_KEYS = ("machineId", "sessionId")

# Wire name -> attribute name
COUNTER_FIELDS = {
    "duration": "duration",
    "startupTokens": "startup_tokens",
    "totalTokens": "total_tokens",
    "toolTokens": "tool_tokens",
    "contextTokens": "context_tokens",
}

LIST_FIELDS = {
    "toolsUsed": "tools_used",
    "commandsRun": "commands_run",
    "filesAccessed": "files_accessed",
    "errors": "errors",
    "detectedTechs": "detected_techs",
    "detectedPatterns": "detected_patterns",
}

ALLOWED_KEYS = set(REQUIRED_KEYS) | set(COUNTER_FIELDS) | set(LIST_FIELDS) | {"projectId", "timestamp"}


@dataclass(frozen=True)
class SessionReport:
    """A validated session report.

    Pattern and technology tags are de-duplicated, first occurrence wins.
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

    def to_activity(self) -> SessionActivity:
        """Build the append-only history record for this report."""
        return SessionActivity(
            machine_id=self.machine_id,
            session_id=self.session_id,
            timestamp=self.timestamp,
            project_id=self.project_id,
            duration=self.duration,
            tools_used=self.tools_used,
            commands_run=self.commands_run,
            files_accessed=self.files_accessed,
            errors=self.errors,
            startup_tokens=self.startup_tokens,
            total_tokens=self.total_tokens,
            tool_tokens=self.tool_tokens,
            context_tokens=self.context_tokens,
            detected_techs=self.detected_techs,
            detected_patterns=self.detected_patterns,
        )


def parse_session_report(payload: Mapping[str, Any], now: Optional[datetime] = None) -> SessionReport:
    """Validate a raw session report.

    Args:
        payload: Report using the wire field names (machineId, sessionId, ...)
        now: Event time to use when the report carries no timestamp

    Returns:
        Validated SessionReport

    Raises:
        ValidationError: If any field is missing or malformed
    """
    if not isinstance(payload, Mapping):
        raise ValidationError("Session report must be an object")

    # Clients may send extra metadata (projectName, projectPath, ...); it is dropped
    unknown_keys = set(payload.keys()) - ALLOWED_KEYS
    if unknown_keys:
        logger.debug("Ignoring unknown session report keys: %s", sorted(unknown_keys))

    values: Dict[str, Any] = {}
    for key in REQUIRED_KEYS:
        value = payload.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"'{key}' is required and must be a non-empty string", field=key)
    values["machine_id"] = payload["machineId"]
    values["session_id"] = payload["sessionId"]

    project_id = payload.get("projectId")
    if project_id is not None and not isinstance(project_id, str):
        raise ValidationError("'projectId' must be a string", field="projectId")
    values["project_id"] = project_id or None

    for key, attr in COUNTER_FIELDS.items():
        values[attr] = _parse_counter(payload, key)

    for key, attr in LIST_FIELDS.items():
        items = _parse_string_list(payload, key)
        if key in ("detectedTechs", "detectedPatterns"):
            items = tuple(dict.fromkeys(items))
        values[attr] = items

    values["timestamp"] = _parse_timestamp(payload.get("timestamp"), now)
    return SessionReport(**values)


def _parse_counter(payload: Mapping[str, Any], key: str) -> int:
    value = payload.get(key)
    if value is None:
        return 0
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"'{key}' must be an integer", field=key)
    if value < 0:
        raise ValidationError(f"'{key}' cannot be negative", field=key)
    return value


def _parse_string_list(payload: Mapping[str, Any], key: str) -> Tuple[str, ...]:
    value = payload.get(key)
    if value is None:
        return ()
    if not isinstance(value, (list, tuple)):
        raise ValidationError(f"'{key}' must be a list of strings", field=key)
    for item in value:
        if not isinstance(item, str):
            raise ValidationError(f"'{key}' must contain only strings", field=key)
    return tuple(value)


def _parse_timestamp(value: Any, now: Optional[datetime]) -> datetime:
    if value is None:
        return now or utc_now()
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        # fromisoformat() only accepts a trailing 'Z' from Python 3.11 on
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"'timestamp' is not a valid ISO-8601 datetime: {value!r}", field="timestamp")
    else:
        raise ValidationError("'timestamp' must be an ISO-8601 string", field="timestamp")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
