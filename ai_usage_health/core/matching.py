"""
Technology-to-command matching strategies.

Decides whether a submitted command counts toward a technology's
command_count. The aggregator only depends on the TechnologyMatcher
protocol, so strategies can be swapped through configuration.
"""

import re
from typing import Iterable, Protocol

_TOKEN_SEPARATORS = re.compile(r"[\s/.:=,]+")


class TechnologyMatcher(Protocol):
    """Given a technology name and a command string, decide match."""

    def matches(self, technology: str, command: str) -> bool:
        ...


class SubstringMatcher:
    """Case-insensitive substring match.

    "docker" matches "docker compose up" but also "dockerfile-lint".
    """

    def matches(self, technology: str, command: str) -> bool:
        return technology.lower() in command.lower()


class TokenMatcher:
    """Case-insensitive match against whole command tokens.

    Commands are split on whitespace and on ``/ . : = ,`` so that
    "node" matches "node server.js" and "/usr/bin/node" but not "nodemon".
    """

    def matches(self, technology: str, command: str) -> bool:
        needle = technology.lower()
        return needle in (token for token in _TOKEN_SEPARATORS.split(command.lower()) if token)


MATCHERS = {
    "substring": SubstringMatcher,
    "token": TokenMatcher,
}


def get_matcher(name: str = "substring") -> TechnologyMatcher:
    """Resolve a matcher by strategy name.

    Raises:
        ValueError: If the strategy is unknown
    """
    try:
        return MATCHERS[name.lower()]()
    except KeyError:
        raise ValueError(f"Unknown matching strategy '{name}'. Must be one of: {sorted(MATCHERS)}")


def count_matching_commands(
    technology: str,
    commands: Iterable[str],
    matcher: TechnologyMatcher,
) -> int:
    """Count the commands that mention a technology."""
    return sum(1 for command in commands if matcher.matches(technology, command))
