"""
Extraction of delays and durations from moderator instructions.

Two phrase families are recognised:

- delay phrases ("after 2 minutes", "in 1 hour", "wait 30 seconds") answer
  *when* the action should start;
- duration phrases ("for 10 minutes", "watch for 5 min", "monitor 2 hours")
  answer *how long* to watch or wait.

Each family is an ordered table of one regex per unit. The first pattern that
matches wins; overlapping phrases are not disambiguated.
"""

from __future__ import annotations

import re
from datetime import timedelta
from typing import Optional, Pattern, Sequence, Tuple

from modtasks.datatypes.intent_datatypes import TimeExpression
from modtasks.tasks.clock import Clock, SystemClock
from modtasks.util.logger import get_logger

logger = get_logger("temporal_parser")

SECOND_MS = 1000
MINUTE_MS = 60 * SECOND_MS
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS

UNIT_MULTIPLIERS = {
    "second": SECOND_MS,
    "minute": MINUTE_MS,
    "hour": HOUR_MS,
    "day": DAY_MS,
}

# Unit spellings, grouped by the canonical unit they normalise to.
_UNIT_SPELLINGS: Sequence[Tuple[str, str]] = (
    ("second", r"seconds|second|secs|sec|s"),
    ("minute", r"minutes|minute|mins|min|m"),
    ("hour", r"hours|hour|hrs|hr|h"),
    ("day", r"days|day|d"),
)

DELAY_KEYWORDS = r"after|in|wait"
DURATION_KEYWORDS = r"watch\s+for|for|monitor|observe|check"

TIME_WORDS = ("after", "in", "for", "wait", "watch", "monitor", "minute", "hour", "second", "day")
_TIME_WORD_PATTERN = re.compile(r"\b(?:" + "|".join(TIME_WORDS) + r")", re.IGNORECASE)


def _build_family(keywords: str) -> Sequence[Pattern[str]]:
    return tuple(
        re.compile(rf"\b(?:{keywords})\s+(\d+)\s*({spellings})\b", re.IGNORECASE)
        for _, spellings in _UNIT_SPELLINGS
    )


DELAY_PATTERNS = _build_family(DELAY_KEYWORDS)
DURATION_PATTERNS = _build_family(DURATION_KEYWORDS)


def normalize_unit(unit: str) -> Optional[str]:
    """Map a unit spelling to its canonical name by first letter."""
    first = unit[:1].lower()
    for canonical in UNIT_MULTIPLIERS:
        if canonical.startswith(first):
            return canonical
    return None


def match_amount(text: str, patterns: Sequence[Pattern[str]]) -> Optional[int]:
    """Return the milliseconds named by the first matching pattern, if any."""
    for pattern in patterns:
        match = pattern.search(text)
        if not match:
            continue
        unit = normalize_unit(match.group(2))
        if unit is None:
            continue
        return int(match.group(1)) * UNIT_MULTIPLIERS[unit]
    return None


def format_duration(ms: int) -> str:
    """Render ``ms`` using its largest whole unit, e.g. ``"2 hours"``."""
    seconds = int(ms) // 1000
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24

    for amount, unit in ((days, "day"), (hours, "hour"), (minutes, "minute")):
        if amount > 0:
            return f"{amount} {unit}{'s' if amount != 1 else ''}"
    return f"{seconds} second{'s' if seconds != 1 else ''}"


class TemporalParser:
    """Parse time qualifiers out of free text.

    Args:
        clock: Source of "now" for ``execute_at``; defaults to the system clock.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()

    def parse(self, text: str) -> TimeExpression:
        result = TimeExpression(raw=text)
        lowered = text.lower()

        delay = match_amount(lowered, DELAY_PATTERNS)
        if delay is not None:
            result.delay_ms = delay
            result.execute_at = self.clock.now() + timedelta(milliseconds=delay)
            logger.debug("[TEMPORAL] Parsed delay of %s", format_duration(delay))

        duration = match_amount(lowered, DURATION_PATTERNS)
        if duration is not None:
            result.duration_ms = duration
            logger.debug("[TEMPORAL] Parsed duration of %s", format_duration(duration))

        return result

    def parse_delay(self, text: str) -> Optional[int]:
        return match_amount(text.lower(), DELAY_PATTERNS)

    def parse_duration(self, text: str) -> Optional[int]:
        return match_amount(text.lower(), DURATION_PATTERNS)

    @staticmethod
    def format_duration(ms: int) -> str:
        return format_duration(ms)

    @staticmethod
    def has_time_expression(text: str) -> bool:
        """Cheap check for any time-related word; used before a full parse."""
        return bool(_TIME_WORD_PATTERN.search(text))
