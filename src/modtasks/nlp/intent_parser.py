"""
Complex intent parser for natural-language moderation instructions.

Turns text such as ``"timeout @alice after 2 minutes but watch them for 10
minutes and cancel if they say sorry"`` into a :class:`ComplexIntent`.

Every extraction step is driven by a small ordered table of patterns, so new
vocabulary is added by extending a table rather than by writing a new code
path:

- ``ACTION_KEYWORDS`` maps keyword families to the primary action;
- ``WATCH_PATTERNS`` capture the phrase a monitoring window watches for;
- ``CONDITION_PATTERNS`` capture literal ``if``/``unless`` clauses;
- ``CANCEL_PATTERNS`` capture "if X ... cancel" and "cancel if X" triggers.

The parser never raises on odd input. A missing action yields ``None``; every
other part is optional and only lowers the confidence score.
"""

from __future__ import annotations

import re
from typing import Iterable, List, Optional, Pattern, Sequence, Tuple

from modtasks.datatypes.action_datatypes import ActionType
from modtasks.datatypes.intent_datatypes import (
    CancelTrigger,
    CancelTriggerType,
    ComplexIntent,
    Condition,
    ConditionAction,
    ConditionType,
    IntentMonitoring,
    MentionedUser,
    TimeExpression,
)
from modtasks.nlp.temporal_parser import TemporalParser, format_duration
from modtasks.configuration.app_configuration import DEFAULT_MONITORING_DURATION_SECONDS
from modtasks.tasks.clock import Clock
from modtasks.util.logger import get_logger

logger = get_logger("intent_parser")

DEFAULT_WATCH_FOR = "any violation"

CONFIDENCE_WEIGHTS = {
    "action": 30,
    "target": 25,
    "time": 20,
    "monitoring": 15,
    "conditions": 10,
}

# Checked in order: "remove permanently" must resolve to a ban before the
# kick family sees "remove".
ACTION_KEYWORDS: Sequence[Tuple[ActionType, Sequence[str]]] = (
    (ActionType.TIMEOUT, ("timeout", "time out", "mute", "silence")),
    (ActionType.BAN, ("ban", "remove permanently")),
    (ActionType.KICK, ("kick", "remove")),
    (ActionType.WARN, ("warn", "warning", "caution")),
)

MONITORING_KEYWORDS = ("watch", "monitor", "observe", "check if", "see if")

COMPLEXITY_INDICATORS = (
    "if", "unless", "when", "after", "before",
    "watch", "monitor", "check",
    "then", "otherwise", "or else",
    "cancel if", "stop if",
)

_PRONOUN = r"(?:he|she|they|the user|user)"
_OBJECT = r"(?:him|her|them|the user|user)"
_SAYS = r"(?:says?|posts?|writes?|types?|uses?)"
_CLAUSE_END = r"(?=\s*(?:[,.;!?]|$|\bthen\b|\bbut\b|\band\b|\bor\b|\bfor\b|\bafter\b))"
_MONITOR_VERB = r"\b(?:watch|monitor|observe|check if|see if)\b"

WATCH_PATTERNS: Sequence[Pattern[str]] = (
    # watch them for "spam"
    re.compile(_MONITOR_VERB + r"[^'\"]*?(?<![a-z])['\"]([^'\"]+)['\"]", re.IGNORECASE),
    # watch them to see if they say slurs / check if they post links
    re.compile(
        _MONITOR_VERB
        + rf"(?:\s+{_OBJECT})?(?:\s+(?:for|to see))?(?:\s+if)?(?:\s+{_PRONOUN})?\s+{_SAYS}\s+(.+?)"
        + _CLAUSE_END,
        re.IGNORECASE,
    ),
    # watch him for spam (but not "watch him for 10 minutes")
    re.compile(
        rf"\b(?:watch|monitor|observe)(?:\s+{_OBJECT})?\s+for\s+(?!\d)([a-z][^,.;!?]*?)" + _CLAUSE_END,
        re.IGNORECASE,
    ),
)

CONDITION_PATTERNS: Sequence[Tuple[ConditionType, ConditionAction, Pattern[str]]] = (
    (
        ConditionType.IF,
        ConditionAction.EXECUTE,
        re.compile(rf"\bif\s+(?:{_PRONOUN}\s+)?([^,]+?)(?=\s+then\b|\s+do\b|\s*,|$)", re.IGNORECASE),
    ),
    (
        ConditionType.UNLESS,
        ConditionAction.CANCEL,
        re.compile(r"\bunless\s+([^,]+?)(?=\s*,|$)", re.IGNORECASE),
    ),
)

_CANCEL_VERB = r"(?:cancel|stop|don't|dont|do not)"

CANCEL_PATTERNS: Sequence[Pattern[str]] = (
    # if they say sorry, cancel
    re.compile(
        rf"\bif\s+(?:{_PRONOUN}\s+)?(?:{_SAYS}\s+)?['\"]?([^'\",]+?)['\"]?[\s,]*(?:then\s+)?{_CANCEL_VERB}\b",
        re.IGNORECASE,
    ),
    # cancel if they say "sorry"
    re.compile(
        rf"\b{_CANCEL_VERB}(?:\s+it)?\s+if\s+(?:{_PRONOUN}\s+)?(?:{_SAYS}\s+)?['\"]?([^'\",.;!?]+?)['\"]?"
        + r"(?=\s*(?:[,.;!?]|$|\bthen\b|\bbut\b|\band\b|\bor\b))",
        re.IGNORECASE,
    ),
)


def _contains_keyword(text: str, keywords: Iterable[str]) -> bool:
    return any(re.search(rf"\b{re.escape(keyword)}", text) for keyword in keywords)


def calculate_confidence(
    *,
    has_action: bool,
    has_target: bool,
    has_time_expression: bool,
    has_monitoring: bool,
    has_conditions: bool,
) -> int:
    """Weighted sum of the extracted parts, capped at 100."""
    confidence = 0
    if has_action:
        confidence += CONFIDENCE_WEIGHTS["action"]
    if has_target:
        confidence += CONFIDENCE_WEIGHTS["target"]
    if has_time_expression:
        confidence += CONFIDENCE_WEIGHTS["time"]
    if has_monitoring:
        confidence += CONFIDENCE_WEIGHTS["monitoring"]
    if has_conditions:
        confidence += CONFIDENCE_WEIGHTS["conditions"]
    return min(confidence, 100)


class ComplexIntentParser:
    """Extract a structured moderation intent from free text.

    Args:
        temporal_parser: Parser used for delays and durations.
        clock: Clock for a default temporal parser when none is given.
        default_monitoring_duration_ms: Watch window used when the text names
            neither a duration nor a delay.
    """

    def __init__(
        self,
        temporal_parser: TemporalParser | None = None,
        *,
        clock: Clock | None = None,
        default_monitoring_duration_ms: int = int(DEFAULT_MONITORING_DURATION_SECONDS * 1000),
    ) -> None:
        self.temporal_parser = temporal_parser or TemporalParser(clock)
        self.default_monitoring_duration_ms = default_monitoring_duration_ms

    def parse(self, text: str, mentioned_users: Sequence[MentionedUser] = ()) -> Optional[ComplexIntent]:
        """Parse ``text``; returns ``None`` when no primary action is named."""
        lowered = text.lower()

        primary_action = self.extract_primary_action(lowered)
        if primary_action is None:
            logger.debug("[INTENT] No primary action in %r", text[:80])
            return None

        target = None
        if mentioned_users:
            first = mentioned_users[0]
            target = MentionedUser(user_id=str(first.user_id), user_name=first.user_name)

        time_expression = self.temporal_parser.parse(text)
        monitoring = self.extract_monitoring(lowered, time_expression)
        conditions = self.extract_conditions(lowered)
        cancellation_triggers = self.extract_cancellation_triggers(lowered)

        confidence = calculate_confidence(
            has_action=True,
            has_target=target is not None,
            has_time_expression=not time_expression.is_empty,
            has_monitoring=monitoring is not None,
            has_conditions=bool(conditions),
        )

        intent = ComplexIntent(
            primary_action=primary_action,
            raw=text,
            confidence=confidence,
            target=target,
            time_expression=time_expression,
            monitoring=monitoring,
            conditions=conditions,
            cancellation_triggers=cancellation_triggers,
        )
        logger.debug(
            "[INTENT] Parsed %s%s with %d%% confidence (%d cancel triggers)",
            primary_action,
            f" on {target.user_name}" if target else "",
            confidence,
            len(cancellation_triggers),
        )
        return intent

    # ------------------------------------------------------------------
    # Extraction steps
    # ------------------------------------------------------------------

    @staticmethod
    def extract_primary_action(text: str) -> Optional[ActionType]:
        for action, keywords in ACTION_KEYWORDS:
            if _contains_keyword(text, keywords):
                return action
        return None

    def extract_monitoring(self, text: str, time_expression: TimeExpression) -> Optional[IntentMonitoring]:
        if not _contains_keyword(text, MONITORING_KEYWORDS):
            return None

        watch_for = DEFAULT_WATCH_FOR
        for pattern in WATCH_PATTERNS:
            match = pattern.search(text)
            if match and match.group(1).strip():
                watch_for = match.group(1).strip()
                break

        duration = (
            time_expression.duration_ms
            or time_expression.delay_ms
            or self.default_monitoring_duration_ms
        )
        return IntentMonitoring(watch_for=watch_for, duration_ms=duration)

    @staticmethod
    def extract_conditions(text: str) -> List[Condition]:
        conditions: List[Condition] = []
        for condition_type, action, pattern in CONDITION_PATTERNS:
            match = pattern.search(text)
            if match and match.group(1).strip():
                conditions.append(Condition(type=condition_type, check=match.group(1).strip(), action=action))
        return conditions

    @staticmethod
    def extract_cancellation_triggers(text: str) -> List[CancelTrigger]:
        triggers: List[CancelTrigger] = []
        seen: set[str] = set()
        for pattern in CANCEL_PATTERNS:
            match = pattern.search(text)
            if not match:
                continue
            phrase = match.group(1).strip()
            if phrase and phrase not in seen:
                seen.add(phrase)
                triggers.append(CancelTrigger(pattern=phrase, type=CancelTriggerType.MESSAGE))
        return triggers

    # ------------------------------------------------------------------
    # Helpers for callers
    # ------------------------------------------------------------------

    @staticmethod
    def is_complex_intent(text: str) -> bool:
        """Fast pre-filter: does the text carry any structural keyword?"""
        return _contains_keyword(text.lower(), COMPLEXITY_INDICATORS)

    def describe_intent(self, intent: ComplexIntent) -> str:
        """Operator-facing confirmation of what will happen."""
        parts = [f"I'll {intent.primary_action}"]

        if intent.target:
            parts.append(intent.target.user_name)

        if intent.time_expression and intent.time_expression.delay_ms:
            parts.append(f"after {format_duration(intent.time_expression.delay_ms)}")

        if intent.monitoring:
            parts.append(f"but first I'll watch them for {format_duration(intent.monitoring.duration_ms)}")
            if intent.cancellation_triggers:
                trigger = intent.cancellation_triggers[0]
                parts.append(f"- if they say \"{trigger.pattern}\", I'll cancel the {intent.primary_action}")
            else:
                parts.append("to see if they improve")
        elif intent.cancellation_triggers:
            trigger = intent.cancellation_triggers[0]
            parts.append(f"unless they say \"{trigger.pattern}\" first")

        for condition in intent.conditions:
            if condition.type is ConditionType.IF and condition.action is ConditionAction.EXECUTE:
                parts.append(f"if {condition.check}")

        return " ".join(parts)
