import pytest

from modtasks.datatypes.action_datatypes import ActionType
from modtasks.datatypes.intent_datatypes import (
    ConditionAction,
    ConditionType,
    MentionedUser,
)
from modtasks.nlp.intent_parser import (
    DEFAULT_WATCH_FOR,
    ComplexIntentParser,
    calculate_confidence,
)
from modtasks.nlp.temporal_parser import MINUTE_MS

ALICE = MentionedUser(user_id="1", user_name="alice")


@pytest.fixture()
def parser(clock) -> ComplexIntentParser:
    return ComplexIntentParser(clock=clock, default_monitoring_duration_ms=5 * MINUTE_MS)


def test_parse_returns_none_without_action(parser) -> None:
    assert parser.parse("hello there, how is everyone doing?", [ALICE]) is None


def test_delay_and_duration_scenario(parser) -> None:
    intent = parser.parse("timeout @alice for 10 minutes after 2 minutes", [ALICE])

    assert intent is not None
    assert intent.primary_action is ActionType.TIMEOUT
    assert intent.target == ALICE
    assert intent.time_expression.delay_ms == 2 * MINUTE_MS
    assert intent.time_expression.duration_ms == 10 * MINUTE_MS
    assert intent.monitoring is None
    assert intent.confidence >= 55


@pytest.mark.parametrize(
    "text, expected",
    [
        ("please mute @alice", ActionType.TIMEOUT),
        ("time out @alice", ActionType.TIMEOUT),
        ("remove permanently @alice", ActionType.BAN),
        ("ban @alice", ActionType.BAN),
        ("remove @alice from the server", ActionType.KICK),
        ("kick @alice", ActionType.KICK),
        ("give @alice a warning", ActionType.WARN),
    ],
)
def test_primary_action_keywords(parser, text, expected) -> None:
    intent = parser.parse(text, [ALICE])
    assert intent is not None
    assert intent.primary_action is expected


def test_only_first_mention_is_the_target(parser) -> None:
    bob = MentionedUser(user_id="2", user_name="bob")
    intent = parser.parse("ban @alice and @bob", [ALICE, bob])
    assert intent.target == ALICE


def test_monitoring_with_cancel_trigger(parser) -> None:
    intent = parser.parse(
        "timeout @alice after 5 minutes but watch her for 10 minutes and cancel if she says sorry",
        [ALICE],
    )

    assert intent.primary_action is ActionType.TIMEOUT
    assert intent.monitoring is not None
    assert intent.monitoring.watch_for == DEFAULT_WATCH_FOR
    assert intent.monitoring.duration_ms == 10 * MINUTE_MS
    assert [t.pattern for t in intent.cancellation_triggers] == ["sorry"]
    assert intent.confidence == 100


def test_quoted_watch_phrase_and_default_duration(parser) -> None:
    intent = parser.parse('mute @alice and watch him for "spam links"', [ALICE])

    assert intent.monitoring.watch_for == "spam links"
    assert intent.monitoring.duration_ms == 5 * MINUTE_MS


def test_watch_phrase_after_say_verb(parser) -> None:
    intent = parser.parse("ban @alice but watch them to see if they say slurs", [ALICE])
    assert intent.monitoring.watch_for == "slurs"


def test_unquoted_watch_phrase(parser) -> None:
    intent = parser.parse("kick @alice, watch them for spam", [ALICE])
    assert intent.monitoring.watch_for == "spam"


def test_monitoring_duration_falls_back_to_delay(parser) -> None:
    intent = parser.parse('timeout @alice after 10 minutes but watch her for "apology"', [ALICE])

    assert intent.monitoring.watch_for == "apology"
    assert intent.monitoring.duration_ms == 10 * MINUTE_MS


def test_cancel_trigger_before_verb(parser) -> None:
    intent = parser.parse("ban @alice in 1 hour, if they say sorry, cancel", [ALICE])
    assert [t.pattern for t in intent.cancellation_triggers] == ["sorry"]


def test_quoted_cancel_trigger(parser) -> None:
    intent = parser.parse('kick @alice after 2 minutes, cancel if they say "my bad"', [ALICE])
    assert [t.pattern for t in intent.cancellation_triggers] == ["my bad"]


def test_extract_conditions() -> None:
    conditions = ComplexIntentParser.extract_conditions("ban @alice unless they apologize")

    assert len(conditions) == 1
    assert conditions[0].type is ConditionType.UNLESS
    assert conditions[0].action is ConditionAction.CANCEL
    assert conditions[0].check == "they apologize"

    conditions = ComplexIntentParser.extract_conditions("kick him if he posts links again")
    assert conditions[0].type is ConditionType.IF
    assert conditions[0].action is ConditionAction.EXECUTE
    assert conditions[0].check == "posts links again"


def test_missing_target_lowers_confidence(parser) -> None:
    with_target = parser.parse("ban @alice after 5 minutes", [ALICE])
    without_target = parser.parse("ban @alice after 5 minutes")

    assert without_target.target is None
    assert with_target.confidence - without_target.confidence == 25


def test_confidence_is_monotone_and_capped() -> None:
    parts = dict(has_action=True, has_target=False, has_time_expression=False, has_monitoring=False, has_conditions=False)
    previous = calculate_confidence(**parts)
    assert previous == 30
    for key in ("has_target", "has_time_expression", "has_monitoring", "has_conditions"):
        parts[key] = True
        current = calculate_confidence(**parts)
        assert current > previous
        previous = current
    assert previous == 100


def test_is_complex_intent() -> None:
    assert ComplexIntentParser.is_complex_intent("ban him after 5 minutes")
    assert ComplexIntentParser.is_complex_intent("Kick her UNLESS she stops")
    assert not ComplexIntentParser.is_complex_intent("ban him")


def test_describe_intent(parser) -> None:
    intent = parser.parse(
        "timeout @alice after 5 minutes but watch her for 10 minutes and cancel if she says sorry",
        [ALICE],
    )
    description = parser.describe_intent(intent)

    assert description.startswith("I'll timeout alice after 5 minutes")
    assert "watch them for 10 minutes" in description
    assert 'if they say "sorry"' in description


def test_describe_intent_without_monitoring(parser) -> None:
    intent = parser.parse("kick @alice after 2 minutes, cancel if they say sorry", [ALICE])
    description = parser.describe_intent(intent)

    assert description.startswith("I'll kick alice after 2 minutes")
    assert 'unless they say "sorry" first' in description
