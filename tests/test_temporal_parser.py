from datetime import timedelta

import pytest

from modtasks.nlp.temporal_parser import (
    HOUR_MS,
    MINUTE_MS,
    SECOND_MS,
    TemporalParser,
    format_duration,
    normalize_unit,
)


@pytest.fixture()
def parser(clock) -> TemporalParser:
    return TemporalParser(clock)


def test_parse_delay_and_duration_together(parser, clock) -> None:
    result = parser.parse("timeout @alice for 10 minutes after 2 minutes")

    assert result.delay_ms == 2 * MINUTE_MS
    assert result.duration_ms == 10 * MINUTE_MS
    assert result.execute_at == clock.now() + timedelta(minutes=2)
    assert not result.is_empty


@pytest.mark.parametrize(
    "text, expected",
    [
        ("ban him after 30 seconds", 30 * SECOND_MS),
        ("ban him in 5m", 5 * MINUTE_MS),
        ("ban him after 2 hours", 2 * HOUR_MS),
        ("wait 3 days then ban", 3 * 24 * HOUR_MS),
        ("kick after 45 secs", 45 * SECOND_MS),
        ("kick in 1 hr", HOUR_MS),
    ],
)
def test_parse_delay_units(parser, text, expected) -> None:
    assert parser.parse_delay(text) == expected


@pytest.mark.parametrize(
    "text, expected",
    [
        ("watch for 10 minutes", 10 * MINUTE_MS),
        ("monitor 2 hours", 2 * HOUR_MS),
        ("observe 15 min", 15 * MINUTE_MS),
        ("timeout for 1 day", 24 * HOUR_MS),
    ],
)
def test_parse_duration_units(parser, text, expected) -> None:
    assert parser.parse_duration(text) == expected


def test_parse_without_time_expression_is_empty(parser) -> None:
    result = parser.parse("ban @bob now")

    assert result.delay_ms is None
    assert result.duration_ms is None
    assert result.execute_at is None
    assert result.is_empty


def test_units_need_a_word_boundary(parser) -> None:
    # "in 5 mango" is not a delay
    assert parser.parse_delay("meet in 5 mangos") is None


def test_normalize_unit_uses_first_letter() -> None:
    assert normalize_unit("mins") == "minute"
    assert normalize_unit("s") == "second"
    assert normalize_unit("Hours") == "hour"
    assert normalize_unit("d") == "day"
    assert normalize_unit("x") is None


@pytest.mark.parametrize(
    "ms, expected",
    [
        (0, "0 seconds"),
        (1_000, "1 second"),
        (45_000, "45 seconds"),
        (60_000, "1 minute"),
        (90_000, "1 minute"),
        (2 * HOUR_MS, "2 hours"),
        (24 * HOUR_MS, "1 day"),
        (3 * 24 * HOUR_MS, "3 days"),
    ],
)
def test_format_duration_uses_largest_whole_unit(ms, expected) -> None:
    assert format_duration(ms) == expected
    assert TemporalParser.format_duration(ms) == expected


def test_has_time_expression() -> None:
    assert TemporalParser.has_time_expression("ban him after 5 minutes")
    assert TemporalParser.has_time_expression("Watch them")
    assert not TemporalParser.has_time_expression("ban him")
