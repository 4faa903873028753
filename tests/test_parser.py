"""
Tests for usage log parsing.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from ai_session_meter.data.models import UsageEvent, normalise_model_name
from ai_session_meter.data.parser import (
    ParseError,
    deduplicate_events,
    filter_by_time,
    parse_jsonl_line,
    parse_timestamp,
    sort_events,
)


def _line(**overrides) -> str:
    record = {
        "type": "assistant",
        "timestamp": "2025-03-10T10:15:30.123Z",
        "requestId": "req_1",
        "message": {
            "id": "msg_1",
            "model": "claude-sonnet-4-5-20250929",
            "usage": {
                "input_tokens": 1000,
                "output_tokens": 500,
                "cache_creation_input_tokens": 200,
                "cache_read_input_tokens": 3000,
            },
        },
    }
    record.update(overrides)
    return json.dumps(record)


class TestParseTimestamp:
    """Test timestamp parsing."""

    def test_zulu_suffix(self):
        assert parse_timestamp("2025-03-10T10:15:30Z") == datetime(2025, 3, 10, 10, 15, 30, tzinfo=timezone.utc)

    def test_fractional_seconds_and_offset(self):
        parsed = parse_timestamp("2025-03-10T12:15:30.123456+02:00")

        assert parsed == datetime(2025, 3, 10, 10, 15, 30, 123456, tzinfo=timezone.utc)

    def test_naive_assumed_utc(self):
        assert parse_timestamp("2025-03-10T10:15:30").tzinfo == timezone.utc

    @pytest.mark.parametrize("value", ["", "yesterday", None, 42])
    def test_invalid(self, value):
        with pytest.raises(ParseError):
            parse_timestamp(value)


class TestParseJsonlLine:
    """Test turning log records into usage events."""

    def test_assistant_record(self):
        event = parse_jsonl_line(_line())

        assert event.input_tokens == 1000
        assert event.output_tokens == 500
        assert event.cache_creation_tokens == 200
        assert event.cache_read_tokens == 3000
        assert event.model == "claude-sonnet-4-5-20250929"
        assert event.message_id == "msg_1"
        assert event.request_id == "req_1"
        # 1000*3 + 500*15 + 200*3.75 + 3000*0.30 per 1M
        assert event.cost_usd == pytest.approx(0.01215)

    def test_non_assistant_skipped(self):
        assert parse_jsonl_line(_line(type="user")) is None

    def test_zero_usage_skipped(self):
        line = _line(message={"id": "m", "usage": {"input_tokens": 0, "output_tokens": 0}})

        assert parse_jsonl_line(line) is None

    def test_missing_usage_skipped(self):
        assert parse_jsonl_line(_line(message={"id": "m"})) is None
        assert parse_jsonl_line(_line(message="not a dict")) is None

    def test_invalid_json(self):
        with pytest.raises(ParseError):
            parse_jsonl_line("{not json")

    def test_empty_line(self):
        with pytest.raises(ParseError):
            parse_jsonl_line("   ")

    def test_bad_timestamp(self):
        with pytest.raises(ParseError):
            parse_jsonl_line(_line(timestamp="soon"))

    @pytest.mark.parametrize("message,overrides", [
        ({"model": 123}, {}),
        ({"id": ["msg_1"]}, {}),
        ({}, {"requestId": 42}),
    ])
    def test_non_string_identifiers_rejected(self, message, overrides):
        """Test a non-string model or id is a malformed record, not a crash."""
        record = json.loads(_line(**overrides))
        record["message"].update(message)

        with pytest.raises(ParseError):
            parse_jsonl_line(json.dumps(record))

    def test_missing_identifiers_default_empty(self):
        record = json.loads(_line())
        del record["requestId"]
        del record["message"]["model"]

        event = parse_jsonl_line(json.dumps(record))

        assert event.request_id == ""
        assert event.model == ""


class TestEventHelpers:
    """Test deduplication, time filtering and ordering."""

    def _event(self, minutes_ago: int, msg: str = "m", req: str = "r") -> UsageEvent:
        now = datetime(2025, 3, 10, 12, tzinfo=timezone.utc)
        return UsageEvent(
            timestamp=now - timedelta(minutes=minutes_ago),
            input_tokens=1,
            output_tokens=1,
            message_id=msg,
            request_id=req,
        )

    def test_deduplicate_keeps_first(self):
        first = self._event(10, msg="a")
        events = [first, self._event(5, msg="a"), self._event(5, msg="b")]

        result = deduplicate_events(events)

        assert len(result) == 2
        assert result[0] is first

    def test_dedup_key_combines_ids(self):
        assert self._event(1, "a", "x").dedup_key != self._event(1, "a", "y").dedup_key

    def test_filter_by_time(self):
        now = datetime(2025, 3, 10, 12, tzinfo=timezone.utc)
        events = [self._event(30), self._event(90), self._event(60)]

        kept = filter_by_time(events, 1, now)

        assert [e.timestamp for e in kept] == [now - timedelta(minutes=30)]

    def test_filter_disabled(self):
        events = [self._event(30), self._event(9000)]

        assert filter_by_time(events, 0, datetime(2025, 3, 10, 12, tzinfo=timezone.utc)) == events

    def test_sort_events(self):
        events = [self._event(5, "a"), self._event(50, "b"), self._event(20, "c")]

        assert [e.message_id for e in sort_events(events)] == ["b", "c", "a"]


class TestUsageEvent:
    """Test UsageEvent validation and derived totals."""

    def test_negative_tokens_rejected(self):
        with pytest.raises(ValueError):
            UsageEvent(timestamp=datetime(2025, 1, 1, tzinfo=timezone.utc), input_tokens=-1, output_tokens=0)

    def test_naive_timestamp_rejected(self):
        with pytest.raises(ValueError):
            UsageEvent(timestamp=datetime(2025, 1, 1), input_tokens=1, output_tokens=0)

    def test_totals(self):
        event = UsageEvent(timestamp=datetime(2025, 1, 1, tzinfo=timezone.utc), input_tokens=10,
                           output_tokens=5, cache_creation_tokens=3, cache_read_tokens=2)

        assert event.display_tokens == 15
        assert event.total_tokens == 20


class TestNormaliseModelName:
    """Test model family normalisation."""

    @pytest.mark.parametrize("raw,expected", [
        ("claude-opus-4-6", "claude-opus-4-6"),
        ("claude-opus-4-5-20251101", "claude-opus-4-5"),
        ("claude-opus-4-1-20250805", "claude-opus-4-1"),
        ("claude-3-opus-20240229", "claude-3-opus"),
        ("claude-sonnet-4-5-20250929", "claude-sonnet-4-5"),
        ("claude-sonnet-4-20250514", "claude-sonnet-4"),
        ("claude-3-5-sonnet-20241022", "claude-3-5-sonnet"),
        ("claude-haiku-4-5-20251001", "claude-haiku-4-5"),
        ("claude-3-5-haiku-20241022", "claude-3-5-haiku"),
        ("gpt-4o", "gpt-4o"),
    ])
    def test_normalise(self, raw, expected):
        assert normalise_model_name(raw) == expected
