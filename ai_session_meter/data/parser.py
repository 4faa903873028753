"""
Usage log parsing.

Converts raw JSONL records into UsageEvents and applies the ingestion
rules: deduplication, time filtering and chronological ordering.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from .models import UsageEvent
from ai_session_meter.core.pricing import calculate_cost
from ai_session_meter.core.token_counter import TokenUsage


class ParseError(ValueError):
    """Raised when a log line cannot be turned into a usage event."""


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive timestamps are assumed to be UTC.

    Raises:
        ParseError: If the value is not a recognised timestamp
    """
    if not isinstance(value, str) or not value:
        raise ParseError(f"unable to parse timestamp: {value!r}")

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ParseError(f"unable to parse timestamp: {value}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _string_field(record: dict, key: str) -> str:
    """Return an optional string field, rejecting values of any other type."""
    value = record.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ParseError(f"field {key!r} must be a string, got {type(value).__name__}")
    return value


def parse_jsonl_line(line: str) -> Optional[UsageEvent]:
    """Parse a single log line.

    Only assistant messages carrying usage are events; everything else is
    an expected skip and yields None.

    Args:
        line: One line of a JSONL usage log

    Returns:
        UsageEvent, or None for records that are not usage events

    Raises:
        ParseError: If the line is empty, not JSON, has a bad timestamp
            or carries a non-string model or id
    """
    if not line or not line.strip():
        raise ParseError("empty line")

    try:
        raw = json.loads(line)
    except json.JSONDecodeError as e:
        raise ParseError(f"unmarshal error: {e}")

    if not isinstance(raw, dict) or raw.get("type") != "assistant":
        return None

    message = raw.get("message") or {}
    usage = message.get("usage") if isinstance(message, dict) else None
    if not isinstance(usage, dict):
        return None
    input_tokens = int(usage.get("input_tokens") or 0)
    output_tokens = int(usage.get("output_tokens") or 0)
    if input_tokens == 0 and output_tokens == 0:
        return None

    timestamp = parse_timestamp(raw.get("timestamp", ""))
    model = _string_field(message, "model")
    message_id = _string_field(message, "id")
    request_id = _string_field(raw, "requestId")
    token_usage = TokenUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_creation_tokens=int(usage.get("cache_creation_input_tokens") or 0),
        cache_read_tokens=int(usage.get("cache_read_input_tokens") or 0),
    )

    return UsageEvent(
        timestamp=timestamp,
        input_tokens=token_usage.input_tokens,
        output_tokens=token_usage.output_tokens,
        cache_creation_tokens=token_usage.cache_creation_tokens,
        cache_read_tokens=token_usage.cache_read_tokens,
        cost_usd=calculate_cost(model, token_usage),
        model=model,
        message_id=message_id,
        request_id=request_id,
    )


def deduplicate_events(events: Iterable[UsageEvent]) -> List[UsageEvent]:
    """Drop repeated events, keeping the first occurrence of each dedup key."""
    seen = set()
    result = []
    for event in events:
        key = event.dedup_key
        if key not in seen:
            seen.add(key)
            result.append(event)
    return result


def filter_by_time(events: Iterable[UsageEvent], hours_back: int, now: datetime) -> List[UsageEvent]:
    """Keep events strictly newer than ``now - hours_back``.

    A non-positive ``hours_back`` disables filtering.
    """
    if hours_back <= 0:
        return list(events)
    cutoff = now - timedelta(hours=hours_back)
    return [e for e in events if e.timestamp > cutoff]


def sort_events(events: Iterable[UsageEvent]) -> List[UsageEvent]:
    """Return events ordered oldest first (stable for equal timestamps)."""
    return sorted(events, key=lambda e: e.timestamp)
