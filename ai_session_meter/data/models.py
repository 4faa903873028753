"""
Data models for usage ingestion.

Defines the immutable usage event and the externally reported utilization.
"""

import hashlib
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of a single metered API call.

    Events are produced by the ingestion layer already sorted, deduplicated
    and time-filtered. Timestamps are timezone-aware UTC.
    """
    timestamp: datetime
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost_usd: float = 0.0
    model: str = ""
    message_id: str = ""
    request_id: str = ""

    def __post_init__(self):
        """Validate token counts are non-negative."""
        for name in ("input_tokens", "output_tokens",
                     "cache_creation_tokens", "cache_read_tokens"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")
        if self.timestamp.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")

    @property
    def total_tokens(self) -> int:
        """All four token components, including cache traffic."""
        return (self.input_tokens + self.output_tokens
                + self.cache_creation_tokens + self.cache_read_tokens)

    @property
    def display_tokens(self) -> int:
        """Input and output tokens only."""
        return self.input_tokens + self.output_tokens

    @property
    def dedup_key(self) -> str:
        """Hash of message id and request id used for deduplication."""
        combined = f"{self.message_id}:{self.request_id}"
        return hashlib.sha256(combined.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ExternalUtilization:
    """Utilization percentage reported by the usage API for one period."""
    percent_used: float
    resets_at: datetime
    fetched_at: datetime
    is_stale: bool = False

    def cleared(self) -> "ExternalUtilization":
        """Return a copy reporting 0% and flagged as stale."""
        return replace(self, percent_used=0.0, is_stale=True)


@dataclass(frozen=True)
class ExternalUsage:
    """One poll of the usage API.

    Any period may be absent; consumers must omit whatever depends on it.
    The per-model weekly periods track separate Sonnet and Opus quotas.
    """
    session: Optional[ExternalUtilization] = None
    weekly: Optional[ExternalUtilization] = None
    weekly_sonnet: Optional[ExternalUtilization] = None
    weekly_opus: Optional[ExternalUtilization] = None


def normalise_model_name(model: str) -> str:
    """Map a vendor model identifier to a canonical family name.

    Unknown names are returned unchanged.

    Args:
        model: Raw model identifier from the usage log

    Returns:
        Canonical model name such as ``claude-sonnet-4-5``
    """
    name = model.lower()

    def _has(*versions: str) -> bool:
        return any(v in name for v in versions)

    if "opus" in name:
        if _has("4-6", "4.6"):
            return "claude-opus-4-6"
        if _has("4-5", "4.5"):
            return "claude-opus-4-5"
        if _has("4-1", "4.1"):
            return "claude-opus-4-1"
        if "3" in name:
            return "claude-3-opus"
        return "claude-opus-4"
    if "sonnet" in name:
        if _has("4-6", "4.6"):
            return "claude-sonnet-4-6"
        if _has("4-5", "4.5"):
            return "claude-sonnet-4-5"
        if _has("3-5", "3.5"):
            return "claude-3-5-sonnet"
        if "4" in name:
            return "claude-sonnet-4"
        return "claude-3-sonnet"
    if "haiku" in name:
        if _has("4-5", "4.5"):
            return "claude-haiku-4-5"
        if _has("3-5", "3.5"):
            return "claude-3-5-haiku"
        return "claude-3-haiku"
    return model
