"""
Token counting and usage tracking.

Manages the four token components reported per API call.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Contains exact token counts without estimation or model-specific logic.
    """
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    @property
    def display_tokens(self) -> int:
        """Tokens shown to users (input + output)."""
        return self.input_tokens + self.output_tokens

    @property
    def total_tokens(self) -> int:
        """Total tokens used, including cache creation and cache reads."""
        return (self.input_tokens + self.output_tokens
                + self.cache_creation_tokens + self.cache_read_tokens)
