"""
Token counting and usage tracking.

Manages token calculations for language-model traffic.
"""

import math
from dataclasses import dataclass
from typing import Optional

# Fixed approximation: one token covers roughly three characters of text.
CHARS_PER_TOKEN = 3


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Holds exact token counts as reported by the model provider.
    """
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


def estimate_tokens(text: Optional[str]) -> int:
    """Estimate the token count of a piece of text.

    This is an approximation based on a fixed characters-per-token ratio,
    not a tokenizer. Use it only when the provider does not report exact
    counts.

    Args:
        text: Text to measure (None or empty counts as zero)

    Returns:
        Estimated number of tokens, rounded up
    """
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)
