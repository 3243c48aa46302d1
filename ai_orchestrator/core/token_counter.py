"""
Token counting and usage tracking.

Manages token calculations for provider responses and pre-flight estimates.
"""

import math
from dataclasses import dataclass

# Rough heuristic used when a provider omits usage: ~4 characters per token
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation."""
    prompt_tokens: int
    completion_tokens: int

    def __post_init__(self):
        if self.prompt_tokens < 0 or self.completion_tokens < 0:
            raise ValueError("token counts cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


def estimate_tokens(text: str) -> int:
    """Estimate the token count of ``text`` without a tokenizer."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)
