"""
Token counting and usage tracking.

Holds reported token usage for an inference call and a rough estimator
for backends that do not report usage.
"""

import math
from dataclasses import dataclass

# Rough characters-per-token ratio for English prompts.
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Contains exact token counts as reported by the inference backend.
    """
    prompt_tokens: int
    completion_tokens: int

    def __post_init__(self):
        if self.prompt_tokens < 0:
            raise ValueError("prompt_tokens cannot be negative")
        if self.completion_tokens < 0:
            raise ValueError("completion_tokens cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


def estimate_tokens(text: str) -> int:
    """Estimate the token count of ``text`` (ceil of chars / 4)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_usage(prompt: str, completion: str) -> TokenUsage:
    """Estimated usage for a prompt/completion pair."""
    return TokenUsage(
        prompt_tokens=estimate_tokens(prompt),
        completion_tokens=estimate_tokens(completion)
    )
