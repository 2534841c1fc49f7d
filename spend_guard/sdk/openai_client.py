"""
OpenAI inference backend.

Runs enrichment prompts through chat completions, prices each call from
its reported token usage and records a usage event for cost tracking.
"""

import sqlite3
from datetime import datetime, timezone
from typing import Any, Optional

import openai
from loguru import logger
from openai import OpenAI

from ..backends.base import InferenceParams, InferenceResponse
from ..core.errors import BackendError, SpendGuardError, TransientBackendError
from ..core.pricing import PRICING_TABLE, calculate_cost
from ..core.token_counter import TokenUsage
from ..storage.models import EnrichmentUsageEvent
from ..storage.repository import insert_usage_event

SYSTEM_PROMPT = (
    "You are a cloud cost analyst. Answer only with the JSON document requested."
)


def translate_openai_error(error: Exception) -> SpendGuardError:
    """Map an openai exception onto the error taxonomy."""
    if isinstance(error, (openai.APITimeoutError, openai.APIConnectionError)):
        return TransientBackendError(f"inference: {error}")
    if isinstance(error, (openai.RateLimitError, openai.InternalServerError)):
        return TransientBackendError(f"inference: {error}")
    if isinstance(error, openai.APIStatusError) and error.status_code >= 500:
        return TransientBackendError(f"inference: {error}")
    return BackendError(f"inference: {error}")


class OpenAIInferenceBackend:
    """InferenceBackend over OpenAI chat completions.

    Usage events are appended to the SQLite ledger when ``db_path`` is set.
    A failed ledger write is logged at ERROR and the priced response is
    still returned, so spend caps keep counting a call that was billed.
    """

    def __init__(
        self,
        model: str,
        db_path: Optional[str] = None,
        client: Any = None
    ):
        """Initialize the backend.

        Args:
            model: OpenAI model name, must be in the pricing table
            db_path: Usage ledger database, or None to skip recording
            client: Preconfigured OpenAI client (defaults to OpenAI())

        Raises:
            ValueError: If model is missing or has no pricing
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        PRICING_TABLE.get_pricing(model)

        self.model = model
        self.db_path = db_path
        self.client = client or OpenAI()

    def invoke(self, prompt: str, params: InferenceParams) -> InferenceResponse:
        """Run one completion.

        Raises:
            TransientBackendError: Timeouts, connection failures, 429 and 5xx
            BackendError: Any other API rejection or a response without usage
        """
        if not prompt:
            raise ValueError("prompt is required and cannot be empty")

        try:
            response = self.client.chat.completions.create(
                model=params.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=params.temperature,
                max_tokens=params.max_tokens
            )
        except openai.OpenAIError as e:
            raise translate_openai_error(e) from e

        usage = response.usage
        if not usage:
            raise BackendError("OpenAI response missing usage information")

        token_usage = TokenUsage(
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens
        )
        cost = calculate_cost(params.model, token_usage)

        if self.db_path:
            event = EnrichmentUsageEvent(
                timestamp=datetime.now(timezone.utc),
                operation=params.operation,
                model=params.model,
                prompt_tokens=token_usage.prompt_tokens,
                completion_tokens=token_usage.completion_tokens,
                total_tokens=token_usage.total_tokens,
                estimated_cost=cost,
                request_id=response.id
            )
            try:
                insert_usage_event(event, self.db_path)
            except sqlite3.Error as e:
                # The call is already billed; the caller still needs its cost.
                logger.error(
                    f"Failed to record usage for {response.id} (${cost:.6f}, {params.operation}): {e}"
                )

        text = response.choices[0].message.content if response.choices else None
        return InferenceResponse(
            text=text or "",
            model=params.model,
            cost=cost,
            usage=token_usage,
            request_id=response.id
        )
