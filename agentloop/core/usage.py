"""Token usage: counting, pricing and aggregation (LiteLLM-backed)."""

from __future__ import annotations

import math
from typing import Any, Iterable

import litellm
from loguru import logger
from pydantic import BaseModel

litellm.suppress_debug_info = True

# State counters that accumulate additively across turns
USAGE_FIELDS = (
    "input_tokens",
    "cached_input_tokens",
    "output_tokens",
    "reasoning_tokens",
    "total_tokens",
    "total_price",
)


class RequestTokenUsage(BaseModel):
    """Token usage and cost of one complete LLM (or tool) request."""

    input_tokens: int = 0
    cached_input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    total_tokens: int = 0
    total_price: float = 0.0
    # Point-in-time prompt size, not additive
    current_context: int | None = None
    duration_ms: float | None = None

    def as_state_delta(self) -> dict[str, int | float]:
        """Additive counters only, ready to be returned in a node patch."""
        return {name: getattr(self, name) for name in USAGE_FIELDS}


class UsageService:
    """Tokenizer, pricing and usage aggregation capability."""

    def count_tokens(self, model: str, text: str) -> int:
        """Count tokens for ``text``; falls back to ``ceil(len/4)`` on any error."""
        try:
            return int(litellm.token_counter(model=model, text=text))
        except Exception as e:
            logger.debug(f"Tokenizer unavailable for {model!r}, using heuristic: {e}")
            return estimate_tokens(text)

    def sum_usages(
        self, usages: Iterable[RequestTokenUsage | None],
    ) -> RequestTokenUsage | None:
        """Sum usages; ``None`` entries are skipped, ``None`` when nothing was given."""
        total: RequestTokenUsage | None = None
        for usage in usages:
            if usage is None:
                continue
            if total is None:
                total = RequestTokenUsage()
            for name in USAGE_FIELDS:
                setattr(total, name, getattr(total, name) + getattr(usage, name))
            if usage.current_context is not None:
                total.current_context = max(
                    total.current_context or 0, usage.current_context
                )
        return total

    def usage_from_response(self, model: str, response: Any) -> RequestTokenUsage | None:
        """Build usage from a litellm completion response (both provider shapes)."""
        usage = _get(response, "usage")
        if usage is None:
            return None

        input_tokens = _int(_get(usage, "prompt_tokens") or _get(usage, "input_tokens"))
        output_tokens = _int(
            _get(usage, "completion_tokens") or _get(usage, "output_tokens")
        )
        total_tokens = _int(_get(usage, "total_tokens")) or input_tokens + output_tokens

        input_details = (
            _get(usage, "prompt_tokens_details")
            or _get(usage, "input_tokens_details")
            or _get(usage, "input_token_details")
        )
        cached = _int(
            _get(input_details, "cached_tokens") or _get(input_details, "cache_read")
        )
        output_details = (
            _get(usage, "completion_tokens_details") or _get(usage, "output_tokens_details")
        )
        reasoning = _int(
            _get(output_details, "reasoning_tokens") or _get(output_details, "reasoning")
        )

        return RequestTokenUsage(
            input_tokens=input_tokens,
            cached_input_tokens=cached,
            output_tokens=output_tokens,
            reasoning_tokens=reasoning,
            total_tokens=total_tokens,
            total_price=self._price(model, response, usage),
            current_context=input_tokens,
        )

    @staticmethod
    def _price(model: str, response: Any, usage: Any) -> float:
        try:
            return float(litellm.completion_cost(completion_response=response, model=model))
        except Exception as e:
            reported = _get(usage, "cost")
            if isinstance(reported, (int, float)):
                return float(reported)
            logger.debug(f"No price available for {model!r}: {e}")
            return 0.0


def estimate_tokens(text: str) -> int:
    """Length heuristic used when no tokenizer is available (~4 chars per token)."""
    return math.ceil(len(text) / 4)


def _get(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def _int(value: Any) -> int:
    return int(value) if isinstance(value, (int, float)) else 0
