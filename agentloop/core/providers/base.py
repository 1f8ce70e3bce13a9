"""Base LLM provider: strategy pattern interface."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any

from langchain_core.messages import AIMessage, BaseMessage

from agentloop.core.usage import RequestTokenUsage


@dataclass
class LLMResponse:
    """One model reply plus the usage reported for the request."""

    message: AIMessage
    usage: RequestTokenUsage | None = None


class BaseLLMProvider(abc.ABC):
    """Abstract base for LLM providers."""

    @abc.abstractmethod
    async def ainvoke(
        self,
        messages: list[BaseMessage],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
    ) -> LLMResponse:
        """Send a chat completion request and return the reply with its usage."""
        ...
