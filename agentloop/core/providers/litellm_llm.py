"""LiteLLM provider: LangChain messages in, AIMessage + usage out."""

from __future__ import annotations

import json
import os
import time
from typing import Any

import litellm
from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from loguru import logger

from agentloop.core.config.schema import Config
from agentloop.core.providers.base import BaseLLMProvider, LLMResponse
from agentloop.core.usage import UsageService

litellm.suppress_debug_info = True


class LiteLLMLLM(BaseLLMProvider):
    """LiteLLM-backed provider.

    Unlike a chat front-end, errors are not turned into assistant text:
    the loop must see a failed call as a failure.
    """

    def __init__(
        self,
        config: Config,
        usage_service: UsageService | None = None,
        max_tokens: int = 4096,
    ) -> None:
        self.config = config
        self.usage_service = usage_service or UsageService()
        self.max_tokens = max_tokens
        self._setup_keys(config)

    async def ainvoke(
        self,
        messages: list[BaseMessage],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
    ) -> LLMResponse:
        """Call LiteLLM and return the reply as a LangChain AIMessage."""
        model = model or self.config.agent.model
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [_langchain_to_dict(m) for m in messages],
            "temperature": self.config.agent.temperature,
            "max_tokens": self.max_tokens,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
            kwargs["parallel_tool_calls"] = True
        api_base = self.config.get_api_base(model)
        if api_base:
            kwargs["api_base"] = api_base

        started = time.monotonic()
        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            logger.error(f"LLM error ({model}): {e}")
            raise

        usage = self.usage_service.usage_from_response(model, response)
        if usage is not None:
            usage.duration_ms = (time.monotonic() - started) * 1000
        return LLMResponse(message=self._to_ai_message(response), usage=usage)

    @staticmethod
    def _to_ai_message(response: Any) -> AIMessage:
        """Convert litellm response to LangChain AIMessage."""
        choice = response.choices[0]
        msg = choice.message

        tool_calls = []
        if getattr(msg, "tool_calls", None):
            for tc in msg.tool_calls:
                args = tc.function.arguments
                if isinstance(args, str):
                    try:
                        args = json.loads(args) if args else {}
                    except json.JSONDecodeError:
                        args = {"raw": args}
                if not isinstance(args, dict):
                    args = {"raw": args}
                tool_calls.append({"id": tc.id, "name": tc.function.name, "args": args})

        additional_kwargs: dict[str, Any] = {}
        reasoning = getattr(msg, "reasoning_content", None)
        if reasoning:
            additional_kwargs["reasoning_content"] = reasoning

        return AIMessage(
            content=msg.content or "",
            tool_calls=tool_calls,
            additional_kwargs=additional_kwargs,
            response_metadata={"finish_reason": choice.finish_reason or "stop"},
        )

    @staticmethod
    def _setup_keys(config: Config) -> None:
        """Set env vars for LiteLLM from config."""
        _set_key("ANTHROPIC_API_KEY", config.providers.anthropic.api_key)
        _set_key("OPENAI_API_KEY", config.providers.openai.api_key)
        _set_key("OPENROUTER_API_KEY", config.providers.openrouter.api_key)
        _set_key("DEEPSEEK_API_KEY", config.providers.deepseek.api_key)
        _set_key("GROQ_API_KEY", config.providers.groq.api_key)
        _set_key("GEMINI_API_KEY", config.providers.gemini.api_key)


def _langchain_to_dict(msg: BaseMessage) -> dict[str, Any]:
    """Convert LangChain message to dict for litellm."""
    if isinstance(msg, HumanMessage):
        return {"role": "user", "content": msg.content}
    elif isinstance(msg, AIMessage):
        d: dict[str, Any] = {"role": "assistant", "content": msg.content}
        reasoning = msg.additional_kwargs.get("reasoning_content")
        if reasoning:
            d["reasoning_content"] = reasoning
        if msg.tool_calls:
            d["tool_calls"] = [
                {
                    "id": tc["id"],
                    "type": "function",
                    "function": {"name": tc["name"], "arguments": json.dumps(tc["args"])},
                }
                for tc in msg.tool_calls
            ]
        return d
    elif isinstance(msg, ToolMessage):
        return {
            "role": "tool",
            "tool_call_id": msg.tool_call_id,
            "content": msg.content,
        }
    elif isinstance(msg, SystemMessage):
        return {"role": "system", "content": msg.content}
    else:
        return {"role": "user", "content": str(msg.content)}


def _set_key(env_name: str, value: str) -> None:
    if value:
        os.environ.setdefault(env_name, value)
