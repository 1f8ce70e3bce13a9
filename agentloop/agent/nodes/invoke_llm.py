"""InvokeLlmNode: one model call over the visible history."""

from __future__ import annotations

from typing import Any

from langchain_core.messages import AIMessage, BaseMessage, SystemMessage
from langchain_core.runnables import RunnableConfig
from loguru import logger

from agentloop.agent.messages import (
    filter_messages_for_llm,
    normalize_tool_calls,
    stamp_messages,
    with_metadata,
)
from agentloop.agent.nodes.base import BaseNode, RunContext
from agentloop.agent.state import AgentState, MessagesUpdate
from agentloop.agent.tools import ToolRegistry
from agentloop.core.providers.base import BaseLLMProvider


class InvokeLlmNode(BaseNode):
    def __init__(
        self,
        provider: BaseLLMProvider,
        tools: ToolRegistry,
        instructions: str,
        model: str | None = None,
    ) -> None:
        self.provider = provider
        self.tools = tools
        self.instructions = instructions
        self.model = model

    async def invoke(self, state: AgentState, config: RunnableConfig) -> dict[str, Any]:
        """Prompt = instructions + running summary + visible history."""
        prompt: list[BaseMessage] = [SystemMessage(content=self.instructions)]
        summary = state.get("summary", "")
        if summary:
            prompt.append(SystemMessage(content=f"Summary:\n{summary}"))
        prompt.extend(filter_messages_for_llm(state.get("messages", [])))

        response = await self.provider.ainvoke(
            prompt, tools=self.tools.definitions() or None, model=self.model,
        )

        message = response.message
        if isinstance(message, AIMessage):
            message = normalize_tool_calls(message)
        if message.tool_calls:
            logger.debug(f"LLM tool calls: {[tc['name'] for tc in message.tool_calls]}")
        else:
            logger.debug(f"LLM response (no tools): {str(message.content)[:80]!r}")

        patch: dict[str, Any] = {}
        usage = response.usage
        if usage is not None:
            message = with_metadata(message, request_usage=usage.model_dump())
            patch.update(usage.as_state_delta())
            patch["current_context"] = (
                usage.current_context if usage.current_context is not None else usage.input_tokens
            )

        ctx = RunContext.from_config(config)
        patch["messages"] = MessagesUpdate.append(stamp_messages([message], ctx))
        return patch
