"""Tool capability: the contract every tool the loop dispatches follows."""

from __future__ import annotations

import abc
import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from langchain_core.messages import BaseMessage
from langchain_core.tools import BaseTool
from langchain_core.utils.function_calling import convert_to_openai_tool
from pydantic import BaseModel

from agentloop.agent.messages import with_metadata
from agentloop.core.usage import RequestTokenUsage

MessageListener = Callable[[list[BaseMessage]], Awaitable[None]]


class ToolCancelledError(Exception):
    """Raised by a tool that stopped because the run was aborted."""


@dataclass
class ToolInvokeResult:
    """Structured tool result.

    ``state_change`` is merged into ``tools_metadata[tool.name]``;
    ``message_metadata`` is copied onto the resulting Tool message.
    """

    output: Any
    state_change: dict[str, Any] | None = None
    message_metadata: dict[str, Any] | None = None
    usage: RequestTokenUsage | None = None
    additional_messages: list[BaseMessage] = field(default_factory=list)


@dataclass
class ToolRunContext:
    """Per-call context: identifiers, stored tool state, abort signal, live emit."""

    thread_id: str
    run_id: str
    tool_call_id: str
    abort: asyncio.Event
    tool_state: dict[str, Any] | None = None
    listener: MessageListener | None = None
    emitted: list[BaseMessage] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.abort.is_set()

    async def emit(self, *messages: BaseMessage) -> None:
        """Deliver progress messages now; they are also kept for the merged result."""
        marked = [
            with_metadata(
                m,
                hide_for_llm=True,
                streamed_realtime=True,
                tool_call_id=self.tool_call_id,
            )
            for m in messages
        ]
        self.emitted.extend(marked)
        if self.listener is not None:
            await self.listener(marked)


class AgentTool(abc.ABC):
    """Base class for tools executed by the loop."""

    name: str
    description: str = ""
    args_schema: type[BaseModel] | None = None

    async def run(self, args: dict[str, Any], ctx: ToolRunContext) -> Any:
        """Validate ``args`` against ``args_schema`` and invoke the tool."""
        parsed = self.args_schema.model_validate(args) if self.args_schema else args
        return await self.ainvoke(parsed, ctx)

    @abc.abstractmethod
    async def ainvoke(self, args: Any, ctx: ToolRunContext) -> ToolInvokeResult | Any:
        ...

    def definition(self) -> dict[str, Any]:
        """OpenAI function-calling definition."""
        schema = self.args_schema.model_json_schema() if self.args_schema else {
            "type": "object", "properties": {},
        }
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description or "",
                "parameters": schema,
            },
        }


class LangChainTool(AgentTool):
    """Expose a LangChain ``BaseTool`` to the loop."""

    def __init__(self, tool: BaseTool) -> None:
        self.tool = tool
        self.name = tool.name
        self.description = tool.description or ""

    async def run(self, args: dict[str, Any], ctx: ToolRunContext) -> Any:
        return await self.ainvoke(args, ctx)

    async def ainvoke(self, args: Any, ctx: ToolRunContext) -> ToolInvokeResult:
        return ToolInvokeResult(output=await self.tool.ainvoke(args))

    def definition(self) -> dict[str, Any]:
        return convert_to_openai_tool(self.tool)
