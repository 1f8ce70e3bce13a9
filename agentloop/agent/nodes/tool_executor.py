"""ToolExecutorNode: runs the latest turn's tool calls concurrently.

Results are merged in the original call order, each call's extra
messages directly after its own result. Every call resolves to an
outcome; failures and cancellations become error Tool messages.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from dataclasses import dataclass, field
from typing import Any

import yaml
from langchain_core.messages import AIMessage, BaseMessage, ToolMessage
from langchain_core.runnables import RunnableConfig
from loguru import logger
from pydantic import BaseModel

from agentloop.agent.messages import generate_tool_call_id, stamp_messages
from agentloop.agent.nodes.base import BaseNode, RunContext
from agentloop.agent.state import AgentState, MessagesUpdate
from agentloop.agent.tools import (
    AgentTool,
    FinishTool,
    ToolCancelledError,
    ToolInvokeResult,
    ToolRegistry,
    ToolRunContext,
)
from agentloop.core.usage import RequestTokenUsage, UsageService

DEFAULT_MAX_OUTPUT_CHARS = 500_000


@dataclass
class ToolCallOutcome:
    """Everything one tool call contributes to the merged turn."""

    name: str
    call_id: str
    message: ToolMessage
    extra_messages: list[BaseMessage] = field(default_factory=list)
    state_change: dict[str, Any] | None = None
    usage: RequestTokenUsage | None = None
    cancelled: bool = False


class ToolExecutorNode(BaseNode):
    """Dispatch the tool calls of the last AI message."""

    def __init__(
        self,
        tools: ToolRegistry | list[AgentTool],
        usage_service: UsageService,
        max_output_chars: int = DEFAULT_MAX_OUTPUT_CHARS,
    ) -> None:
        if isinstance(tools, ToolRegistry):
            tools = tools.get_all_tools()
        self.tools = {t.name: t for t in tools}
        self.usage_service = usage_service
        self.max_output_chars = max_output_chars

    async def invoke(self, state: AgentState, config: RunnableConfig) -> dict[str, Any]:
        messages = state.get("messages", [])
        last = messages[-1] if messages else None
        calls = last.tool_calls if isinstance(last, AIMessage) else []
        if not calls:
            logger.debug("Tool executor: no tool calls")
            return {}

        ctx = RunContext.from_config(config)
        tools_metadata = state.get("tools_metadata", {})
        logger.debug(f"Executing tools: {[c['name'] for c in calls]}")

        outcomes = await asyncio.gather(
            *(self._run_call(call, ctx, tools_metadata) for call in calls)
        )

        items: list[BaseMessage] = []
        state_changes: dict[str, dict[str, Any]] = {}
        for outcome in outcomes:
            items.append(outcome.message)
            items.extend(outcome.extra_messages)
            if outcome.state_change is not None:
                state_changes[outcome.name] = outcome.state_change

        patch: dict[str, Any] = {
            "messages": MessagesUpdate.append(stamp_messages(items, ctx)),
        }
        if state_changes:
            patch["tools_metadata"] = state_changes
            finish_state = state_changes.get(FinishTool.TOOL_NAME)
            if finish_state is not None:
                patch["done"] = bool(finish_state.get("done"))
                patch["needs_more_info"] = bool(finish_state.get("needs_more_info"))

        usage = self.usage_service.sum_usages(o.usage for o in outcomes)
        if usage is not None:
            patch.update(usage.as_state_delta())
        return patch

    async def _run_call(
        self,
        call: dict[str, Any],
        ctx: RunContext,
        tools_metadata: dict[str, Any],
    ) -> ToolCallOutcome:
        name = call["name"]
        call_id = call.get("id") or generate_tool_call_id()

        tool = self.tools.get(name)
        if tool is None:
            logger.warning(f"Tool not found: {name}")
            return ToolCallOutcome(
                name=name,
                call_id=call_id,
                message=_tool_message(name, call_id, f"Tool '{name}' not found."),
            )

        tool_ctx = ToolRunContext(
            thread_id=ctx.thread_id,
            run_id=ctx.run_id,
            tool_call_id=call_id,
            abort=ctx.abort,
            tool_state=tools_metadata.get(name),
            listener=ctx.listener,
        )
        try:
            result = await _until_aborted(tool.run(call.get("args") or {}, tool_ctx), ctx.abort)
        except Exception as e:
            cancelled = isinstance(e, ToolCancelledError) or ctx.abort.is_set()
            if cancelled:
                logger.debug(f"Tool cancelled: {name} ({call_id})")
            else:
                logger.error(f"Tool error: {name} → {e}")
            return ToolCallOutcome(
                name=name,
                call_id=call_id,
                message=_tool_message(
                    name,
                    call_id,
                    f"Error executing tool '{name}': {str(e) or type(e).__name__}",
                ),
                extra_messages=list(tool_ctx.emitted),
                cancelled=cancelled,
            )

        if not isinstance(result, ToolInvokeResult):
            result = ToolInvokeResult(output=result)

        message = _tool_message(name, call_id, self._render_output(name, result.output))
        metadata = dict(result.message_metadata or {})
        if result.usage is not None:
            metadata["tool_usage"] = result.usage.model_dump()
        if metadata:
            message = message.model_copy(
                update={"additional_kwargs": {**message.additional_kwargs, **metadata}}
            )
        logger.debug(f"Tool result: {name} → {str(message.content)[:100]}")

        return ToolCallOutcome(
            name=name,
            call_id=call_id,
            message=message,
            extra_messages=[*tool_ctx.emitted, *result.additional_messages],
            state_change=result.state_change,
            usage=result.usage,
        )

    def _render_output(self, name: str, output: Any) -> str:
        content = serialize_output(output)
        if len(content) > self.max_output_chars:
            logger.warning(f"Tool output too long: {name} ({len(content)} chars)")
            content = (
                f"{content[:self.max_output_chars]}\n\n"
                f"[output trimmed to {self.max_output_chars} characters from {len(content)}]"
            )
        return content


def serialize_output(output: Any) -> str:
    """Render tool output as text; structured data is re-encoded as YAML."""
    if isinstance(output, BaseModel):
        output = output.model_dump(mode="json")
    if isinstance(output, str):
        stripped = output.strip()
        if not stripped.startswith(("{", "[")):
            return output
        try:
            output = json.loads(stripped)
        except json.JSONDecodeError:
            return output
    if output is None:
        return ""
    if isinstance(output, (dict, list)):
        return yaml.safe_dump(output, sort_keys=False, allow_unicode=True).rstrip()
    return str(output)


def _tool_message(name: str, call_id: str, content: str) -> ToolMessage:
    return ToolMessage(content=content, tool_call_id=call_id, name=name)


async def _until_aborted(coro, abort: asyncio.Event) -> Any:
    """Await ``coro``; cancel it and raise ``ToolCancelledError`` once ``abort`` is set."""
    if abort.is_set():
        coro.close()
        raise ToolCancelledError("run was stopped")
    task = asyncio.ensure_future(coro)
    waiter = asyncio.ensure_future(abort.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task.done():
        if task.cancelled():
            raise ToolCancelledError("tool call was cancelled")
        return task.result()

    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
    raise ToolCancelledError("run was stopped")
