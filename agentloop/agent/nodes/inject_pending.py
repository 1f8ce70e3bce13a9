"""InjectPendingNode: delivers messages queued while a run was in progress."""

from __future__ import annotations

from collections import defaultdict
from typing import Any

from langchain_core.messages import BaseMessage
from langchain_core.runnables import RunnableConfig
from loguru import logger

from agentloop.agent.messages import stamp_messages
from agentloop.agent.nodes.base import BaseNode, RunContext
from agentloop.agent.state import AgentState, MessagesUpdate
from agentloop.core.config.schema import NewMessageMode


class PendingMessages:
    """Per-thread queue of messages waiting to enter the conversation."""

    def __init__(self) -> None:
        self._queues: dict[str, list[BaseMessage]] = defaultdict(list)

    def push(self, thread_id: str, messages: list[BaseMessage]) -> None:
        self._queues[thread_id].extend(messages)

    def peek(self, thread_id: str) -> list[BaseMessage]:
        return list(self._queues.get(thread_id, []))

    def pop_all(self, thread_id: str) -> list[BaseMessage]:
        return self._queues.pop(thread_id, [])


class InjectPendingNode(BaseNode):
    def __init__(self, pending: PendingMessages, mode: NewMessageMode) -> None:
        self.pending = pending
        self.mode = mode

    async def invoke(self, state: AgentState, config: RunnableConfig) -> dict[str, Any]:
        ctx = RunContext.from_config(config)
        if not self.pending.peek(ctx.thread_id):
            return {}

        finished = state.get("done", False) or state.get("needs_more_info", False)
        if self.mode == NewMessageMode.WAIT_FOR_COMPLETION and not finished:
            return {}

        messages = self.pending.pop_all(ctx.thread_id)
        logger.debug(f"Injecting {len(messages)} pending messages into thread {ctx.thread_id}")
        return {
            "messages": MessagesUpdate.append(stamp_messages(messages, ctx)),
            "done": False,
            "needs_more_info": False,
            "tool_usage_guard_activated": False,
            "tool_usage_guard_activated_count": 0,
        }
