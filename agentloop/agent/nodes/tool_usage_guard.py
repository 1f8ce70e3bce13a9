"""ToolUsageGuardNode: keeps the model from stopping without calling ``finish``.

States: Idle → Warned(n) → Terminated. Each turn without any tool call
injects one reminder until ``max_injections`` is reached; after that the
run ends with ``needs_more_info`` instead of looping forever.
"""

from __future__ import annotations

from typing import Any

from langchain_core.messages import AIMessage, SystemMessage
from langchain_core.runnables import RunnableConfig
from loguru import logger

from agentloop.agent.messages import mark_hidden, stamp_messages, with_metadata
from agentloop.agent.nodes.base import BaseNode, RunContext
from agentloop.agent.state import AgentState, MessagesUpdate
from agentloop.agent.tools import FinishTool
from agentloop.core.config.schema import GuardConfig

TERMINATION_MESSAGE = (
    "Tool usage guard reached the maximum number of retries. The model returned a "
    "response without any tool calls, so this run is being ended to avoid an "
    "infinite loop. Please retry, or verify your model/provider supports tool "
    "calling for this configuration."
)


class ToolUsageGuardNode(BaseNode):
    """Loop-prevention safety valve."""

    def __init__(self, guard: GuardConfig, finish_tool_name: str = FinishTool.TOOL_NAME) -> None:
        self.guard = guard
        self.finish_tool_name = finish_tool_name

    async def invoke(self, state: AgentState, config: RunnableConfig) -> dict[str, Any]:
        if not self.guard.enabled:
            return {"tool_usage_guard_activated": False}

        last_ai = next(
            (m for m in reversed(state.get("messages", [])) if isinstance(m, AIMessage)),
            None,
        )
        called = {tc["name"] for tc in (last_ai.tool_calls if last_ai else [])}
        if self.finish_tool_name in called:
            return {
                "tool_usage_guard_activated": False,
                "tool_usage_guard_activated_count": 0,
            }

        ctx = RunContext.from_config(config)
        injected = state.get("tool_usage_guard_activated_count", 0)

        if injected >= self.guard.max_injections:
            logger.warning(
                f"Tool usage guard reached max injections ({self.guard.max_injections}); "
                f"ending run {ctx.run_id} with needs_more_info"
            )
            notice = mark_hidden(SystemMessage(content=TERMINATION_MESSAGE), llm=True, summary=True)
            return {
                "messages": MessagesUpdate.append(stamp_messages([notice], ctx)),
                "tools_metadata": FinishTool.set_state(done=False, needs_more_info=True),
                "done": False,
                "needs_more_info": True,
                "tool_usage_guard_activated": False,
                # Count stays at the cap so state shows why the run ended
                "tool_usage_guard_activated_count": injected,
            }

        logger.debug(f"Tool usage guard: injecting reminder {injected + 1}/{self.guard.max_injections}")
        reminder = with_metadata(
            mark_hidden(SystemMessage(content=self.guard.restriction_message), summary=True, ui=True),
            requires_finish_tool=True,
        )
        return {
            "messages": MessagesUpdate.append(stamp_messages([reminder], ctx)),
            "tool_usage_guard_activated": True,
            "tool_usage_guard_activated_count": injected + 1,
        }
