"""Finish tool: the only way a run completes normally."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from agentloop.agent.tools.base import AgentTool, ToolInvokeResult, ToolRunContext


class FinishArgs(BaseModel):
    purpose: str = Field(
        min_length=1,
        description="Brief reason for using this tool. Keep it short (< 120 chars).",
    )
    message: str = Field(
        min_length=1,
        description=(
            "Description of what was accomplished OR a specific question "
            "if more info is needed."
        ),
    )
    needs_more_info: bool = Field(
        default=False,
        description=(
            "Set to true if you need more information from the user. "
            "Include your question in the message field."
        ),
    )


class FinishTool(AgentTool):
    """Signal completion, or ask the user for required missing input."""

    TOOL_NAME = "finish"

    name = TOOL_NAME
    description = (
        "End your work by signaling completion or requesting required missing input. "
        "Call this tool ONLY when you are completely done with all tasks - "
        "do not call it alongside other tools."
    )
    args_schema = FinishArgs

    # ── State helpers (tools_metadata["finish"]) ────────────

    @classmethod
    def get_state(cls, tools_metadata: dict[str, Any] | None) -> dict[str, Any]:
        return (tools_metadata or {}).get(cls.TOOL_NAME) or {}

    @classmethod
    def set_state(cls, done: bool, needs_more_info: bool) -> dict[str, Any]:
        return {cls.TOOL_NAME: {"done": done, "needs_more_info": needs_more_info}}

    @classmethod
    def clear_state(cls) -> dict[str, Any]:
        return cls.set_state(done=False, needs_more_info=False)

    async def ainvoke(self, args: FinishArgs, ctx: ToolRunContext) -> ToolInvokeResult:
        return ToolInvokeResult(
            output={"message": args.message, "needs_more_info": args.needs_more_info},
            state_change={
                "done": not args.needs_more_info,
                "needs_more_info": args.needs_more_info,
            },
            message_metadata={"title": args.purpose},
        )
