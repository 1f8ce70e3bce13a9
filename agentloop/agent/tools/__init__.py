"""Tool system: ToolRegistry and the factory that registers the core tools."""

from __future__ import annotations

from typing import Any

from langchain_core.tools import BaseTool
from loguru import logger

from agentloop.agent.tools.base import (
    AgentTool,
    LangChainTool,
    ToolCancelledError,
    ToolInvokeResult,
    ToolRunContext,
)
from agentloop.agent.tools.finish import FinishTool

__all__ = [
    "AgentTool",
    "FinishTool",
    "LangChainTool",
    "ToolCancelledError",
    "ToolInvokeResult",
    "ToolRegistry",
    "ToolRunContext",
    "make_tools",
]


class ToolRegistry:
    """Central tool registry: name → tool, registered in replaceable groups.

    LangChain ``BaseTool`` instances are wrapped in ``LangChainTool`` on
    registration so the loop only ever sees ``AgentTool``.
    """

    def __init__(self) -> None:
        self._tools: dict[str, AgentTool] = {}
        self._groups: dict[str, list[str]] = {}

    def register_group(self, group: str, tools: list[AgentTool | BaseTool]) -> None:
        """Register a list of tools under a group name (replacing the group)."""
        for name in self._groups.get(group, []):
            self._tools.pop(name, None)
        self._groups[group] = []

        for t in tools:
            agent_tool = LangChainTool(t) if isinstance(t, BaseTool) else t
            if agent_tool.name in self._tools:
                logger.warning(
                    f"Tool '{agent_tool.name}' re-registered by group '{group}'"
                )
            self._tools[agent_tool.name] = agent_tool
            self._groups[group].append(agent_tool.name)

    def get(self, name: str) -> AgentTool | None:
        return self._tools.get(name)

    def get_all_tools(self) -> list[AgentTool]:
        return list(self._tools.values())

    def definitions(self) -> list[dict[str, Any]]:
        """OpenAI function definitions for every registered tool."""
        return [t.definition() for t in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools


def make_tools(extra: list[AgentTool | BaseTool] | None = None) -> ToolRegistry:
    """Create a registry holding the finish tool plus any caller-supplied tools.

    Parameters
    ----------
    extra : list, optional
        Additional tools, registered under the ``custom`` group.

    Returns
    -------
    ToolRegistry
        Registry with ``core`` (finish) and ``custom`` groups.
    """
    registry = ToolRegistry()
    registry.register_group("core", [FinishTool()])
    if extra:
        registry.register_group("custom", extra)
    return registry
