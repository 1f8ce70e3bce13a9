"""Graph nodes: invoke_llm, tools, tool_usage_guard, summarize, inject_pending."""

from agentloop.agent.nodes.base import BaseNode, RunContext
from agentloop.agent.nodes.inject_pending import InjectPendingNode, PendingMessages
from agentloop.agent.nodes.invoke_llm import InvokeLlmNode
from agentloop.agent.nodes.summarize import SummarizeNode, SummarizeOptions
from agentloop.agent.nodes.tool_executor import ToolExecutorNode
from agentloop.agent.nodes.tool_usage_guard import ToolUsageGuardNode

__all__ = [
    "BaseNode",
    "InjectPendingNode",
    "InvokeLlmNode",
    "PendingMessages",
    "RunContext",
    "SummarizeNode",
    "SummarizeOptions",
    "ToolExecutorNode",
    "ToolUsageGuardNode",
]
