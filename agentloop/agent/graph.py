"""LangGraph StateGraph: compile the agent execution loop."""

from __future__ import annotations

from langchain_core.messages import AIMessage
from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.graph import END, START, StateGraph
from langgraph.graph.state import CompiledStateGraph

from agentloop.agent.nodes import (
    InjectPendingNode,
    InvokeLlmNode,
    PendingMessages,
    SummarizeNode,
    SummarizeOptions,
    ToolExecutorNode,
    ToolUsageGuardNode,
)
from agentloop.agent.state import AgentState
from agentloop.agent.tools import ToolRegistry
from agentloop.core.config.schema import Config
from agentloop.core.providers.base import BaseLLMProvider
from agentloop.core.usage import UsageService


def create_graph(
    config: Config,
    provider: BaseLLMProvider,
    usage_service: UsageService,
    tools: ToolRegistry,
    pending: PendingMessages,
    checkpointer: BaseCheckpointSaver | None = None,
) -> CompiledStateGraph:
    """
    Build and compile the agent graph.

    Graph flow:
        START → summarize → invoke_llm ─┬→ tools → inject_pending ─┬→ summarize
                                        │                          └→ END (done / needs_more_info)
                                        └→ tool_usage_guard ─┬→ invoke_llm (reminder injected)
                                                             └→ inject_pending_on_exit ─┬→ summarize (messages injected)
                                                                                        └→ END
    """
    agent = config.agent
    summarize = SummarizeNode(
        provider,
        usage_service,
        SummarizeOptions(
            max_tokens=agent.summarize_max_tokens,
            keep_tokens=agent.summarize_keep_tokens,
            model=config.summarize_model,
            system_note=agent.summarize_system_note,
        ),
    )
    invoke_llm = InvokeLlmNode(provider, tools, agent.instructions, model=agent.model)
    tool_executor = ToolExecutorNode(
        tools, usage_service, max_output_chars=agent.tool_output_max_chars,
    )
    guard = ToolUsageGuardNode(config.guard)
    inject_pending = InjectPendingNode(pending, agent.new_message_mode)

    graph = StateGraph(AgentState)

    # Add nodes
    graph.add_node("summarize", summarize.invoke)
    graph.add_node("invoke_llm", invoke_llm.invoke)
    graph.add_node("tools", tool_executor.invoke)
    graph.add_node("tool_usage_guard", guard.invoke)
    graph.add_node("inject_pending", inject_pending.invoke)
    graph.add_node("inject_pending_on_exit", inject_pending.invoke)

    # Edges
    graph.add_edge(START, "summarize")
    graph.add_edge("summarize", "invoke_llm")
    graph.add_conditional_edges(
        "invoke_llm", route_after_llm, ["tools", "tool_usage_guard"],
    )
    graph.add_edge("tools", "inject_pending")
    graph.add_conditional_edges(
        "inject_pending", route_after_tools, ["summarize", END],
    )
    graph.add_conditional_edges(
        "tool_usage_guard", route_after_guard, ["invoke_llm", "inject_pending_on_exit"],
    )
    graph.add_conditional_edges(
        "inject_pending_on_exit", route_after_exit, ["summarize", END],
    )
    return graph.compile(checkpointer=checkpointer)


def route_after_llm(state: AgentState) -> str:
    """Conditional edge: after invoke_llm, run tools or consult the guard."""
    messages = state.get("messages", [])
    last = messages[-1] if messages else None
    if isinstance(last, AIMessage) and last.tool_calls:
        return "tools"
    return "tool_usage_guard"


def route_after_tools(state: AgentState) -> str:
    """Conditional edge: the finish tool ends the run, anything else loops."""
    if state.get("done") or state.get("needs_more_info"):
        return END
    return "summarize"


def route_after_guard(state: AgentState) -> str:
    return "invoke_llm" if state.get("tool_usage_guard_activated") else "inject_pending_on_exit"


def route_after_exit(state: AgentState) -> str:
    """The run ends unless queued messages were injected on the way out.

    Without an injection the last message is the tool-less AI reply (guard
    disabled) or the guard's termination notice with ``needs_more_info``.
    """
    if state.get("done") or state.get("needs_more_info"):
        return END
    messages = state.get("messages", [])
    if messages and isinstance(messages[-1], AIMessage):
        return END
    return "summarize"
