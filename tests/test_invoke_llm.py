"""Tests for agentloop.agent.nodes.invoke_llm and inject_pending."""

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from agentloop.agent.messages import get_metadata, mark_hidden
from agentloop.agent.nodes import InjectPendingNode, InvokeLlmNode, PendingMessages, RunContext
from agentloop.agent.state import apply_patch, initial_state
from agentloop.agent.tools import make_tools
from agentloop.core.config import NewMessageMode


@pytest.fixture
def config():
    return RunContext(thread_id="t1", run_id="r1").as_config()


# --- InvokeLlmNode ---

@pytest.mark.asyncio
async def test_prompt_layout(provider_factory, reply, config):
    provider = provider_factory([reply("hello")])
    node = InvokeLlmNode(provider, make_tools(), "Be brief.", model="openai/gpt-4o")

    state = initial_state()
    state["summary"] = "User wants a trip plan."
    state["messages"] = [
        HumanMessage("hi"),
        mark_hidden(SystemMessage("not for the model"), llm=True),
        AIMessage(content="", tool_calls=[{"id": "lost", "name": "search", "args": {}}]),
    ]
    await node.invoke(state, config)

    call = provider.calls[0]
    assert call["model"] == "openai/gpt-4o"
    assert [d["function"]["name"] for d in call["tools"]] == ["finish"]
    assert [m.content for m in call["messages"]] == [
        "Be brief.",
        "Summary:\nUser wants a trip plan.",
        "hi",
    ]


@pytest.mark.asyncio
async def test_records_usage_and_context(provider_factory, reply, config):
    provider = provider_factory([reply("ok", input_tokens=1200, output_tokens=30, total_tokens=1230)])
    node = InvokeLlmNode(provider, make_tools(), "sys")
    state = initial_state()
    state["messages"] = [HumanMessage("hi")]
    state["input_tokens"] = 500

    patch = await node.invoke(state, config)
    assert patch["input_tokens"] == 1200
    assert patch["current_context"] == 1200

    [message] = patch["messages"].items
    meta = get_metadata(message)
    assert meta["request_usage"]["output_tokens"] == 30
    assert meta["run_id"] == "r1"

    merged = apply_patch(state, patch)
    assert merged["input_tokens"] == 1700
    assert merged["current_context"] == 1200


@pytest.mark.asyncio
async def test_backfills_missing_call_ids(provider_factory, reply, config):
    provider = provider_factory([reply("", tool_calls=[{"id": None, "name": "finish", "args": {}}])])
    node = InvokeLlmNode(provider, make_tools(), "sys")
    state = initial_state()
    state["messages"] = [HumanMessage("hi")]

    patch = await node.invoke(state, config)
    [message] = patch["messages"].items
    assert message.tool_calls[0]["id"].startswith("generated_id_")


@pytest.mark.asyncio
async def test_provider_error_propagates(provider_factory, config):
    node = InvokeLlmNode(provider_factory([RuntimeError("rate limited")]), make_tools(), "sys")
    with pytest.raises(RuntimeError, match="rate limited"):
        await node.invoke(initial_state(), config)


# --- InjectPendingNode ---

@pytest.mark.asyncio
async def test_inject_after_tool_call(config):
    pending = PendingMessages()
    pending.push("t1", [HumanMessage("also check prices")])
    node = InjectPendingNode(pending, NewMessageMode.INJECT_AFTER_TOOL_CALL)

    state = initial_state()
    state["messages"] = [ToolMessage(content="r", tool_call_id="c1")]
    state["tool_usage_guard_activated_count"] = 2
    patch = await node.invoke(state, config)

    assert [m.content for m in patch["messages"].items] == ["also check prices"]
    assert patch["tool_usage_guard_activated_count"] == 0
    assert patch["done"] is False
    assert pending.peek("t1") == []


@pytest.mark.asyncio
async def test_inject_nothing_pending(config):
    node = InjectPendingNode(PendingMessages(), NewMessageMode.INJECT_AFTER_TOOL_CALL)
    assert await node.invoke(initial_state(), config) == {}


@pytest.mark.asyncio
async def test_wait_for_completion_holds_messages(config):
    pending = PendingMessages()
    pending.push("t1", [HumanMessage("later")])
    node = InjectPendingNode(pending, NewMessageMode.WAIT_FOR_COMPLETION)

    assert await node.invoke(initial_state(), config) == {}
    assert len(pending.peek("t1")) == 1

    state = initial_state()
    state["done"] = True
    patch = await node.invoke(state, config)
    assert [m.content for m in patch["messages"].items] == ["later"]
    assert patch["done"] is False


@pytest.mark.asyncio
async def test_pending_is_per_thread():
    pending = PendingMessages()
    pending.push("t1", [HumanMessage("for t1")])
    node = InjectPendingNode(pending, NewMessageMode.INJECT_AFTER_TOOL_CALL)

    other = RunContext(thread_id="t2").as_config()
    assert await node.invoke(initial_state(), other) == {}
    assert len(pending.peek("t1")) == 1
