"""Tests for agentloop.agent.graph and agentloop.agent.runner (full loop, fake provider)."""

import asyncio

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage
from langgraph.checkpoint.memory import MemorySaver

from agentloop.agent.graph import (
    create_graph,
    route_after_exit,
    route_after_guard,
    route_after_llm,
    route_after_tools,
)
from agentloop.agent.messages import get_metadata, has_pending_tool_calls
from agentloop.agent.nodes import PendingMessages
from agentloop.agent.nodes.tool_usage_guard import TERMINATION_MESSAGE
from agentloop.agent.runner import AgentRunner
from agentloop.agent.tools import AgentTool, make_tools
from agentloop.core.config import Config
from agentloop.core.providers.base import BaseLLMProvider


class EchoTool(AgentTool):
    name = "echo"

    async def ainvoke(self, args, ctx):
        return args


class RunnerAwareTool(AgentTool):
    """Base for tools that poke at the runner while a run is active."""

    def __init__(self):
        self.runner = None


class QueueTool(RunnerAwareTool):
    name = "queue"

    async def ainvoke(self, args, ctx):
        self.runner.queue_messages(ctx.thread_id, [HumanMessage("one more thing")])
        return "queued"


class StopTool(RunnerAwareTool):
    name = "stopper"

    async def ainvoke(self, args, ctx):
        await self.runner.stop(ctx.thread_id)
        await asyncio.sleep(10)
        return "unreachable"


class ReenterTool(RunnerAwareTool):
    name = "reenter"

    async def ainvoke(self, args, ctx):
        assert self.runner.is_running(ctx.thread_id)
        try:
            await self.runner.run(ctx.thread_id, [HumanMessage("again")])
        except RuntimeError as e:
            return f"rejected: {e}"
        return "accepted"


class StoppingProvider(BaseLLMProvider):
    """Stops the run while its first call is in flight, then replies in order."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.runner = None
        self.calls = 0

    async def ainvoke(self, messages, tools=None, model=None):
        self.calls += 1
        if self.calls == 1:
            await self.runner.stop("t1")
        return self.replies.pop(0)


@pytest.fixture
def cfg():
    return Config(agent={"instructions": "You are TestAgent.", "summarize_max_tokens": 10_000})


def _call(call_id, name, args=None):
    return {"id": call_id, "name": name, "args": args or {}}


def _finish(call_id="f1", message="All done", needs_more_info=False):
    return _call(call_id, "finish", {
        "purpose": "wrap up", "message": message, "needs_more_info": needs_more_info,
    })


def _runner(cfg, provider, tokenizer, tool):
    runner = AgentRunner(cfg, provider=provider, usage_service=tokenizer, tools=[tool])
    if isinstance(tool, RunnerAwareTool):
        tool.runner = runner
    return runner


# --- Graph ---

def test_graph_compiles(cfg, provider_factory, tokenizer):
    g = create_graph(cfg, provider_factory([]), tokenizer, make_tools(), PendingMessages())
    assert hasattr(g, "astream")


def test_routes():
    call = AIMessage(content="", tool_calls=[_call("c1", "echo")])
    assert route_after_llm({"messages": [HumanMessage("hi"), call]}) == "tools"
    assert route_after_llm({"messages": [AIMessage("text only")]}) == "tool_usage_guard"
    assert route_after_tools({"done": True}) == "__end__"
    assert route_after_tools({"needs_more_info": True}) == "__end__"
    assert route_after_tools({"done": False}) == "summarize"
    assert route_after_guard({"tool_usage_guard_activated": True}) == "invoke_llm"
    assert route_after_guard({"tool_usage_guard_activated": False}) == "inject_pending_on_exit"
    assert route_after_exit({"needs_more_info": True, "messages": [HumanMessage("more")]}) == "__end__"
    assert route_after_exit({"messages": [HumanMessage("hi"), AIMessage("text only")]}) == "__end__"
    assert route_after_exit({"messages": [AIMessage("text only"), HumanMessage("more")]}) == "summarize"


# --- Runs ---

@pytest.mark.asyncio
async def test_tool_roundtrip_then_finish(cfg, provider_factory, tokenizer, reply):
    provider = provider_factory([
        reply("", tool_calls=[_call("c1", "echo", {"text": "hi"})], input_tokens=10, output_tokens=5, total_tokens=15),
        reply("", tool_calls=[_finish()], input_tokens=20, output_tokens=5, total_tokens=25),
    ])
    runner = _runner(cfg, provider, tokenizer, EchoTool())

    events = []

    async def on_event(event):
        events.append(event)

    runner.subscribe(on_event)
    output = await runner.run("t1", [HumanMessage("hello")], run_id="r1")

    assert output.done is True
    assert output.needs_more_info is False
    assert [type(m) for m in output.messages] == [
        HumanMessage, AIMessage, ToolMessage, AIMessage, ToolMessage,
    ]
    assert output.messages[2].content == "text: hi"
    assert all(get_metadata(m)["run_id"] == "r1" for m in output.messages)
    assert output.usage.input_tokens == 30
    assert output.usage.total_tokens == 40
    assert not runner.is_running("t1")

    second_prompt = provider.calls[1]["messages"]
    assert second_prompt[0].content == "You are TestAgent."
    assert second_prompt[-1].content == "text: hi"

    assert events[0].type == "run"
    announced = [m for e in events if e.type == "message" for m in e.messages]
    assert len(announced) == 4


@pytest.mark.asyncio
async def test_needs_more_info_ends_run(cfg, provider_factory, tokenizer, reply):
    provider = provider_factory([reply("", tool_calls=[_finish(message="Which city?", needs_more_info=True)])])
    runner = _runner(cfg, provider, tokenizer, EchoTool())
    output = await runner.run("t1", [HumanMessage("book a hotel")])
    assert output.done is False
    assert output.needs_more_info is True


@pytest.mark.asyncio
async def test_guard_terminates_after_max_injections(cfg, provider_factory, tokenizer, reply):
    provider = provider_factory([reply("I think we're done.") for _ in range(3)])
    runner = _runner(cfg, provider, tokenizer, EchoTool())
    output = await runner.run("t1", [HumanMessage("hi")])

    assert len(provider.calls) == 3
    assert output.done is False
    assert output.needs_more_info is True
    assert output.messages[-1].content == TERMINATION_MESSAGE

    reminders = [m for m in provider.calls[1]["messages"] if isinstance(m, SystemMessage)]
    assert reminders[-1].content == cfg.guard.restriction_message


@pytest.mark.asyncio
async def test_history_is_summarized_mid_run(provider_factory, tokenizer, reply):
    cfg = Config(agent={"summarize_max_tokens": 100, "summarize_keep_tokens": 0})
    provider = provider_factory([
        reply("", tool_calls=[_call("c1", "echo", {"text": "big"})], input_tokens=5000),
        reply("Compact summary", input_tokens=50),
        reply("", tool_calls=[_finish()]),
    ])
    runner = _runner(cfg, provider, tokenizer, EchoTool())
    output = await runner.run("t1", [HumanMessage("start")])

    assert output.done is True
    assert output.summary == "Compact summary"
    assert get_metadata(output.messages[0])["summary_marker"] is True
    assert all(m.content != "start" for m in output.messages)

    final_prompt = provider.calls[2]["messages"]
    assert final_prompt[1].content == "Summary:\nCompact summary"
    assert output.usage.input_tokens == 5050


@pytest.mark.asyncio
async def test_queued_messages_injected_after_tools(cfg, provider_factory, tokenizer, reply):
    provider = provider_factory([
        reply("", tool_calls=[_call("c1", "queue")]),
        reply("", tool_calls=[_finish()]),
    ])
    runner = _runner(cfg, provider, tokenizer, QueueTool())
    output = await runner.run("t1", [HumanMessage("go")])

    assert output.done is True
    second_prompt = [m.content for m in provider.calls[1]["messages"]]
    assert second_prompt[-2:] == ["queued", "one more thing"]


@pytest.mark.asyncio
async def test_stop_cancels_running_tool(cfg, provider_factory, tokenizer, reply):
    provider = provider_factory([reply("", tool_calls=[_call("c1", "stopper")])])
    runner = _runner(cfg, provider, tokenizer, StopTool())

    stops = []

    async def on_event(event):
        if event.type == "stop":
            stops.append(event)

    runner.subscribe(on_event)
    output = await asyncio.wait_for(runner.run("t1", [HumanMessage("go")]), timeout=5)

    assert len(provider.calls) == 1
    assert len(stops) == 1
    assert output.done is False
    assert output.messages[-1].content.startswith("Error executing tool 'stopper'")
    assert not runner.is_running("t1")


@pytest.mark.asyncio
async def test_stop_during_llm_call_resolves_open_calls(tokenizer, reply):
    cfg = Config(agent={"summarize_max_tokens": 100, "summarize_keep_tokens": 0})
    provider = StoppingProvider([
        reply("", tool_calls=[_call("c1", "echo")], input_tokens=500),
        reply("Folded"),
        reply("", tool_calls=[_finish()]),
    ])
    runner = AgentRunner(
        cfg, provider=provider, usage_service=tokenizer, tools=[EchoTool()],
        checkpointer=MemorySaver(),
    )
    provider.runner = runner

    out = await asyncio.wait_for(runner.run("t1", [HumanMessage("go")]), timeout=5)
    assert not has_pending_tool_calls(out.messages)
    assert out.messages[-1].content.startswith("Error executing tool 'echo'")
    assert provider.calls == 1

    # The thread is still compactable on the next run
    out = await runner.run("t1", [HumanMessage("again")])
    assert out.summary == "Folded"
    assert out.done is True


@pytest.mark.asyncio
async def test_queued_message_delivered_when_guard_ends_run(provider_factory, tokenizer, reply):
    cfg = Config(
        agent={"new_message_mode": "wait_for_completion"},
        guard={"max_injections": 0},
    )
    provider = provider_factory([
        reply("", tool_calls=[_call("c1", "queue")]),
        reply("no tools this time"),
        reply("", tool_calls=[_finish()]),
    ])
    runner = _runner(cfg, provider, tokenizer, QueueTool())
    output = await runner.run("t1", [HumanMessage("go")])

    assert "one more thing" in [m.content for m in output.messages]
    assert runner.pending.peek("t1") == []
    assert output.done is True
    assert provider.calls[2]["messages"][-1].content == "one more thing"


@pytest.mark.asyncio
async def test_leftover_queued_messages_open_next_run(cfg, provider_factory, tokenizer, reply):
    provider = provider_factory([reply("", tool_calls=[_finish()])])
    runner = _runner(cfg, provider, tokenizer, EchoTool())
    runner.queue_messages("t1", [HumanMessage("left over")])

    output = await runner.run("t1", [HumanMessage("new")])
    assert [m.content for m in output.messages[:2]] == ["left over", "new"]
    assert runner.pending.peek("t1") == []


@pytest.mark.asyncio
async def test_disabled_guard_ends_run_on_plain_reply(provider_factory, tokenizer, reply):
    cfg = Config(guard={"enabled": False})
    provider = provider_factory([reply("Here is your answer.")])
    runner = _runner(cfg, provider, tokenizer, EchoTool())
    output = await runner.run("t1", [HumanMessage("hi")])

    assert len(provider.calls) == 1
    assert output.done is False
    assert output.messages[-1].content == "Here is your answer."


@pytest.mark.asyncio
async def test_one_run_per_thread(cfg, provider_factory, tokenizer, reply):
    provider = provider_factory([
        reply("", tool_calls=[_call("c1", "reenter")]),
        reply("", tool_calls=[_finish()]),
    ])
    runner = _runner(cfg, provider, tokenizer, ReenterTool())
    output = await runner.run("t1", [HumanMessage("go")])
    assert output.messages[2].content.startswith("rejected: Thread t1 already has an active run")


@pytest.mark.asyncio
async def test_stop_without_run(cfg, provider_factory, tokenizer):
    runner = _runner(cfg, provider_factory([]), tokenizer, EchoTool())
    assert await runner.stop("nobody") is False


@pytest.mark.asyncio
async def test_provider_error_propagates(cfg, provider_factory, tokenizer):
    runner = _runner(cfg, provider_factory([RuntimeError("provider down")]), tokenizer, EchoTool())
    with pytest.raises(RuntimeError, match="provider down"):
        await runner.run("t1", [HumanMessage("hi")])
    assert not runner.is_running("t1")


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_break_run(cfg, provider_factory, tokenizer, reply):
    provider = provider_factory([reply("", tool_calls=[_finish()])])
    runner = _runner(cfg, provider, tokenizer, EchoTool())

    async def broken(event):
        raise ValueError("subscriber bug")

    unsubscribe = runner.subscribe(broken)
    output = await runner.run("t1", [HumanMessage("hi")])
    assert output.done is True
    unsubscribe()
    assert runner._subscribers == []
