"""AgentRunner: drives the compiled graph for one conversation thread at a time."""

from __future__ import annotations

import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from langchain_core.messages import AIMessage, BaseMessage
from langgraph.checkpoint.base import BaseCheckpointSaver
from loguru import logger

from agentloop.agent.graph import create_graph
from agentloop.agent.messages import get_metadata, stamp_messages
from agentloop.agent.nodes import PendingMessages, RunContext
from agentloop.agent.state import MessagesUpdate
from agentloop.agent.tools import AgentTool, FinishTool, ToolRegistry, make_tools
from agentloop.core.config.schema import Config
from agentloop.core.providers.base import BaseLLMProvider
from agentloop.core.providers.litellm_llm import LiteLLMLLM
from agentloop.core.usage import USAGE_FIELDS, RequestTokenUsage, UsageService


@dataclass
class AgentEvent:
    """Notification delivered to subscribers (``run``, ``message``, ``stop``)."""

    type: str
    thread_id: str
    run_id: str
    messages: list[BaseMessage] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentOutput:
    thread_id: str
    run_id: str
    messages: list[BaseMessage]
    summary: str = ""
    done: bool = False
    needs_more_info: bool = False
    usage: RequestTokenUsage | None = None


Subscriber = Callable[[AgentEvent], Awaitable[None]]


class AgentRunner:
    """
    Run-scoped orchestrator.

    Flow:
        1. Seed the turn (append input messages, clear completion state)
        2. Stream the graph node by node; forward new messages to subscribers
        3. Stop early if ``stop()`` was called for the thread
        4. Return final messages, completion flags and accumulated usage

    Without a checkpointer every run starts from an empty state, so callers
    pass the full history; with one, state persists per ``thread_id``.
    """

    def __init__(
        self,
        config: Config,
        provider: BaseLLMProvider | None = None,
        usage_service: UsageService | None = None,
        tools: ToolRegistry | list[AgentTool] | None = None,
        checkpointer: BaseCheckpointSaver | None = None,
    ) -> None:
        self.config = config
        self.usage_service = usage_service or UsageService()
        self.provider = provider or LiteLLMLLM(config, self.usage_service)
        if isinstance(tools, ToolRegistry):
            self.registry = tools
        else:
            self.registry = make_tools(tools)
        self.pending = PendingMessages()
        self._subscribers: list[Subscriber] = []
        self._active: dict[str, RunContext] = {}
        self._graph = create_graph(
            config,
            self.provider,
            self.usage_service,
            self.registry,
            self.pending,
            checkpointer=checkpointer,
        )

    # ── Events ───────────────────────────────────────────────

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register an async callback; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def _emit(self, event: AgentEvent) -> None:
        for callback in list(self._subscribers):
            try:
                await callback(event)
            except Exception as e:
                logger.warning(f"Subscriber failed on {event.type} event: {e}")

    # ── Control ──────────────────────────────────────────────

    def is_running(self, thread_id: str) -> bool:
        return thread_id in self._active

    def queue_messages(self, thread_id: str, messages: list[BaseMessage]) -> None:
        """Queue messages for a thread.

        They are injected after the next tool turn (or when the run ends in
        ``wait_for_completion`` mode); whatever is still queued when a run
        returns opens the next run of the thread.
        """
        self.pending.push(thread_id, messages)

    async def stop(self, thread_id: str) -> bool:
        """Abort the active run of ``thread_id``. Returns False if none is running."""
        ctx = self._active.get(thread_id)
        if ctx is None:
            return False
        logger.info(f"Stopping run {ctx.run_id} on thread {thread_id}")
        ctx.abort.set()
        await self._emit(AgentEvent("stop", thread_id, ctx.run_id))
        return True

    # ── Run ──────────────────────────────────────────────────

    async def run(
        self,
        thread_id: str,
        messages: list[BaseMessage],
        run_id: str | None = None,
    ) -> AgentOutput:
        """Run the loop for ``thread_id`` until finish, guard termination or stop.

        Parameters
        ----------
        thread_id : str
            Conversation thread; only one run per thread at a time.
        messages : list[BaseMessage]
            Messages appended to the thread before the loop starts.
        run_id : str, optional
            Identifier stamped on every message produced by this run.

        Returns
        -------
        AgentOutput
            Final messages, completion flags and accumulated usage.
        """
        if thread_id in self._active:
            raise RuntimeError(f"Thread {thread_id} already has an active run")

        run_id = run_id or uuid.uuid4().hex
        ctx = RunContext(thread_id=thread_id, run_id=run_id)

        async def live(msgs: list[BaseMessage]) -> None:
            await self._emit(AgentEvent("message", thread_id, run_id, msgs))

        ctx.listener = live
        self._active[thread_id] = ctx

        # Messages queued too late for the previous run go first
        leftover = self.pending.pop_all(thread_id)
        if leftover:
            logger.debug(f"Carrying {len(leftover)} queued messages into run {run_id}")
        seeded = stamp_messages([*leftover, *messages], ctx)
        seed = {
            "messages": MessagesUpdate.append(seeded),
            "tools_metadata": FinishTool.clear_state(),
            "done": False,
            "needs_more_info": False,
            "tool_usage_guard_activated": False,
            "tool_usage_guard_activated_count": 0,
        }
        run_config = ctx.as_config(recursion_limit=self.config.agent.recursion_limit)

        logger.info(f"Run {run_id} started on thread {thread_id}")
        await self._emit(AgentEvent("run", thread_id, run_id, seeded))

        final: dict[str, Any] = {}
        stream = self._graph.astream(seed, run_config, stream_mode=["updates", "values"])
        try:
            async with aclosing(stream):
                async for mode, chunk in stream:
                    if mode == "updates":
                        for node_name, patch in chunk.items():
                            new_messages = _announced_messages(patch)
                            if new_messages:
                                await self._emit(
                                    AgentEvent(
                                        "message", thread_id, run_id, new_messages,
                                        data={"node": node_name},
                                    )
                                )
                        continue
                    # "values" closes a step; stop only between steps
                    final = chunk
                    if ctx.abort.is_set():
                        if _awaiting_tool_results(chunk.get("messages", [])):
                            # The tools step resolves open calls as cancelled
                            continue
                        logger.info(f"Run {run_id} stopped")
                        break
        finally:
            self._active.pop(thread_id, None)

        output = self._build_output(thread_id, run_id, final)
        logger.info(
            f"Run {run_id} finished: done={output.done}, "
            f"needs_more_info={output.needs_more_info}"
        )
        return output

    @staticmethod
    def _build_output(thread_id: str, run_id: str, state: dict[str, Any]) -> AgentOutput:
        finish_state = FinishTool.get_state(state.get("tools_metadata"))
        counters = {name: state.get(name, 0) for name in USAGE_FIELDS}
        current_context = state.get("current_context", 0)
        usage = None
        if any(counters.values()) or current_context:
            usage = RequestTokenUsage(**counters, current_context=current_context or None)

        return AgentOutput(
            thread_id=thread_id,
            run_id=run_id,
            messages=list(state.get("messages", [])),
            summary=state.get("summary", ""),
            done=bool(state.get("done") or finish_state.get("done")),
            needs_more_info=bool(
                state.get("needs_more_info") or finish_state.get("needs_more_info")
            ),
            usage=usage,
        )


def _announced_messages(patch: dict[str, Any] | None) -> list[BaseMessage]:
    """Messages of a node patch that subscribers have not seen yet."""
    if not patch:
        return []
    update = patch.get("messages")
    if not isinstance(update, MessagesUpdate):
        return []
    items = update.items
    if update.mode == "replace":
        # Compaction re-emits kept history; only the marker is new
        items = [m for m in items if get_metadata(m).get("summary_marker")]
    return [m for m in items if not get_metadata(m).get("streamed_realtime")]


def _awaiting_tool_results(messages: list[BaseMessage]) -> bool:
    last = messages[-1] if messages else None
    return isinstance(last, AIMessage) and bool(last.tool_calls)
