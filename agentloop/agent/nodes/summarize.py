"""SummarizeNode: folds older history into a running summary under a token budget.

Compaction is triggered by the prompt size the provider reported on its
last call (``current_context``), never by a local estimate. Local token
estimates are only used to decide how much recent history stays verbatim.

History is cut at block boundaries so a tool call and its results are
always kept or folded together:

    block = standalone message
          | AI message with tool calls + everything up to its last matching
            Tool message (bounded by the next AI message)
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langchain_core.runnables import RunnableConfig
from loguru import logger

from agentloop.agent.messages import (
    content_as_text,
    drop_unpaired,
    extract_text,
    get_tool_call_ids,
    has_pending_tool_calls,
    is_hidden_for_llm,
    is_hidden_for_summary,
    mark_hidden,
    stamp_messages,
    with_metadata,
)
from agentloop.agent.nodes.base import BaseNode, RunContext
from agentloop.agent.state import AgentState, MessagesUpdate
from agentloop.core.providers.base import BaseLLMProvider
from agentloop.core.usage import UsageService, estimate_tokens

DEFAULT_SYSTEM_NOTE = (
    "You maintain a task-focused running summary of a conversation between a user "
    "and an AI agent that uses tools. Keep key facts, goals, decisions, constraints, "
    "names, deadlines, and follow-ups. Be concise; use compact sentences; "
    "omit chit-chat."
)

SUMMARY_MARKER_TEXT = "Conversation history was summarized."


@dataclass
class SummarizeOptions:
    max_tokens: int
    keep_tokens: int
    model: str
    system_note: str | None = None


class SummarizeNode(BaseNode):
    """Compaction engine: replaces old history with ``summary`` + a verbatim tail."""

    def __init__(
        self,
        provider: BaseLLMProvider,
        usage_service: UsageService,
        opts: SummarizeOptions,
    ) -> None:
        self.provider = provider
        self.usage_service = usage_service
        self.opts = opts

    async def invoke(self, state: AgentState, config: RunnableConfig) -> dict[str, Any]:
        max_tokens = self.opts.max_tokens
        current = state.get("current_context") or 0
        if max_tokens <= 0 or current <= max_tokens:
            return {}

        messages = state.get("messages", [])
        if has_pending_tool_calls(messages):
            logger.debug("Summarize skipped: tool calls still pending")
            return {}

        summary = state.get("summary", "")
        pinned, candidates = self._split_pinned(messages)
        blocks = self._build_blocks(candidates)
        tail, fold = self._select_tail(blocks)

        # The provider says we are over budget; always make progress
        if not fold and len(blocks) > 1:
            fold, tail = blocks[:-1], blocks[-1:]
        if not fold:
            logger.debug("Summarize: nothing to fold")
            return {"summary": summary}

        logger.debug(
            f"Summarizing: context={current} > max={max_tokens}, "
            f"folding {len(fold)} blocks, keeping {len(tail)}"
        )
        folded, tail_messages = self._route_late_results(fold, tail)
        new_summary, usage = await self._fold(summary, folded)

        kept = drop_unpaired(tail_messages)
        items: list[BaseMessage] = []
        if new_summary:
            marker = SystemMessage(content=SUMMARY_MARKER_TEXT)
            marker = with_metadata(
                mark_hidden(marker, llm=True, summary=True), summary_marker=True,
            )
            items.append(marker)
        items.extend(pinned)
        items.extend(kept)

        ctx = RunContext.from_config(config)
        patch: dict[str, Any] = {
            "messages": MessagesUpdate.replace(stamp_messages(items, ctx)),
            "summary": new_summary,
            "tool_usage_guard_activated": False,
            "tool_usage_guard_activated_count": 0,
        }
        if usage is not None:
            patch.update(usage.as_state_delta())
        return patch

    # ── Partitioning ─────────────────────────────────────────

    @staticmethod
    def _split_pinned(
        messages: list[BaseMessage],
    ) -> tuple[list[BaseMessage], list[BaseMessage]]:
        pinned: list[BaseMessage] = []
        candidates: list[BaseMessage] = []
        for m in messages:
            if is_hidden_for_llm(m) or is_hidden_for_summary(m):
                continue
            if isinstance(m, SystemMessage):
                pinned.append(m)
            else:
                candidates.append(m)
        return pinned, candidates

    @staticmethod
    def _build_blocks(messages: list[BaseMessage]) -> list[list[BaseMessage]]:
        blocks: list[list[BaseMessage]] = []
        i = 0
        while i < len(messages):
            ids = set(get_tool_call_ids(messages[i]))
            end = i
            if ids:
                for j in range(i + 1, len(messages)):
                    m = messages[j]
                    if isinstance(m, AIMessage):
                        break
                    if isinstance(m, ToolMessage) and m.tool_call_id in ids:
                        end = j
            blocks.append(messages[i:end + 1])
            i = end + 1
        return blocks

    def _select_tail(
        self, blocks: list[list[BaseMessage]],
    ) -> tuple[list[list[BaseMessage]], list[list[BaseMessage]]]:
        """Split blocks into (tail, fold); the newest block is always kept."""
        if not blocks:
            return [], []
        if self.opts.keep_tokens <= 0:
            return blocks[-1:], blocks[:-1]

        start = len(blocks) - 1
        used = self._block_cost(blocks[-1])
        for idx in range(len(blocks) - 2, -1, -1):
            cost = self._block_cost(blocks[idx])
            if used + cost > self.opts.keep_tokens:
                break
            used += cost
            start = idx
        return blocks[start:], blocks[:start]

    @staticmethod
    def _route_late_results(
        fold: list[list[BaseMessage]], tail: list[list[BaseMessage]],
    ) -> tuple[list[BaseMessage], list[BaseMessage]]:
        """Flatten blocks; a tail result whose call is being folded is folded too.

        Results that arrive after a later AI message form their own block,
        so they can land in the tail while their call does not.
        """
        folded = [m for block in fold for m in block]
        folded_ids = {tc_id for m in folded for tc_id in get_tool_call_ids(m)}
        kept: list[BaseMessage] = []
        for m in (m for block in tail for m in block):
            if isinstance(m, ToolMessage) and m.tool_call_id in folded_ids:
                folded.append(m)
            else:
                kept.append(m)
        return folded, kept

    # ── Cost estimation ──────────────────────────────────────

    def _block_cost(self, block: list[BaseMessage]) -> int:
        return sum(self._message_cost(m) for m in block)

    def _message_cost(self, msg: BaseMessage) -> int:
        parts = [content_as_text(msg.content), msg.type]
        if isinstance(msg, ToolMessage):
            parts.append(msg.tool_call_id)
        if isinstance(msg, AIMessage) and msg.tool_calls:
            parts.append(json.dumps(msg.tool_calls, sort_keys=True, default=str))
        text = "\n".join(parts)
        try:
            return self.usage_service.count_tokens(self.opts.model, text)
        except Exception as e:
            logger.debug(f"Token count failed, using length heuristic: {e}")
            return estimate_tokens(text)

    # ── Fold ─────────────────────────────────────────────────

    async def _fold(self, previous: str, messages: list[BaseMessage]):
        system = SystemMessage(content=self.opts.system_note or DEFAULT_SYSTEM_NOTE)
        human = HumanMessage(
            content=(
                f"Previous summary:\n{previous or '(none)'}\n\n"
                f"Fold in the following messages:\n{self._transcript(messages)}\n\n"
                "Return only the updated summary."
            )
        )
        response = await self.provider.ainvoke([system, human], model=self.opts.model)

        content = response.message.content
        text = extract_text(content)
        if not text and not isinstance(content, str):
            text = json.dumps(content, default=str)
        return text, response.usage

    @staticmethod
    def _transcript(messages: list[BaseMessage]) -> str:
        lines = []
        for m in messages:
            line = f"{m.type.upper()}: {content_as_text(m.content)}"
            if isinstance(m, AIMessage) and m.tool_calls:
                calls = ", ".join(
                    f"{tc['name']}({json.dumps(tc.get('args', {}), default=str)})"
                    for tc in m.tool_calls
                )
                line += f" [tool calls: {calls}]"
            lines.append(line)
        return "\n".join(lines)
