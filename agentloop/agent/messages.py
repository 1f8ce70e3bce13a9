"""Message helpers: metadata, visibility flags, tool-call id normalization.

Metadata lives in ``additional_kwargs``. Keys used by the loop:

    run_id, thread_id, created_at   stamps added when a message enters state
    hide_for_llm                    never sent to the model
    hide_for_summary                transient marker, dropped by compaction
    hide_for_ui                     not shown to end users
    request_usage / tool_usage      usage of the call that produced the message
    tool_call_id, streamed_realtime progress messages emitted live by a tool
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from langchain_core.messages import AIMessage, BaseMessage, ToolMessage

if TYPE_CHECKING:
    from agentloop.agent.nodes.base import RunContext

HIDE_FOR_LLM = "hide_for_llm"
HIDE_FOR_SUMMARY = "hide_for_summary"
HIDE_FOR_UI = "hide_for_ui"


def get_metadata(msg: BaseMessage) -> dict[str, Any]:
    raw = msg.additional_kwargs
    return raw if isinstance(raw, dict) else {}


def is_hidden_for_llm(msg: BaseMessage) -> bool:
    return get_metadata(msg).get(HIDE_FOR_LLM) is True


def is_hidden_for_summary(msg: BaseMessage) -> bool:
    return get_metadata(msg).get(HIDE_FOR_SUMMARY) is True


def with_metadata(msg: BaseMessage, **metadata: Any) -> BaseMessage:
    """Return a copy of ``msg`` with extra metadata merged in."""
    return msg.model_copy(
        update={"additional_kwargs": {**get_metadata(msg), **metadata}}
    )


def mark_hidden(
    msg: BaseMessage,
    *,
    llm: bool = False,
    summary: bool = False,
    ui: bool = False,
) -> BaseMessage:
    """Return a copy of ``msg`` with the requested visibility flags set."""
    flags = {}
    if llm:
        flags[HIDE_FOR_LLM] = True
    if summary:
        flags[HIDE_FOR_SUMMARY] = True
    if ui:
        flags[HIDE_FOR_UI] = True
    return with_metadata(msg, **flags)


def stamp_messages(messages: list[BaseMessage], ctx: RunContext) -> list[BaseMessage]:
    """Add run/thread/created-at stamps; already stamped messages are left as is."""
    stamped = []
    for msg in messages:
        meta = get_metadata(msg)
        if isinstance(meta.get("run_id"), str) and meta["run_id"]:
            stamped.append(msg)
            continue
        stamped.append(
            with_metadata(
                msg,
                run_id=ctx.run_id,
                thread_id=ctx.thread_id,
                created_at=meta.get("created_at")
                or datetime.now(timezone.utc).isoformat(),
            )
        )
    return stamped


# ── Tool calls ───────────────────────────────────────────────


def get_tool_call_ids(msg: BaseMessage) -> list[str]:
    """Canonical, de-duplicated tool-call ids of an AI message.

    Ids may arrive on the LangChain-native ``tool_calls`` list or on the
    OpenAI-shaped ``additional_kwargs["tool_calls"]``; both are read.
    """
    if not isinstance(msg, AIMessage):
        return []

    ids: list[str] = []
    for tc in msg.tool_calls or []:
        tc_id = tc.get("id")
        if isinstance(tc_id, str) and tc_id:
            ids.append(tc_id)
    for tc in get_metadata(msg).get("tool_calls") or []:
        tc_id = tc.get("id") if isinstance(tc, dict) else None
        if isinstance(tc_id, str) and tc_id:
            ids.append(tc_id)
    return list(dict.fromkeys(ids))


def generate_tool_call_id() -> str:
    return f"generated_id_{uuid.uuid4().hex}"


def normalize_tool_calls(msg: AIMessage) -> AIMessage:
    """Ingestion-time normalization of an AI message's tool calls.

    Falls back to OpenAI-shaped calls in ``additional_kwargs`` when the
    native list is empty, and backfills missing ids so every call can be
    paired 1:1 with its result.
    """
    calls = [dict(tc) for tc in msg.tool_calls or []]
    if not calls:
        calls = _parse_openai_tool_calls(get_metadata(msg).get("tool_calls"))
    if not calls:
        return msg

    changed = calls != list(msg.tool_calls or [])
    for tc in calls:
        if not tc.get("id"):
            tc["id"] = generate_tool_call_id()
            changed = True
    if not changed:
        return msg
    return msg.model_copy(update={"tool_calls": calls})


def _parse_openai_tool_calls(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        return []

    calls = []
    for item in raw:
        fn = item.get("function") if isinstance(item, dict) else None
        if not isinstance(fn, dict) or not isinstance(fn.get("name"), str):
            continue
        args = fn.get("arguments")
        if isinstance(args, str):
            try:
                args = json.loads(args) if args else {}
            except json.JSONDecodeError:
                args = {"raw": args}
        if args is None:
            args = {}
        if not isinstance(args, dict):
            args = {"raw": args}
        calls.append({
            "id": item.get("id") if isinstance(item.get("id"), str) else None,
            "name": fn["name"],
            "args": args,
            "type": "tool_call",
        })
    return calls


def has_pending_tool_calls(messages: list[BaseMessage]) -> bool:
    """True when some AI tool call has no matching Tool message anywhere."""
    answered = {m.tool_call_id for m in messages if isinstance(m, ToolMessage)}
    return any(
        tc_id not in answered
        for m in messages
        for tc_id in get_tool_call_ids(m)
    )


def drop_unpaired(messages: list[BaseMessage]) -> list[BaseMessage]:
    """Drop AI messages with unanswered calls and Tool messages without a call."""
    answered = {m.tool_call_id for m in messages if isinstance(m, ToolMessage)}

    kept_call_ids: set[str] = set()
    keep_ai: set[int] = set()
    for i, m in enumerate(messages):
        if not isinstance(m, AIMessage):
            continue
        ids = get_tool_call_ids(m)
        if all(tc_id in answered for tc_id in ids):
            keep_ai.add(i)
            kept_call_ids.update(ids)

    result = []
    for i, m in enumerate(messages):
        if isinstance(m, AIMessage) and i not in keep_ai:
            continue
        if isinstance(m, ToolMessage) and m.tool_call_id not in kept_call_ids:
            continue
        result.append(m)
    return result


def filter_messages_for_llm(messages: list[BaseMessage]) -> list[BaseMessage]:
    """Messages the model may see: visible and with a consistent tool-call trace."""
    return drop_unpaired([m for m in messages if not is_hidden_for_llm(m)])


# ── Content ──────────────────────────────────────────────────


def extract_text(content: Any) -> str:
    """Flatten message content (string or content blocks) to plain text."""
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block.strip())
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text", "")).strip())
        return "\n".join(p for p in parts if p)
    return json.dumps(content, default=str)


def content_as_text(content: Any) -> str:
    """Message content as a string, JSON-encoding anything structured."""
    if isinstance(content, str):
        return content
    return json.dumps(content, default=str, ensure_ascii=False)
