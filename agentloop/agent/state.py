"""AgentState: LangGraph state definition and its reducers.

Nodes never mutate state; they return a partial patch. LangGraph merges
each patch field with the reducer declared on the field:

    messages          MessagesUpdate(mode="append" | "replace", items)
    usage counters    added (nodes return deltas, never totals)
    tools_metadata    shallow merge keyed by tool name
    everything else   overwritten when present
"""

from __future__ import annotations

import operator
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, TypedDict, get_type_hints

from langchain_core.messages import BaseMessage


@dataclass(frozen=True)
class MessagesUpdate:
    """Explicit message-list patch: append to or replace the history."""

    mode: Literal["append", "replace"]
    items: list[BaseMessage] = field(default_factory=list)

    @classmethod
    def append(cls, items: list[BaseMessage]) -> MessagesUpdate:
        return cls("append", list(items))

    @classmethod
    def replace(cls, items: list[BaseMessage]) -> MessagesUpdate:
        return cls("replace", list(items))


def reduce_messages(
    left: list[BaseMessage], right: MessagesUpdate | None,
) -> list[BaseMessage]:
    if right is None:
        return left
    if right.mode == "append":
        return [*left, *right.items]
    return list(right.items)


def merge_tools_metadata(
    left: dict[str, Any], right: dict[str, Any] | None,
) -> dict[str, Any]:
    return {**left, **right} if right else left


def overwrite(left: Any, right: Any) -> Any:
    return left if right is None else right


class AgentState(TypedDict, total=False):
    """Shared record threaded through every node of one conversation thread."""

    messages: Annotated[list[BaseMessage], reduce_messages]
    # Running compression of folded history; never stored as a message
    summary: Annotated[str, overwrite]
    tools_metadata: Annotated[dict[str, dict[str, Any]], merge_tools_metadata]
    # Prompt size last reported by the provider; not additive
    current_context: Annotated[int, overwrite]

    input_tokens: Annotated[int, operator.add]
    cached_input_tokens: Annotated[int, operator.add]
    output_tokens: Annotated[int, operator.add]
    reasoning_tokens: Annotated[int, operator.add]
    total_tokens: Annotated[int, operator.add]
    total_price: Annotated[float, operator.add]

    tool_usage_guard_activated: Annotated[bool, overwrite]
    tool_usage_guard_activated_count: Annotated[int, overwrite]
    done: Annotated[bool, overwrite]
    needs_more_info: Annotated[bool, overwrite]


_REDUCERS = {
    name: hint.__metadata__[0]
    for name, hint in get_type_hints(AgentState, include_extras=True).items()
}


def initial_state() -> AgentState:
    return AgentState(
        messages=[],
        summary="",
        tools_metadata={},
        current_context=0,
        input_tokens=0,
        cached_input_tokens=0,
        output_tokens=0,
        reasoning_tokens=0,
        total_tokens=0,
        total_price=0.0,
        tool_usage_guard_activated=False,
        tool_usage_guard_activated_count=0,
        done=False,
        needs_more_info=False,
    )


def apply_patch(state: AgentState, patch: dict[str, Any]) -> AgentState:
    """Merge a node patch into ``state`` using the same reducers as the graph."""
    base = initial_state()
    base.update(state)
    for key, value in patch.items():
        if key not in _REDUCERS:
            raise KeyError(f"Unknown state field: {key}")
        base[key] = _REDUCERS[key](base[key], value)
    return base
