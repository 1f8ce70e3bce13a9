"""Node contract: ``(state, config) -> partial state patch``."""

from __future__ import annotations

import abc
import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any

from langchain_core.runnables import RunnableConfig

from agentloop.agent.state import AgentState
from agentloop.agent.tools.base import MessageListener


@dataclass
class RunContext:
    """Identifiers and shared signals of the run a node executes in."""

    thread_id: str
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    abort: asyncio.Event = field(default_factory=asyncio.Event)
    listener: MessageListener | None = None

    @classmethod
    def from_config(cls, config: RunnableConfig | None) -> RunContext:
        """Read the run context from ``config["configurable"]``.

        The runner stores a ``RunContext`` under ``run_context``; plain
        ``thread_id`` / ``run_id`` keys are accepted for standalone use.
        """
        configurable = (config or {}).get("configurable") or {}
        ctx = configurable.get("run_context")
        if isinstance(ctx, RunContext):
            return ctx
        return cls(
            thread_id=str(configurable.get("thread_id", "")),
            run_id=str(configurable.get("run_id") or uuid.uuid4().hex),
        )

    def as_config(self, **extra: Any) -> RunnableConfig:
        return {
            "configurable": {
                "thread_id": self.thread_id,
                "run_id": self.run_id,
                "run_context": self,
            },
            **extra,
        }


class BaseNode(abc.ABC):
    """A graph node. Reads state, returns a patch; never mutates state."""

    @abc.abstractmethod
    async def invoke(
        self, state: AgentState, config: RunnableConfig,
    ) -> dict[str, Any]:
        ...
