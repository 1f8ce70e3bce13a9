"""Shared fakes for the LLM and tokenizer capabilities."""

import re

import pytest
from langchain_core.messages import AIMessage

from agentloop.core.providers.base import BaseLLMProvider, LLMResponse
from agentloop.core.usage import RequestTokenUsage, UsageService


class ScriptedProvider(BaseLLMProvider):
    """Returns queued replies in order; queued exceptions are raised."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    async def ainvoke(self, messages, tools=None, model=None):
        self.calls.append({"messages": list(messages), "tools": tools, "model": model})
        if not self.replies:
            raise AssertionError("ScriptedProvider ran out of replies")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, AIMessage):
            return LLMResponse(message=reply)
        return reply


class KeywordTokenizer(UsageService):
    """``cost:N`` anywhere in the text costs N tokens, otherwise one per word."""

    def count_tokens(self, model, text):
        match = re.search(r"cost:(\d+)", text)
        if match:
            return int(match.group(1))
        return len(text.split())


def make_reply(content="", tool_calls=None, input_tokens=None, **usage):
    message = AIMessage(content=content, tool_calls=tool_calls or [])
    if input_tokens is None:
        return LLMResponse(message=message)
    return LLMResponse(
        message=message,
        usage=RequestTokenUsage(input_tokens=input_tokens, **usage),
    )


@pytest.fixture
def tokenizer():
    return KeywordTokenizer()


@pytest.fixture
def provider_factory():
    return ScriptedProvider


@pytest.fixture
def reply():
    return make_reply
