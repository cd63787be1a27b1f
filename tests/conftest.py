"""Shared fixtures: scripted model transport, manual clock and agent wiring."""

import os

os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("LLM_API_KEY", "test-key")

import asyncio  # noqa: E402
from typing import Any, Dict, List, Optional, Union  # noqa: E402

import pytest  # noqa: E402

from services.agent import Agent, AgentConfig  # noqa: E402
from services.llm import LLMTransportError, StreamingLLM  # noqa: E402
from tools.tool_system import FunctionTool, ToolManager  # noqa: E402


def text_round(*texts: str, usage: Optional[Dict[str, int]] = None, audio: Optional[List[str]] = None) -> List[Dict[str, Any]]:
    """Build the raw chunk dictionaries of one streamed round."""
    chunks = [{"choices": [{"delta": {"content": text}}]} for text in texts]
    for data in audio or []:
        chunks.append({"choices": [{"delta": {"audio": {"data": data}}}]})
    if usage is not None:
        chunks.append({"choices": [], "usage": usage})
    return chunks


Round = Union[List[Dict[str, Any]], Exception]


class FakeTransport:
    """Replays scripted rounds instead of calling the network."""

    def __init__(self, rounds: Optional[List[Round]] = None):
        self.rounds: List[Round] = list(rounds or [])
        self.requests: List[List[Dict[str, Any]]] = []
        self.gate: Optional[asyncio.Event] = None

    async def stream(self, messages, audio_output=True):
        self.requests.append(messages)
        if self.gate is not None:
            await self.gate.wait()
        if not self.rounds:
            raise AssertionError("No scripted round left")
        current = self.rounds.pop(0)
        if isinstance(current, Exception):
            raise current
        for chunk in current:
            yield chunk


class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float):
        self.now += ms / 1000


@pytest.fixture
def clock():
    """Create a manual clock."""
    return FakeClock()


@pytest.fixture
def transport():
    """Create an empty scripted transport."""
    return FakeTransport()


@pytest.fixture
def tool_manager():
    """Create a registry with the built-in tools plus two test tools."""
    manager = ToolManager()

    async def explode(**kwargs):
        raise RuntimeError("boom")

    async def add(a: int = 0, b: int = 0):
        return {"sum": a + b}

    manager.register_tool(FunctionTool("explode", "Always fails", {}, explode))
    manager.register_tool(FunctionTool(
        "add",
        "Add two numbers",
        {"a": {"type": "integer"}, "b": {"type": "integer"}},
        add,
        required=["a", "b"],
    ))
    return manager


@pytest.fixture
def llm(transport, tool_manager):
    """Create a StreamingLLM over the scripted transport."""
    return StreamingLLM(transport=transport, tools=tool_manager, max_tool_rounds=3, audio_output=True)


@pytest.fixture
def agent(llm):
    """Create an agent with a short system prompt."""
    config = AgentConfig(name="Test Agent", system_prompt="You are a test assistant.", max_history_size=30)
    return Agent(config=config, llm=llm)


@pytest.fixture
def transport_error():
    """A transport failure to script into a round."""
    return LLMTransportError("LLM API error 500: upstream failed", status=500)
