import asyncio
import json
from contextlib import asynccontextmanager

import pytest

from agentwire.config import Settings
from agentwire.errors import UpstreamError
from agentwire.instrumentation import Telemetry
from agentwire.persistence import InMemoryMessageStore
from agentwire.provider import ModelProvider
from agentwire.runner import Runner
from agentwire.sse import encode_json_frame, encode_terminal
from agentwire.tools import ToolRegistry, tool
from agentwire.transport import StreamResponse


# ---------------------------------------------------------------------------
# Chunk builders (mirror the OpenAI chat.completion.chunk shape)
# ---------------------------------------------------------------------------

def content_chunk(text: str, finish_reason: str | None = None) -> dict:
    return {"choices": [{"index": 0, "delta": {"content": text}, "finish_reason": finish_reason}]}


def finish_chunk(reason: str) -> dict:
    return {"choices": [{"index": 0, "delta": {}, "finish_reason": reason}]}


def tool_chunk(
    index: int = 0,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
) -> dict:
    entry: dict = {"index": index}
    if call_id is not None:
        entry["id"] = call_id
        entry["type"] = "function"
    function = {}
    if name is not None:
        function["name"] = name
    if arguments is not None:
        function["arguments"] = arguments
    if function:
        entry["function"] = function
    return {"choices": [{"index": 0, "delta": {"tool_calls": [entry]}, "finish_reason": None}]}


def make_stream(*records: dict) -> list[bytes]:
    """One SSE frame per byte chunk, closed by the terminal sentinel."""
    return [encode_json_frame(r).encode() for r in records] + [encode_terminal().encode()]


def make_text_round(text: str) -> list[bytes]:
    words = [w + " " for w in text.split(" ")]
    words[-1] = words[-1].rstrip()
    return make_stream(*[content_chunk(w) for w in words], finish_chunk("stop"))


def make_tool_round(
    name: str,
    args: dict,
    call_id: str = "call_1",
    content: str | None = None,
) -> list[bytes]:
    records = [content_chunk(content)] if content else []
    records += [
        tool_chunk(0, call_id=call_id, name=name, arguments=""),
        tool_chunk(0, arguments=json.dumps(args)),
        finish_chunk("tool_calls"),
    ]
    return make_stream(*records)


def make_multi_tool_round(calls: list[tuple[str, dict, str]]) -> list[bytes]:
    """Each item in *calls* is ``(name, args, call_id)``."""
    records = [
        tool_chunk(i, call_id=call_id, name=name, arguments=json.dumps(args))
        for i, (name, args, call_id) in enumerate(calls)
    ]
    return make_stream(*records, finish_chunk("tool_calls"))


def payloads(frames: list[str]) -> list[str]:
    """Strip the ``data: `` prefix and frame terminator from encoded frames."""
    return [f[len("data: "):-2] for f in frames]


async def replay(chunks: list[bytes], gate: asyncio.Event | None = None):
    if gate is not None:
        await gate.wait()
    for chunk in chunks:
        await asyncio.sleep(0)
        yield chunk


# ---------------------------------------------------------------------------
# Scripted provider (producing side)
# ---------------------------------------------------------------------------

class ScriptedProvider(ModelProvider):
    """Provider replaying pre-queued rounds. No network calls."""

    name = "scripted"
    model = "mock-model"

    def __init__(self, rounds: list[list[bytes]] | None = None):
        self.rounds: list[list[bytes]] = list(rounds or [])
        self.repeat: list[bytes] | None = None
        self.fail_with: UpstreamError | None = None
        self.call_log: list[dict] = []

    @asynccontextmanager
    async def stream(self, messages, tools, cancel):
        self.call_log.append({"messages": messages, "tools": tools})
        if self.fail_with is not None:
            raise self.fail_with
        chunks = self.rounds.pop(0) if self.rounds else self.repeat
        yield replay(chunks)


# ---------------------------------------------------------------------------
# Scripted transport (consuming side)
# ---------------------------------------------------------------------------

class ScriptedTransport:
    """Transport answering each round from a queue and logging payloads."""

    def __init__(self, rounds: list[list[bytes]] | None = None, trace_id: str = "trace-1"):
        self.rounds: list[list[bytes]] = list(rounds or [])
        self.repeat: list[bytes] | None = None
        self.trace_id = trace_id
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.payloads: list[dict] = []

    @asynccontextmanager
    async def open(self, payload, cancel):
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error
        chunks = self.rounds.pop(0) if self.rounds else self.repeat
        yield StreamResponse(trace_id=self.trace_id, body=replay(chunks, self.gate))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings():
    return Settings(max_tool_rounds=5, max_tool_calls_per_round=3)


@pytest.fixture
def telemetry():
    t = Telemetry(max_traces=10, max_samples=100)
    t.start()
    return t


@pytest.fixture
def scripted_provider():
    return ScriptedProvider()


@pytest.fixture
def scripted_transport():
    return ScriptedTransport()


@pytest.fixture
def memory_store():
    return InMemoryMessageStore()


@pytest.fixture
def tool_log():
    return []


@pytest.fixture
def executor(tool_log):
    """Registry with a fake search and an echo tool that record their calls."""

    @tool
    async def tavily_search(query: str = ""):
        """Fake web search."""
        tool_log.append(("tavily_search", query))
        return f"results for {query}"

    @tool
    def echo(text: str = ""):
        """Echo text back."""
        tool_log.append(("echo", text))
        return text

    return ToolRegistry([tavily_search, echo])


@pytest.fixture
def make_runner(scripted_provider, executor, settings, telemetry):
    def _make(provider=None, executor=executor, settings=settings):
        return Runner(
            provider or scripted_provider,
            executor=executor,
            settings=settings,
            telemetry=telemetry,
        )
    return _make
