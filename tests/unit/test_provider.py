import json
from unittest.mock import MagicMock

import httpx
import pytest

from agentwire.cancellation import CancellationToken
from agentwire.config import Settings
from agentwire.errors import RequestAborted, UpstreamError
from agentwire.events import ProviderChunk, parse_payload
from agentwire.message import ChatMode
from agentwire.provider import TOKENS, OpenAIProvider, SimulatedProvider
from agentwire.sse import decode_frames
from agentwire.tools import get_tools_for_mode


def _fast(mode):
    return SimulatedProvider(mode, ttfb_ms=0, token_delay_ms=0, jitter_ms=0, trace_id="trace123")


async def _events(provider, messages, tools):
    async with provider.stream(messages, tools, CancellationToken()) as body:
        return [parse_payload(p) async for p in decode_frames(body)]


class TestSimulatedProvider:
    @pytest.mark.asyncio
    async def test_chat_streams_canned_tokens(self):
        events = await _events(_fast(ChatMode.CHAT), [{"role": "user", "content": "hi"}], None)

        assert "".join(e.content for e in events if e.content) == "".join(TOKENS[ChatMode.CHAT])
        assert events[-1] == ProviderChunk(finish_reason="stop")

    @pytest.mark.asyncio
    async def test_agent_requests_search_first(self):
        messages = [{"role": "user", "content": "latest python"}]
        events = await _events(_fast(ChatMode.AGENT), messages, get_tools_for_mode("agent"))

        [fragment] = events[0].tool_call_fragments
        assert fragment.name == "tavily_search"
        assert json.loads(fragment.arguments_delta) == {"query": "latest python"}
        assert events[-1].finish_reason == "tool_calls"

    @pytest.mark.asyncio
    async def test_answers_once_tool_result_present(self):
        messages = [
            {"role": "user", "content": "q"},
            {"role": "tool", "tool_call_id": "c1", "content": "results"},
        ]
        events = await _events(_fast(ChatMode.AGENT), messages, get_tools_for_mode("agent"))
        assert events[-1].finish_reason == "stop"

    @pytest.mark.asyncio
    async def test_ide_requests_list_files(self):
        events = await _events(_fast(ChatMode.IDE), [{"role": "user", "content": "x"}], get_tools_for_mode("ide"))
        assert events[0].tool_call_fragments[0].name == "list_files"

    @pytest.mark.asyncio
    async def test_cancelled_before_first_chunk(self):
        provider = SimulatedProvider(ChatMode.CHAT, ttfb_ms=10_000)
        token = CancellationToken()
        token.cancel()
        with pytest.raises(RequestAborted):
            async with provider.stream([], None, token) as body:
                async for _ in body:
                    pass

    def test_from_settings_overrides(self):
        provider = SimulatedProvider.from_settings(
            Settings(), "cli", trace_id="t", ttfb_ms=5, token_delay_ms=None,
        )
        assert provider.ttfb_ms == 5
        assert provider.token_delay_ms == 30
        assert provider.mode == ChatMode.CLI

    def test_from_settings_random_ttfb_in_range(self):
        provider = SimulatedProvider.from_settings(Settings(), "chat")
        assert 600 <= provider.ttfb_ms <= 1200


class TestOpenAIProvider:
    def test_from_settings(self):
        provider = OpenAIProvider.from_settings(
            Settings(api_key="sk-test", base_url="https://llm.test/v1/", model="m", max_output_tokens=100),
        )
        assert provider.model == "m"
        assert provider.max_tokens == 100
        assert provider.base_url == "https://llm.test/v1"
        assert provider.client.max_retries == 0

    @pytest.mark.asyncio
    async def test_stream_sends_tools_and_max_tokens(self):
        provider = OpenAIProvider(api_key="sk-test", model="m", max_tokens=50)

        async def iter_bytes():
            yield b"data: [DONE]\n\n"

        response = MagicMock()
        response.iter_bytes = iter_bytes
        ctx = MagicMock()
        ctx.__aenter__.return_value = response
        ctx.__aexit__.return_value = False
        create = MagicMock(return_value=ctx)
        provider.client = MagicMock()
        provider.client.chat.completions.with_streaming_response.create = create

        tools = get_tools_for_mode("agent")
        async with provider.stream([{"role": "user", "content": "hi"}], tools, CancellationToken()) as body:
            assert [p async for p in decode_frames(body)] == []

        kwargs = create.call_args.kwargs
        assert kwargs["stream"] is True
        assert kwargs["max_tokens"] == 50
        assert kwargs["tools"] == tools

    @pytest.mark.asyncio
    async def test_broken_body_becomes_upstream_error(self):
        provider = OpenAIProvider(api_key="sk-test", model="m")

        async def iter_bytes():
            yield b'data: {"choices": [{"delta": {"content": "hi"}}]}\n\n'
            raise httpx.ReadError("connection reset")

        response = MagicMock()
        response.iter_bytes = iter_bytes
        ctx = MagicMock()
        ctx.__aenter__.return_value = response
        ctx.__aexit__.return_value = False
        provider.client = MagicMock()
        provider.client.chat.completions.with_streaming_response.create = MagicMock(return_value=ctx)

        seen = []
        with pytest.raises(UpstreamError) as exc_info:
            async with provider.stream([{"role": "user", "content": "hi"}], None, CancellationToken()) as body:
                async for payload in decode_frames(body):
                    seen.append(payload)

        assert len(seen) == 1
        assert exc_info.value.status_code == 502
        assert "connection reset" in exc_info.value.message
