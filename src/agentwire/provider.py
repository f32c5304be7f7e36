"""Upstream model providers.

A provider opens one streaming chat-completions request and exposes the
raw SSE body as an async iterator of bytes; decoding is left to the frame
codec so every provider shares one parser.
"""

import json
import logging
import os
import random
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from openai import APIConnectionError, APIError, APIStatusError, AsyncOpenAI

from agentwire.cancellation import CancellationToken
from agentwire.config import DEFAULT_BASE_URL, DEFAULT_MODEL
from agentwire.errors import UpstreamError
from agentwire.message import ChatMode
from agentwire.prompts import has_tool_result, last_user_content
from agentwire.sse import encode_json_frame, encode_terminal

logger = logging.getLogger(__name__)


class ModelProvider:
    """Base class for upstream providers.

    ``stream`` is an async context manager yielding the response body.  It
    raises :class:`UpstreamError` when the provider answers with a
    non-success status or no body.
    """

    name = "base"
    model = DEFAULT_MODEL

    def stream(
        self,
        messages: list[dict],
        tools: list[dict] | None,
        cancel: CancellationToken,
    ):
        raise NotImplementedError


async def _read_body(response) -> AsyncIterator[bytes]:
    """Yield the response bytes; a failed read becomes an upstream error."""
    try:
        async for chunk in response.iter_bytes():
            yield chunk
    except (httpx.HTTPError, APIError) as e:
        logger.warning(f"Upstream stream broke off: {e}")
        raise UpstreamError(f"Upstream stream failed: {e}", status_code=502) from e


class OpenAIProvider(ModelProvider):
    """Any OpenAI-compatible chat-completions endpoint (OpenAI, DeepSeek, vLLM)."""

    name = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str = DEFAULT_MODEL,
        max_tokens: int = 800,
    ):
        if not api_key:
            api_key = os.getenv("OPENAI_API_KEY")
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.model = model
        self.max_tokens = max_tokens
        # Retries would replay a partially consumed turn
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=self.base_url,
            max_retries=0,
            timeout=600.0,
        )

    @classmethod
    def from_settings(cls, settings) -> "OpenAIProvider":
        return cls(
            api_key=settings.api_key,
            base_url=settings.base_url,
            model=settings.model,
            max_tokens=settings.max_output_tokens,
        )

    @asynccontextmanager
    async def stream(self, messages, tools, cancel):
        request = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "stream": True,
        }
        if tools:
            request["tools"] = tools
        try:
            async with self.client.chat.completions.with_streaming_response.create(
                **request
            ) as response:
                yield _read_body(response)
        except APIStatusError as e:
            body = e.body if isinstance(e.body, str) else json.dumps(e.body)
            logger.warning(f"Upstream returned {e.status_code}: {e.message}")
            raise UpstreamError(e.message, status_code=e.status_code, body=body) from e
        except APIConnectionError as e:
            logger.warning(f"Upstream connection failed: {e}")
            raise UpstreamError(str(e), status_code=502) from e


TOKENS = {
    ChatMode.CHAT: ["HTTP ", "is ", "the ", "foundation ", "of ", "the ", "web."],
    ChatMode.AGENT: ["Based ", "on ", "the ", "search ", "results, ", "here ", "is ", "the ", "latest."],
    ChatMode.IDE: [
        "return ", "items", ".reduce", "((acc, ", "item) ", "=> ", "acc ", "+ ", "item.price, ", "0);",
    ],
    ChatMode.CLI: ["I ", "have ", "finished ", "the ", "file ", "operations. ", "Changed ", "2 ", "files."],
}


class SimulatedProvider(ModelProvider):
    """Offline provider replaying canned deltas with realistic pacing.

    On the first round of a tool mode it requests a tool (web search in
    agent mode, a directory listing in ide/cli); once the context holds a
    tool result, or in chat mode, it streams canned tokens.

    Args:
        mode: Interaction mode the canned answer is chosen for.
        ttfb_ms: Delay before the first chunk.
        token_delay_ms: Delay between chunks.
        jitter_ms: Upper bound of random extra delay per token.
    """

    name = "mock"

    def __init__(
        self,
        mode: ChatMode | str,
        ttfb_ms: int = 600,
        token_delay_ms: int = 30,
        jitter_ms: int = 20,
        model: str = "mock-gpt-4",
        trace_id: str = "mock",
    ):
        self.mode = ChatMode(mode)
        self.ttfb_ms = ttfb_ms
        self.token_delay_ms = token_delay_ms
        self.jitter_ms = jitter_ms
        self.model = model
        self.trace_id = trace_id

    @classmethod
    def from_settings(cls, settings, mode, trace_id: str = "mock", **overrides) -> "SimulatedProvider":
        timings = {
            "ttfb_ms": random.randint(settings.ttfb_min_ms, settings.ttfb_max_ms),
            "token_delay_ms": settings.token_delay_ms,
            "jitter_ms": settings.jitter_ms,
        }
        timings.update({k: v for k, v in overrides.items() if v is not None})
        return cls(mode, trace_id=trace_id, **timings)

    def _chunk(self, choice: dict) -> bytes:
        return encode_json_frame({
            "id": self.trace_id,
            "object": "chat.completion.chunk",
            "created": int(time.time()),
            "model": self.model,
            "choices": [{"index": 0, **choice}],
        }).encode()

    async def _generate(self, messages, tools, cancel) -> AsyncIterator[bytes]:
        await cancel.sleep(self.ttfb_ms / 1000)

        tool_name = None
        if tools and not has_tool_result(messages):
            offered = {t["function"]["name"] for t in tools}
            if "tavily_search" in offered:
                tool_name = "tavily_search"
                arguments = {"query": last_user_content(messages) or "latest tech news"}
            elif "list_files" in offered:
                tool_name = "list_files"
                arguments = {"path": "/"}

        if tool_name is not None:
            yield self._chunk({"delta": {"tool_calls": [{
                "index": 0,
                "id": f"call_{self.trace_id[:8]}",
                "type": "function",
                "function": {"name": tool_name, "arguments": json.dumps(arguments)},
            }]}})
            await cancel.sleep(max(0, self.token_delay_ms) / 1000)
            yield self._chunk({"finish_reason": "tool_calls"})
            yield encode_terminal().encode()
            return

        for token in TOKENS[self.mode]:
            cancel.raise_if_cancelled()
            yield self._chunk({"delta": {"content": token}, "finish_reason": None})
            jitter = random.randint(0, max(0, self.jitter_ms))
            await cancel.sleep(max(0, self.token_delay_ms + jitter) / 1000)
        yield self._chunk({"finish_reason": "stop"})
        yield encode_terminal().encode()

    @asynccontextmanager
    async def stream(self, messages, tools, cancel):
        yield self._generate(messages, tools, cancel)
