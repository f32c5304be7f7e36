"""Consumer-side transports for the chat stream endpoint."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing, asynccontextmanager
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx

from agentwire.cancellation import CancellationToken
from agentwire.errors import ChatRequestError, InputTooLongError
from agentwire.instrumentation import Telemetry

logger = logging.getLogger(__name__)

STREAM_PATH = "/api/chat/stream"


@dataclass
class StreamResponse:
    """An accepted stream: its trace id and the raw SSE body."""

    trace_id: Optional[str]
    body: AsyncIterator[bytes]


class ChatTransport(Protocol):
    def open(self, payload: dict[str, Any], cancel: CancellationToken):
        """Async context manager yielding a :class:`StreamResponse`.

        Raises :class:`ChatRequestError` when the endpoint refuses the
        request.
        """
        ...


@dataclass
class ParsedErrorResponse:
    http_status: int
    message: str
    code: Optional[str] = None
    body_text: Optional[str] = None


def _safe_string(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (str, int, float)):
        return str(value)
    return None


def parse_error_response(http_status: int, content_type: str, body_text: str) -> ParsedErrorResponse:
    """Extract a human-readable message from an error response body."""
    trimmed = body_text.strip()
    looks_like_json = (
        "application/json" in content_type
        or trimmed.startswith("{")
        or trimmed.startswith("[")
    )
    if looks_like_json:
        try:
            parsed = json.loads(trimmed)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            code = _safe_string(parsed.get("error")) or _safe_string(parsed.get("code"))
            message = (
                _safe_string(parsed.get("message"))
                or _safe_string(parsed.get("error"))
                or f"Request failed: {http_status}"
            )
            return ParsedErrorResponse(http_status, message, code, body_text)

    return ParsedErrorResponse(
        http_status,
        trimmed[:400] if trimmed else f"Request failed: {http_status}",
        body_text=body_text,
    )


class HttpChatTransport:
    """POSTs each round to a remote stream endpoint with httpx.

    Args:
        base_url: Origin of the server exposing ``/api/chat/stream``.
        client: Optional shared ``httpx.AsyncClient``.
    """

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @asynccontextmanager
    async def open(self, payload, cancel):
        request = self._client.build_request("POST", f"{self.base_url}{STREAM_PATH}", json=payload)
        response = await cancel.wait(self._client.send(request, stream=True))
        try:
            if response.status_code >= 400:
                await response.aread()
                parsed = parse_error_response(
                    response.status_code,
                    response.headers.get("content-type", ""),
                    response.text,
                )
                raise ChatRequestError(parsed.message, parsed.http_status, parsed.code)
            yield StreamResponse(
                trace_id=response.headers.get("x-trace-id"),
                body=response.aiter_bytes(),
            )
        finally:
            await response.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()


class LocalChatTransport:
    """Runs the producing side in-process, skipping HTTP entirely."""

    def __init__(self, runner):
        self.runner = runner

    @asynccontextmanager
    async def open(self, payload, cancel):
        messages = payload.get("messages") or []
        try:
            self.runner.check_input(messages)
        except InputTooLongError as e:
            raise ChatRequestError(e.message, 400, "input_too_long") from e

        frames = self.runner.iter(
            payload.get("x_mode") or "chat",
            messages,
            cancel,
            offer_tools=payload.get("x_tools") is not False,
        )
        async with aclosing(frames):
            yield StreamResponse(
                trace_id=Telemetry.new_trace_id(),
                body=(frame.encode() async for frame in frames),
            )
