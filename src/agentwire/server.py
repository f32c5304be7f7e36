"""FastAPI surface for the chat stream."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Optional

from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from agentwire.cancellation import CancellationToken
from agentwire.config import Settings
from agentwire.errors import InputTooLongError, RequestAborted, error_payload
from agentwire.instrumentation import Telemetry
from agentwire.message import ChatMode
from agentwire.provider import ModelProvider, OpenAIProvider, SimulatedProvider
from agentwire.runner import Runner, RunStatus, TurnState
from agentwire.search import web_search_tools
from agentwire.tools import ToolExecutor
from agentwire.transport import STREAM_PATH

logger = logging.getLogger(__name__)

_TRACE_STATUS = {RunStatus.DONE: 200, RunStatus.ERROR: 502}


class ChatStreamRequest(BaseModel):
    model: Optional[str] = None
    messages: list[dict[str, Any]] = Field(default_factory=list)
    stream: bool = True
    x_mode: ChatMode = ChatMode.CHAT
    x_conversation_id: Optional[str] = None
    x_tools: bool = True
    x_use_real: Optional[bool] = None
    x_ttfb_ms: Optional[int] = None
    x_token_delay_ms: Optional[int] = None
    x_jitter_ms: Optional[int] = None


def create_app(
    settings: Optional[Settings] = None,
    telemetry: Optional[Telemetry] = None,
    executor: Optional[ToolExecutor] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Bounds and provider configuration; read from the
            environment when omitted.
        telemetry: Metrics and trace store shared by all requests.
        executor: Server-side tool executor; defaults to web search.
    """
    if settings is None:
        settings = Settings.from_env()
    if telemetry is None:
        telemetry = Telemetry.from_settings(settings)
    if executor is None:
        executor = web_search_tools()
    real_provider = OpenAIProvider.from_settings(settings) if settings.api_key else None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        telemetry.start()
        app.state.settings = settings
        app.state.telemetry = telemetry
        yield
        snapshot = telemetry.flush()
        logger.info(f"Telemetry flushed: {len(snapshot['traces'])} traces")

    app = FastAPI(
        title="agentwire",
        description="Streaming tool-calling chat endpoint",
        lifespan=lifespan,
    )

    def select_provider(body: ChatStreamRequest, trace_id: str) -> ModelProvider:
        if real_provider is not None and body.x_use_real is not False:
            return real_provider
        return SimulatedProvider.from_settings(
            settings,
            body.x_mode,
            trace_id=trace_id,
            ttfb_ms=body.x_ttfb_ms,
            token_delay_ms=body.x_token_delay_ms,
            jitter_ms=body.x_jitter_ms,
        )

    @app.post(STREAM_PATH)
    async def chat_stream(body: ChatStreamRequest):
        trace_id = telemetry.new_trace_id()
        provider = select_provider(body, trace_id)
        runner = Runner(provider, executor=executor, settings=settings, telemetry=telemetry)

        try:
            runner.check_input(body.messages)
        except InputTooLongError as e:
            return JSONResponse(status_code=400, content=e.to_dict())

        trace = telemetry.start_trace(trace_id, STREAM_PATH, body.x_mode.value, provider.name)
        telemetry.increment(f"requests_total{{route={STREAM_PATH}}}")
        telemetry.increment(f"streams_total{{route={STREAM_PATH},provider={provider.name}}}")
        cancel = CancellationToken()
        state = TurnState()

        async def frames():
            try:
                async for frame in runner.iter(
                    body.x_mode, body.messages, cancel, trace, state, offer_tools=body.x_tools,
                ):
                    yield frame
            except RequestAborted:
                logger.info(f"Stream {trace_id} aborted")
            finally:
                # Runs on client disconnect too, when the server closes the generator
                cancel.cancel()
                telemetry.record_sample(
                    f"request_latency_ms{{route={STREAM_PATH}}}",
                    time.time() * 1000 - trace.start_ms,
                )
                ttfb = state.first_frame_at - trace.start_ms if state.first_frame_at else None
                telemetry.finish_trace(trace, _TRACE_STATUS.get(state.status, 499), ttfb)

        return StreamingResponse(
            frames(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Trace-Id": trace_id,
                "X-Provider": provider.name,
            },
        )

    @app.get("/api/metrics")
    async def metrics():
        return telemetry.export_metrics()

    @app.get("/api/debug/traces")
    async def traces(
        trace_id: Optional[str] = None,
        limit: int = Query(default=50, ge=1, le=200),
    ):
        if trace_id:
            found = telemetry.get_trace(trace_id)
            if found is None:
                return JSONResponse(status_code=404, content=error_payload("trace_not_found"))
            return asdict(found)
        return telemetry.list_traces(limit)

    return app
