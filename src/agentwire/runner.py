import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum

from agentwire.cancellation import CancellationToken
from agentwire.config import Settings
from agentwire.errors import InputTooLongError, RequestAborted, UpstreamError, error_payload
from agentwire.events import ProviderChunk, ToolResultEvent, WorkingStateEvent, WorkingSummaryEvent, parse_payload
from agentwire.instrumentation import Telemetry, Trace, record_error
from agentwire.message import ChatMode, assistant_wire_message, tool_wire_message
from agentwire.prompts import (
    ROUND_LIMIT_INSTRUCTION,
    SYNTHESIZE_INSTRUCTION,
    last_user_content,
    prepare_messages,
)
from agentwire.provider import ModelProvider
from agentwire.sse import decode_frames, encode_frame, encode_json_frame, encode_terminal
from agentwire.streaming import AccumulatedToolCall, ToolCallAccumulator
from agentwire.tools import (
    ToolExecutor,
    build_working_summary,
    executes_on_server,
    get_tools_for_mode,
    safe_execute,
    stringify_tool_result,
)

logger = logging.getLogger(__name__)


class RunStatus(Enum):
    DONE = "done"
    ERROR = "error"
    ABORTED = "aborted"


@dataclass
class TurnState:
    """Progress of one user turn, filled in while ``Runner.iter`` runs."""

    status: RunStatus | None = None
    upstream_requests: int = 0
    tool_rounds: int = 0
    executed_calls: list[str] = field(default_factory=list)
    first_frame_at: float | None = None


@dataclass
class RunOutcome:
    """The result of a single Runner.run() invocation."""

    status: RunStatus
    frames: list[str]
    state: TurnState


@dataclass
class _RoundResult:
    content: str = ""
    accumulator: ToolCallAccumulator = field(default_factory=ToolCallAccumulator)
    saw_tool_finish: bool = False


class Runner:
    """Producing side of the chat stream.

    For modes whose tools run on the server the Runner drives the agent
    loop: it streams a round from the provider, executes the requested
    tools strictly in order, appends the results to the context and asks
    again, until the model answers without tools.  Other modes get a
    single pass-through round and the requester runs tools itself.

    Every payload is forwarded downstream as an SSE frame as soon as it is
    decoded.  ``run()`` drains ``iter()``.  ``iter()`` is the streaming
    entry point.

    Args:
        provider: Upstream model provider.
        executor: Tool executor for server-side modes.
        settings: Round, call and length bounds.
        telemetry: Injected metrics and trace store.
    """

    def __init__(
        self,
        provider: ModelProvider,
        executor: ToolExecutor | None = None,
        settings: Settings | None = None,
        telemetry: Telemetry | None = None,
    ):
        self.provider = provider
        self.executor = executor
        self.settings = settings or Settings()
        self.telemetry = telemetry or Telemetry()

    def check_input(self, messages: list[dict]) -> None:
        """Reject a turn whose latest user message is over the input budget."""
        prompt = last_user_content(messages)
        if len(prompt) > self.settings.max_input_length:
            raise InputTooLongError(self.settings.max_input_length, len(prompt))

    async def run(
        self,
        mode: ChatMode | str,
        messages: list[dict],
        cancel: CancellationToken | None = None,
        trace: Trace | None = None,
        offer_tools: bool = True,
    ) -> RunOutcome:
        """Run one turn to completion and collect the emitted frames."""
        state = TurnState()
        frames: list[str] = []
        try:
            async for frame in self.iter(mode, messages, cancel, trace, state, offer_tools):
                frames.append(frame)
        except RequestAborted:
            state.status = RunStatus.ABORTED
        return RunOutcome(status=state.status, frames=frames, state=state)

    async def iter(
        self,
        mode: ChatMode | str,
        messages: list[dict],
        cancel: CancellationToken | None = None,
        trace: Trace | None = None,
        state: TurnState | None = None,
        offer_tools: bool = True,
    ) -> AsyncIterator[str]:
        """Yield SSE frames for one user turn.

        With *offer_tools* false the turn is a single tool-less round,
        whatever the mode.

        Raises:
            RequestAborted: When *cancel* fires; no terminal frame is sent.
        """
        mode = ChatMode(mode)
        cancel = cancel or CancellationToken()
        state = state or TurnState()
        context = prepare_messages(mode, messages)
        tools = get_tools_for_mode(mode) if offer_tools else None

        if tools and executes_on_server(mode) and self.executor is not None:
            frames = self._agent_loop(context, tools, cancel, trace, state)
        else:
            frames = self._pass_through(context, tools, cancel, trace, state)

        try:
            async for frame in frames:
                if state.first_frame_at is None:
                    state.first_frame_at = time.time() * 1000
                    if trace is not None:
                        self.telemetry.record_sample("ttfb_ms", state.first_frame_at - trace.start_ms)
                yield frame
        except RequestAborted:
            state.status = RunStatus.ABORTED
            logger.info("Turn aborted after %d upstream requests", state.upstream_requests)
            raise

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _dispatch(self, context, tools, cancel, trace, state):
        cancel.raise_if_cancelled()
        state.upstream_requests += 1
        self.telemetry.increment(f"upstream_requests_total{{provider={self.provider.name}}}")
        logger.info(
            f"Dispatching request {state.upstream_requests} "
            f"({len(context)} messages, tools {'on' if tools else 'off'})"
        )
        with self.telemetry.completion_span(trace, self.provider.name, self.provider.model) as span:
            try:
                async with self.provider.stream(list(context), tools, cancel) as body:
                    yield body
            except UpstreamError as e:
                record_error(span, e)
                raise

    def _upstream_error_frames(self, error: UpstreamError, state: TurnState) -> list[str]:
        self.telemetry.increment(f"upstream_error_total{{provider={self.provider.name}}}")
        state.status = RunStatus.ERROR
        payload = {"type": "error", **error_payload("upstream_error", status=error.status_code, body=error.body)}
        return [encode_json_frame(payload), encode_terminal()]

    async def _pass_through(self, context, tools, cancel, trace, state):
        try:
            async with self._dispatch(context, tools, cancel, trace, state) as body:
                async for payload in decode_frames(cancel.iterate(body)):
                    yield encode_frame(payload)
        except UpstreamError as e:
            for frame in self._upstream_error_frames(e, state):
                yield frame
            return
        state.status = RunStatus.DONE
        yield encode_terminal()

    async def _agent_loop(self, context, tools, cancel, trace, state):
        settings = self.settings
        tools_enabled = settings.max_tool_rounds > 0
        working_active = False
        working_done_sent = False

        while True:
            current = _RoundResult()
            try:
                async with self._dispatch(
                    context, tools if tools_enabled else None, cancel, trace, state,
                ) as body:
                    async for payload in decode_frames(cancel.iterate(body)):
                        event = parse_payload(payload)
                        if isinstance(event, ProviderChunk):
                            if event.content:
                                current.content += event.content
                                if working_active and not working_done_sent:
                                    yield encode_json_frame(WorkingStateEvent("done").to_dict())
                                    working_done_sent = True
                            for fragment in event.tool_call_fragments:
                                current.accumulator.feed(fragment)
                            if event.finish_reason == "tool_calls":
                                current.saw_tool_finish = True
                        yield encode_frame(payload)
            except UpstreamError as e:
                for frame in self._upstream_error_frames(e, state):
                    yield frame
                return

            # A tool-less round is final even if the model still asks for tools
            if not current.saw_tool_finish or not tools_enabled:
                break

            entries = current.accumulator.entries()[: settings.max_tool_calls_per_round]
            if not entries:
                break
            state.tool_rounds += 1

            if not working_active:
                yield encode_json_frame(WorkingStateEvent("working").to_dict())
                working_active = True
                working_done_sent = False

            context.append(assistant_wire_message(
                current.content or None,
                [entry.to_tool_call() for entry in entries],
                {entry.id: entry.arguments_text for entry in entries},
            ))
            for entry in entries:
                async for frame in self._execute_call(entry, context, cancel, trace, state):
                    yield frame
            context.append({"role": "system", "content": SYNTHESIZE_INSTRUCTION})

            if state.tool_rounds >= settings.max_tool_rounds:
                logger.info("Tool round limit reached, forcing a final answer")
                context.append({"role": "system", "content": ROUND_LIMIT_INSTRUCTION})
                tools_enabled = False

        state.status = RunStatus.DONE
        yield encode_terminal()

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    async def _execute_call(
        self, entry: AccumulatedToolCall, context: list[dict],
        cancel: CancellationToken, trace: Trace | None, state: TurnState,
    ) -> AsyncIterator[str]:
        arguments = dict(entry.arguments)
        if entry.name == "tavily_search" and not isinstance(arguments.get("query"), str):
            arguments["query"] = last_user_content(context)

        yield encode_json_frame(WorkingSummaryEvent(build_working_summary(entry.name, arguments)).to_dict())

        self.telemetry.increment(f"tool_calls_total{{tool={entry.name}}}")
        with self.telemetry.tool_span(trace, entry.name, entry.id):
            result = await safe_execute(self.executor, entry.name, arguments, cancel)
        state.executed_calls.append(entry.id)

        yield encode_json_frame(WorkingSummaryEvent("Results received, organizing...").to_dict())
        yield encode_json_frame(ToolResultEvent(
            tool_call_id=entry.id, name=entry.name, result=result,
        ).to_dict())
        context.append(tool_wire_message(entry.id, stringify_tool_result(result)))
