"""Consuming side of the chat stream.

:class:`ChatSession` mirrors the producing side's state machine for one
conversation view: it sends each round through a transport, decodes the
returned frames into message updates, and runs the tool loop itself for
modes whose tools act on the requester's sandbox.  Every update goes
through an :class:`~agentwire.epoch.EpochGuard` so a superseded send or an
abandoned conversation can never write into the active one.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from agentwire.cancellation import CancellationToken
from agentwire.config import Settings
from agentwire.epoch import EpochGuard, RequestEpoch, make_key
from agentwire.errors import AgentWireError, RequestAborted
from agentwire.events import (
    ErrorEvent,
    ProviderChunk,
    StreamEvent,
    ToolResultEvent,
    WorkingStateEvent,
    WorkingSummaryEvent,
    parse_payload,
)
from agentwire.message import (
    ChatMode,
    Message,
    MessageRole,
    ToolCall,
    ToolCallStatus,
    WorkingState,
    assistant_wire_message,
    tool_wire_message,
    update_message,
)
from agentwire.persistence import MessageStore, fire_and_forget
from agentwire.prompts import ROUND_LIMIT_INSTRUCTION
from agentwire.runner import RunStatus
from agentwire.sse import decode_frames
from agentwire.streaming import ToolCallAccumulator
from agentwire.tools import ToolExecutor, safe_execute, stringify_tool_result, to_tool_result
from agentwire.transport import STREAM_PATH, ChatTransport

logger = logging.getLogger(__name__)


@dataclass
class ProtocolEvent:
    """Request/response trace for inspection tooling.

    ``type`` is ``"req"``, ``"res"`` or ``"info"``.
    """

    type: str
    title: str
    content: Any = None
    token: Optional[str] = None
    context: Optional[str] = None
    trace_id: Optional[str] = None


@dataclass
class _RoundState:
    """What one round has produced so far, independent of the guard."""

    assistant_id: Optional[str] = None
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    accumulator: ToolCallAccumulator = field(default_factory=ToolCallAccumulator)
    finish_reason: Optional[str] = None
    working: Optional[WorkingState] = None
    error: Optional[str] = None

    def settle(self) -> None:
        """Move calls still being assembled into ``tool_calls``.

        A stream that carries several upstream rounds reuses fragment
        indexes, so each ``tool_calls`` finish starts a new accumulator.
        """
        if len(self.accumulator):
            self.tool_calls.extend(self.accumulator.snapshot())
            self.accumulator = ToolCallAccumulator()

    def visible_tool_calls(self) -> list[ToolCall]:
        return [*self.tool_calls, *self.accumulator.snapshot()]

    def to_message(self) -> Message:
        return Message(
            role=MessageRole.ASSISTANT,
            content=self.content,
            tool_calls=list(self.tool_calls) or None,
            working=self.working,
        )


class ChatSession:
    """One conversation view on the consuming side.

    Args:
        transport: Where rounds are sent, over HTTP or in-process.
        mode: Interaction mode; selects tools and the system preamble.
        conversation_id: Conversation to persist into, if any.
        tool_executor: Runs tool calls locally for modes whose tools the
            server does not execute.
        store: Persistence collaborator for finalized messages.
        settings: Round, call and truncation bounds.
        on_protocol_event: Called with every :class:`ProtocolEvent`.
    """

    def __init__(
        self,
        transport: ChatTransport,
        mode: ChatMode | str = ChatMode.CHAT,
        conversation_id: Optional[str] = None,
        tool_executor: Optional[ToolExecutor] = None,
        store: Optional[MessageStore] = None,
        settings: Optional[Settings] = None,
        on_protocol_event: Optional[Callable[[ProtocolEvent], None]] = None,
    ):
        self.transport = transport
        self.mode = ChatMode(mode)
        self.conversation_id = conversation_id
        self.tool_executor = tool_executor
        self.store = store
        self.settings = settings or Settings()
        self.on_protocol_event = on_protocol_event

        self.is_loading = False
        self.error: Optional[str] = None
        self.trace_id: Optional[str] = None

        self._guard = EpochGuard(make_key(self.mode, conversation_id))
        self._cancel: Optional[CancellationToken] = None
        self._pending: set[asyncio.Task] = set()

    @property
    def messages(self) -> list[Message]:
        return self._guard.messages

    @property
    def guard(self) -> EpochGuard:
        return self._guard

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def send(self, content: str, conversation_id: Optional[str] = None) -> RunStatus | None:
        """Send a user message and drive the turn to completion.

        Returns ``None`` when the input is blank or a turn is already in
        flight; otherwise the terminal status of the turn.
        """
        text = content.strip()
        if not text or self.is_loading:
            return None

        if conversation_id and conversation_id != self.conversation_id:
            self.conversation_id = conversation_id
            self._guard.adopt(make_key(self.mode, conversation_id))
        conversation = self.conversation_id

        epoch = self._guard.begin(make_key(self.mode, conversation))
        cancel = CancellationToken()
        self._cancel = cancel
        self.is_loading = True
        self.error = None

        history = self._guard.messages
        user = Message(role=MessageRole.USER, content=text)
        self._guard.submit(epoch, lambda ms: [*ms, user])
        self._persist(conversation, user)

        wire = self._history_wire([*history, user])
        try:
            return await self._run_turn(epoch, cancel, conversation, wire)
        finally:
            if self._cancel is cancel:
                self._cancel = None
                self.is_loading = False
            self._guard.retire(epoch)

    def stop(self) -> None:
        """Cancel the in-flight turn, if any."""
        if self._cancel is not None:
            self._cancel.cancel()

    async def switch(self, mode: ChatMode | str, conversation_id: Optional[str] = None) -> None:
        """Point the session at another mode or conversation and load its history."""
        if self._cancel is not None:
            self._cancel.cancel()
            self._cancel = None
        self.is_loading = False
        self.mode = ChatMode(mode)
        self.conversation_id = conversation_id
        self._guard.switch(make_key(self.mode, conversation_id))
        self.error = None
        self.trace_id = None
        await self.load()

    async def load(self) -> None:
        """Load the active conversation's history from the store."""
        if self.store is None or not self.conversation_id:
            return
        key = self._guard.active_key
        try:
            messages = await self.store.load(self.conversation_id, self.mode)
        except httpx.HTTPError as e:
            if key == self._guard.active_key:
                self.error = f"Failed to load messages: {e}"
            return
        self._guard.load(key, messages)

    def clear(self) -> None:
        self._guard.clear()
        self.error = None

    async def flush_persistence(self) -> None:
        """Wait for outstanding persistence writes."""
        if self._pending:
            await asyncio.gather(*list(self._pending))

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def _run_turn(
        self,
        epoch: RequestEpoch,
        cancel: CancellationToken,
        conversation: Optional[str],
        wire: list[dict],
    ) -> RunStatus:
        settings = self.settings
        for round_index in range(settings.max_tool_rounds + 1):
            # The last round may not call tools; after a tool round it is
            # also told to answer from what it has
            final = round_index == settings.max_tool_rounds
            round_wire = wire
            if final and round_index > 0:
                round_wire = [*wire, {"role": "system", "content": ROUND_LIMIT_INSTRUCTION}]
            state = _RoundState()
            try:
                await self._stream_one_round(
                    epoch, cancel, conversation, round_wire, round_index, state, offer_tools=not final,
                )
            except RequestAborted:
                logger.info(f"Turn aborted during round {round_index + 1}")
                self._finalize(epoch, state)
                if state.content or state.tool_calls:
                    self._persist(conversation, state.to_message())
                return RunStatus.ABORTED
            except (AgentWireError, httpx.HTTPError) as e:
                logger.warning(f"Round {round_index + 1} failed: {e}")
                self._finalize(epoch, state)
                self._set_error(epoch, str(e))
                self._emit(ProtocolEvent("info", "Error", str(e)))
                return RunStatus.ERROR

            if state.error is not None:
                self._persist(conversation, state.to_message())
                return RunStatus.ERROR

            run_locally = (
                state.finish_reason == "tool_calls"
                and self.tool_executor is not None
                and bool(state.tool_calls)
                and round_index < settings.max_tool_rounds
            )
            if not run_locally:
                self._persist(conversation, state.to_message())
                return RunStatus.DONE

            calls = state.tool_calls[: settings.max_tool_calls_per_round]
            if len(calls) < len(state.tool_calls):
                logger.info(f"Dropping {len(state.tool_calls) - len(calls)} tool calls over the per-round cap")
                state.tool_calls = list(calls)
                self._update_assistant(epoch, state, tool_calls=list(calls))
            try:
                tool_wire = await self._execute_locally(epoch, cancel, conversation, state, calls)
            except RequestAborted:
                logger.info(f"Turn aborted while running tools in round {round_index + 1}")
                self._persist(conversation, state.to_message())
                return RunStatus.ABORTED
            self._persist(conversation, state.to_message())

            wire = [
                *wire,
                assistant_wire_message(state.content or None, calls),
                *tool_wire,
            ]

        return RunStatus.DONE

    async def _execute_locally(
        self,
        epoch: RequestEpoch,
        cancel: CancellationToken,
        conversation: Optional[str],
        state: _RoundState,
        calls: list[ToolCall],
    ) -> list[dict]:
        """Run *calls* in order; return the tool messages for the next round."""
        tool_wire: list[dict] = []
        for call in calls:
            self._set_call(epoch, state, call.id, status=ToolCallStatus.RUNNING)
            result = await safe_execute(self.tool_executor, call.name, call.arguments, cancel)
            tool_result = to_tool_result(result)
            self._set_call(
                epoch,
                state,
                call.id,
                status=ToolCallStatus.COMPLETED if tool_result.success else ToolCallStatus.ERROR,
                result=tool_result,
            )

            text = stringify_tool_result(result)
            tool_message = Message(role=MessageRole.TOOL, content=text, tool_call_id=call.id)
            self._guard.submit(epoch, lambda ms, m=tool_message: [*ms, m])
            self._persist(conversation, tool_message)
            # Only the upstream copy is cut; the local message keeps it all
            tool_wire.append(tool_wire_message(call.id, self.settings.truncate_tool_result(text)))
        return tool_wire

    # ------------------------------------------------------------------
    # Round
    # ------------------------------------------------------------------

    async def _stream_one_round(
        self,
        epoch: RequestEpoch,
        cancel: CancellationToken,
        conversation: Optional[str],
        wire: list[dict],
        round_index: int,
        state: _RoundState,
        offer_tools: bool = True,
    ) -> None:
        payload = {
            "model": self.settings.model,
            "stream": True,
            "x_mode": self.mode.value,
            "x_conversation_id": conversation,
            "x_tools": offer_tools,
            "messages": wire,
        }
        context = None
        if round_index == 0:
            context = "\n".join(f"[{m['role']}] {m.get('content') or ''}" for m in wire) or "(Empty)"
        self._emit(ProtocolEvent(
            "req", f"POST {STREAM_PATH} (round {round_index + 1})", payload, context=context,
        ))

        async with self.transport.open(payload, cancel) as response:
            if response.trace_id:
                if self._guard.is_current(epoch):
                    self.trace_id = response.trace_id
                self._emit(ProtocolEvent(
                    "info", "Trace ID", response.trace_id, trace_id=response.trace_id,
                ))

            assistant = Message(role=MessageRole.ASSISTANT, content="", is_streaming=True)
            state.assistant_id = assistant.id
            self._guard.submit(epoch, lambda ms: [*ms, assistant])

            async for data in decode_frames(cancel.iterate(response.body)):
                event = parse_payload(data)
                if event is not None:
                    self._apply(epoch, conversation, state, event, data)

        self._emit(ProtocolEvent("info", "SSE: [DONE]", "[DONE]"))
        self._finalize(epoch, state)

    def _apply(
        self,
        epoch: RequestEpoch,
        conversation: Optional[str],
        state: _RoundState,
        event: StreamEvent,
        data: str,
    ) -> None:
        if isinstance(event, WorkingSummaryEvent):
            previous = state.working
            state.working = WorkingState(
                status=previous.status if previous else "working",
                summary=[*(previous.summary if previous else []), event.text],
            )
            self._update_assistant(epoch, state, working=state.working)

        elif isinstance(event, WorkingStateEvent):
            state.working = WorkingState(
                status=event.status,
                summary=list(state.working.summary) if state.working else [],
            )
            self._update_assistant(epoch, state, working=state.working)

        elif isinstance(event, ToolResultEvent):
            state.settle()
            tool_result = to_tool_result(event.result)
            state.tool_calls = [
                tc.model_copy(update={
                    "status": ToolCallStatus.COMPLETED if tool_result.success else ToolCallStatus.ERROR,
                    "result": tool_result,
                }) if tc.id == event.tool_call_id else tc
                for tc in state.tool_calls
            ]
            tool_message = Message(
                role=MessageRole.TOOL,
                content=stringify_tool_result(event.result),
                tool_call_id=event.tool_call_id,
            )
            calls = list(state.tool_calls)
            self._guard.submit(epoch, lambda ms: [
                *update_message(ms, state.assistant_id, tool_calls=calls),
                tool_message,
            ])
            self._persist(conversation, tool_message)

        elif isinstance(event, ErrorEvent):
            state.error = event.message
            self._set_error(epoch, event.message)
            self._emit(ProtocolEvent("info", "Error", event.message))

        elif isinstance(event, ProviderChunk):
            raw_line = f"data: {data}"
            if event.finish_reason:
                state.finish_reason = event.finish_reason
            if event.content:
                state.content += event.content
                self._update_assistant(epoch, state, content=state.content)
                self._emit(ProtocolEvent("res", "SSE: Chunk", raw_line, token=event.content))
            if event.tool_call_fragments:
                for fragment in event.tool_call_fragments:
                    state.accumulator.feed(fragment)
                self._update_assistant(epoch, state, tool_calls=state.visible_tool_calls())
                self._emit(ProtocolEvent("res", "SSE: Tool Call", raw_line))
            if event.finish_reason == "tool_calls":
                state.settle()

    # ------------------------------------------------------------------
    # Guarded helpers
    # ------------------------------------------------------------------

    def _update_assistant(self, epoch: RequestEpoch, state: _RoundState, **changes: Any) -> None:
        if state.assistant_id is None:
            return
        self._guard.submit(epoch, lambda ms: update_message(ms, state.assistant_id, **changes))

    def _set_call(self, epoch: RequestEpoch, state: _RoundState, call_id: str, **changes: Any) -> None:
        state.tool_calls = [
            tc.model_copy(update=changes) if tc.id == call_id else tc for tc in state.tool_calls
        ]
        self._update_assistant(epoch, state, tool_calls=list(state.tool_calls))

    def _finalize(self, epoch: RequestEpoch, state: _RoundState) -> None:
        state.settle()
        if state.working is not None and state.working.status == "working":
            state.working = state.working.model_copy(update={"status": "done"})
        self._update_assistant(
            epoch,
            state,
            content=state.content,
            tool_calls=list(state.tool_calls) or None,
            working=state.working,
            is_streaming=False,
        )

    def _set_error(self, epoch: RequestEpoch, message: str) -> None:
        if self._guard.is_current(epoch):
            self.error = message

    def _history_wire(self, messages: list[Message]) -> list[dict]:
        """Wire copies of *messages* for the next request.

        Tool calls that never received a tool message (over the per-round
        cap, or cut off by an abort) are left out, since upstreams reject
        an assistant turn with unanswered calls.  Tool results are cut to
        the truncation budget.
        """
        answered = {m.tool_call_id for m in messages if m.role == MessageRole.TOOL}
        wire = []
        for message in messages:
            if message.tool_calls:
                kept = [tc for tc in message.tool_calls if tc.id in answered]
                message = message.model_copy(update={"tool_calls": kept or None})
            entry = message.to_wire()
            if message.role == MessageRole.TOOL and isinstance(entry.get("content"), str):
                entry["content"] = self.settings.truncate_tool_result(entry["content"])
            wire.append(entry)
        return wire

    def _persist(self, conversation: Optional[str], message: Message) -> None:
        fire_and_forget(self.store, conversation, message.to_record(), self._pending)

    def _emit(self, event: ProtocolEvent) -> None:
        if self.on_protocol_event is not None:
            self.on_protocol_event(event)
