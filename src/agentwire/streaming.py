"""Streaming primitives for tool-call deltas.

Providers deliver a tool call as a series of fragments keyed by position
index: the id and name usually arrive first, the JSON arguments arrive in
arbitrary slices.  The :class:`ToolCallAccumulator` reassembles them and
keeps the latest parseable argument object visible while text is still
arriving.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from agentwire.message import ToolCall, ToolCallStatus

T = TypeVar("T")


@dataclass
class ParseResult(Generic[T]):
    """Outcome of a tolerant parse: either ``value`` or ``error``."""

    ok: bool
    value: T | None = None
    error: str | None = None

    def or_else(self, fallback: T) -> T:
        return self.value if self.ok else fallback


def try_parse_json(text: str, expected_type: type | None = None) -> ParseResult:
    """Parse *text* as JSON without raising.

    Args:
        text: Possibly incomplete JSON text.
        expected_type: When given, a value of another type counts as a
            failed parse.
    """
    if not text:
        return ParseResult(ok=False, error="empty")
    try:
        value = json.loads(text)
    except json.JSONDecodeError as e:
        return ParseResult(ok=False, error=str(e))
    if expected_type is not None and not isinstance(value, expected_type):
        return ParseResult(ok=False, error=f"expected {expected_type.__name__}")
    return ParseResult(ok=True, value=value)


def parse_tool_arguments(text: str) -> dict[str, Any]:
    """Parse a complete argument string, falling back to an empty object."""
    return try_parse_json(text, dict).or_else({})


@dataclass
class ToolCallFragment:
    """A fragment of a tool call from a streaming chunk."""

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None

    @classmethod
    def from_dict(cls, raw: dict) -> "ToolCallFragment":
        """Build from a wire ``delta.tool_calls`` entry."""
        function = raw.get("function")
        if not isinstance(function, dict):
            function = {}
        index = raw.get("index")
        call_id = raw.get("id")
        name = function.get("name")
        arguments = function.get("arguments")
        return cls(
            index=index if isinstance(index, int) else 0,
            call_id=call_id if isinstance(call_id, str) else None,
            name=name if isinstance(name, str) else None,
            arguments_delta=arguments if isinstance(arguments, str) else None,
        )

    def to_dict(self) -> dict:
        raw: dict[str, Any] = {"index": self.index}
        if self.call_id is not None:
            raw["id"] = self.call_id
        function: dict[str, str] = {}
        if self.name is not None:
            function["name"] = self.name
        if self.arguments_delta is not None:
            function["arguments"] = self.arguments_delta
        if function:
            raw["function"] = function
        return raw


@dataclass
class AccumulatedToolCall:
    """Wire-level state of one tool call during a single round."""

    index: int
    id: str
    name: str
    arguments_text: str = ""
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_tool_call(self) -> ToolCall:
        return ToolCall(
            id=self.id,
            name=self.name,
            arguments=dict(self.arguments),
            status=ToolCallStatus.PENDING,
        )


class ToolCallAccumulator:
    """Assembles tool calls from streaming fragments, scoped to one round."""

    def __init__(self) -> None:
        self._pending: dict[int, AccumulatedToolCall] = {}
        self._placeholder_prefix = f"call_{uuid.uuid4().hex[:8]}"

    def __len__(self) -> int:
        return len(self._pending)

    def append_delta(
        self,
        index: int,
        call_id: str | None = None,
        name: str | None = None,
        arguments: str | None = None,
    ) -> AccumulatedToolCall:
        entry = self._pending.get(index)
        if entry is None:
            entry = AccumulatedToolCall(
                index=index,
                id=call_id or f"{self._placeholder_prefix}_{index}",
                name=name or "unknown",
                arguments_text=arguments or "",
            )
            self._pending[index] = entry
        else:
            # Blank identity fragments never erase what arrived earlier
            if call_id:
                entry.id = call_id
            if name:
                entry.name = name
            entry.arguments_text += arguments or ""

        parsed = try_parse_json(entry.arguments_text, dict)
        entry.arguments = parsed.or_else(entry.arguments)
        return entry

    def feed(self, fragment: ToolCallFragment | dict) -> AccumulatedToolCall:
        if isinstance(fragment, dict):
            fragment = ToolCallFragment.from_dict(fragment)
        return self.append_delta(
            fragment.index,
            call_id=fragment.call_id,
            name=fragment.name,
            arguments=fragment.arguments_delta,
        )

    def entries(self) -> list[AccumulatedToolCall]:
        """Return accumulated entries in index order."""
        return [self._pending[i] for i in sorted(self._pending)]

    def snapshot(self) -> list[ToolCall]:
        """Return the current tool calls in index order, all pending."""
        return [entry.to_tool_call() for entry in self.entries()]
