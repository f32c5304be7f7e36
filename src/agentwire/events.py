"""Typed records carried inside SSE payloads.

A payload is either a raw provider chunk (``{"choices": [...]}``) or a
control record discriminated by ``type``.  :func:`parse_payload` turns the
payload text into one of the dataclasses below, or ``None`` when the payload
is unparseable or unknown; such payloads are dropped by every reader.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from agentwire.streaming import ToolCallFragment

logger = logging.getLogger(__name__)


@dataclass
class StreamEvent:
    """Base for all payload records."""

    def to_dict(self) -> dict:
        raise NotImplementedError


@dataclass
class ProviderChunk(StreamEvent):
    """Delta from the model provider, normalised from the first choice."""

    content: str | None = None
    tool_call_fragments: list[ToolCallFragment] = field(default_factory=list)
    finish_reason: str | None = None

    def to_dict(self) -> dict:
        delta: dict[str, Any] = {}
        if self.content is not None:
            delta["content"] = self.content
        if self.tool_call_fragments:
            delta["tool_calls"] = [f.to_dict() for f in self.tool_call_fragments]
        return {"choices": [{"delta": delta, "finish_reason": self.finish_reason}]}


@dataclass
class ToolResultEvent(StreamEvent):
    tool_call_id: str
    result: Any = None
    name: str | None = None

    def to_dict(self) -> dict:
        record: dict[str, Any] = {"type": "tool_result", "tool_call_id": self.tool_call_id}
        if self.name is not None:
            record["name"] = self.name
        record["result"] = self.result
        return record


@dataclass
class WorkingStateEvent(StreamEvent):
    """``status`` is ``"working"`` or ``"done"``."""

    status: str

    def to_dict(self) -> dict:
        return {"type": "working_state", "status": self.status}


@dataclass
class WorkingSummaryEvent(StreamEvent):
    text: str

    def to_dict(self) -> dict:
        return {"type": "working_summary", "text": self.text}


@dataclass
class ErrorEvent(StreamEvent):
    """Terminal failure reported in-band before the sentinel."""

    error: str
    status: int | None = None
    body: str = ""

    def to_dict(self) -> dict:
        return {"type": "error", "error": self.error, "status": self.status, "body": self.body}

    @property
    def message(self) -> str:
        if self.status is not None:
            return f"{self.error} ({self.status})"
        return self.error


def _parse_fragments(raw: Any) -> list[ToolCallFragment]:
    if not isinstance(raw, list):
        return []
    fragments = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        fragments.append(ToolCallFragment.from_dict(item))
    return fragments


def _parse_choice(record: dict) -> ProviderChunk | None:
    choices = record.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    choice = choices[0]
    delta = choice.get("delta")
    if not isinstance(delta, dict):
        delta = {}
    content = delta.get("content")
    finish_reason = choice.get("finish_reason")
    return ProviderChunk(
        content=content if isinstance(content, str) else None,
        tool_call_fragments=_parse_fragments(delta.get("tool_calls")),
        finish_reason=finish_reason if isinstance(finish_reason, str) else None,
    )


def parse_payload(payload: str) -> StreamEvent | None:
    """Classify a payload string; ``None`` means drop it."""
    try:
        record = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("Dropping unparseable payload: %.80s", payload)
        return None
    if not isinstance(record, dict):
        return None

    kind = record.get("type")
    if kind == "tool_result":
        tool_call_id = record.get("tool_call_id")
        if not isinstance(tool_call_id, str) or not tool_call_id:
            return None
        name = record.get("name")
        return ToolResultEvent(
            tool_call_id=tool_call_id,
            result=record.get("result"),
            name=name if isinstance(name, str) else None,
        )
    if kind == "working_state":
        status = record.get("status")
        if status not in ("working", "done"):
            return None
        return WorkingStateEvent(status=status)
    if kind == "working_summary":
        text = record.get("text")
        if not isinstance(text, str) or not text:
            return None
        return WorkingSummaryEvent(text=text)
    if kind == "error":
        status = record.get("status")
        body = record.get("body")
        return ErrorEvent(
            error=str(record.get("error") or "error"),
            status=status if isinstance(status, int) else None,
            body=body if isinstance(body, str) else "",
        )

    return _parse_choice(record)
