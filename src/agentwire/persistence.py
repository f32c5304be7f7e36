"""Persistence collaborator for finalized messages.

Writes are fire-and-forget: the in-memory conversation never waits on, or
rolls back because of, a failed append.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import httpx

from agentwire.message import ChatMode, Message, MessageRole, ToolCall, WorkingState

logger = logging.getLogger(__name__)


class MessageStore(Protocol):
    async def append(self, conversation_id: str, record: dict[str, Any]) -> None: ...

    async def load(self, conversation_id: str, mode: ChatMode) -> list[Message]: ...


def record_to_message(record: dict[str, Any]) -> Message:
    """Rebuild a :class:`Message` from a stored record."""
    created = record.get("createdAt")
    timestamp = (
        datetime.fromisoformat(created.replace("Z", "+00:00"))
        if isinstance(created, str)
        else datetime.now(timezone.utc)
    )
    fields: dict[str, Any] = {
        "role": MessageRole(record["role"]),
        "content": record.get("content") or "",
        "tool_calls": [ToolCall.model_validate(tc) for tc in record.get("toolCalls") or []] or None,
        "tool_call_id": record.get("toolCallId"),
        "working": WorkingState.model_validate(record["working"]) if record.get("working") else None,
        "timestamp": timestamp,
        "is_streaming": False,
    }
    if record.get("id"):
        fields["id"] = record["id"]
    return Message(**fields)


class InMemoryMessageStore:
    """Process-local store, used by tests and the offline demo."""

    def __init__(self) -> None:
        self.records: dict[str, list[dict[str, Any]]] = {}

    async def append(self, conversation_id: str, record: dict[str, Any]) -> None:
        stored = {**record, "createdAt": datetime.now(timezone.utc).isoformat()}
        self.records.setdefault(conversation_id, []).append(stored)

    async def load(self, conversation_id: str, mode: ChatMode) -> list[Message]:
        return [record_to_message(r) for r in self.records.get(conversation_id, [])]


class HttpMessageStore:
    """Store backed by the conversations HTTP API.

    Args:
        base_url: Origin serving ``/api/conversations``.
        client: Optional shared ``httpx.AsyncClient``.
    """

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _url(self, conversation_id: str) -> str:
        return f"{self.base_url}/api/conversations/{conversation_id}/messages"

    async def append(self, conversation_id: str, record: dict[str, Any]) -> None:
        response = await self._client.post(self._url(conversation_id), json=record)
        response.raise_for_status()

    async def load(self, conversation_id: str, mode: ChatMode) -> list[Message]:
        response = await self._client.get(
            self._url(conversation_id), params={"mode": ChatMode(mode).value.upper()}
        )
        response.raise_for_status()
        return [record_to_message(r) for r in response.json().get("messages", [])]

    async def aclose(self) -> None:
        await self._client.aclose()


async def _append_logged(store: MessageStore, conversation_id: str, record: dict[str, Any]) -> None:
    try:
        await store.append(conversation_id, record)
    except Exception as e:
        logger.warning(f"Failed to persist {record.get('role')} message to {conversation_id}: {e}")


def fire_and_forget(
    store: MessageStore | None,
    conversation_id: str | None,
    record: dict[str, Any],
    pending: set[asyncio.Task],
) -> asyncio.Task | None:
    """Schedule an append without awaiting it.

    The task is held in *pending* until it finishes so it is not garbage
    collected mid-flight.
    """
    if store is None or not conversation_id:
        return None
    task = asyncio.create_task(_append_logged(store, conversation_id, record))
    pending.add(task)
    task.add_done_callback(pending.discard)
    return task
