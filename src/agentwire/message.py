import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_serializer


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class ChatMode(str, Enum):
    CHAT = "chat"
    AGENT = "agent"
    IDE = "ide"
    CLI = "cli"


class ToolCallStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


def generate_id() -> str:
    return f"msg_{uuid.uuid4().hex[:12]}"


class ToolResult(BaseModel):
    success: bool
    data: Any = None
    error: str | None = None


class ToolCall(BaseModel):
    """A tool invocation requested by the model.

    ``arguments`` holds the last successfully parsed argument object; while
    fragments are still arriving it may lag behind the raw text.
    """

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    status: ToolCallStatus = ToolCallStatus.PENDING
    result: ToolResult | None = None

    @field_serializer("status")
    def serialize_status(self, status: ToolCallStatus, _info) -> str:
        return status.value

    def to_wire(self, arguments_text: str | None = None) -> dict:
        """Return the OpenAI ``tool_calls`` entry for this call."""
        if arguments_text is None:
            arguments_text = json.dumps(self.arguments)
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": arguments_text},
        }


class WorkingState(BaseModel):
    """Progress narration attached to an assistant message during tool rounds."""

    status: Literal["working", "done"] = "working"
    summary: list[str] = Field(default_factory=list)


class Message(BaseModel):
    id: str = Field(default_factory=generate_id)
    role: MessageRole
    content: str | None = ""
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    working: WorkingState | None = None
    is_streaming: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_serializer("role")
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value

    def to_wire(self) -> dict:
        """Convert to the chat-completions message shape sent upstream."""
        wire: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            wire["tool_calls"] = [tc.to_wire() for tc in self.tool_calls]
        if self.role == MessageRole.TOOL and self.tool_call_id:
            wire["tool_call_id"] = self.tool_call_id
        return wire

    def to_record(self) -> dict:
        """Convert to the record handed to the persistence collaborator."""
        record: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            record["toolCalls"] = [tc.model_dump() for tc in self.tool_calls]
        if self.tool_call_id:
            record["toolCallId"] = self.tool_call_id
        if self.working is not None:
            record["working"] = self.working.model_dump()
        return record


def assistant_wire_message(
    content: str | None,
    tool_calls: list[ToolCall],
    arguments_text: dict[str, str] | None = None,
) -> dict:
    """Build the assistant turn that precedes tool results in the context.

    *arguments_text* maps call ids to the raw argument text received from
    the model; calls without an entry are re-serialised from ``arguments``.
    """
    arguments_text = arguments_text or {}
    return {
        "role": "assistant",
        "content": content,
        "tool_calls": [tc.to_wire(arguments_text.get(tc.id)) for tc in tool_calls],
    }


def tool_wire_message(tool_call_id: str, content: str) -> dict:
    return {"role": "tool", "tool_call_id": tool_call_id, "content": content}


def update_message(messages: list[Message], message_id: str, **changes: Any) -> list[Message]:
    """Return a copy of *messages* with one message updated."""
    return [
        m.model_copy(update=changes) if m.id == message_id else m
        for m in messages
    ]
