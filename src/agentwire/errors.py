"""Exceptions raised by agentwire and the structured error frame body."""

from typing import Any, Optional


class AgentWireError(Exception):
    """Base exception for all agentwire errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details or {}


class UpstreamError(AgentWireError):
    """Raised when the model provider answers with a non-success status
    or without a body."""

    def __init__(self, message: str, status_code: int = 502, body: str = "") -> None:
        super().__init__(message, status_code=status_code, details={"body": body})
        self.body = body


class InputTooLongError(AgentWireError):
    """Raised when the latest user message exceeds the input budget."""

    def __init__(self, max_length: int, actual_length: int) -> None:
        super().__init__(
            f"Input of {actual_length} characters exceeds limit of {max_length}",
            status_code=400,
            details={"max_length": max_length, "actual_length": actual_length},
        )
        self.max_length = max_length
        self.actual_length = actual_length

    def to_dict(self) -> dict[str, Any]:
        return error_payload(
            "input_too_long",
            max_length=self.max_length,
            actual_length=self.actual_length,
        )


class ChatRequestError(AgentWireError):
    """Raised on the consuming side when the stream endpoint refuses a request."""

    def __init__(self, message: str, status_code: int, code: Optional[str] = None) -> None:
        super().__init__(message, status_code=status_code)
        self.code = code


class RequestAborted(AgentWireError):
    """Raised at a suspension point once the request has been cancelled.

    Aborting is a terminal state, not a failure: callers translate it into
    ``RunStatus.ABORTED`` and surface nothing to the user.
    """

    def __init__(self, message: str = "aborted") -> None:
        super().__init__(message, status_code=499)


def error_payload(code: str, **fields: Any) -> dict[str, Any]:
    """Build the body of an error frame or an error response."""
    return {"error": code, **fields}
