"""Bounds and provider settings.

Every limit the agent loop enforces lives on :class:`Settings`.  Build one
with :meth:`Settings.from_env` or construct it directly in tests.
"""

import os

from pydantic import BaseModel, Field


DEFAULT_MODEL = "deepseek-chat"
DEFAULT_BASE_URL = "https://api.deepseek.com"
TRUNCATION_MARKER = "\n\n...(truncated)..."


class Settings(BaseModel):
    """Limits and provider configuration shared by both sides of the stream.

    Args:
        max_tool_rounds: Tool rounds allowed per user turn before a
            tool-less final round is forced.
        max_tool_calls_per_round: Tool calls executed per round; extra
            calls requested by the model are dropped.
        tool_result_max_chars: Character budget for tool results re-sent
            upstream by the consuming side.
        max_input_length: Longest accepted user message.
        max_output_tokens: ``max_tokens`` sent with every upstream request.
    """

    max_tool_rounds: int = Field(default=5, ge=0)
    max_tool_calls_per_round: int = Field(default=3, ge=1)
    tool_result_max_chars: int = Field(default=20_000, ge=1)
    max_input_length: int = Field(default=500, ge=1)
    max_output_tokens: int = Field(default=800, ge=1)

    max_traces: int = Field(default=200, ge=1)
    max_samples: int = Field(default=5000, ge=1)

    model: str = DEFAULT_MODEL
    api_key: str | None = None
    base_url: str = DEFAULT_BASE_URL

    # Simulated provider timings, in milliseconds
    ttfb_min_ms: int = 600
    ttfb_max_ms: int = 1200
    token_delay_ms: int = 30
    jitter_ms: int = 20

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from ``AGENTWIRE_*`` and ``OPENAI_*`` variables."""
        values: dict = {}
        for field_name in (
            "max_tool_rounds",
            "max_tool_calls_per_round",
            "tool_result_max_chars",
            "max_input_length",
            "max_output_tokens",
            "max_traces",
            "max_samples",
        ):
            raw = os.environ.get(f"AGENTWIRE_{field_name.upper()}")
            if raw:
                values[field_name] = int(raw)
        model = os.environ.get("AGENTWIRE_MODEL")
        if model:
            values["model"] = model
        values["api_key"] = os.environ.get("OPENAI_API_KEY") or None
        values["base_url"] = os.environ.get("OPENAI_BASE_URL", DEFAULT_BASE_URL)
        return cls(**values)

    def truncate_tool_result(self, text: str) -> str:
        """Cut *text* to the tool-result budget, marking the cut."""
        if len(text) <= self.tool_result_max_chars:
            return text
        return text[: self.tool_result_max_chars] + TRUNCATION_MARKER
