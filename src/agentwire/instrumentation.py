"""Telemetry for the chat stream: counters, latency samples and traces.

A :class:`Telemetry` instance is created by whoever owns the process (the
ASGI app, a test) and injected into the runner.  It keeps a bounded
in-memory view of recent traces and metrics and, when given an
OpenTelemetry tracer, mirrors spans to it.  ``opentelemetry-api`` is
optional; without it everything except span export works identically.
"""

from __future__ import annotations

import importlib.util
import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator

logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.time() * 1000


@dataclass
class Span:
    name: str
    start_ms: float
    end_ms: float | None = None
    attrs: dict[str, str] = field(default_factory=dict)


@dataclass
class Trace:
    trace_id: str
    route: str
    mode: str
    provider: str
    start_ms: float
    end_ms: float | None = None
    status: int | None = None
    ttfb_ms: float | None = None
    spans: list[Span] = field(default_factory=list)

    @property
    def duration_ms(self) -> float | None:
        if self.end_ms is None:
            return None
        return self.end_ms - self.start_ms


def _percentile(sorted_values: list[float], p: float) -> float:
    if not sorted_values:
        return 0
    idx = min(len(sorted_values) - 1, int(len(sorted_values) * p))
    return sorted_values[idx]


class Telemetry:
    """Bounded metrics and trace store with an explicit lifecycle.

    Call :meth:`start` before serving and :meth:`flush` to hand the
    collected data to a sink; flushing also clears the store.

    Args:
        max_traces: Finished traces retained, oldest dropped first.
        max_samples: Samples retained per metric name.
        tracer: Optional OpenTelemetry tracer receiving mirrored spans.
    """

    def __init__(self, max_traces: int = 200, max_samples: int = 5000, tracer: Any = None):
        self.max_traces = max_traces
        self.max_samples = max_samples
        self.tracer = tracer
        self.started = False
        self._traces: list[Trace] = []
        self._counters: dict[str, float] = {}
        self._samples: dict[str, list[float]] = {}

    @classmethod
    def from_settings(cls, settings, tracer: Any = None) -> "Telemetry":
        return cls(max_traces=settings.max_traces, max_samples=settings.max_samples, tracer=tracer)

    def instrument(self, *, tracer_name: str = "agentwire") -> None:
        """Mirror spans to OpenTelemetry using the global TracerProvider.

        Raises:
            ImportError: If ``opentelemetry-api`` is not installed.
        """
        if importlib.util.find_spec("opentelemetry.trace") is None:
            raise ImportError(
                "opentelemetry-api is required for instrumentation. "
                "Install it with: pip install agentwire[otel]"
            )
        from opentelemetry import trace

        self.tracer = trace.get_tracer(tracer_name)
        if isinstance(self.tracer, trace.NoOpTracer):
            logger.info(
                "No TracerProvider configured, spans will be "
                "discarded. Set up a TracerProvider to export "
                "traces."
            )

    def start(self) -> None:
        self._traces = []
        self._counters = {}
        self._samples = {}
        self.started = True

    def flush(self) -> dict[str, Any]:
        """Return everything collected since the last flush and reset."""
        snapshot = {
            "metrics": self.export_metrics(),
            "traces": self.list_traces(limit=self.max_traces),
        }
        self._traces = []
        self._counters = {}
        self._samples = {}
        return snapshot

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def increment(self, name: str, delta: float = 1) -> None:
        self._counters[name] = self._counters.get(name, 0) + delta

    def record_sample(self, name: str, value: float) -> None:
        values = self._samples.setdefault(name, [])
        values.append(value)
        if len(values) > self.max_samples:
            del values[: len(values) - self.max_samples]

    def export_metrics(self) -> dict[str, Any]:
        latencies = {}
        for name, values in self._samples.items():
            ordered = sorted(values)
            latencies[name] = {
                "p50": _percentile(ordered, 0.5),
                "p95": _percentile(ordered, 0.95),
                "p99": _percentile(ordered, 0.99),
            }
        return {"counters": dict(self._counters), "latencies": latencies}

    # ------------------------------------------------------------------
    # Traces
    # ------------------------------------------------------------------

    @staticmethod
    def new_trace_id() -> str:
        return uuid.uuid4().hex[:16]

    def start_trace(self, trace_id: str, route: str, mode: str, provider: str) -> Trace:
        return Trace(trace_id=trace_id, route=route, mode=mode, provider=provider, start_ms=_now_ms())

    def finish_trace(self, trace: Trace, status: int, ttfb_ms: float | None = None) -> None:
        trace.end_ms = _now_ms()
        trace.status = status
        trace.ttfb_ms = ttfb_ms
        self._traces.append(trace)
        if len(self._traces) > self.max_traces:
            del self._traces[: len(self._traces) - self.max_traces]

    def list_traces(self, limit: int = 50) -> list[dict[str, Any]]:
        return [
            {
                "traceId": t.trace_id,
                "route": t.route,
                "mode": t.mode,
                "provider": t.provider,
                "status": t.status,
                "durationMs": t.duration_ms,
                "startTime": datetime.fromtimestamp(t.start_ms / 1000, timezone.utc).isoformat(),
            }
            for t in self._traces[-limit:]
        ]

    def get_trace(self, trace_id: str) -> Trace | None:
        for t in reversed(self._traces):
            if t.trace_id == trace_id:
                return t
        return None

    # ------------------------------------------------------------------
    # Spans
    # ------------------------------------------------------------------

    @contextmanager
    def span(self, trace: Trace | None, name: str, **attrs: str) -> Iterator[Any]:
        """Record a span on *trace* and, when instrumented, in OpenTelemetry.

        Yields the OpenTelemetry span, or ``None`` when tracing is off.
        """
        local = Span(name=name, start_ms=_now_ms(), attrs=dict(attrs))
        if trace is not None:
            trace.spans.append(local)
        try:
            if self.tracer is None:
                yield None
            else:
                with self.tracer.start_as_current_span(name, attributes=dict(attrs)) as otel_span:
                    yield otel_span
        finally:
            local.end_ms = _now_ms()

    def completion_span(self, trace: Trace | None, system: str, model: str):
        """Span around one upstream model request."""
        return self.span(
            trace,
            f"chat {model}",
            **{
                "gen_ai.operation.name": "chat",
                "gen_ai.provider.name": system,
                "gen_ai.request.model": model,
            },
        )

    def tool_span(self, trace: Trace | None, tool_name: str, call_id: str):
        """Span around one tool execution."""
        return self.span(
            trace,
            f"execute_tool {tool_name}",
            **{
                "gen_ai.operation.name": "execute_tool",
                "gen_ai.tool.name": tool_name,
                "gen_ai.tool.call.id": call_id,
            },
        )


def record_error(span, exception: BaseException) -> None:
    """Record an exception and set ERROR status on a span.

    No-ops when *span* is ``None`` (tracing disabled).
    """
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute("error.type", type(exception).__qualname__)
