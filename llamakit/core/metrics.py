"""
llamakit :: Prometheus Metrics

Per-session monitoring. Each session owns its own CollectorRegistry,
so several sessions in one process never collide on metric names.

Metrics:
  - llamakit_tokens_decoded_total: tokens evaluated by the compute engine
  - llamakit_tokens_sampled_total: tokens produced by the sampler
  - llamakit_session_tokens_reused_total: prompt tokens skipped via the session cache
  - llamakit_context_shifts_total: window shifts performed
  - llamakit_self_extend_total: self-extend position remaps performed
  - llamakit_tool_calls_total: tool invocations
  - llamakit_tool_errors_total: tool invocations that produced an error envelope
  - llamakit_turn_duration_seconds: latency of one turn (input -> output line)
  - llamakit_context_used: tokens resident in the attention window

INL - 2025
"""

import time

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class SessionMetrics:
    """Prometheus metrics for one session."""

    def __init__(self, session_id: str = ""):
        self.registry = CollectorRegistry()
        labels = ["session"]
        self._labels = {"session": session_id}

        # Counters (integer)
        self.tokens_decoded = Counter(
            "llamakit_tokens_decoded_total", "Tokens evaluated by the compute engine",
            labels, registry=self.registry,
        ).labels(**self._labels)
        self.tokens_sampled = Counter(
            "llamakit_tokens_sampled_total", "Tokens produced by the sampler",
            labels, registry=self.registry,
        ).labels(**self._labels)
        self.session_tokens_reused = Counter(
            "llamakit_session_tokens_reused_total", "Prompt tokens skipped via the session cache",
            labels, registry=self.registry,
        ).labels(**self._labels)
        self.context_shifts = Counter(
            "llamakit_context_shifts_total", "Context window shifts",
            labels, registry=self.registry,
        ).labels(**self._labels)
        self.self_extend = Counter(
            "llamakit_self_extend_total", "Self-extend position remaps",
            labels, registry=self.registry,
        ).labels(**self._labels)
        self.tool_calls = Counter(
            "llamakit_tool_calls_total", "Tool invocations",
            labels, registry=self.registry,
        ).labels(**self._labels)
        self.tool_errors = Counter(
            "llamakit_tool_errors_total", "Tool invocations that failed",
            labels, registry=self.registry,
        ).labels(**self._labels)

        # Histograms
        self.turn_duration = Histogram(
            "llamakit_turn_duration_seconds", "Turn latency",
            labels, registry=self.registry,
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
        ).labels(**self._labels)

        # Gauges
        self.context_used = Gauge(
            "llamakit_context_used", "Tokens resident in the attention window",
            labels, registry=self.registry,
        ).labels(**self._labels)

        self._turn_start = None

    def serve(self, port: int, addr: str = "0.0.0.0"):
        """Expose this session's registry over HTTP."""
        start_http_server(port, addr=addr, registry=self.registry)

    def on_turn_start(self):
        self._turn_start = time.perf_counter()

    def on_turn_end(self):
        if self._turn_start is None:
            return
        self.turn_duration.observe(time.perf_counter() - self._turn_start)
        self._turn_start = None

    def value(self, name: str) -> float:
        """Read a sample value by metric name (tests, CLI stats)."""
        v = self.registry.get_sample_value(name, self._labels)
        return v if v is not None else 0.0
