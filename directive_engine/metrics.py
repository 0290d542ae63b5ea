"""Prometheus metrics and a tiny HTTP server to expose them.

Call `start_metrics_server(port)` once in a process to expose /metrics.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server


# Runner metrics
DIRECTIVE_EXECUTION_TOTAL = Counter(
    "directive_execution_total", "Directive execution deliveries by outcome", ["outcome", "type"]
)
DIRECTIVE_HANDLER_LATENCY_SECONDS = Histogram(
    "directive_handler_latency_seconds", "Time spent inside a directive handler", ["type"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, 30),
)
DIRECTIVE_DISCARDED_TOTAL = Counter(
    "directive_discarded_total", "Deliveries discarded by a guardrail", ["reason"]
)
DIRECTIVE_REQUESTED_TOTAL = Counter(
    "directive_requested_total", "Directive create requests", ["type", "result"]  # created | existing
)

# Signal bus metrics
SIGNAL_EMITTED_TOTAL = Counter(
    "signal_emitted_total", "Signals emitted", ["result"]  # created | existing
)
SIGNAL_EMIT_FAILED_TOTAL = Counter(
    "signal_emit_failed_total", "Signal emissions that failed and were swallowed", ["reason"]
)
SIGNAL_FANOUT_PUBLISHED_TOTAL = Counter(
    "signal_fanout_published_total", "Signals handed to fan-out consumers", ["result"]  # ok | error
)
SIGNAL_REPLAY_TOTAL = Counter(
    "signal_replay_total", "Signals re-delivered by replay", ["tenant"]
)


def start_metrics_server(port: int = 9000) -> None:
    start_http_server(port)
