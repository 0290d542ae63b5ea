"""Trace context for directive deliveries.

Library code only asks for tracers; the process-wide provider is installed by
the worker scripts through ``start_tracing``. Until then OpenTelemetry's
no-op provider is in effect, so the runner and the tests need no exporter.

Trace context travels between producer and worker in AMQP headers using the
W3C ``traceparent`` format.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from opentelemetry import trace  # type: ignore
from opentelemetry.context import Context  # type: ignore
from opentelemetry.propagate import extract, inject, set_global_textmap  # type: ignore
from opentelemetry.sdk.resources import Resource  # type: ignore
from opentelemetry.sdk.trace import TracerProvider  # type: ignore
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor  # type: ignore
from opentelemetry.trace import Tracer  # type: ignore
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator  # type: ignore


def start_tracing(service_name: str) -> Tracer:
    """Install a console-exporting provider for this process and return its tracer."""
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    set_global_textmap(TraceContextTextMapPropagator())
    return trace.get_tracer(service_name)


def get_tracer(name: str) -> Tracer:
    return trace.get_tracer(name)


def inject_headers(headers: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Copy ``headers`` and add the current span's trace context to the copy."""
    carrier: Dict[str, Any] = dict(headers or {})
    inject(carrier)
    return carrier


def context_from_headers(headers: Optional[Mapping[str, Any]]) -> Context:
    """Rebuild the producer's trace context from AMQP headers.

    aio-pika may hand back header values as bytes; the propagator only reads
    strings.
    """
    carrier: Dict[str, str] = {}
    for key, value in (headers or {}).items():
        carrier[str(key)] = value.decode("utf-8", "replace") if isinstance(value, bytes) else str(value)
    return extract(carrier)
