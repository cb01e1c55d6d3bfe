"""OpenTelemetry tracing bootstrap.

Tracing is opt-in: nothing is exported unless an OTLP endpoint is configured
(``OTLP_ENDPOINT`` in :class:`~flowrunner.config.Settings`).  Without a
provider, :func:`get_tracer` returns the global no-op tracer so graph nodes
and prompt builds can always open spans.
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from typing import Any, Iterator

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

logger = logging.getLogger("flowrunner.tracing")


def _resolve_endpoint(base: str | None, signal: str) -> str | None:
    """Derive a signal-specific OTLP endpoint from a base URL.

    Accepts both ``http://host:4318`` and ``http://host:4318/v1/traces``.
    """
    if not base:
        return None
    clean = re.sub(r"/v1/[^/]+$", "", base.rstrip("/"))
    return f"{clean}/v1/{signal}"


def setup_telemetry(
    otlp_endpoint: str | None = None,
    service_name: str = "flowrunner",
    service_version: str = "0.1.0",
    environment: str = "development",
) -> TracerProvider | None:
    """Install an OTLP-exporting tracer provider; returns it, or None when disabled."""
    traces_ep = _resolve_endpoint(otlp_endpoint, "traces")
    if not traces_ep:
        logger.info("OpenTelemetry disabled — no OTLP endpoint configured.")
        return None

    resource = Resource.create({
        "service.name": service_name,
        "service.version": service_version,
        "deployment.environment": environment,
    })
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_ep)))
    trace.set_tracer_provider(provider)
    logger.info("OTEL traces  → %s", traces_ep)
    return provider


def get_tracer(name: str):
    """Return a tracer.  Works even when no provider is configured
    (returns the global no-op tracer in that case)."""
    return trace.get_tracer(name)


@contextmanager
def traced(tracer, span_name: str, **attributes: Any) -> Iterator[Any]:
    """Open a span and set scalar attributes, skipping None values."""
    with tracer.start_as_current_span(span_name) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
        yield span
