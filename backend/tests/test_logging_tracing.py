"""Tests for correlation logging and tracing helpers."""

from __future__ import annotations

import json
import logging

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from flowrunner.utils.logger import (
    CorrelationJsonFormatter,
    ctx_node_id,
    ctx_workflow_id,
    get_correlation_context,
    setup_logger,
)
from flowrunner.utils.tracing import _resolve_endpoint, get_tracer, setup_telemetry, traced


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


class TestCorrelationLogging:
    """Tests for the JSON formatter and context variables."""

    def test_context_fields_injected(self):
        formatter = CorrelationJsonFormatter("%(levelname)s %(name)s %(message)s")
        record = logging.LogRecord("flowrunner.test", logging.INFO, __file__, 1, "hello %s", ("x",), None)
        token_wf = ctx_workflow_id.set("wf1")
        token_node = ctx_node_id.set("n1")
        try:
            payload = json.loads(formatter.format(record))
            assert get_correlation_context() == {"workflow_id": "wf1", "node_id": "n1"}
        finally:
            ctx_node_id.reset(token_node)
            ctx_workflow_id.reset(token_wf)

        assert payload["message"] == "hello x"
        assert payload["workflow_id"] == "wf1"
        assert payload["node_id"] == "n1"
        assert "conversation_id" not in payload

    def test_no_context_outside_run(self):
        assert get_correlation_context() == {}

    def test_setup_logger_json(self, restore_root_logger):
        root = setup_logger(log_format="json", log_level="debug")
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, CorrelationJsonFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_setup_logger_text(self, restore_root_logger):
        root = setup_logger()
        assert root.level == logging.INFO
        assert not isinstance(root.handlers[0].formatter, CorrelationJsonFormatter)


class TestTracing:
    """Tests for the tracing bootstrap and span helper."""

    @pytest.mark.parametrize(
        "base, expected",
        [
            ("http://collector:4318", "http://collector:4318/v1/traces"),
            ("http://collector:4318/", "http://collector:4318/v1/traces"),
            ("http://collector:4318/v1/traces", "http://collector:4318/v1/traces"),
            (None, None),
            ("", None),
        ],
    )
    def test_resolve_endpoint(self, base, expected):
        assert _resolve_endpoint(base, "traces") == expected

    def test_disabled_without_endpoint(self):
        assert setup_telemetry(None) is None

    def test_traced_sets_attributes(self):
        exporter = InMemorySpanExporter()
        provider = TracerProvider()
        provider.add_span_processor(SimpleSpanProcessor(exporter))

        with traced(provider.get_tracer("test"), "node.Format", node_id="fmt", node_type=None):
            pass

        (span,) = exporter.get_finished_spans()
        assert span.name == "node.Format"
        assert span.attributes["node_id"] == "fmt"
        assert "node_type" not in span.attributes

    def test_noop_tracer_usable(self):
        with traced(get_tracer("flowrunner.test"), "noop", a=1) as span:
            assert span is not None
