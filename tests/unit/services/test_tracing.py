"""Unit tests for the structlog-backed tracer."""

import structlog
from structlog.testing import capture_logs

from modelbridge.services.tracing import LogTracer, bind_request, current_request, tracer_for, unbind_request


class TestLogTracer:
    """Tests for spans reported as log events."""

    def test_span_logs_start_and_end(self) -> None:
        with capture_logs() as logs:
            span = LogTracer(structlog.get_logger("test")).start("model:user:create", user="jeff")
            span.add_arguments(({"name": "jeff"},))
            span.end()
            span.end()

        events = [entry["event"] for entry in logs]
        assert events == ["span_started", "span_ended"]
        assert logs[0]["user"] == "jeff"
        assert logs[1]["span"] == "model:user:create"
        assert "duration_ms" in logs[1]

    def test_span_logs_error(self) -> None:
        with capture_logs() as logs:
            span = LogTracer(structlog.get_logger("test")).start("connector:memory:save")
            span.add_error(ValueError("boom"))
            span.end()

        assert logs[-1]["error"] == "boom"


class TestTracerFor:
    """Tests for tracer selection."""

    def test_request_tracer_wins(self) -> None:
        class Request:
            tracer = LogTracer()

        assert tracer_for(Request()) is Request.tracer

    def test_fallback_then_default(self) -> None:
        fallback = LogTracer()

        assert tracer_for(None, fallback) is fallback
        assert isinstance(tracer_for(object()), LogTracer)


def test_bind_and_unbind_request() -> None:
    request = object()

    token = bind_request(request)
    assert current_request() is request
    unbind_request(token)

    assert current_request() is None
