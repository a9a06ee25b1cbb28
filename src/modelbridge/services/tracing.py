"""Minimal tracing interface used by request-scoped models and connectors.

Spans are recorded as structlog events by default. A request object can
supply its own tracer through a ``tracer`` attribute.
"""

import time
from contextvars import ContextVar
from typing import Any, Protocol

import structlog

_current_request: ContextVar[Any] = ContextVar("modelbridge_current_request", default=None)


def current_request() -> Any:
    """Return the request bound to the running request-scoped call, if any."""
    return _current_request.get()


def bind_request(request: Any) -> Any:
    return _current_request.set(request)


def unbind_request(token: Any) -> None:
    _current_request.reset(token)


class Span(Protocol):
    def add_arguments(self, args: Any) -> None: ...

    def add_result(self, result: Any) -> None: ...

    def add_error(self, error: BaseException) -> None: ...

    def end(self) -> None: ...


class Tracer(Protocol):
    def start(self, name: str, **attributes: Any) -> Span: ...


class LogSpan:
    """Span that reports its outcome as a structlog event when ended."""

    def __init__(self, name: str, logger: structlog.stdlib.BoundLogger, attributes: dict[str, Any]) -> None:
        self.name = name
        self.attributes = attributes
        self.arguments: Any = None
        self.result: Any = None
        self.error: BaseException | None = None
        self.ended = False
        self._logger = logger
        self._started = time.perf_counter()
        self._logger.debug("span_started", span=name, **attributes)

    def add_arguments(self, args: Any) -> None:
        self.arguments = args

    def add_result(self, result: Any) -> None:
        self.result = result

    def add_error(self, error: BaseException) -> None:
        self.error = error

    def end(self) -> None:
        if self.ended:
            return
        self.ended = True
        duration_ms = round((time.perf_counter() - self._started) * 1000, 3)
        if self.error is not None:
            self._logger.debug("span_ended", span=self.name, duration_ms=duration_ms, error=str(self.error))
        else:
            self._logger.debug("span_ended", span=self.name, duration_ms=duration_ms)


class LogTracer:
    """Default tracer writing spans to structlog."""

    def __init__(self, logger: structlog.stdlib.BoundLogger | None = None) -> None:
        self._logger = logger or structlog.get_logger(__name__)

    def start(self, name: str, **attributes: Any) -> LogSpan:
        return LogSpan(name, self._logger, attributes)


def tracer_for(request: Any, fallback: Tracer | None = None) -> Tracer:
    """Pick the tracer carried by ``request``, else ``fallback``, else a LogTracer."""
    tracer = getattr(request, "tracer", None)
    if tracer is not None:
        return tracer
    return fallback or LogTracer()
