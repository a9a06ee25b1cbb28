"""Request-scoped facade over a shared connector.

Connectors are process-wide, but login state and tracing belong to a single
request. :class:`ConnectorRequestScope` wraps every coroutine method of a
connector so that each call runs the connector's request hooks in order:

    start_request -> login_required -> login (when required) -> call -> end_request

The whole sequence is traced as ``connector:<name>:<method>`` and the request
is published through :func:`modelbridge.services.tracing.current_request`
while it runs.
"""

import functools
import inspect
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import structlog

from modelbridge.errors import ORMError
from modelbridge.services.connector import maybe_await
from modelbridge.services.tracing import Tracer, bind_request, tracer_for, unbind_request

if TYPE_CHECKING:
    from modelbridge.services.connector import Connector

EXCLUDED_METHODS = frozenset({"start_request", "end_request", "login_required", "login", "create_request", "extend"})


class ConnectorRequestScope:
    """Per-request view of a connector.

    Attributes that are not coroutine methods are read straight from the
    wrapped connector, so the scope can stand in for it anywhere.
    """

    def __init__(
        self,
        request: Any,
        response: Any,
        connector: "Connector",
        tracer: Tracer | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self.request = request
        self.response = response
        self.connector = connector
        self._tracer = tracer_for(request, tracer)
        self._logger = logger or structlog.get_logger(__name__)

    def __repr__(self) -> str:
        return f"<ConnectorRequestScope connector={self.connector.name!r}>"

    def __getattr__(self, name: str) -> Any:
        if name.startswith("__") or name in ("request", "response", "connector"):
            raise AttributeError(name)
        value = getattr(self.connector, name)
        if name in EXCLUDED_METHODS or not inspect.iscoroutinefunction(value):
            return value
        scoped = self._scoped(name, value)
        # cache so repeated lookups return the same wrapper
        self.__dict__[name] = scoped
        return scoped

    async def login(self) -> Any:
        """Log in for this request using the connector's ``login`` hook, if it has one."""
        login = getattr(self.connector, "login", None)
        if login is None:
            return None
        return await maybe_await(login(self.request, self.response))

    def _scoped(self, name: str, method: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(method)
        async def scoped(*args: Any, **kwargs: Any) -> Any:
            span = self._tracer.start(f"connector:{self.connector.name}:{name}")
            span.add_arguments(args)
            token = bind_request(self.request)
            self._logger.debug("request_scope_call_started", connector=self.connector.name, method=name)
            try:
                await self._before(name, args)
                result = await method(*args, **kwargs)
                await self._after(name, args)
            except Exception as exc:
                span.add_error(exc)
                self._logger.debug(
                    "request_scope_call_failed", connector=self.connector.name, method=name, error=str(exc)
                )
                raise
            else:
                span.add_result(result)
                self._logger.debug("request_scope_call_completed", connector=self.connector.name, method=name)
                return result
            finally:
                unbind_request(token)
                span.end()

        return scoped

    async def _before(self, name: str, args: tuple[Any, ...]) -> None:
        start_request = getattr(self.connector, "start_request", None)
        if start_request is not None:
            await maybe_await(start_request(name, args, self.request, self.response))

        login_required = getattr(self.connector, "login_required", None)
        if login_required is None:
            return
        if await maybe_await(login_required(self.request)):
            if getattr(self.connector, "login", None) is None:
                raise ORMError("login required but no login method defined in the Connector")
            await self.login()

    async def _after(self, name: str, args: tuple[Any, ...]) -> None:
        end_request = getattr(self.connector, "end_request", None)
        if end_request is not None:
            await maybe_await(end_request(name, args, self.request, self.response))
