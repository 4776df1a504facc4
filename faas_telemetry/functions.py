"""HTTP glue for instrumented greeting functions.

These are the business-logic collaborators the instrumentation wraps: a
request/response pair independent of any hosting runtime and the greeting
handler used by both flavours of function. Whether a handler emits only
the invocation counter or also continues the inbound trace is decided by
the facade's ``tracing_enabled`` setting.

Example:
    >>> request = HttpRequest(query={"name": "Ada"}, headers=inbound_headers)
    >>> handle_greeting(request).body
    'Hello, Ada. This HTTP triggered function executed successfully.'
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from faas_telemetry.facade import InstrumentationFacade, get_instrumentation
from faas_telemetry.logging import get_logger


logger = get_logger(__name__)

DEFAULT_MESSAGE = (
    "This HTTP triggered function executed successfully. "
    "Pass a name in the query string or in the request body for a personalized response."
)
PERSONALIZED_MESSAGE = "Hello, {name}. This HTTP triggered function executed successfully."


@dataclass(frozen=True, slots=True)
class HttpRequest:
    """Inbound HTTP request as handed over by the hosting runtime."""

    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=dict)
    query: Mapping[str, str] = field(default_factory=dict)
    body: bytes | str = b""


@dataclass(frozen=True, slots=True)
class HttpResponse:
    """Outbound HTTP response.

    Attributes:
        status: HTTP status code.
        body: Response text.
        headers: Response headers, including the trace context of the
            invocation span when one was created.
    """

    status: int = 200
    body: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)


def resolve_name(request: HttpRequest) -> str | None:
    """Get ``name`` from the query string, else from a JSON body.

    A body that is not a JSON object is ignored.
    """
    name = request.query.get("name")
    if name:
        return name

    body = request.body.decode("utf-8", errors="replace") if isinstance(request.body, bytes) else request.body
    if not body.strip():
        return None
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        logger.debug("Ignoring request body that is not JSON")
        return None
    if not isinstance(data, dict):
        return None
    value = data.get("name")
    return str(value) if value not in (None, "") else None


def greeting(name: str | None) -> str:
    """Build the response message."""
    if not name:
        return DEFAULT_MESSAGE
    return PERSONALIZED_MESSAGE.format(name=name)


class ArtificialLatency:
    """Maps request names to artificial delays, for latency experiments.

    Disabled unless delays are given.

    Example:
        >>> latency = ArtificialLatency.demo()
        >>> latency.delay_for("1.5")
        1.5
    """

    def __init__(
        self,
        delays: Mapping[str, float] | None = None,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self._delays = dict(delays or {})
        self._sleep = sleep

    @classmethod
    def demo(cls) -> ArtificialLatency:
        """Delays of 0.5, 1, 1.5 and 2 seconds keyed by their own value."""
        return cls({"0.5": 0.5, "1": 1.0, "1.5": 1.5, "2": 2.0})

    @property
    def enabled(self) -> bool:
        """Whether any delay is configured."""
        return bool(self._delays)

    def delay_for(self, name: str | None) -> float:
        """Seconds to wait for the given name (0.0 if none)."""
        if name is None:
            return 0.0
        return self._delays.get(name, 0.0)

    def apply(self, name: str | None) -> float:
        """Block for the configured delay and return it."""
        delay = self.delay_for(name)
        if delay > 0:
            self._sleep(delay)
        return delay

    async def aapply(self, name: str | None) -> float:
        """Async variant of apply()."""
        delay = self.delay_for(name)
        if delay > 0:
            await asyncio.sleep(delay)
        return delay


def _respond(facade: InstrumentationFacade, name: str | None) -> HttpResponse:
    span = facade.tracer.active_span()
    headers = facade.tracer.inject(span) if span is not None else {}
    return HttpResponse(200, greeting(name), headers)


def handle_greeting(
    request: HttpRequest,
    facade: InstrumentationFacade | None = None,
    *,
    invocation_id: str | None = None,
    latency: ArtificialLatency | None = None,
) -> HttpResponse:
    """Serve a greeting inside an instrumented invocation.

    Args:
        request: Inbound request.
        facade: Instrumentation to use; the process-wide one by default.
        invocation_id: Identifier assigned by the hosting runtime.
        latency: Optional artificial delay hook.
    """
    facade = facade or get_instrumentation()

    def run() -> HttpResponse:
        logger.info("HTTP trigger function processed a request.", method=request.method)
        name = resolve_name(request)
        if latency is not None:
            latency.apply(name)
        return _respond(facade, name)

    response, _ = facade.invoke(request.headers, invocation_id, run)
    return response


async def ahandle_greeting(
    request: HttpRequest,
    facade: InstrumentationFacade | None = None,
    *,
    invocation_id: str | None = None,
    latency: ArtificialLatency | None = None,
) -> HttpResponse:
    """Async variant of handle_greeting()."""
    facade = facade or get_instrumentation()

    async def run() -> HttpResponse:
        logger.info("HTTP trigger function processed a request.", method=request.method)
        name = resolve_name(request)
        if latency is not None:
            await latency.aapply(name)
        return _respond(facade, name)

    response, _ = await facade.ainvoke(request.headers, invocation_id, run)
    return response
