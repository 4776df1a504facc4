"""Span lifecycle and the request-local active span.

A Tracer creates spans, keeps track of the span active in the current
execution context and hands every finished span, as an immutable SpanData
snapshot, to its reporters. The active span lives in a ContextVar, so
concurrent invocations on threads or asyncio tasks never observe each
other's span.

Example:
    >>> tracer = Tracer(ApplicationIdentity("TruckApp", "TruckService"), reporters=[reporter])
    >>> parent = tracer.extract(request.headers)
    >>> with tracer.start_active_span("TruckGlobalDataAggregator.Execute", parent) as span:
    ...     span.set_tag("invocation.id", invocation_id)
    ...     handle(request)
"""

from __future__ import annotations

import contextlib
import threading
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Self

from faas_telemetry.exceptions import SpanAlreadyFinishedError
from faas_telemetry.logging import get_logger
from faas_telemetry.propagation import HeaderMap, SpanContext, SpanContextCodec
from faas_telemetry.reporters import CompositeSpanReporter, SpanReporter


if TYPE_CHECKING:
    from faas_telemetry.config import TelemetryConfig


logger = get_logger(__name__)

TagValue = str | bool | int | float


def _generate_id() -> str:
    """Generate a random 128-bit identifier in UUID form."""
    return str(uuid.uuid4())


def _tag_str(value: TagValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# =============================================================================
# Data Types
# =============================================================================


class SpanStatus(Enum):
    """Lifecycle state of a span."""

    ACTIVE = "active"
    FINISHED = "finished"


@dataclass(frozen=True, slots=True)
class ApplicationIdentity:
    """Static identity attached as tags to every span a tracer reports.

    Attributes:
        application: Application name.
        service: Service name.
        cluster: Cluster name.
        shard: Shard name.
        custom_tags: Additional static tags.
    """

    application: str
    service: str
    cluster: str = "none"
    shard: str = "none"
    custom_tags: Mapping[str, str] = field(default_factory=dict, hash=False)

    def tags(self) -> tuple[tuple[str, str], ...]:
        """Identity as ordered tag pairs."""
        base = (
            ("application", self.application),
            ("service", self.service),
            ("cluster", self.cluster),
            ("shard", self.shard),
        )
        return base + tuple(self.custom_tags.items())

    @classmethod
    def from_config(cls, config: TelemetryConfig) -> Self:
        """Build the identity from process configuration."""
        return cls(
            application=config.application,
            service=config.service,
            cluster=config.cluster,
            shard=config.shard,
        )


@dataclass(frozen=True, slots=True)
class SpanData:
    """Immutable snapshot of a finished span.

    Attributes:
        operation_name: Operation the span measured.
        trace_id: Trace identifier.
        span_id: Span identifier.
        parent_span_id: Parent span identifier (if any).
        tags: Identity tags followed by the span's own tags.
        start_time_micros: Start as epoch microseconds.
        duration_micros: Duration in microseconds.
        baggage: Baggage of the span context at finish time.
    """

    operation_name: str
    trace_id: str
    span_id: str
    parent_span_id: str | None = None
    tags: tuple[tuple[str, str], ...] = ()
    start_time_micros: int = 0
    duration_micros: int = 0
    baggage: Mapping[str, str] = field(default_factory=dict, hash=False)

    @property
    def tag_dict(self) -> dict[str, str]:
        """Tags as a dictionary."""
        return dict(self.tags)

    @property
    def is_error(self) -> bool:
        """Whether the span was tagged as failed."""
        return self.tag_dict.get("error") == "true"

    @property
    def duration_ms(self) -> float:
        """Duration in milliseconds."""
        return self.duration_micros / 1000

    @property
    def context(self) -> SpanContext:
        """Context of the finished span."""
        return SpanContext(self.trace_id, self.span_id, self.parent_span_id, dict(self.baggage))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "operation_name": self.operation_name,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "tags": self.tag_dict,
            "start_time_micros": self.start_time_micros,
            "duration_micros": self.duration_micros,
            "baggage": dict(self.baggage),
        }


# =============================================================================
# Span
# =============================================================================


class Span:
    """A unit of work within a trace.

    Spans are created by Tracer.start_span() and finished exactly once.
    Tags and baggage can only be changed while the span is active.

    Example:
        >>> span = tracer.start_span("process")
        >>> span.set_tag("rows", 1000)
        >>> data = span.finish()
    """

    def __init__(
        self,
        tracer: Tracer,
        operation_name: str,
        context: SpanContext,
        tags: Mapping[str, TagValue] | None = None,
    ) -> None:
        self._tracer = tracer
        self._operation_name = operation_name
        self._context = context
        self._tags: dict[str, str] = {k: _tag_str(v) for k, v in (tags or {}).items()}
        self._start_time = time.time()
        self._start_perf = time.perf_counter()
        self._finish_time: float | None = None
        self._duration: float | None = None
        self._status = SpanStatus.ACTIVE
        self._lock = threading.Lock()

    @property
    def operation_name(self) -> str:
        """Get operation name."""
        return self._operation_name

    @property
    def context(self) -> SpanContext:
        """Get the span's propagation context."""
        return self._context

    @property
    def trace_id(self) -> str:
        """Get trace ID."""
        return self._context.trace_id

    @property
    def span_id(self) -> str:
        """Get span ID."""
        return self._context.span_id

    @property
    def parent_span_id(self) -> str | None:
        """Get parent span ID."""
        return self._context.parent_span_id

    @property
    def status(self) -> SpanStatus:
        """Get lifecycle state."""
        return self._status

    @property
    def is_finished(self) -> bool:
        """Check whether the span has been finished."""
        return self._status is SpanStatus.FINISHED

    @property
    def start_time(self) -> float:
        """Start as epoch seconds."""
        return self._start_time

    @property
    def finish_time(self) -> float | None:
        """Finish as epoch seconds, None while active."""
        return self._finish_time

    @property
    def tags(self) -> dict[str, str]:
        """Get span tags."""
        with self._lock:
            return dict(self._tags)

    def _ensure_active(self, action: str) -> None:
        if self._status is SpanStatus.FINISHED:
            raise SpanAlreadyFinishedError(
                f"Cannot {action}: span is already finished",
                operation_name=self._operation_name,
                trace_id=self.trace_id,
            )

    def set_tag(self, key: str, value: TagValue) -> Span:
        """Set a tag.

        Returns:
            Self for chaining.

        Raises:
            SpanAlreadyFinishedError: If the span is finished.
        """
        with self._lock:
            self._ensure_active("set tag")
            self._tags[key] = _tag_str(value)
        return self

    def set_tags(self, tags: Mapping[str, TagValue]) -> Span:
        """Set several tags at once."""
        for key, value in tags.items():
            self.set_tag(key, value)
        return self

    def set_error(self, exception: BaseException | None = None) -> Span:
        """Mark the span as failed, optionally recording the exception."""
        self.set_tag("error", True)
        if exception is not None:
            self.set_tag("error.kind", type(exception).__name__)
            self.set_tag("error.message", str(exception))
        return self

    def set_baggage_item(self, key: str, value: str) -> Span:
        """Add a baggage item that propagates to child spans and downstream calls.

        Raises:
            SpanAlreadyFinishedError: If the span is finished.
        """
        with self._lock:
            self._ensure_active("set baggage")
            self._context = self._context.with_baggage_item(key, value)
        return self

    def get_baggage_item(self, key: str) -> str | None:
        """Get a baggage item by key."""
        return self._context.baggage_item(key)

    def _mark_finished(self) -> None:
        with self._lock:
            self._ensure_active("finish")
            self._duration = time.perf_counter() - self._start_perf
            self._finish_time = self._start_time + self._duration
            self._status = SpanStatus.FINISHED

    def to_span_data(self, identity: ApplicationIdentity | None = None) -> SpanData:
        """Snapshot the span, identity tags first."""
        tags: dict[str, str] = dict(identity.tags()) if identity else {}
        with self._lock:
            tags.update(self._tags)
            duration = self._duration
        if duration is None:
            duration = time.perf_counter() - self._start_perf
        return SpanData(
            operation_name=self._operation_name,
            trace_id=self.trace_id,
            span_id=self.span_id,
            parent_span_id=self.parent_span_id,
            tags=tuple(tags.items()),
            start_time_micros=int(self._start_time * 1_000_000),
            duration_micros=int(duration * 1_000_000),
            baggage=dict(self._context.baggage),
        )

    def finish(self) -> SpanData:
        """Finish the span through its tracer.

        Raises:
            SpanAlreadyFinishedError: If the span was already finished.
        """
        return self._tracer.finish(self)

    def __enter__(self) -> Span:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self.is_finished:
            return
        if exc_val is not None:
            self.set_error(exc_val)
        self.finish()

    def __repr__(self) -> str:
        return (
            f"Span(operation_name={self._operation_name!r}, trace_id={self.trace_id!r}, "
            f"span_id={self.span_id!r}, status={self._status.value!r})"
        )


# =============================================================================
# Tracer
# =============================================================================


class Tracer:
    """Creates spans and dispatches finished spans to reporters.

    Reporters receive each finished span synchronously, in the order they
    were added. A failing reporter is logged and does not stop the others.
    """

    def __init__(
        self,
        identity: ApplicationIdentity,
        reporters: Iterable[SpanReporter] | None = None,
        codec: SpanContextCodec | None = None,
    ) -> None:
        """Initialize tracer.

        Args:
            identity: Static tags attached to every reported span.
            reporters: Reporters notified of finished spans.
            codec: Header codec used by inject() and extract().
        """
        self._identity = identity
        self._reporter = CompositeSpanReporter(list(reporters or ()))
        self._codec = codec or SpanContextCodec()
        self._active: ContextVar[Span | None] = ContextVar(
            f"faas_telemetry_active_span_{id(self):x}",
            default=None,
        )

    @property
    def identity(self) -> ApplicationIdentity:
        """Static identity of this tracer."""
        return self._identity

    @property
    def codec(self) -> SpanContextCodec:
        """Header codec."""
        return self._codec

    @property
    def reporters(self) -> list[SpanReporter]:
        """Reporters in dispatch order."""
        return self._reporter.reporters

    def add_reporter(self, reporter: SpanReporter) -> None:
        """Append a reporter to the dispatch chain."""
        self._reporter.add(reporter)

    def start_span(
        self,
        operation_name: str,
        parent: SpanContext | Span | None = None,
        *,
        tags: Mapping[str, TagValue] | None = None,
        ignore_active: bool = False,
    ) -> Span:
        """Start a new span.

        Args:
            operation_name: Operation the span measures.
            parent: Parent context or span. Defaults to the active span.
            tags: Initial tags.
            ignore_active: Start a root span even if a span is active.

        Returns:
            A new active Span.
        """
        if isinstance(parent, Span):
            parent = parent.context
        if parent is None and not ignore_active:
            active = self.active_span()
            if active is not None:
                parent = active.context

        if parent is not None:
            context = SpanContext(
                trace_id=parent.trace_id,
                span_id=_generate_id(),
                parent_span_id=parent.span_id,
                baggage=dict(parent.baggage),
            )
        else:
            context = SpanContext(trace_id=_generate_id(), span_id=_generate_id())

        return Span(self, operation_name, context, tags)

    def finish(self, span: Span) -> SpanData:
        """Finish a span and report it.

        Raises:
            SpanAlreadyFinishedError: If the span was already finished.
                Nothing is reported a second time.
        """
        span._mark_finished()
        data = span.to_span_data(self._identity)
        self._reporter.report(data)
        return data

    def active_span(self) -> Span | None:
        """The span active in the current execution context, if any."""
        span = self._active.get()
        if span is None or span.is_finished:
            return None
        return span

    def set_active(self, span: Span) -> Token[Span | None]:
        """Make a span active in the current context.

        Returns:
            Token for reset_active(); must be used in the same context.

        Raises:
            SpanAlreadyFinishedError: If the span is already finished.
        """
        span._ensure_active("activate")
        return self._active.set(span)

    def reset_active(self, token: Token[Span | None]) -> None:
        """Restore the span that was active before set_active()."""
        self._active.reset(token)

    @contextlib.contextmanager
    def activate(self, span: Span) -> Iterator[Span]:
        """Make a span active for the duration of the block.

        Raises:
            SpanAlreadyFinishedError: If the span is already finished.
        """
        token = self.set_active(span)
        try:
            yield span
        finally:
            self.reset_active(token)

    @contextlib.contextmanager
    def start_active_span(
        self,
        operation_name: str,
        parent: SpanContext | Span | None = None,
        *,
        tags: Mapping[str, TagValue] | None = None,
    ) -> Iterator[Span]:
        """Start a span, make it active and finish it when the block exits.

        Exceptions raised in the block mark the span as failed and propagate.
        """
        span = self.start_span(operation_name, parent, tags=tags)
        with self.activate(span):
            try:
                yield span
            except Exception as e:
                if not span.is_finished:
                    span.set_error(e)
                raise
            finally:
                if not span.is_finished:
                    self.finish(span)

    def inject(self, span_or_context: Span | SpanContext) -> dict[str, str]:
        """Encode a span's context as outbound headers."""
        context = span_or_context.context if isinstance(span_or_context, Span) else span_or_context
        return self._codec.inject(context)

    def extract(self, headers: Mapping[str, str] | Iterable[tuple[str, str]] | HeaderMap | None) -> SpanContext | None:
        """Decode an inbound context; None when absent or malformed."""
        return self._codec.extract(headers)

    def flush(self) -> list[Exception]:
        """Flush every reporter.

        Returns:
            Errors raised by individual reporters, already logged.
        """
        return self._reporter.flush()

    def close(self) -> list[Exception]:
        """Flush and close every reporter, returning the logged errors."""
        return self._reporter.close()
