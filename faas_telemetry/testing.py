"""Testing utilities for faas-telemetry.

In-memory and failure-injecting senders and reporters, plus helpers that
build a strict facade around them. Nothing here touches the network.

Example:
    >>> from faas_telemetry.testing import TelemetryTestContext
    >>> with TelemetryTestContext() as ctx:
    ...     with ctx.facade.invocation({}, "inv-1"):
    ...         pass
    ...     assert ctx.sender.delivered_points[0].value == 1
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from faas_telemetry.config import TelemetryConfig
from faas_telemetry.exceptions import FlushTimeoutError, UnreachableError
from faas_telemetry.facade import InstrumentationFacade
from faas_telemetry.logging import get_logger
from faas_telemetry.reporters import DirectSpanReporter
from faas_telemetry.sender import MetricPoint


if TYPE_CHECKING:
    from faas_telemetry.logging import LogRecord
    from faas_telemetry.reporters import SpanReporter
    from faas_telemetry.tracing import SpanData


# =============================================================================
# Senders
# =============================================================================


class InMemorySender:
    """Sender that keeps points and spans in memory.

    ``send`` and ``send_span`` buffer; the flush methods move the buffers
    to the delivered lists. ``flush_count`` counts metric flushes.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending_points: list[MetricPoint] = []
        self._pending_spans: list[SpanData] = []
        self.delivered_points: list[MetricPoint] = []
        self.delivered_spans: list[SpanData] = []
        self.send_count = 0
        self.flush_count = 0
        self.closed = False

    @property
    def pending_points(self) -> list[MetricPoint]:
        """Points sent but not flushed yet."""
        with self._lock:
            return list(self._pending_points)

    @property
    def pending_spans(self) -> list[SpanData]:
        """Spans sent but not flushed yet."""
        with self._lock:
            return list(self._pending_spans)

    def send(self, point: MetricPoint) -> None:
        with self._lock:
            self.send_count += 1
            self._pending_points.append(point)

    def send_span(self, span: SpanData) -> None:
        with self._lock:
            self._pending_spans.append(span)

    def flush_metrics(self) -> None:
        with self._lock:
            self.flush_count += 1
            self.delivered_points.extend(self._pending_points)
            self._pending_points.clear()

    def flush_spans(self) -> None:
        with self._lock:
            self.delivered_spans.extend(self._pending_spans)
            self._pending_spans.clear()

    def flush(self) -> None:
        self.flush_metrics()
        self.flush_spans()

    def close(self) -> None:
        """Flush and mark closed."""
        self.flush()
        self.closed = True

    def delivered_total(self, name: str) -> int:
        """Sum of delivered values for a metric name."""
        with self._lock:
            return sum(p.value for p in self.delivered_points if p.name == name)

    def reset(self) -> None:
        """Forget everything."""
        with self._lock:
            self._pending_points.clear()
            self._pending_spans.clear()
            self.delivered_points.clear()
            self.delivered_spans.clear()
            self.send_count = 0
            self.flush_count = 0
            self.closed = False


class FailingSender(InMemorySender):
    """InMemorySender that fails on demand.

    Failed flushes drop what was buffered and name it in the error's
    ``undelivered``, like DirectIngestionSender does.

    Attributes:
        fail_for: Metric names whose send raises UnreachableError.
        fail_on_flush: Make metric delivery raise UnreachableError.
        timeout_on_flush: Make metric delivery raise FlushTimeoutError.
        fail_span_flush: Make span delivery raise UnreachableError.

    Example:
        >>> sender = FailingSender(fail_for=["b.count"])
        >>> sender.fail_for.clear()  # recovers
    """

    def __init__(
        self,
        fail_for: Iterable[str] = (),
        fail_on_flush: bool = False,
        timeout_on_flush: bool = False,
        fail_span_flush: bool = False,
    ) -> None:
        super().__init__()
        self.fail_for = set(fail_for)
        self.fail_on_flush = fail_on_flush
        self.timeout_on_flush = timeout_on_flush
        self.fail_span_flush = fail_span_flush

    def send(self, point: MetricPoint) -> None:
        if point.name in self.fail_for:
            raise UnreachableError(f"Simulated failure sending {point.name}", endpoint="memory://failing")
        super().send(point)

    def flush_metrics(self) -> None:
        if not (self.timeout_on_flush or self.fail_on_flush):
            super().flush_metrics()
            return
        with self._lock:
            self.flush_count += 1
            dropped = tuple(self._pending_points)
            self._pending_points.clear()
        if self.timeout_on_flush:
            raise FlushTimeoutError("Simulated flush timeout", timeout_seconds=0.0, undelivered=dropped)
        raise UnreachableError("Simulated flush failure", endpoint="memory://failing", undelivered=dropped)

    def flush_spans(self) -> None:
        if not self.fail_span_flush:
            super().flush_spans()
            return
        with self._lock:
            dropped = tuple(self._pending_spans)
            self._pending_spans.clear()
        raise UnreachableError("Simulated span flush failure", endpoint="memory://failing", undelivered=dropped)

    def flush(self) -> None:
        errors: list[UnreachableError | FlushTimeoutError] = []
        for deliver in (self.flush_metrics, self.flush_spans):
            try:
                deliver()
            except (UnreachableError, FlushTimeoutError) as e:
                errors.append(e)
        if errors:
            raise errors[0]


# =============================================================================
# Reporters
# =============================================================================


class InMemorySpanReporter:
    """Reporter that stores finished spans in memory."""

    def __init__(self) -> None:
        self._spans: list[SpanData] = []
        self._lock = threading.Lock()
        self.flush_count = 0
        self.closed = False

    @property
    def spans(self) -> list[SpanData]:
        """Get all reported spans."""
        with self._lock:
            return list(self._spans)

    def report(self, span: SpanData) -> None:
        with self._lock:
            self._spans.append(span)

    def flush(self) -> None:
        self.flush_count += 1

    def close(self) -> None:
        self.closed = True

    def clear(self) -> None:
        """Clear all stored spans."""
        with self._lock:
            self._spans.clear()


class FailingSpanReporter:
    """Reporter whose every call raises."""

    def __init__(self, error: type[Exception] = RuntimeError) -> None:
        self._error = error
        self.calls = 0

    def report(self, span: SpanData) -> None:
        self.calls += 1
        raise self._error(f"Simulated reporter failure for {span.operation_name}")

    def flush(self) -> None:
        raise self._error("Simulated reporter flush failure")

    def close(self) -> None:
        raise self._error("Simulated reporter close failure")


# =============================================================================
# Logging
# =============================================================================


class LogCapture:
    """Log handler that keeps records, attached to one logger while in use.

    Example:
        >>> with LogCapture("faas_telemetry.counters") as logs:
        ...     registry.flush_all()
        >>> logs.records[0].context.invocation_id
    """

    def __init__(self, logger_name: str | None = None) -> None:
        self._logger = get_logger(logger_name) if logger_name else None
        self.records: list[LogRecord] = []

    def handle(self, record: LogRecord) -> None:
        self.records.append(record)

    def messages(self) -> list[str]:
        return [r.message for r in self.records]

    def __enter__(self) -> LogCapture:
        if self._logger is not None:
            self._logger.add_handler(self)
        return self

    def __exit__(self, *args: Any) -> None:
        if self._logger is not None:
            self._logger.remove_handler(self)


# =============================================================================
# Facade Helpers
# =============================================================================


def create_test_config(**overrides: Any) -> TelemetryConfig:
    """Config for tests: strict, no endpoint, a recognisable identity."""
    values: dict[str, Any] = {
        "source": "test-function",
        "application": "test-application",
        "service": "test-service",
        "strict": True,
    }
    values.update(overrides)
    return TelemetryConfig(**values)


def create_test_facade(
    config: TelemetryConfig | None = None,
    *,
    sender: InMemorySender | None = None,
    reporters: list[SpanReporter] | None = None,
    **overrides: Any,
) -> InstrumentationFacade:
    """Build a facade on in-memory collaborators.

    Spans are reported to the sender (as in production) unless explicit
    reporters are passed.
    """
    config = config or create_test_config(**overrides)
    return InstrumentationFacade.from_config(
        config,
        sender=sender if sender is not None else InMemorySender(),
        reporters=reporters,
    )


class TelemetryTestContext:
    """Context manager providing a strict facade, its sender and a span reporter.

    Example:
        >>> with TelemetryTestContext(tracing_enabled=False) as ctx:
        ...     ctx.facade.begin({}, "inv-1")
    """

    def __init__(self, sender: InMemorySender | None = None, **overrides: Any) -> None:
        self._overrides = overrides
        self._facade: InstrumentationFacade | None = None
        self.sender: InMemorySender = sender or InMemorySender()
        self.reporter = InMemorySpanReporter()

    @property
    def facade(self) -> InstrumentationFacade:
        """Get the facade under test."""
        if self._facade is None:
            raise RuntimeError("Context not entered")
        return self._facade

    def __enter__(self) -> TelemetryTestContext:
        self._facade = create_test_facade(
            sender=self.sender,
            reporters=[DirectSpanReporter(self.sender), self.reporter],
            **self._overrides,
        )
        return self

    def __exit__(self, *args: Any) -> None:
        if self._facade is not None:
            self._facade.shutdown()
        self._facade = None
