"""Span reporters: where finished spans go.

A Tracer holds an ordered chain of reporters. Each finished span is handed
to every reporter synchronously; a failure in one reporter is logged and
the rest of the chain still receives the span.

Example:
    >>> reporter = CompositeSpanReporter([
    ...     DirectSpanReporter(sender),
    ...     ConsoleSpanReporter(),
    ... ])
"""

from __future__ import annotations

import json
import sys
import threading
from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol, TextIO, runtime_checkable

from faas_telemetry.logging import get_logger
from faas_telemetry.sender import SpanSender


if TYPE_CHECKING:
    from faas_telemetry.tracing import SpanData


logger = get_logger(__name__)


@runtime_checkable
class SpanReporter(Protocol):
    """Protocol for span reporters."""

    def report(self, span: SpanData) -> None:
        """Receive a finished span."""
        ...

    def flush(self) -> None:
        """Deliver anything buffered."""
        ...

    def close(self) -> None:
        """Flush and release resources."""
        ...


# =============================================================================
# Reporters
# =============================================================================


class DirectSpanReporter:
    """Reports spans through a direct-ingestion sender.

    The sender is usually shared with the counter registry. The reporter
    therefore only ever delivers span lines; buffered points are left to the
    registry, which knows how to restore them. Closing only flushes spans
    unless ``close_sender`` is set.
    """

    def __init__(self, sender: SpanSender, close_sender: bool = False) -> None:
        """Initialize reporter.

        Args:
            sender: Sender the span lines are delivered through.
            close_sender: Whether close() also closes the sender.
        """
        self._sender = sender
        self._close_sender = close_sender

    @property
    def sender(self) -> SpanSender:
        """Underlying sender."""
        return self._sender

    def report(self, span: SpanData) -> None:
        """Buffer the span in the sender."""
        self._sender.send_span(span)

    def flush(self) -> None:
        """Deliver the spans buffered in the sender."""
        self._sender.flush_spans()

    def close(self) -> None:
        """Flush, or close the sender when it is owned by this reporter."""
        if self._close_sender:
            self._sender.close()
        else:
            self._sender.flush_spans()


class ConsoleSpanReporter:
    """Reporter that prints spans to a stream (stdout by default)."""

    def __init__(self, pretty: bool = True, stream: TextIO | None = None) -> None:
        """Initialize reporter.

        Args:
            pretty: Whether to print a one-line summary instead of JSON.
            stream: Output stream.
        """
        self._pretty = pretty
        self._stream = stream
        self._lock = threading.Lock()

    def report(self, span: SpanData) -> None:
        """Print the span."""
        if self._pretty:
            parent = f" parent={span.parent_span_id}" if span.parent_span_id else ""
            line = (
                f"[SPAN] {span.operation_name} "
                f"trace={span.trace_id} "
                f"span={span.span_id}{parent} "
                f"duration={span.duration_ms:.2f}ms"
                f"{' error' if span.is_error else ''}"
            )
        else:
            line = json.dumps(span.to_dict())
        stream = self._stream or sys.stdout
        with self._lock:
            print(line, file=stream)

    def flush(self) -> None:
        """Flush the stream."""
        (self._stream or sys.stdout).flush()

    def close(self) -> None:
        """Flush the stream; the stream itself is not closed."""
        self.flush()


class CompositeSpanReporter:
    """Reporter that fans out to several reporters in insertion order."""

    def __init__(self, reporters: Sequence[SpanReporter] | None = None) -> None:
        """Initialize composite reporter.

        Args:
            reporters: Reporters to delegate to.
        """
        self._reporters = list(reporters or ())
        self.failures = 0

    @property
    def reporters(self) -> list[SpanReporter]:
        """Reporters in dispatch order."""
        return list(self._reporters)

    def add(self, reporter: SpanReporter) -> None:
        """Append a reporter."""
        self._reporters.append(reporter)

    def report(self, span: SpanData) -> list[Exception]:
        """Hand the span to every reporter.

        Returns:
            Errors raised by individual reporters, already logged.
        """
        errors: list[Exception] = []
        for reporter in self._reporters:
            try:
                reporter.report(span)
            except Exception as e:
                self.failures += 1
                errors.append(e)
                logger.warning(
                    "Span reporter failed",
                    exc_info=e,
                    reporter=type(reporter).__name__,
                    operation=span.operation_name,
                    span_id=span.span_id,
                )
        return errors

    def flush(self) -> list[Exception]:
        """Flush every reporter."""
        return self._each("flush")

    def close(self) -> list[Exception]:
        """Close every reporter."""
        return self._each("close")

    def _each(self, method: str) -> list[Exception]:
        errors: list[Exception] = []
        for reporter in self._reporters:
            try:
                getattr(reporter, method)()
            except Exception as e:
                self.failures += 1
                errors.append(e)
                logger.warning(
                    f"Span reporter {method} failed",
                    exc_info=e,
                    reporter=type(reporter).__name__,
                )
        return errors

    def __len__(self) -> int:
        return len(self._reporters)
