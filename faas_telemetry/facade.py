"""Per-invocation instrumentation for HTTP-triggered functions.

The facade ties the pieces together for one function invocation:

    1. use the process-wide registry, sender and tracer (built once)
    2. get-or-create the invocation counter and increment it
    3. flush all counters
    4. extract the inbound span context from the request headers
    5. start the invocation span (child of the inbound context, if any)
       and make it active
    6. when the business logic is done: finish the span and flush reporters

Every step is guarded. A telemetry failure is logged, recorded in
InvocationTelemetry.errors and never prevents the response. Integration
bugs (InvalidPointError, SpanAlreadyFinishedError) are re-raised when the
settings are strict, which is how test builds run.

Example:
    >>> facade = get_instrumentation()
    >>> with facade.invocation(request.headers, invocation_id) as telemetry:
    ...     response = handle(request)
    >>> telemetry.errors
    []
"""

from __future__ import annotations

import asyncio
import atexit
import contextlib
import inspect
import threading
import uuid
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextvars import Token, copy_context
from dataclasses import dataclass, field
from typing import Any, Self, TypeVar

from faas_telemetry.config import TelemetryConfig, require_valid_config
from faas_telemetry.counters import DeltaCounterRegistry, FlushResult
from faas_telemetry.exceptions import InvalidPointError, SpanAlreadyFinishedError, TelemetryError
from faas_telemetry.logging import LogContext, configure_logging, get_logger
from faas_telemetry.propagation import HeaderMap, SpanContext, SpanContextCodec
from faas_telemetry.reporters import ConsoleSpanReporter, DirectSpanReporter, SpanReporter
from faas_telemetry.sender import (
    DirectIngestionSender,
    MetricSender,
    MetricUnit,
    NullSender,
    SpanSender,
    Tags,
    normalize_tags,
)
from faas_telemetry.tracing import ApplicationIdentity, Span, SpanData, Tracer


logger = get_logger(__name__)

T = TypeVar("T")
Headers = Mapping[str, str] | Iterable[tuple[str, str]] | HeaderMap | None

# Programmer errors: re-raised in strict mode.
STRICT_ERRORS: tuple[type[TelemetryError], ...] = (InvalidPointError, SpanAlreadyFinishedError)


# =============================================================================
# Data Types
# =============================================================================


@dataclass(frozen=True, slots=True)
class InstrumentationSettings:
    """What the facade emits for each invocation.

    Attributes:
        counter_name: Delta counter incremented per invocation.
        counter_unit: Unit of that counter.
        counter_tags: Tags of that counter.
        operation_name: Operation name of the invocation span.
        tracing_enabled: Whether invocations produce spans.
        strict: Re-raise programmer errors instead of logging them.
    """

    counter_name: str
    operation_name: str
    counter_unit: MetricUnit = MetricUnit.CALLS
    counter_tags: Tags = ()
    tracing_enabled: bool = True
    strict: bool = False

    @classmethod
    def from_config(cls, config: TelemetryConfig) -> Self:
        """Build settings from process configuration.

        Raises:
            InvalidPointError: If the configured counter tags are malformed.
        """
        return cls(
            counter_name=config.counter_name,
            operation_name=config.operation,
            counter_unit=config.unit,
            counter_tags=normalize_tags(config.metric_tags, config.counter_name),
            tracing_enabled=config.tracing_enabled,
            strict=config.strict,
        )


@dataclass(slots=True)
class InvocationTelemetry:
    """What the instrumentation did for one invocation.

    Attributes:
        invocation_id: Identifier of the invocation.
        span: The invocation span, None when tracing is off or failed.
        counter_acknowledged: Whether the counter increment was recorded.
        flush_result: Result of the counter flush, None if it failed.
        parent_context: Inbound span context, None for a root span.
        span_data: Snapshot of the finished span.
        errors: Non-fatal telemetry failures, in the order they occurred.
    """

    invocation_id: str
    span: Span | None = None
    counter_acknowledged: bool = False
    flush_result: FlushResult | None = None
    parent_context: SpanContext | None = None
    span_data: SpanData | None = None
    errors: list[Exception] = field(default_factory=list)
    activation: Token[Span | None] | None = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        """Whether every telemetry step succeeded."""
        return not self.errors

    @property
    def trace_id(self) -> str | None:
        """Trace the invocation belongs to."""
        return self.span.trace_id if self.span else None


# =============================================================================
# Facade
# =============================================================================


class InstrumentationFacade:
    """Runs the telemetry sequence around a function invocation."""

    def __init__(
        self,
        registry: DeltaCounterRegistry,
        tracer: Tracer,
        settings: InstrumentationSettings,
        *,
        sender: MetricSender | None = None,
    ) -> None:
        """Initialize the facade.

        Args:
            registry: Process-wide counter registry.
            tracer: Process-wide tracer.
            settings: Per-invocation settings.
            sender: Sender closed on shutdown; defaults to the registry's sender.
        """
        self._registry = registry
        self._tracer = tracer
        self._settings = settings
        self._sender = sender or registry.sender
        self._closed = False
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: TelemetryConfig,
        *,
        sender: MetricSender | None = None,
        reporters: Iterable[SpanReporter] | None = None,
    ) -> Self:
        """Build the facade and its collaborators from configuration.

        Without an explicit sender, a DirectIngestionSender is created when an
        endpoint is configured, and a NullSender otherwise. Without explicit
        reporters, spans go through the sender, plus stdout when
        ``console_reporter`` is set.

        Raises:
            ConfigurationError: If the configuration is invalid.
        """
        require_valid_config(config)

        if sender is None:
            if config.has_endpoint:
                sender = DirectIngestionSender(
                    config.endpoint_url,
                    config.api_token,
                    source=config.source,
                    timeout_seconds=config.timeout_seconds,
                    batch_size=config.batch_size,
                )
            else:
                logger.info("No ingestion endpoint configured; telemetry is discarded", source=config.source)
                sender = NullSender(config.source)

        if reporters is None:
            chain: list[SpanReporter] = []
            if isinstance(sender, SpanSender):
                chain.append(DirectSpanReporter(sender))
            if config.console_reporter:
                chain.append(ConsoleSpanReporter())
            reporters = chain

        tracer = Tracer(
            ApplicationIdentity.from_config(config),
            reporters,
            SpanContextCodec(config.header_prefix),
        )
        return cls(
            DeltaCounterRegistry(sender),
            tracer,
            InstrumentationSettings.from_config(config),
            sender=sender,
        )

    @property
    def registry(self) -> DeltaCounterRegistry:
        """Process-wide counter registry."""
        return self._registry

    @property
    def tracer(self) -> Tracer:
        """Process-wide tracer."""
        return self._tracer

    @property
    def settings(self) -> InstrumentationSettings:
        """Per-invocation settings."""
        return self._settings

    @property
    def closed(self) -> bool:
        """Whether shutdown() has run."""
        return self._closed

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _fail(self, telemetry: InvocationTelemetry, step: str, error: Exception) -> None:
        telemetry.errors.append(error)
        if self._settings.strict and isinstance(error, STRICT_ERRORS):
            raise error
        logger.warning(
            f"Telemetry step '{step}' failed",
            exc_info=error,
            step=step,
            error_type=type(error).__name__,
        )

    def _count(self, telemetry: InvocationTelemetry) -> None:
        settings = self._settings
        try:
            handle = self._registry.get_or_create(settings.counter_name, settings.counter_unit, settings.counter_tags)
            self._registry.increment(handle)
        except Exception as e:
            self._fail(telemetry, "count", e)
        else:
            telemetry.counter_acknowledged = True

    def _flush_counters(self, telemetry: InvocationTelemetry) -> None:
        try:
            telemetry.flush_result = self._registry.flush_all()
        except Exception as e:
            self._fail(telemetry, "flush", e)

    def _open_span(self, telemetry: InvocationTelemetry, headers: Headers) -> None:
        if not self._settings.tracing_enabled:
            return
        try:
            telemetry.parent_context = self._tracer.extract(headers)
        except Exception as e:
            self._fail(telemetry, "extract", e)
        try:
            span = self._tracer.start_span(
                self._settings.operation_name,
                telemetry.parent_context,
                tags={"invocation.id": telemetry.invocation_id},
                ignore_active=True,
            )
            telemetry.activation = self._tracer.set_active(span)
            telemetry.span = span
        except Exception as e:
            self._fail(telemetry, "start_span", e)

    def _finish_span(self, telemetry: InvocationTelemetry, error: BaseException | None) -> None:
        span = telemetry.span
        if span is None:
            return
        try:
            if error is not None:
                span.set_error(error)
            telemetry.span_data = self._tracer.finish(span)
        except Exception as e:
            self._fail(telemetry, "finish", e)
        finally:
            self._deactivate(telemetry)

    def _deactivate(self, telemetry: InvocationTelemetry) -> None:
        token, telemetry.activation = telemetry.activation, None
        if token is None:
            return
        try:
            self._tracer.reset_active(token)
        except ValueError:
            # Token created in another context; that context still holds it.
            logger.debug("Span activation belongs to another context", invocation_id=telemetry.invocation_id)

    def _flush_reporters(self, telemetry: InvocationTelemetry) -> None:
        if telemetry.span is None:
            return
        for error in self._tracer.flush():
            telemetry.errors.append(error)

    def _log_context(self, telemetry: InvocationTelemetry) -> LogContext:
        return LogContext(
            operation=self._settings.operation_name,
            invocation_id=telemetry.invocation_id,
            trace_id=telemetry.trace_id,
        )

    # -------------------------------------------------------------------------
    # Invocation API
    # -------------------------------------------------------------------------

    def begin(self, headers: Headers, invocation_id: str | None = None) -> InvocationTelemetry:
        """Run steps 2 to 5 for a new invocation.

        Args:
            headers: Inbound request headers.
            invocation_id: Identifier of the invocation; generated when None.

        Returns:
            The InvocationTelemetry to pass to end().
        """
        telemetry = InvocationTelemetry(invocation_id or str(uuid.uuid4()))
        with self._log_context(telemetry):
            self._count(telemetry)
            self._flush_counters(telemetry)
            self._open_span(telemetry, headers)
        return telemetry

    def end(self, telemetry: InvocationTelemetry, error: BaseException | None = None) -> InvocationTelemetry:
        """Finish the invocation span and flush reporters (step 6).

        Args:
            telemetry: Value returned by begin().
            error: Exception raised by the business logic, if any.
        """
        with self._log_context(telemetry):
            self._finish_span(telemetry, error)
            self._flush_reporters(telemetry)
        if telemetry.errors:
            logger.debug(
                "Invocation finished with telemetry errors",
                invocation_id=telemetry.invocation_id,
                errors=[type(e).__name__ for e in telemetry.errors],
            )
        return telemetry

    @contextlib.contextmanager
    def invocation(self, headers: Headers, invocation_id: str | None = None) -> Iterator[InvocationTelemetry]:
        """Instrument the enclosed block as one invocation.

        An exception raised in the block tags the span with ``error`` and
        propagates unchanged.
        """
        telemetry = self.begin(headers, invocation_id)
        error: BaseException | None = None
        try:
            yield telemetry
        except BaseException as e:
            error = e
            raise
        finally:
            self.end(telemetry, error)

    def invoke(
        self,
        headers: Headers,
        invocation_id: str | None,
        handler: Callable[..., T],
        *args: Any,
        **kwargs: Any,
    ) -> tuple[T, InvocationTelemetry]:
        """Call a handler inside an instrumented invocation.

        Returns:
            The handler's result and the invocation telemetry.
        """
        with self.invocation(headers, invocation_id) as telemetry:
            result = handler(*args, **kwargs)
        return result, telemetry

    async def ainvoke(
        self,
        headers: Headers,
        invocation_id: str | None,
        handler: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> tuple[Any, InvocationTelemetry]:
        """Async variant of invoke().

        Blocking flushes run in the loop's default executor under a copy of
        the current context, so their log lines keep the invocation fields.
        The handler may be a coroutine function or a plain callable.
        """
        loop = asyncio.get_running_loop()
        telemetry = InvocationTelemetry(invocation_id or str(uuid.uuid4()))

        with self._log_context(telemetry):
            self._count(telemetry)
            await loop.run_in_executor(None, copy_context().run, self._flush_counters, telemetry)
            self._open_span(telemetry, headers)

        error: BaseException | None = None
        try:
            result = handler(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except BaseException as e:
            error = e
            raise
        finally:
            with self._log_context(telemetry):
                self._finish_span(telemetry, error)
                await loop.run_in_executor(None, copy_context().run, self._flush_reporters, telemetry)
        return result, telemetry

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def shutdown(self) -> None:
        """Flush pending counters, close the tracer and the sender. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True

        try:
            self._registry.flush_all()
        except Exception as e:
            logger.warning("Final counter flush failed", exc_info=e, pending=self._registry.pending())
        self._tracer.close()
        try:
            self._sender.close()
        except Exception as e:
            logger.warning("Closing sender failed", exc_info=e)


# =============================================================================
# Process-wide Instrumentation
# =============================================================================


_instrumentation: InstrumentationFacade | None = None
_instrumentation_lock = threading.Lock()


def configure_instrumentation(
    config: TelemetryConfig | None = None,
    *,
    sender: MetricSender | None = None,
    reporters: Iterable[SpanReporter] | None = None,
) -> InstrumentationFacade:
    """Build and install the process-wide facade.

    A previously installed facade is shut down. When no config is given it
    is loaded with TelemetryConfig.load() and logging is configured from it.

    Example:
        >>> configure_instrumentation(TelemetryConfig.load(source="TruckGlobalDataAggregator"))
    """
    global _instrumentation

    if config is None:
        config = TelemetryConfig.load()
        configure_logging(config.log_level, format=config.log_format)

    facade = InstrumentationFacade.from_config(config, sender=sender, reporters=reporters)
    with _instrumentation_lock:
        previous, _instrumentation = _instrumentation, facade
    if previous is not None:
        previous.shutdown()
    logger.info(
        "Instrumentation configured",
        source=config.source,
        counter=config.counter_name,
        tracing_enabled=config.tracing_enabled,
        endpoint=config.endpoint_url or None,
    )
    return facade


def get_instrumentation() -> InstrumentationFacade:
    """Get the process-wide facade, building it from configuration on first use."""
    facade = _instrumentation
    if facade is not None and not facade.closed:
        return facade
    return configure_instrumentation()


def shutdown_instrumentation() -> None:
    """Flush and close the process-wide facade, if any."""
    global _instrumentation

    with _instrumentation_lock:
        facade, _instrumentation = _instrumentation, None
    if facade is not None:
        facade.shutdown()


atexit.register(shutdown_instrumentation)
