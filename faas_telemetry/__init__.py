"""faas-telemetry: request-scoped telemetry for HTTP-triggered functions.

On every invocation the instrumentation increments a delta counter,
flushes it to the metrics backend, continues (or starts) a distributed
trace from the inbound headers and reports the invocation span before the
function answers. Telemetry failures never change the response.

Quick Start:
    >>> from faas_telemetry import get_instrumentation
    >>> facade = get_instrumentation()  # configured from FAAS_TELEMETRY_* env vars
    >>> with facade.invocation(request.headers, invocation_id) as telemetry:
    ...     response = handle(request)

Counters:
    >>> from faas_telemetry import DeltaCounterRegistry, MetricUnit
    >>> registry = DeltaCounterRegistry(sender)
    >>> counter = registry.get_or_create("requests.count", MetricUnit.CALLS, {"region": "us"})
    >>> registry.increment(counter)
    >>> registry.flush_all()

Tracing:
    >>> from faas_telemetry import ApplicationIdentity, Tracer
    >>> tracer = Tracer(ApplicationIdentity("TruckApp", "TruckService"), reporters=[reporter])
    >>> with tracer.start_active_span("Truck.Execute", tracer.extract(headers)) as span:
    ...     outbound = tracer.inject(span)

Logging:
    >>> from faas_telemetry import get_logger, LogContext
    >>> logger = get_logger(__name__)
    >>> with LogContext(invocation_id="abc"):
    ...     logger.info("Handling request")
"""

from faas_telemetry.config import (
    EnvReader,
    TelemetryConfig,
    require_valid_config,
    validate_config,
)
from faas_telemetry.counters import DeltaCounter, DeltaCounterRegistry, FlushResult
from faas_telemetry.exceptions import (
    ConfigurationError,
    FlushError,
    FlushTimeoutError,
    InvalidConfigValueError,
    InvalidPointError,
    MissingConfigError,
    PartialFlushError,
    SendError,
    SpanAlreadyFinishedError,
    SpanContextMalformedError,
    SpanError,
    TelemetryError,
    UnreachableError,
)
from faas_telemetry.facade import (
    InstrumentationFacade,
    InstrumentationSettings,
    InvocationTelemetry,
    configure_instrumentation,
    get_instrumentation,
    shutdown_instrumentation,
)
from faas_telemetry.logging import (
    LogContext,
    LogLevel,
    TelemetryLogger,
    configure_logging,
    get_logger,
)
from faas_telemetry.propagation import HeaderMap, SpanContext, SpanContextCodec
from faas_telemetry.reporters import (
    CompositeSpanReporter,
    ConsoleSpanReporter,
    DirectSpanReporter,
    SpanReporter,
)
from faas_telemetry.sender import (
    DirectIngestionSender,
    MetricPoint,
    MetricSender,
    MetricUnit,
    NullSender,
    SpanSender,
)
from faas_telemetry.tracing import (
    ApplicationIdentity,
    Span,
    SpanData,
    SpanStatus,
    Tracer,
)


__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Config
    "EnvReader",
    "TelemetryConfig",
    "require_valid_config",
    "validate_config",
    # Exceptions
    "TelemetryError",
    "ConfigurationError",
    "InvalidConfigValueError",
    "MissingConfigError",
    "SendError",
    "UnreachableError",
    "InvalidPointError",
    "FlushError",
    "PartialFlushError",
    "FlushTimeoutError",
    "SpanError",
    "SpanAlreadyFinishedError",
    "SpanContextMalformedError",
    # Logging
    "LogContext",
    "LogLevel",
    "TelemetryLogger",
    "configure_logging",
    "get_logger",
    # Sender
    "MetricPoint",
    "MetricUnit",
    "MetricSender",
    "SpanSender",
    "DirectIngestionSender",
    "NullSender",
    # Counters
    "DeltaCounter",
    "DeltaCounterRegistry",
    "FlushResult",
    # Propagation
    "HeaderMap",
    "SpanContext",
    "SpanContextCodec",
    # Tracing
    "ApplicationIdentity",
    "Span",
    "SpanData",
    "SpanStatus",
    "Tracer",
    # Reporters
    "SpanReporter",
    "DirectSpanReporter",
    "ConsoleSpanReporter",
    "CompositeSpanReporter",
    # Facade
    "InstrumentationFacade",
    "InstrumentationSettings",
    "InvocationTelemetry",
    "configure_instrumentation",
    "get_instrumentation",
    "shutdown_instrumentation",
]
