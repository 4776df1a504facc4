"""Exception hierarchy for faas-telemetry.

Everything raised by the instrumentation derives from TelemetryError, so
the facade can keep telemetry failures out of the request path with one
``except`` clause.

Exception Hierarchy:
    TelemetryError (base)
    ├── ConfigurationError
    │   ├── InvalidConfigValueError
    │   └── MissingConfigError
    ├── SendError
    │   ├── UnreachableError
    │   └── InvalidPointError
    ├── FlushError
    │   ├── PartialFlushError
    │   └── FlushTimeoutError
    └── SpanError
        ├── SpanAlreadyFinishedError
        └── SpanContextMalformedError

UnreachableError, FlushError and SpanContextMalformedError are expected in
production and only logged. InvalidPointError and SpanAlreadyFinishedError
point at a bug in the calling function.

Delivery errors raised by a sender carry ``undelivered``: the buffered
points or spans the failed delivery dropped. The counter registry uses it
to put exactly those deltas back.

Example:
    >>> try:
    ...     registry.flush_all()
    ... except PartialFlushError as e:
    ...     logger.warning("Counters kept for retry", counters=e.failed_counters)
"""

from __future__ import annotations

from typing import Any


class TelemetryError(Exception):
    """Base exception for all faas-telemetry errors.

    Attributes:
        message: Human-readable error description.
        details: Structured context, rendered by ``str()`` and logged as fields.
        cause: The lower-level exception, when there is one.
    """

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, details={self.details!r}, cause={self.cause!r})"


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(TelemetryError):
    """The instrumentation settings are unusable.

    Attributes:
        config_key: Setting or environment variable at fault, if known.
    """

    def __init__(
        self,
        message: str,
        *,
        config_key: str | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if config_key:
            details["config_key"] = config_key
        super().__init__(message, details=details, cause=cause)
        self.config_key = config_key


class InvalidConfigValueError(ConfigurationError):
    """A setting is present but cannot be parsed, e.g. a non-numeric timeout."""

    def __init__(
        self,
        message: str,
        *,
        config_key: str,
        value: Any = None,
        expected: str | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = {**(details or {}), "value": value}
        if expected:
            details["expected"] = expected
        super().__init__(message, config_key=config_key, details=details, cause=cause)
        self.value = value
        self.expected = expected


class MissingConfigError(ConfigurationError):
    """A required environment variable is not set."""

    def __init__(self, config_key: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(f"Environment variable {config_key} is not set", config_key=config_key, details=details)


# =============================================================================
# Send Errors
# =============================================================================


class SendError(TelemetryError):
    """A point or span could not be handed to the ingestion endpoint.

    Attributes:
        endpoint: Ingestion URL, when the failure involved one.
        undelivered: Buffered points or spans dropped by a failed delivery.
    """

    def __init__(
        self,
        message: str,
        *,
        endpoint: str | None = None,
        undelivered: tuple[Any, ...] = (),
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if endpoint:
            details["endpoint"] = endpoint
        super().__init__(message, details=details, cause=cause)
        self.endpoint = endpoint
        self.undelivered = tuple(undelivered)


class UnreachableError(SendError):
    """The endpoint was unreachable, refused the token or answered non-2xx.

    Attributes:
        status_code: HTTP status of the rejected post, if one came back.
    """

    def __init__(
        self,
        message: str,
        *,
        endpoint: str | None = None,
        status_code: int | None = None,
        undelivered: tuple[Any, ...] = (),
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, endpoint=endpoint, undelivered=undelivered, details=details, cause=cause)
        self.status_code = status_code


class InvalidPointError(SendError):
    """A metric name or tag set is malformed; raised where the point is built.

    Attributes:
        metric_name: The offending metric.
    """

    def __init__(
        self,
        message: str,
        *,
        metric_name: str | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if metric_name is not None:
            details["metric_name"] = metric_name
        super().__init__(message, details=details, cause=cause)
        self.metric_name = metric_name


# =============================================================================
# Flush Errors
# =============================================================================


class FlushError(TelemetryError):
    """Pending deltas could not all be delivered.

    Attributes:
        failed_counters: Descriptions of the counters whose deltas were put back.
    """

    def __init__(
        self,
        message: str,
        *,
        failed_counters: list[str] | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        self.failed_counters = list(failed_counters or [])
        details = details or {}
        if self.failed_counters:
            details["failed_counters"] = self.failed_counters
        super().__init__(message, details=details, cause=cause)


class PartialFlushError(FlushError):
    """Some counters could not be delivered; their deltas stay accumulated."""


class FlushTimeoutError(FlushError):
    """A delivery exceeded the sender's timeout.

    Attributes:
        timeout_seconds: The bound that was exceeded.
        undelivered: Buffered points or spans dropped by the timed-out delivery.
    """

    def __init__(
        self,
        message: str,
        *,
        timeout_seconds: float | None = None,
        failed_counters: list[str] | None = None,
        undelivered: tuple[Any, ...] = (),
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if timeout_seconds is not None:
            details["timeout_seconds"] = timeout_seconds
        super().__init__(message, failed_counters=failed_counters, details=details, cause=cause)
        self.timeout_seconds = timeout_seconds
        self.undelivered = tuple(undelivered)


# =============================================================================
# Span Errors
# =============================================================================


class SpanError(TelemetryError):
    """A span was misused or its context could not be propagated.

    Attributes:
        operation_name: Operation of the span involved.
        trace_id: Trace the span belongs to, if known.
    """

    def __init__(
        self,
        message: str,
        *,
        operation_name: str | None = None,
        trace_id: str | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if operation_name:
            details["operation_name"] = operation_name
        if trace_id:
            details["trace_id"] = trace_id
        super().__init__(message, details=details, cause=cause)
        self.operation_name = operation_name
        self.trace_id = trace_id


class SpanAlreadyFinishedError(SpanError):
    """A finished span was finished, tagged or activated again."""


class SpanContextMalformedError(SpanError):
    """Inbound trace headers were present but unusable.

    Attributes:
        header: The header that failed to parse.
    """

    def __init__(self, message: str, *, header: str | None = None, details: dict[str, Any] | None = None) -> None:
        details = details or {}
        if header:
            details["header"] = header
        super().__init__(message, details=details)
        self.header = header
