"""Structured logging for the instrumentation layer.

Telemetry failures never reach the function's response, so these logs are
the only place they show up. Every call takes keyword fields; the current
invocation (id, trace, operation) is attached from a context variable, and
API tokens are masked before anything leaves the process.

By default records are forwarded to the stdlib ``faas_telemetry`` logger,
which is what serverless hosts collect. ``configure_logging`` switches to a
stderr stream in text or JSON form.

Example:
    >>> logger = get_logger(__name__)
    >>> with LogContext(invocation_id="abc-123"):
    ...     logger.warning("Sender flush failed", status_code=401)
"""

from __future__ import annotations

import json
import logging
import re
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, Self, runtime_checkable


if TYPE_CHECKING:
    from collections.abc import Mapping


class LogLevel(Enum):
    """Severity of a record; values match the stdlib levels."""

    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50

    def to_stdlib(self) -> int:
        return self.value

    @classmethod
    def from_string(cls, level: str) -> LogLevel:
        """Parse a level name such as ``"debug"``; unknown names mean INFO."""
        return cls.__members__.get(level.upper(), cls.INFO)


MASK = "***MASKED***"

# Bearer tokens, token/api_key query parameters and URL credentials.
_SECRET_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), replacement)
    for pattern, replacement in (
        (r"(bearer\s+)[A-Za-z0-9\-._~+/]+=*", rf"\1{MASK}"),
        (r"((?:token|api_key)=)[^&\s;]+", rf"\1{MASK}"),
        (r"(://[^:/]+:)[^@]+(@)", rf"\1{MASK}\2"),
    )
)

_SECRET_KEYS = frozenset({"token", "api_token", "api_key", "apikey", "authorization", "password", "secret"})


# =============================================================================
# Invocation Context
# =============================================================================


@dataclass(frozen=True, slots=True)
class LogContextData:
    """Fields attached to every record logged while a LogContext is active."""

    operation: str | None = None
    invocation_id: str | None = None
    trace_id: str | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def merge(self, inner: LogContextData) -> LogContextData:
        """Overlay an inner context; its set fields win."""
        return LogContextData(
            operation=inner.operation or self.operation,
            invocation_id=inner.invocation_id or self.invocation_id,
            trace_id=inner.trace_id or self.trace_id,
            extra={**self.extra, **inner.extra},
        )

    def to_dict(self) -> dict[str, Any]:
        fields = {
            "operation": self.operation,
            "invocation_id": self.invocation_id,
            "trace_id": self.trace_id,
        }
        return {**{k: v for k, v in fields.items() if v}, **self.extra}


_current: ContextVar[LogContextData] = ContextVar("faas_telemetry_log_context", default=LogContextData())


class LogContext:
    """Attach invocation fields to the records logged inside the block.

    Contexts nest: the inner one is merged over the outer one and the outer
    one is back in place on exit. The value lives in a context variable, so
    concurrent invocations on other threads or tasks do not see it.
    """

    def __init__(
        self,
        *,
        operation: str | None = None,
        invocation_id: str | None = None,
        trace_id: str | None = None,
        **extra: Any,
    ) -> None:
        self._data = LogContextData(operation, invocation_id, trace_id, extra)
        self._token: Any = None

    def __enter__(self) -> Self:
        self._token = _current.set(_current.get().merge(self._data))
        return self

    def __exit__(self, *args: Any) -> None:
        if self._token is not None:
            _current.reset(self._token)
            self._token = None


def get_current_context() -> LogContextData:
    """Fields of the innermost active LogContext."""
    return _current.get()


# =============================================================================
# Records, Masking and Formatting
# =============================================================================


@dataclass(slots=True)
class LogRecord:
    """One structured log entry as handed to handlers."""

    level: LogLevel
    message: str
    logger_name: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    context: LogContextData = field(default_factory=LogContextData)
    extra: dict[str, Any] = field(default_factory=dict)
    exc_info: BaseException | None = None

    def fields(self) -> dict[str, Any]:
        """Context fields followed by the call's own fields."""
        return {**self.context.to_dict(), **self.extra}

    def to_dict(self) -> dict[str, Any]:
        data = {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.name,
            "logger": self.logger_name,
            "message": self.message,
            **self.fields(),
        }
        if self.exc_info is not None:
            data["exception_type"] = type(self.exc_info).__name__
            data["exception"] = str(self.exc_info)
        return data


class SensitiveDataMasker:
    """Hides API tokens in messages and in structured fields.

    Example:
        >>> SensitiveDataMasker().mask_dict({"api_token": "t", "source": "fn"})
        {'api_token': '***MASKED***', 'source': 'fn'}
    """

    def mask_string(self, value: str) -> str:
        for pattern, replacement in _SECRET_PATTERNS:
            value = pattern.sub(replacement, value)
        return value

    def mask_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.mask_string(value)
        if isinstance(value, dict):
            return self.mask_dict(value)
        if isinstance(value, (list, tuple)):
            return type(value)(self.mask_value(v) for v in value)
        return value

    def mask_dict(self, data: Mapping[str, Any]) -> dict[str, Any]:
        """Mask values under secret-looking keys, recursing into nested mappings."""
        return {k: MASK if str(k).lower() in _SECRET_KEYS else self.mask_value(v) for k, v in data.items()}


_masker = SensitiveDataMasker()


class TextFormatter:
    """``<time> [LEVEL] logger: message | k=v ...``"""

    def format(self, record: LogRecord) -> str:
        line = f"{record.timestamp.isoformat()} [{record.level.name}] {record.logger_name}: {record.message}"
        fields = record.fields()
        if fields:
            line += " | " + " ".join(f"{k}={v}" for k, v in fields.items())
        if record.exc_info is not None:
            line += f" | exception={record.exc_info!r}"
        return line


class JSONFormatter:
    """One JSON object per record, for hosts that ingest structured logs."""

    def format(self, record: LogRecord) -> str:
        return json.dumps(_masker.mask_dict(record.to_dict()), default=str)


# =============================================================================
# Handlers
# =============================================================================


@runtime_checkable
class LogHandler(Protocol):
    """Anything that accepts finished log records."""

    def handle(self, record: LogRecord) -> None: ...


class StreamHandler:
    """Writes formatted records to a stream, stderr unless told otherwise."""

    def __init__(
        self,
        stream: Any = None,
        formatter: TextFormatter | JSONFormatter | None = None,
        level: LogLevel = LogLevel.DEBUG,
    ) -> None:
        self._stream = stream or sys.stderr
        self._formatter = formatter or TextFormatter()
        self._level = level

    def handle(self, record: LogRecord) -> None:
        if record.level.value >= self._level.value:
            self._stream.write(self._formatter.format(record) + "\n")


class StdlibLoggerAdapter:
    """Forwards records into the stdlib logging tree.

    Fields are appended to the message as ``k=v`` pairs, masked, since the
    stdlib formatter of the host knows nothing about them.
    """

    def __init__(self, stdlib_logger: logging.Logger | None = None) -> None:
        self._logger = stdlib_logger or logging.getLogger("faas_telemetry")

    def handle(self, record: LogRecord) -> None:
        fields = _masker.mask_dict(record.fields())
        message = record.message
        if fields:
            message += " | " + " ".join(f"{k}={v}" for k, v in fields.items())
        self._logger.log(record.level.to_stdlib(), message, exc_info=record.exc_info)


# =============================================================================
# Logger
# =============================================================================


class TelemetryLogger:
    """Keyword-field logger used by every faas-telemetry module.

    Example:
        >>> logger = get_logger("faas_telemetry.sender")
        >>> logger.warning("Delivery failed", endpoint=url, status_code=401)
    """

    def __init__(
        self,
        name: str,
        level: LogLevel = LogLevel.INFO,
        handlers: list[LogHandler] | None = None,
    ) -> None:
        self.name = name
        self.level = level
        self.handlers: list[LogHandler] = list(handlers or [])

    def add_handler(self, handler: LogHandler) -> None:
        if handler not in self.handlers:
            self.handlers.append(handler)

    def remove_handler(self, handler: LogHandler) -> None:
        if handler in self.handlers:
            self.handlers.remove(handler)

    def log(self, level: LogLevel, message: str, exc_info: BaseException | None = None, **fields: Any) -> None:
        if level.value < self.level.value:
            return
        record = LogRecord(
            level=level,
            message=_masker.mask_string(message),
            logger_name=self.name,
            context=_current.get(),
            extra=_masker.mask_dict(fields),
            exc_info=exc_info,
        )
        for handler in self.handlers:
            try:
                handler.handle(record)
            except Exception:
                # A broken log sink must not turn into a failed invocation.
                continue

    def debug(self, message: str, **fields: Any) -> None:
        self.log(LogLevel.DEBUG, message, **fields)

    def info(self, message: str, **fields: Any) -> None:
        self.log(LogLevel.INFO, message, **fields)

    def warning(self, message: str, exc_info: BaseException | None = None, **fields: Any) -> None:
        self.log(LogLevel.WARNING, message, exc_info, **fields)

    def error(self, message: str, exc_info: BaseException | None = None, **fields: Any) -> None:
        self.log(LogLevel.ERROR, message, exc_info, **fields)

    def exception(self, message: str, **fields: Any) -> None:
        """Log at ERROR with the exception currently being handled."""
        self.log(LogLevel.ERROR, message, sys.exc_info()[1], **fields)


_loggers: dict[str, TelemetryLogger] = {}
_level = LogLevel.INFO
_handlers: list[LogHandler] = [StdlibLoggerAdapter()]


def get_logger(name: str) -> TelemetryLogger:
    """Return the logger for a module name, creating it on first use."""
    logger = _loggers.get(name)
    if logger is None:
        logger = _loggers.setdefault(name, TelemetryLogger(name, _level, _handlers))
    return logger


def configure_logging(level: LogLevel | str = LogLevel.INFO, format: str = "text") -> None:
    """Send every faas-telemetry logger to stderr at the given level.

    Loggers that already exist are reconfigured as well.

    Args:
        level: A LogLevel or its name.
        format: ``"text"`` or ``"json"``.
    """
    global _level, _handlers
    _level = LogLevel.from_string(level) if isinstance(level, str) else level
    formatter = JSONFormatter() if format == "json" else TextFormatter()
    _handlers = [StreamHandler(formatter=formatter, level=_level)]
    for logger in _loggers.values():
        logger.level = _level
        logger.handlers = list(_handlers)


# =============================================================================
# Timing
# =============================================================================


class PerformanceLogger:
    """Logs how long blocking operations such as flushes take.

    Durations above ``slow_threshold_ms`` are logged at WARNING; a block
    that raised is logged at ERROR and the exception propagates.
    """

    def __init__(
        self,
        logger: TelemetryLogger,
        level: LogLevel = LogLevel.DEBUG,
        slow_threshold_ms: float = 1000.0,
    ) -> None:
        self._logger = logger
        self._level = level
        self._slow_threshold_ms = slow_threshold_ms

    @contextmanager
    def timed(self, operation: str, **fields: Any) -> Iterator[None]:
        start = time.perf_counter()
        succeeded = False
        try:
            yield
            succeeded = True
        finally:
            elapsed_ms = (time.perf_counter() - start) * 1000
            if not succeeded:
                level, message = LogLevel.ERROR, f"{operation} failed after {elapsed_ms:.2f}ms"
            elif elapsed_ms > self._slow_threshold_ms:
                level, message = LogLevel.WARNING, f"{operation} slow: {elapsed_ms:.2f}ms"
            else:
                level, message = self._level, f"{operation} took {elapsed_ms:.2f}ms"
            self._logger.log(level, message, duration_ms=round(elapsed_ms, 3), success=succeeded, **fields)


def get_performance_logger(name: str, slow_threshold_ms: float = 1000.0) -> PerformanceLogger:
    """Timing logger writing through ``get_logger(name)``."""
    return PerformanceLogger(get_logger(name), slow_threshold_ms=slow_threshold_ms)
