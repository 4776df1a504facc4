"""Metric points and the sender that ships them to the metrics backend.

The sender is the only component that owns a network connection. It
buffers points (and finished spans) as lines of the Wavefront data format
and delivers them over HTTPS direct ingestion on flush. Serverless hosts
may freeze the process right after the response is produced, so callers
flush before returning; every delivery is bounded by a timeout.

Points and spans are buffered and posted separately (``flush_metrics``,
``flush_spans``), so a rejected span batch never affects counter deltas.
A failed post drops its batch and names the dropped items on the raised
error, which lets the counter registry put exactly those deltas back.

Wire format:
    Metric:  "∆name" <value> <epoch seconds> source="<source>" "k"="v" ...
    Span:    "<operation>" source="<source>" traceId=<id> spanId=<id>
             [parent=<id>] "k"="v" ... <start epoch ms> <duration ms>

Example:
    >>> sender = DirectIngestionSender(
    ...     "https://example.wavefront.com",
    ...     token,
    ...     source="TruckGlobalDataAggregator",
    ... )
    >>> sender.send(MetricPoint("requests.count", 3, tags=(("region", "us"),)))
    >>> sender.flush()
"""

from __future__ import annotations

import re
import threading
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import requests

from faas_telemetry.exceptions import FlushTimeoutError, InvalidPointError, UnreachableError
from faas_telemetry.logging import get_logger


if TYPE_CHECKING:
    from faas_telemetry.tracing import SpanData


logger = get_logger(__name__)

Tags = tuple[tuple[str, str], ...]
TagsLike = Mapping[str, str] | Iterable[tuple[str, str]] | None

DELTA_PREFIX = "\u2206"
METRIC_FORMAT = "wavefront"
SPAN_FORMAT = "trace"

_METRIC_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+(\.[A-Za-z0-9_\-]+)*$")
_TAG_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_\-.]+$")


# =============================================================================
# Data Types
# =============================================================================


class MetricUnit(Enum):
    """Measurement units a counter can declare."""

    CALLS = "calls"
    COUNT = "count"
    REQUESTS = "requests"
    ERRORS = "errors"
    MILLISECONDS = "ms"
    BYTES = "bytes"
    NONE = ""


def is_valid_metric_name(name: Any) -> bool:
    """Check that a name is a dotted identifier such as ``requests.count``."""
    return isinstance(name, str) and bool(_METRIC_NAME_PATTERN.match(name))


def normalize_tags(tags: TagsLike, metric_name: str | None = None) -> Tags:
    """Turn a mapping or sequence of pairs into an ordered tuple of tag pairs.

    Raises:
        InvalidPointError: On a duplicate key, a malformed key or a non-string value.
    """
    if tags is None:
        return ()
    items = tags.items() if isinstance(tags, Mapping) else tags

    seen: set[str] = set()
    result: list[tuple[str, str]] = []
    for pair in items:
        try:
            key, value = pair
        except (TypeError, ValueError) as e:
            raise InvalidPointError(
                f"Tag must be a (key, value) pair, got {pair!r}",
                metric_name=metric_name,
                cause=e,
            ) from e
        if not isinstance(key, str) or not _TAG_KEY_PATTERN.match(key):
            raise InvalidPointError(
                f"Invalid tag key: {key!r}",
                metric_name=metric_name,
                details={"tag_key": key},
            )
        if not isinstance(value, str) or not value:
            raise InvalidPointError(
                f"Tag {key!r} must have a non-empty string value",
                metric_name=metric_name,
                details={"tag_key": key},
            )
        if key in seen:
            raise InvalidPointError(
                f"Duplicate tag key: {key!r}",
                metric_name=metric_name,
                details={"tag_key": key},
            )
        seen.add(key)
        result.append((key, value))
    return tuple(result)


@dataclass(frozen=True, slots=True)
class MetricPoint:
    """A single delta observation handed to a sender.

    Attributes:
        name: Dotted metric name.
        value: Integer delta since the previous report.
        unit: Measurement unit.
        tags: Ordered (key, value) pairs with unique keys.
        timestamp: Epoch seconds; filled in at send time when None.

    Raises:
        InvalidPointError: When the name or the tags are malformed.
    """

    name: str
    value: int
    unit: MetricUnit = MetricUnit.COUNT
    tags: Tags = ()
    timestamp: float | None = None

    def __post_init__(self) -> None:
        if not is_valid_metric_name(self.name):
            raise InvalidPointError(
                f"Invalid metric name: {self.name!r}",
                metric_name=str(self.name),
            )
        if isinstance(self.value, bool) or not isinstance(self.value, int):
            raise InvalidPointError(
                f"Metric value must be an integer, got {type(self.value).__name__}",
                metric_name=self.name,
            )
        object.__setattr__(self, "tags", normalize_tags(self.tags, self.name))

    @property
    def tag_dict(self) -> dict[str, str]:
        """Tags as a dictionary (order preserved)."""
        return dict(self.tags)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "value": self.value,
            "unit": self.unit.value,
            "tags": self.tag_dict,
            "timestamp": self.timestamp,
        }


# =============================================================================
# Wire Format
# =============================================================================


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return f'"{escaped}"'


def _format_tags(tags: Iterable[tuple[str, str]]) -> str:
    return " ".join(f"{_quote(k)}={_quote(v)}" for k, v in tags)


def format_metric_line(point: MetricPoint, source: str, delta: bool = True) -> str:
    """Render a point as one line of the Wavefront data format.

    The unit travels as a ``unit`` point tag unless the point already has
    a tag with that key.
    """
    name = f"{DELTA_PREFIX}{point.name}" if delta else point.name
    tags = list(point.tags)
    if point.unit.value and "unit" not in point.tag_dict:
        tags.append(("unit", point.unit.value))
    parts = [_quote(name), str(point.value)]
    if point.timestamp is not None:
        parts.append(str(int(point.timestamp)))
    parts.append(f"source={_quote(source)}")
    if tags:
        parts.append(_format_tags(tags))
    return " ".join(parts)


def format_span_line(span: SpanData, source: str) -> str:
    """Render a finished span as one line of the Wavefront span format."""
    parts = [
        _quote(span.operation_name),
        f"source={_quote(source)}",
        f"traceId={span.trace_id}",
        f"spanId={span.span_id}",
    ]
    if span.parent_span_id:
        parts.append(f"parent={span.parent_span_id}")
    if span.tags:
        parts.append(_format_tags(span.tags))
    parts.append(str(span.start_time_micros // 1000))
    parts.append(str(span.duration_micros // 1000))
    return " ".join(parts)


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class MetricSender(Protocol):
    """Protocol for anything that can deliver metric points."""

    def send(self, point: MetricPoint) -> None:
        """Hand a point over for delivery.

        May deliver a full batch; if that fails the error lists every
        dropped point, this one included, in ``undelivered``.
        """
        ...

    def flush_metrics(self) -> None:
        """Deliver buffered points only.

        A failed delivery raises with the dropped points in ``undelivered``.
        """
        ...

    def flush(self) -> None:
        """Deliver everything buffered; return once delivery succeeded or failed."""
        ...

    def close(self) -> None:
        """Flush best-effort and release the connection."""
        ...


@runtime_checkable
class SpanSender(Protocol):
    """Protocol for anything that can deliver finished spans."""

    def send_span(self, span: SpanData) -> None:
        """Hand a finished span over for delivery."""
        ...

    def flush_spans(self) -> None:
        """Deliver buffered spans only."""
        ...

    def flush(self) -> None:
        """Deliver everything buffered."""
        ...

    def close(self) -> None:
        """Flush best-effort and release the connection."""
        ...


# =============================================================================
# Direct Ingestion
# =============================================================================


@dataclass(slots=True)
class SenderStats:
    """Counts kept by a sender about its own deliveries."""

    points_sent: int = 0
    spans_sent: int = 0
    deliveries: int = 0
    failures: int = 0
    last_error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class DirectIngestionSender:
    """Sends points and spans straight to the observability platform.

    One ``requests.Session`` is kept for the sender's lifetime so that
    connection setup is paid once per process, not once per invocation.

    Example:
        >>> sender = DirectIngestionSender(url, token, source="my-function", timeout_seconds=3)
        >>> sender.send(point)
        >>> sender.flush()  # raises UnreachableError / FlushTimeoutError on failure
    """

    def __init__(
        self,
        url: str,
        token: str,
        *,
        source: str,
        timeout_seconds: float = 5.0,
        batch_size: int = 10_000,
        session: requests.Session | None = None,
    ) -> None:
        """Initialize the sender.

        Args:
            url: Base URL of the platform, e.g. ``https://example.wavefront.com``.
            token: API token used as a bearer token.
            source: Source name reported with every point and span.
            timeout_seconds: Upper bound for one HTTP delivery.
            batch_size: Buffered lines per format that trigger a delivery.
            session: Optional pre-built session (mainly for tests).
        """
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        self._url = url.rstrip("/")
        self._source = source
        self._timeout_seconds = timeout_seconds
        self._batch_size = batch_size
        self._session = session or requests.Session()
        self._session.headers.update({
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/octet-stream",
        })
        self._buffers: dict[str, list[tuple[str, Any]]] = {METRIC_FORMAT: [], SPAN_FORMAT: []}
        self._lock = threading.Lock()
        self._post_lock = threading.Lock()
        self._closed = False
        self.stats = SenderStats()

    @property
    def source(self) -> str:
        """Source name reported with every point and span."""
        return self._source

    @property
    def endpoint(self) -> str:
        """Ingestion endpoint URL."""
        return f"{self._url}/report"

    @property
    def closed(self) -> bool:
        """Whether close() has been called."""
        return self._closed

    def pending(self) -> int:
        """Number of buffered lines not yet delivered."""
        with self._lock:
            return sum(len(batch) for batch in self._buffers.values())

    def send(self, point: MetricPoint) -> None:
        """Buffer a point, delivering the batch once it is full.

        Raises:
            UnreachableError: If the sender is closed or a batch delivery failed.
            FlushTimeoutError: If a batch delivery timed out.
        """
        if point.timestamp is None:
            point = MetricPoint(point.name, point.value, point.unit, point.tags, time.time())
        self._enqueue(METRIC_FORMAT, format_metric_line(point, self._source), point)

    def send_span(self, span: SpanData) -> None:
        """Buffer a finished span, delivering the batch once it is full."""
        self._enqueue(SPAN_FORMAT, format_span_line(span, self._source), span)

    def _enqueue(self, data_format: str, line: str, item: Any) -> None:
        if self._closed:
            raise UnreachableError("Sender is closed", endpoint=self.endpoint)
        with self._lock:
            batch = self._buffers[data_format]
            batch.append((line, item))
            full = len(batch) >= self._batch_size
        if full:
            self._deliver(data_format)

    def flush_metrics(self) -> None:
        """Deliver buffered points.

        Raises:
            UnreachableError: On network, HTTP or authentication failure.
            FlushTimeoutError: When the delivery exceeded the timeout.
        """
        self._deliver(METRIC_FORMAT)

    def flush_spans(self) -> None:
        """Deliver buffered spans; raises like flush_metrics()."""
        self._deliver(SPAN_FORMAT)

    def flush(self) -> None:
        """Deliver buffered metrics, then buffered spans.

        Both formats are attempted even when the first delivery fails; the
        first error is raised afterwards.
        """
        first_error: UnreachableError | FlushTimeoutError | None = None
        for deliver in (self.flush_metrics, self.flush_spans):
            try:
                deliver()
            except (UnreachableError, FlushTimeoutError) as e:
                first_error = first_error or e
        if first_error is not None:
            raise first_error

    def _deliver(self, data_format: str) -> None:
        # A failed batch is dropped; its items travel on the error.
        with self._lock:
            batch = self._buffers[data_format]
            self._buffers[data_format] = []
        if not batch:
            return

        with self._post_lock:
            try:
                self._post(data_format, batch)
            except (UnreachableError, FlushTimeoutError) as e:
                self.stats.failures += 1
                self.stats.last_error = e.message
                raise
        self.stats.deliveries += 1
        if data_format == METRIC_FORMAT:
            self.stats.points_sent += len(batch)
        else:
            self.stats.spans_sent += len(batch)

    def _post(self, data_format: str, batch: list[tuple[str, Any]]) -> None:
        body = "".join(f"{line}\n" for line, _ in batch).encode("utf-8")
        undelivered = tuple(item for _, item in batch)
        details = {"format": data_format, "lines": len(batch)}
        try:
            response = self._session.post(
                self.endpoint,
                params={"f": data_format},
                data=body,
                timeout=self._timeout_seconds,
            )
        except requests.Timeout as e:
            raise FlushTimeoutError(
                f"Delivery to {self.endpoint} timed out",
                timeout_seconds=self._timeout_seconds,
                undelivered=undelivered,
                details=details,
                cause=e,
            ) from e
        except requests.RequestException as e:
            raise UnreachableError(
                f"Failed to reach {self.endpoint}: {e}",
                endpoint=self.endpoint,
                undelivered=undelivered,
                details=details,
                cause=e,
            ) from e

        if not 200 <= response.status_code < 300:
            raise UnreachableError(
                f"Ingestion endpoint returned status {response.status_code}",
                endpoint=self.endpoint,
                status_code=response.status_code,
                undelivered=undelivered,
                details=details,
            )

    def close(self) -> None:
        """Flush best-effort, then close the HTTP session. Idempotent."""
        if self._closed:
            return
        try:
            self.flush()
        except (UnreachableError, FlushTimeoutError) as e:
            logger.warning("Final flush failed while closing sender", error=str(e), endpoint=self.endpoint)
        finally:
            self._closed = True
            self._session.close()


class NullSender:
    """Sender that discards everything.

    Used when no ingestion endpoint is configured, e.g. when a function
    runs locally. Points and spans are only counted and logged at debug
    level.
    """

    def __init__(self, source: str = "") -> None:
        self._source = source
        self.stats = SenderStats()

    @property
    def source(self) -> str:
        """Source name the discarded data would have been reported with."""
        return self._source

    def send(self, point: MetricPoint) -> None:
        """Discard a point."""
        self.stats.points_sent += 1
        logger.debug("Discarding metric point", metric=point.name, value=point.value)

    def send_span(self, span: SpanData) -> None:
        """Discard a span."""
        self.stats.spans_sent += 1
        logger.debug("Discarding span", operation=span.operation_name, span_id=span.span_id)

    def flush_metrics(self) -> None:
        """Nothing to deliver."""

    def flush_spans(self) -> None:
        """Nothing to deliver."""

    def flush(self) -> None:
        """Nothing to deliver."""

    def close(self) -> None:
        """Nothing to release."""
