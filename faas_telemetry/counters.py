"""Delta counters and the registry that flushes them.

A delta counter reports only what happened since its previous report; the
backend sums the deltas. Counters live for the whole process: registering
the same (name, tag set) on every invocation returns the same counter, so
nothing accumulates per request.

Flushing takes each pending delta atomically (snapshot-and-reset), sends
it and restores it when delivery fails. A delta is therefore reported at
least once and never lost by a failed flush, while increments that land
during a flush are kept for the next one.

Example:
    >>> registry = DeltaCounterRegistry(sender, default_tags={"env": "prod"})
    >>> handle = registry.get_or_create("requests.count", MetricUnit.CALLS, {"region": "us"})
    >>> registry.increment(handle)
    >>> registry.flush_all()
    FlushResult(sent=1, ...)
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any

from faas_telemetry.exceptions import (
    FlushTimeoutError,
    PartialFlushError,
    SendError,
    UnreachableError,
)
from faas_telemetry.logging import get_logger, get_performance_logger
from faas_telemetry.sender import MetricPoint, MetricSender, MetricUnit, Tags, TagsLike, normalize_tags


logger = get_logger(__name__)
perf = get_performance_logger(__name__)

CounterKey = tuple[str, Tags]


# =============================================================================
# Delta Counter
# =============================================================================


class DeltaCounter:
    """A monotonic counter that reports deltas since its last flush.

    Instances are created by DeltaCounterRegistry.get_or_create() and
    shared by every caller using the same name and tag set.
    """

    def __init__(self, name: str, unit: MetricUnit, tags: Tags) -> None:
        # Fails early on a malformed name or tags.
        MetricPoint(name, 0, unit, tags)
        self._name = name
        self._unit = unit
        self._tags = tags
        self._delta = 0
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        """Get metric name."""
        return self._name

    @property
    def unit(self) -> MetricUnit:
        """Get measurement unit."""
        return self._unit

    @property
    def tags(self) -> Tags:
        """Get tags in registration order."""
        return self._tags

    @property
    def key(self) -> CounterKey:
        """Identity of the counter: name plus the tag set, order-insensitive."""
        return counter_key(self._name, self._tags)

    @property
    def value(self) -> int:
        """Delta accumulated since the last successful flush."""
        with self._lock:
            return self._delta

    def increment(self, amount: int = 1) -> None:
        """Add to the pending delta.

        Raises:
            TypeError: If amount is not an integer.
            ValueError: If amount is negative.
        """
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise TypeError(f"Counter increment must be an integer, got {type(amount).__name__}")
        if amount < 0:
            raise ValueError("Counter increment must be non-negative")
        with self._lock:
            self._delta += amount

    def take(self) -> int:
        """Return the pending delta and reset it to zero in one step."""
        with self._lock:
            delta = self._delta
            self._delta = 0
            return delta

    def restore(self, delta: int) -> None:
        """Put back a delta whose delivery failed."""
        with self._lock:
            self._delta += delta

    def to_point(self, delta: int) -> MetricPoint:
        """Build the metric point reporting the given delta."""
        return MetricPoint(self._name, delta, self._unit, self._tags)

    def describe(self) -> str:
        """Human-readable identity used in logs and flush errors."""
        if not self._tags:
            return self._name
        tags = ",".join(f"{k}={v}" for k, v in sorted(self._tags))
        return f"{self._name}{{{tags}}}"

    def __repr__(self) -> str:
        return f"DeltaCounter(name={self._name!r}, unit={self._unit.value!r}, tags={self._tags!r})"


def counter_key(name: str, tags: Tags) -> CounterKey:
    """Build the registry key for a name and tags."""
    return (name, tuple(sorted(tags)))


# =============================================================================
# Registry
# =============================================================================


@dataclass(frozen=True, slots=True)
class FlushResult:
    """Outcome of a successful flush.

    Attributes:
        sent: Number of counters whose delta was delivered.
        points: The points that were delivered.
    """

    sent: int
    points: tuple[MetricPoint, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {"sent": self.sent, "points": [p.to_dict() for p in self.points]}


class DeltaCounterRegistry:
    """Process-wide store of delta counters bound to one sender.

    Example:
        >>> registry = DeltaCounterRegistry(sender, prefix="fn")
        >>> counter = registry.get_or_create("requests.count")
        >>> counter.name
        'fn.requests.count'
    """

    def __init__(
        self,
        sender: MetricSender,
        *,
        prefix: str = "",
        default_tags: TagsLike = None,
    ) -> None:
        """Initialize the registry.

        Args:
            sender: Sender the deltas are delivered through.
            prefix: Optional prefix prepended to every counter name.
            default_tags: Tags attached to every counter; explicit tags win.
        """
        self._sender = sender
        self._prefix = prefix.rstrip(".")
        self._default_tags = normalize_tags(default_tags)
        self._counters: dict[CounterKey, DeltaCounter] = {}
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()

    @property
    def sender(self) -> MetricSender:
        """Sender the deltas are delivered through."""
        return self._sender

    @property
    def default_tags(self) -> Tags:
        """Tags attached to every counter."""
        return self._default_tags

    def _full_name(self, name: str) -> str:
        return f"{self._prefix}.{name}" if self._prefix else name

    def _merge_tags(self, tags: TagsLike, name: str) -> Tags:
        explicit = normalize_tags(tags, name)
        explicit_keys = {k for k, _ in explicit}
        return tuple((k, v) for k, v in self._default_tags if k not in explicit_keys) + explicit

    def get_or_create(
        self,
        name: str,
        unit: MetricUnit = MetricUnit.CALLS,
        tags: TagsLike = None,
    ) -> DeltaCounter:
        """Return the counter for (name, tags), creating it on first use.

        Tag order does not matter: the same tags in another order yield the
        same counter. When a counter already exists with another unit the
        existing counter is returned unchanged.

        Raises:
            InvalidPointError: If the name or tags are malformed.
        """
        full_name = self._full_name(name)
        merged = self._merge_tags(tags, full_name)
        key = counter_key(full_name, merged)

        with self._lock:
            counter = self._counters.get(key)
            if counter is None:
                counter = DeltaCounter(full_name, unit, merged)
                self._counters[key] = counter
                return counter

        if counter.unit is not unit:
            logger.warning(
                "Counter already registered with another unit",
                counter=counter.describe(),
                registered_unit=counter.unit.value,
                requested_unit=unit.value,
            )
        return counter

    def get(self, name: str, tags: TagsLike = None) -> DeltaCounter | None:
        """Look up a counter without creating it."""
        full_name = self._full_name(name)
        key = counter_key(full_name, self._merge_tags(tags, full_name))
        with self._lock:
            return self._counters.get(key)

    def increment(self, handle: DeltaCounter, amount: int = 1) -> None:
        """Add to a counter's pending delta.

        Raises:
            TypeError: If amount is not an integer.
            ValueError: If amount is negative.
        """
        handle.increment(amount)

    def counters(self) -> list[DeltaCounter]:
        """All registered counters."""
        with self._lock:
            return list(self._counters.values())

    def pending(self) -> dict[str, int]:
        """Non-zero pending deltas keyed by counter description."""
        return {c.describe(): c.value for c in self.counters() if c.value}

    def flush_all(self) -> FlushResult:
        """Deliver every non-zero pending delta.

        Returns:
            FlushResult describing what was delivered.

        Raises:
            PartialFlushError: Some counters could not be delivered; their
                deltas remain accumulated.
            FlushTimeoutError: Delivery timed out; all taken deltas remain
                accumulated.
        """
        with self._flush_lock, perf.timed("flush_all", counters=len(self)):
            return self._flush_locked()

    def _flush_locked(self) -> FlushResult:
        # Points handed to the sender and not known to be lost, by counter key.
        in_flight: dict[CounterKey, tuple[DeltaCounter, int, MetricPoint]] = {}
        failed: list[str] = []
        timeout: FlushTimeoutError | None = None
        cause: Exception | None = None

        def put_back(error: SendError | FlushTimeoutError, current: DeltaCounter | None = None) -> None:
            nonlocal timeout, cause
            keys = [counter_key(point.name, point.tags) for point in error.undelivered]
            # Rejected before it reached the sender's buffer.
            if current is not None:
                keys.append(current.key)
            lost = [in_flight.pop(key) for key in dict.fromkeys(keys) if key in in_flight]
            if not lost:
                return
            for counter, delta, _ in lost:
                counter.restore(delta)
                failed.append(counter.describe())
            if isinstance(error, FlushTimeoutError):
                timeout = timeout or error
            else:
                cause = cause or error
            logger.warning(
                "Counter delivery failed; deltas kept for retry",
                counters=[counter.describe() for counter, _, _ in lost],
                error=str(error),
            )

        for counter in self.counters():
            delta = counter.take()
            if delta == 0:
                continue
            point = counter.to_point(delta)
            in_flight[counter.key] = (counter, delta, point)
            try:
                self._sender.send(point)
            except (SendError, FlushTimeoutError) as e:
                put_back(e, counter)

        if in_flight:
            try:
                self._sender.flush_metrics()
            except (UnreachableError, FlushTimeoutError) as e:
                put_back(e)

        if timeout is not None:
            raise FlushTimeoutError(
                "Counter flush timed out; deltas kept for the next flush",
                timeout_seconds=timeout.timeout_seconds,
                failed_counters=failed,
                cause=timeout,
            )
        if failed:
            raise PartialFlushError(
                f"{len(failed)} counter(s) could not be delivered; deltas kept for the next flush",
                failed_counters=failed,
                details={"sent": len(in_flight)},
                cause=cause,
            )
        return FlushResult(sent=len(in_flight), points=tuple(point for _, _, point in in_flight.values()))

    def clear(self) -> None:
        """Forget every counter, dropping pending deltas."""
        with self._lock:
            self._counters.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)

    def __contains__(self, handle: object) -> bool:
        if not isinstance(handle, DeltaCounter):
            return False
        with self._lock:
            return self._counters.get(handle.key) is handle
