"""Span context propagation over HTTP headers.

The codec writes a span context as canonical headers and reads it back
from an inbound header multimap:

    TraceId:           trace identifier (hex, optionally UUID-hyphenated)
    SpanId:            identifier of the sending span
    ParentSpanId:      parent of the sending span, only when set
    Baggage-<key>:     one header per baggage item, key and value percent-encoded

All names may carry a configurable prefix. Lookup is case-insensitive.
When none of the canonical headers is present, a W3C ``traceparent``
header is accepted as a fallback.

Extraction fails open: malformed headers are logged at debug level and
treated as if no context had been sent, so a broken upstream never stops
the function from answering.

Example:
    >>> codec = SpanContextCodec()
    >>> headers = codec.inject(span.context)
    >>> codec.extract(headers) == span.context
    True
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator, Mapping, MutableMapping
from dataclasses import dataclass, field, replace
from typing import Any, Self
from urllib.parse import quote, unquote

from faas_telemetry.exceptions import SpanContextMalformedError
from faas_telemetry.logging import get_logger


logger = get_logger(__name__)

TRACE_ID_HEADER = "TraceId"
SPAN_ID_HEADER = "SpanId"
PARENT_SPAN_ID_HEADER = "ParentSpanId"
BAGGAGE_HEADER_PREFIX = "Baggage-"
TRACEPARENT_HEADER = "traceparent"

_ID_PATTERN = re.compile(r"^[0-9a-fA-F]+(-[0-9a-fA-F]+)*$")
_MAX_ID_HEX_DIGITS = 32
_VERSION_PATTERN = re.compile(r"^[0-9a-fA-F]{2}$")


def is_valid_id(value: Any) -> bool:
    """Check a trace or span identifier.

    Identifiers are hex strings of at most 32 digits, optionally grouped
    with hyphens (UUID form). An all-zero identifier is invalid.
    """
    if not isinstance(value, str) or not _ID_PATTERN.match(value):
        return False
    digits = value.replace("-", "")
    return len(digits) <= _MAX_ID_HEX_DIGITS and digits.strip("0") != ""


# =============================================================================
# Header Map
# =============================================================================


class HeaderMap(Mapping[str, str]):
    """Read-only, case-insensitive view of HTTP headers.

    Iteration yields the keys as originally spelled. For repeated keys
    the first value wins.

    Example:
        >>> headers = HeaderMap([("TraceId", "abc"), ("traceid", "def")])
        >>> headers["TRACEID"]
        'abc'
    """

    __slots__ = ("_items",)

    def __init__(self, headers: Mapping[str, str] | Iterable[tuple[str, str]] | None = None) -> None:
        self._items: dict[str, tuple[str, str]] = {}
        if headers is None:
            return
        pairs = headers.items() if isinstance(headers, Mapping) else headers
        for key, value in pairs:
            self._items.setdefault(key.lower(), (key, value))

    def __getitem__(self, key: str) -> str:
        return self._items[key.lower()][1]

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.lower() in self._items

    def __iter__(self) -> Iterator[str]:
        return (original for original, _ in self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"HeaderMap({dict(self._items.values())!r})"


# =============================================================================
# Span Context
# =============================================================================


@dataclass(frozen=True, slots=True)
class SpanContext:
    """Identity of a span as it travels between processes.

    Attributes:
        trace_id: Trace the span belongs to.
        span_id: Identifier of the span.
        parent_span_id: Identifier of the span's parent, if any.
        baggage: Key/value items propagated along the whole trace.
    """

    trace_id: str
    span_id: str
    parent_span_id: str | None = None
    baggage: Mapping[str, str] = field(default_factory=dict, hash=False)

    def with_baggage_item(self, key: str, value: str) -> SpanContext:
        """Return a copy with one baggage item added or replaced."""
        return replace(self, baggage={**self.baggage, key: value})

    def baggage_item(self, key: str) -> str | None:
        """Get a baggage item by key."""
        return self.baggage.get(key)

    @property
    def is_valid(self) -> bool:
        """Whether both identifiers are well formed."""
        ids_valid = is_valid_id(self.trace_id) and is_valid_id(self.span_id)
        return ids_valid and (self.parent_span_id is None or is_valid_id(self.parent_span_id))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "baggage": dict(self.baggage),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Create SpanContext from dictionary."""
        return cls(
            trace_id=data["trace_id"],
            span_id=data["span_id"],
            parent_span_id=data.get("parent_span_id"),
            baggage=dict(data.get("baggage", {})),
        )


# =============================================================================
# Codec
# =============================================================================


class SpanContextCodec:
    """Encodes span contexts into HTTP headers and decodes them back.

    Args:
        header_prefix: Prefix prepended to every canonical header name.
        accept_w3c: Fall back to a W3C ``traceparent`` header when the
            canonical headers are absent.
    """

    def __init__(self, header_prefix: str = "", accept_w3c: bool = True) -> None:
        self._prefix = header_prefix
        self._accept_w3c = accept_w3c
        self.trace_id_header = f"{header_prefix}{TRACE_ID_HEADER}"
        self.span_id_header = f"{header_prefix}{SPAN_ID_HEADER}"
        self.parent_span_id_header = f"{header_prefix}{PARENT_SPAN_ID_HEADER}"
        self.baggage_prefix = f"{header_prefix}{BAGGAGE_HEADER_PREFIX}"

    @property
    def header_prefix(self) -> str:
        """Prefix prepended to every canonical header name."""
        return self._prefix

    def inject(self, context: SpanContext) -> dict[str, str]:
        """Encode a context as canonical headers.

        Output is deterministic: identifiers first, then baggage sorted by key.
        """
        headers = {
            self.trace_id_header: context.trace_id,
            self.span_id_header: context.span_id,
        }
        if context.parent_span_id:
            headers[self.parent_span_id_header] = context.parent_span_id
        for key in sorted(context.baggage):
            name = f"{self.baggage_prefix}{quote(key, safe='')}"
            headers[name] = quote(context.baggage[key], safe="")
        return headers

    def inject_into(self, context: SpanContext, carrier: MutableMapping[str, str]) -> MutableMapping[str, str]:
        """Write a context into an existing mutable header carrier."""
        carrier.update(self.inject(context))
        return carrier

    def extract(self, headers: Mapping[str, str] | Iterable[tuple[str, str]] | None) -> SpanContext | None:
        """Decode a context from inbound headers.

        Returns:
            The inbound SpanContext, or None when no usable context was sent.
            Malformed headers are logged and yield None.
        """
        try:
            return self.extract_strict(headers)
        except SpanContextMalformedError as e:
            logger.debug("Ignoring malformed trace headers", error=str(e), header=e.header)
            return None

    def extract_strict(
        self,
        headers: Mapping[str, str] | Iterable[tuple[str, str]] | None,
    ) -> SpanContext | None:
        """Decode a context, raising on malformed headers.

        Returns:
            The inbound SpanContext, or None when no trace header is present.

        Raises:
            SpanContextMalformedError: If trace headers are present but unusable.
        """
        header_map = headers if isinstance(headers, HeaderMap) else HeaderMap(headers)

        trace_raw = header_map.get(self.trace_id_header)
        span_raw = header_map.get(self.span_id_header)
        if trace_raw is None and span_raw is None:
            if self._accept_w3c and TRACEPARENT_HEADER in header_map:
                return self._extract_traceparent(header_map[TRACEPARENT_HEADER])
            return None

        trace_id = self._parse_id(trace_raw, self.trace_id_header)
        span_id = self._parse_id(span_raw, self.span_id_header)

        parent_raw = header_map.get(self.parent_span_id_header)
        parent_span_id = None
        if parent_raw is not None and parent_raw.strip():
            parent_span_id = self._parse_id(parent_raw, self.parent_span_id_header)

        return SpanContext(
            trace_id=trace_id,
            span_id=span_id,
            parent_span_id=parent_span_id,
            baggage=self._extract_baggage(header_map),
        )

    def _parse_id(self, raw: str | None, header: str) -> str:
        if raw is None:
            raise SpanContextMalformedError(f"Missing {header} header", header=header)
        value = raw.strip()
        if not is_valid_id(value):
            raise SpanContextMalformedError(
                f"Invalid identifier in {header} header: {raw!r}",
                header=header,
            )
        return value

    def _extract_baggage(self, header_map: HeaderMap) -> dict[str, str]:
        prefix = self.baggage_prefix.lower()
        baggage: dict[str, str] = {}
        for name in header_map:
            if not name.lower().startswith(prefix):
                continue
            key = unquote(name[len(prefix):])
            if not key:
                raise SpanContextMalformedError("Baggage header without a key", header=name)
            baggage[key] = unquote(header_map[name])
        return baggage

    def _extract_traceparent(self, value: str) -> SpanContext:
        parts = value.strip().split("-")
        if len(parts) != 4:
            raise SpanContextMalformedError(
                f"traceparent must have 4 fields, got {len(parts)}",
                header=TRACEPARENT_HEADER,
            )
        version, trace_id, span_id, _flags = parts
        if not _VERSION_PATTERN.match(version) or version.lower() == "ff":
            raise SpanContextMalformedError(
                f"Unsupported traceparent version: {version!r}",
                header=TRACEPARENT_HEADER,
            )
        if len(trace_id) != 32 or not is_valid_id(trace_id):
            raise SpanContextMalformedError("Invalid trace id in traceparent", header=TRACEPARENT_HEADER)
        if len(span_id) != 16 or not is_valid_id(span_id):
            raise SpanContextMalformedError("Invalid span id in traceparent", header=TRACEPARENT_HEADER)
        return SpanContext(trace_id=trace_id, span_id=span_id)
