"""Tests for faas_telemetry.functions module."""

from __future__ import annotations

import importlib.util

import pytest

from faas_telemetry.config import DEFAULT_COUNTER_NAME
from faas_telemetry.facade import InstrumentationFacade
from faas_telemetry.functions import (
    DEFAULT_MESSAGE,
    ArtificialLatency,
    HttpRequest,
    ahandle_greeting,
    greeting,
    handle_greeting,
    resolve_name,
)
from faas_telemetry.testing import InMemorySender, InMemorySpanReporter, create_test_facade


HAS_PYTEST_ASYNCIO = importlib.util.find_spec("pytest_asyncio") is not None
asyncio_test = pytest.mark.skipif(not HAS_PYTEST_ASYNCIO, reason="pytest-asyncio not installed")

TRACE_ID = "4bf92f3577b34da6a3ce929d0e0e4736"
SPAN_ID = "00f067aa0ba902b7"


class TestResolveName:
    """Tests for resolve_name()."""

    def test_query_wins(self) -> None:
        """Test the query string is checked first."""
        request = HttpRequest(query={"name": "Ada"}, body=b'{"name": "Grace"}')
        assert resolve_name(request) == "Ada"

    def test_json_body(self) -> None:
        """Test the name is read from a JSON body."""
        assert resolve_name(HttpRequest(method="POST", body='{"name": "Grace"}')) == "Grace"

    @pytest.mark.parametrize("body", [b"", b"   ", b"not json", b'["name"]', b'{"name": ""}', b'{"other": 1}'])
    def test_no_name(self, body: bytes) -> None:
        """Test bodies without a usable name yield None."""
        assert resolve_name(HttpRequest(method="POST", body=body)) is None


class TestGreeting:
    """Tests for greeting()."""

    def test_default(self) -> None:
        """Test the default message without a name."""
        assert greeting(None) == DEFAULT_MESSAGE

    def test_personalized(self) -> None:
        """Test the personalized message."""
        assert greeting("Ada") == "Hello, Ada. This HTTP triggered function executed successfully."


class TestArtificialLatency:
    """Tests for ArtificialLatency."""

    def test_disabled_by_default(self) -> None:
        """Test no delay is configured by default."""
        latency = ArtificialLatency()
        assert not latency.enabled
        assert latency.delay_for("1") == 0.0

    def test_demo_delays(self) -> None:
        """Test the demo mapping."""
        latency = ArtificialLatency.demo()
        assert latency.enabled
        assert [latency.delay_for(n) for n in ("0.5", "1", "1.5", "2")] == [0.5, 1.0, 1.5, 2.0]

    def test_apply_sleeps_for_known_names(self) -> None:
        """Test apply sleeps only for configured names."""
        slept: list[float] = []
        latency = ArtificialLatency({"1.5": 1.5}, sleep=slept.append)
        assert latency.apply("1.5") == 1.5
        assert latency.apply("Ada") == 0.0
        assert latency.apply(None) == 0.0
        assert slept == [1.5]


class TestHandleGreeting:
    """Tests for the synchronous handler."""

    def test_counts_and_responds(
        self,
        facade: InstrumentationFacade,
        sender: InMemorySender,
        span_reporter: InMemorySpanReporter,
    ) -> None:
        """Test the response, one counted invocation and one span."""
        response = handle_greeting(HttpRequest(query={"name": "Ada"}), facade, invocation_id="inv-1")

        assert response.status == 200
        assert response.body == greeting("Ada")
        assert sender.delivered_total(DEFAULT_COUNTER_NAME) == 1
        assert len(span_reporter.spans) == 1

    def test_continues_inbound_trace(self, facade: InstrumentationFacade, span_reporter: InMemorySpanReporter) -> None:
        """Test the response carries the invocation span's context."""
        request = HttpRequest(headers={"TraceId": TRACE_ID, "SpanId": SPAN_ID})
        response = handle_greeting(request, facade, invocation_id="inv-1")

        span = span_reporter.spans[0]
        assert span.trace_id == TRACE_ID
        assert span.parent_span_id == SPAN_ID
        assert response.headers["TraceId"] == TRACE_ID
        assert response.headers["SpanId"] == span.span_id
        assert response.headers["ParentSpanId"] == SPAN_ID

    def test_counter_only_function(self, sender: InMemorySender) -> None:
        """Test a facade without tracing still counts and sends no trace headers."""
        facade = create_test_facade(sender=sender, tracing_enabled=False)
        response = handle_greeting(HttpRequest(), facade)
        facade.shutdown()
        assert response.body == DEFAULT_MESSAGE
        assert response.headers == {}
        assert sender.delivered_total(DEFAULT_COUNTER_NAME) == 1

    def test_latency_is_applied(self, facade: InstrumentationFacade) -> None:
        """Test the latency hook receives the resolved name."""
        slept: list[float] = []
        latency = ArtificialLatency({"slow": 0.25}, sleep=slept.append)
        handle_greeting(HttpRequest(query={"name": "slow"}), facade, latency=latency)
        assert slept == [0.25]


class TestAsyncHandleGreeting:
    """Tests for the asynchronous handler."""

    @asyncio_test
    @pytest.mark.asyncio
    async def test_counts_and_responds(
        self,
        facade: InstrumentationFacade,
        sender: InMemorySender,
        span_reporter: InMemorySpanReporter,
    ) -> None:
        """Test the async handler behaves like the sync one."""
        request = HttpRequest(headers={"TraceId": TRACE_ID, "SpanId": SPAN_ID}, query={"name": "Ada"})
        response = await ahandle_greeting(request, facade, invocation_id="inv-1")

        assert response.body == greeting("Ada")
        assert response.headers["TraceId"] == TRACE_ID
        assert sender.delivered_total(DEFAULT_COUNTER_NAME) == 1
        assert span_reporter.spans[0].tag_dict["invocation.id"] == "inv-1"
