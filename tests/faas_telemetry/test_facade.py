"""Tests for faas_telemetry.facade module."""

from __future__ import annotations

import asyncio
import importlib.util

import pytest

from faas_telemetry.config import DEFAULT_COUNTER_NAME, TelemetryConfig
from faas_telemetry.counters import DeltaCounterRegistry
from faas_telemetry.exceptions import (
    ConfigurationError,
    InvalidPointError,
    PartialFlushError,
    SpanAlreadyFinishedError,
    UnreachableError,
)
from faas_telemetry.facade import (
    InstrumentationFacade,
    InstrumentationSettings,
    configure_instrumentation,
    get_instrumentation,
    shutdown_instrumentation,
)
from faas_telemetry.reporters import ConsoleSpanReporter, DirectSpanReporter
from faas_telemetry.sender import DirectIngestionSender, MetricUnit, NullSender
from faas_telemetry.testing import (
    FailingSender,
    FailingSpanReporter,
    InMemorySender,
    InMemorySpanReporter,
    LogCapture,
    TelemetryTestContext,
    create_test_config,
    create_test_facade,
)
from faas_telemetry.tracing import ApplicationIdentity, Tracer


HAS_PYTEST_ASYNCIO = importlib.util.find_spec("pytest_asyncio") is not None
asyncio_test = pytest.mark.skipif(not HAS_PYTEST_ASYNCIO, reason="pytest-asyncio not installed")

INBOUND = {
    "TraceId": "7b3bf470-9456-4e3a-a3bd-f1b6b3f9a0c1",
    "SpanId": "0c5a2d7e-3a44-4f7b-9d1e-6f0b8b2f4e11",
    "Baggage-tenant": "acme",
}


def _facade_with_counter(sender: InMemorySender, counter_name: str, *, strict: bool) -> InstrumentationFacade:
    tracer = Tracer(ApplicationIdentity("app", "svc"), reporters=[InMemorySpanReporter()])
    settings = InstrumentationSettings(counter_name=counter_name, operation_name="op", strict=strict)
    return InstrumentationFacade(DeltaCounterRegistry(sender), tracer, settings)


class TestSettings:
    """Tests for InstrumentationSettings."""

    def test_from_config(self) -> None:
        """Test settings mirror the configuration."""
        config = TelemetryConfig(source="fn", metric_tags={"Cloud": "Azure"}, counter_unit="requests")
        settings = InstrumentationSettings.from_config(config)
        assert settings.counter_name == DEFAULT_COUNTER_NAME
        assert settings.operation_name == "fn.Execute"
        assert settings.counter_unit is MetricUnit.REQUESTS
        assert settings.counter_tags == (("Cloud", "Azure"),)


class TestBeginEnd:
    """Tests for the invocation sequence."""

    def test_sequence(
        self,
        facade: InstrumentationFacade,
        sender: InMemorySender,
        span_reporter: InMemorySpanReporter,
    ) -> None:
        """Test counting, flushing and a child span of the inbound context."""
        telemetry = facade.begin(INBOUND, "inv-1")

        assert telemetry.counter_acknowledged
        assert telemetry.flush_result is not None and telemetry.flush_result.sent == 1
        assert sender.delivered_total(DEFAULT_COUNTER_NAME) == 1
        assert telemetry.parent_context is not None
        assert telemetry.trace_id == INBOUND["TraceId"]
        assert telemetry.span is not None
        assert telemetry.span.parent_span_id == INBOUND["SpanId"]
        assert facade.tracer.active_span() is telemetry.span

        facade.end(telemetry)

        assert facade.tracer.active_span() is None
        assert telemetry.ok
        assert span_reporter.spans == [telemetry.span_data]
        data = span_reporter.spans[0]
        assert data.operation_name == "test-function.Execute"
        assert data.tag_dict["invocation.id"] == "inv-1"
        assert data.tag_dict["application"] == "test-application"
        assert data.baggage == {"tenant": "acme"}

    def test_root_span_without_headers(self, facade: InstrumentationFacade) -> None:
        """Test a request without trace headers starts a new trace."""
        telemetry = facade.begin({}, "inv-1")
        facade.end(telemetry)
        assert telemetry.parent_context is None
        assert telemetry.span_data is not None
        assert telemetry.span_data.parent_span_id is None

    def test_malformed_headers_start_root_span(self, facade: InstrumentationFacade) -> None:
        """Test malformed trace headers are ignored, not reported as errors."""
        telemetry = facade.begin({"TraceId": "garbage", "SpanId": "garbage"}, "inv-1")
        facade.end(telemetry)
        assert telemetry.parent_context is None
        assert telemetry.ok

    def test_generated_invocation_id(self, facade: InstrumentationFacade) -> None:
        """Test an invocation id is generated when missing."""
        telemetry = facade.begin({})
        facade.end(telemetry)
        assert telemetry.invocation_id

    def test_repeated_invocations_do_not_accumulate(
        self,
        facade: InstrumentationFacade,
        sender: InMemorySender,
    ) -> None:
        """Test every invocation reports a delta of exactly one on the same counter."""
        for i in range(3):
            with facade.invocation({}, f"inv-{i}"):
                pass
        assert [p.value for p in sender.delivered_points] == [1, 1, 1]
        assert len(facade.registry) == 1

    def test_ignores_span_active_in_caller(self, facade: InstrumentationFacade) -> None:
        """Test an invocation never becomes a child of an unrelated active span."""
        outer = facade.tracer.start_span("outer")
        with facade.tracer.activate(outer):
            with facade.invocation({}, "inv-1") as telemetry:
                pass
            assert facade.tracer.active_span() is outer
        assert telemetry.span_data is not None
        assert telemetry.span_data.trace_id != outer.trace_id

    def test_tracing_disabled(self, sender: InMemorySender) -> None:
        """Test a counter-only facade emits no spans."""
        reporter = InMemorySpanReporter()
        facade = create_test_facade(sender=sender, reporters=[reporter], tracing_enabled=False)
        with facade.invocation(INBOUND, "inv-1") as telemetry:
            assert facade.tracer.active_span() is None
        assert telemetry.span is None
        assert telemetry.counter_acknowledged
        assert reporter.spans == []
        assert sender.delivered_total(DEFAULT_COUNTER_NAME) == 1


class TestInvocationErrors:
    """Tests for error handling around the business logic."""

    def test_handler_error_propagates_and_tags_span(
        self,
        facade: InstrumentationFacade,
        span_reporter: InMemorySpanReporter,
        sender: InMemorySender,
    ) -> None:
        """Test the handler's exception propagates unchanged and the span is failed."""
        with pytest.raises(KeyError):
            with facade.invocation({}, "inv-1"):
                raise KeyError("missing")
        assert span_reporter.spans[0].is_error
        assert span_reporter.spans[0].tag_dict["error.kind"] == "KeyError"
        assert sender.delivered_total(DEFAULT_COUNTER_NAME) == 1
        assert facade.tracer.active_span() is None

    def test_flush_failure_is_recorded_not_raised(self) -> None:
        """Test an unreachable backend never breaks the invocation, even when strict."""
        sender = FailingSender(fail_on_flush=True)
        facade = create_test_facade(sender=sender, reporters=[])

        result, telemetry = facade.invoke({}, "inv-1", lambda: "response")

        assert result == "response"
        assert telemetry.counter_acknowledged
        assert telemetry.flush_result is None
        assert [type(e) for e in telemetry.errors] == [PartialFlushError]
        assert not telemetry.ok

        sender.fail_on_flush = False
        facade.invoke({}, "inv-2", lambda: None)
        assert sender.delivered_total(DEFAULT_COUNTER_NAME) == 2

    def test_span_delivery_failure_keeps_counter_delivered(self) -> None:
        """Test a rejected span batch does not put back a counter delta that was delivered."""
        sender = FailingSender(fail_span_flush=True)
        facade = create_test_facade(sender=sender, reporters=[DirectSpanReporter(sender)])

        with facade.invocation(INBOUND, "inv-1") as telemetry:
            pass

        assert telemetry.flush_result is not None
        assert [type(e) for e in telemetry.errors] == [UnreachableError]
        assert sender.delivered_total(DEFAULT_COUNTER_NAME) == 1
        assert facade.registry.pending() == {}

        sender.fail_span_flush = False
        facade.invoke({}, "inv-2", lambda: None)
        assert sender.delivered_total(DEFAULT_COUNTER_NAME) == 2

    def test_reporter_flush_failure_is_recorded(self, sender: InMemorySender) -> None:
        """Test reporter failures end up in the telemetry errors."""
        facade = create_test_facade(sender=sender, reporters=[FailingSpanReporter()])
        with facade.invocation({}, "inv-1") as telemetry:
            pass
        assert telemetry.span_data is not None
        assert [type(e) for e in telemetry.errors] == [RuntimeError]

    def test_invalid_counter_raises_when_strict(self, sender: InMemorySender) -> None:
        """Test integration bugs surface in strict mode."""
        facade = _facade_with_counter(sender, "bad name", strict=True)
        with pytest.raises(InvalidPointError):
            facade.begin({}, "inv-1")

    def test_invalid_counter_is_recorded_when_lenient(self, sender: InMemorySender) -> None:
        """Test integration bugs are only logged in lenient mode."""
        facade = _facade_with_counter(sender, "bad name", strict=False)
        telemetry = facade.begin({}, "inv-1")
        facade.end(telemetry)
        assert not telemetry.counter_acknowledged
        assert [type(e) for e in telemetry.errors] == [InvalidPointError]
        assert telemetry.span_data is not None

    def test_double_end_when_strict(self, facade: InstrumentationFacade) -> None:
        """Test ending an invocation twice raises in strict mode."""
        telemetry = facade.begin({}, "inv-1")
        facade.end(telemetry)
        with pytest.raises(SpanAlreadyFinishedError):
            facade.end(telemetry)

    def test_double_end_when_lenient(self, sender: InMemorySender) -> None:
        """Test ending twice is recorded and reports nothing more in lenient mode."""
        reporter = InMemorySpanReporter()
        facade = create_test_facade(sender=sender, reporters=[reporter], strict=False)
        telemetry = facade.begin({}, "inv-1")
        facade.end(telemetry)
        facade.end(telemetry)
        assert len(reporter.spans) == 1
        assert [type(e) for e in telemetry.errors] == [SpanAlreadyFinishedError]


class TestInvoke:
    """Tests for invoke() and ainvoke()."""

    def test_invoke_passes_arguments(self, facade: InstrumentationFacade) -> None:
        """Test the handler receives its arguments and its result is returned."""
        result, telemetry = facade.invoke({}, "inv-1", lambda a, b=0: a + b, 2, b=3)
        assert result == 5
        assert telemetry.span_data is not None

    @asyncio_test
    @pytest.mark.asyncio
    async def test_ainvoke_coroutine_handler(
        self,
        facade: InstrumentationFacade,
        span_reporter: InMemorySpanReporter,
        sender: InMemorySender,
    ) -> None:
        """Test a coroutine handler is awaited inside the invocation span."""

        async def handler() -> str | None:
            await asyncio.sleep(0)
            span = facade.tracer.active_span()
            return span.span_id if span else None

        result, telemetry = await facade.ainvoke(INBOUND, "inv-1", handler)

        assert telemetry.span_data is not None
        assert result == telemetry.span_data.span_id
        assert span_reporter.spans[0].trace_id == INBOUND["TraceId"]
        assert sender.delivered_total(DEFAULT_COUNTER_NAME) == 1

    @asyncio_test
    @pytest.mark.asyncio
    async def test_ainvoke_sync_handler(self, facade: InstrumentationFacade) -> None:
        """Test a plain callable works too."""
        result, telemetry = await facade.ainvoke({}, "inv-1", lambda: "ok")
        assert result == "ok"
        assert telemetry.ok

    @asyncio_test
    @pytest.mark.asyncio
    async def test_concurrent_invocations_are_isolated(
        self,
        facade: InstrumentationFacade,
        span_reporter: InMemorySpanReporter,
        sender: InMemorySender,
    ) -> None:
        """Test concurrent invocations each get their own span and one count."""

        async def handler() -> str | None:
            await asyncio.sleep(0.01)
            span = facade.tracer.active_span()
            return span.trace_id if span else None

        outcomes = await asyncio.gather(*(facade.ainvoke({}, f"inv-{i}", handler) for i in range(5)))

        assert all(result == telemetry.trace_id for result, telemetry in outcomes)
        assert len({telemetry.trace_id for _, telemetry in outcomes}) == 5
        assert len(span_reporter.spans) == 5
        assert sender.delivered_total(DEFAULT_COUNTER_NAME) == 5

    @asyncio_test
    @pytest.mark.asyncio
    async def test_ainvoke_flush_logs_keep_invocation_context(self) -> None:
        """Test warnings logged by flushes in the executor carry the invocation fields."""
        sender = FailingSender(fail_on_flush=True)
        facade = create_test_facade(sender=sender, reporters=[], strict=False)

        with LogCapture("faas_telemetry.counters") as logs:
            _, telemetry = await facade.ainvoke({}, "inv-7", lambda: None)

        assert [type(e) for e in telemetry.errors] == [PartialFlushError]
        assert logs.records
        assert {r.context.invocation_id for r in logs.records} == {"inv-7"}
        assert logs.records[0].context.operation == facade.settings.operation_name

    @asyncio_test
    @pytest.mark.asyncio
    async def test_ainvoke_propagates_handler_error(
        self,
        facade: InstrumentationFacade,
        span_reporter: InMemorySpanReporter,
    ) -> None:
        """Test handler errors propagate and fail the span."""

        async def handler() -> None:
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await facade.ainvoke({}, "inv-1", handler)
        assert span_reporter.spans[0].is_error


class TestFromConfig:
    """Tests for InstrumentationFacade.from_config()."""

    def test_null_sender_without_endpoint(self) -> None:
        """Test local runs discard telemetry."""
        facade = InstrumentationFacade.from_config(create_test_config())
        assert isinstance(facade.registry.sender, NullSender)
        assert [type(r) for r in facade.tracer.reporters] == [DirectSpanReporter]
        facade.shutdown()

    def test_direct_sender_with_endpoint(self) -> None:
        """Test an endpoint produces a direct ingestion sender."""
        config = create_test_config(endpoint_url="https://example.wavefront.com", api_token="t", timeout_seconds=2)
        facade = InstrumentationFacade.from_config(config)
        sender = facade.registry.sender
        assert isinstance(sender, DirectIngestionSender)
        assert sender.endpoint == "https://example.wavefront.com/report"
        assert sender.source == "test-function"
        facade.shutdown()
        assert sender.closed

    def test_console_reporter(self) -> None:
        """Test the console reporter is added on request."""
        facade = InstrumentationFacade.from_config(create_test_config(console_reporter=True))
        assert [type(r) for r in facade.tracer.reporters] == [DirectSpanReporter, ConsoleSpanReporter]
        facade.shutdown()

    def test_header_prefix(self, sender: InMemorySender) -> None:
        """Test the configured header prefix reaches the codec."""
        facade = create_test_facade(sender=sender, header_prefix="X-")
        assert facade.tracer.codec.trace_id_header == "X-TraceId"
        facade.shutdown()

    def test_invalid_config(self) -> None:
        """Test invalid configuration is rejected."""
        with pytest.raises(ConfigurationError):
            InstrumentationFacade.from_config(create_test_config(counter_name="bad name"))


class TestShutdown:
    """Tests for shutdown()."""

    def test_flushes_pending_and_closes(self, sender: InMemorySender) -> None:
        """Test pending deltas are delivered and the sender closed, once."""
        facade = create_test_facade(sender=sender, reporters=[])
        handle = facade.registry.get_or_create("late.count")
        handle.increment(2)

        facade.shutdown()
        facade.shutdown()

        assert sender.delivered_total("late.count") == 2
        assert sender.closed
        assert facade.closed

    def test_failed_final_flush_is_logged(self) -> None:
        """Test shutdown does not raise when the last flush fails."""
        sender = FailingSender(fail_on_flush=True)
        facade = create_test_facade(sender=sender, reporters=[])
        facade.registry.get_or_create("late.count").increment()
        facade.shutdown()
        assert facade.closed


class TestProcessWideInstrumentation:
    """Tests for configure/get/shutdown of the process-wide facade."""

    def test_configure_and_get(self, clean_instrumentation: None) -> None:
        """Test the configured facade is returned by get_instrumentation()."""
        facade = configure_instrumentation(create_test_config(), sender=InMemorySender())
        assert get_instrumentation() is facade

    def test_reconfigure_shuts_down_previous(self, clean_instrumentation: None) -> None:
        """Test configuring again replaces and closes the previous facade."""
        first = configure_instrumentation(create_test_config(), sender=InMemorySender())
        second = configure_instrumentation(create_test_config(), sender=InMemorySender())
        assert first.closed
        assert get_instrumentation() is second

    def test_shutdown(self, clean_instrumentation: None) -> None:
        """Test shutdown closes the process-wide facade."""
        sender = InMemorySender()
        facade = configure_instrumentation(create_test_config(), sender=sender)
        shutdown_instrumentation()
        assert facade.closed
        assert sender.closed
        shutdown_instrumentation()


class TestTelemetryTestContext:
    """Tests for the TelemetryTestContext helper."""

    def test_spans_reach_sender_and_reporter(self) -> None:
        """Test the context wires both the sender and the in-memory reporter."""
        with TelemetryTestContext() as ctx:
            with ctx.facade.invocation({}, "inv-1"):
                pass
            assert len(ctx.reporter.spans) == 1
            assert len(ctx.sender.delivered_spans) == 1
            assert ctx.sender.delivered_points[0].value == 1
        assert ctx.sender.closed

    def test_facade_requires_enter(self) -> None:
        """Test using the facade outside the block fails."""
        with pytest.raises(RuntimeError):
            TelemetryTestContext().facade
