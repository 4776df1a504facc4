"""Pytest fixtures for faas-telemetry tests."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from faas_telemetry.counters import DeltaCounterRegistry
from faas_telemetry.facade import InstrumentationFacade, shutdown_instrumentation
from faas_telemetry.propagation import SpanContextCodec
from faas_telemetry.testing import (
    FailingSender,
    InMemorySender,
    InMemorySpanReporter,
    create_test_facade,
)
from faas_telemetry.tracing import ApplicationIdentity, Tracer


@pytest.fixture
def sender() -> InMemorySender:
    """Create an in-memory sender."""
    return InMemorySender()


@pytest.fixture
def failing_sender() -> FailingSender:
    """Create a sender that fails only when told to."""
    return FailingSender()


@pytest.fixture
def registry(sender: InMemorySender) -> DeltaCounterRegistry:
    """Create a registry bound to the in-memory sender."""
    return DeltaCounterRegistry(sender)


@pytest.fixture
def identity() -> ApplicationIdentity:
    """Create a sample application identity."""
    return ApplicationIdentity(
        application="TruckApp",
        service="TruckService",
        cluster="us-central",
        shard="primary",
    )


@pytest.fixture
def span_reporter() -> InMemorySpanReporter:
    """Create an in-memory span reporter."""
    return InMemorySpanReporter()


@pytest.fixture
def tracer(identity: ApplicationIdentity, span_reporter: InMemorySpanReporter) -> Tracer:
    """Create a tracer reporting to memory."""
    return Tracer(identity, reporters=[span_reporter])


@pytest.fixture
def codec() -> SpanContextCodec:
    """Create a codec with canonical header names."""
    return SpanContextCodec()


@pytest.fixture
def facade(sender: InMemorySender, span_reporter: InMemorySpanReporter) -> Iterator[InstrumentationFacade]:
    """Create a strict facade on in-memory collaborators."""
    facade = create_test_facade(sender=sender, reporters=[span_reporter])
    yield facade
    facade.shutdown()


@pytest.fixture
def clean_instrumentation() -> Iterator[None]:
    """Tear down the process-wide instrumentation after the test."""
    shutdown_instrumentation()
    yield
    shutdown_instrumentation()
