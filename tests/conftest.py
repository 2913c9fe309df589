"""
Shared fixtures for Access Monitor tests.
"""

import asyncio
import datetime

import pytest

from access_monitor.credentials import Credential
from access_monitor.events import AccessEvent
from access_monitor.intake import IntakeBuffer
from access_monitor.transport import Transport


class FakeTransport(Transport):
    """Transport stand-in: stays 'connected' until closed; tests drive the handlers directly."""

    def __init__(self, credential, handlers):
        super().__init__(handlers)
        self.credential = credential
        self.started = asyncio.Event()
        self._stopped = asyncio.Event()

    def close(self):
        super().close()
        self._stopped.set()

    async def run(self):
        self.started.set()
        await self._stopped.wait()


class FakeTransportFactory:
    def __init__(self):
        self.created = []

    def __call__(self, credential, handlers):
        transport = FakeTransport(credential, handlers)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


@pytest.fixture
def make_event():
    """Factory for AccessEvent instances with sensible defaults."""
    def _make(status=200, host="example.com", path="/", method="GET", duration_ms=10.0, **kwargs):
        return AccessEvent(
            timestamp=kwargs.pop("timestamp", datetime.datetime(2026, 1, 1, tzinfo=datetime.timezone.utc)),
            host=host,
            path=path,
            method=method,
            status_code=status,
            duration_ns=int(duration_ms * 1_000_000),
            client_ip=kwargs.pop("client_ip", "192.168.1.1"),
            trace_id=kwargs.pop("trace_id", "trace-1"),
            **kwargs,
        )
    return _make


@pytest.fixture
def sample_record():
    """Access record exactly as the stream endpoint serializes it."""
    return {
        "timestamp": "2026-01-01T12:00:00.123456789Z",
        "host": "api.example.com",
        "path": "/v1/orders",
        "method": "POST",
        "statusCode": 201,
        "durationNs": 12_500_000,
        "clientIp": "203.0.113.9",
        "scheme": "https",
        "protocol": "HTTP/2.0",
        "serviceName": "orders@docker",
        "routerName": "orders-router@docker",
        "originStatusCode": 201,
        "originDurationNs": 12_000_000,
        "overheadNs": 500_000,
        "traceId": "4bf92f3577b34da6a3ce929d0e0e4736",
        "spanId": "00f067aa0ba902b7",
        "retryAttempts": 0,
    }


@pytest.fixture
def intake():
    return IntakeBuffer()


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


@pytest.fixture
def credential():
    return Credential("admin", "secret")


@pytest.fixture
async def controller(transport_factory):
    """Controller with a long tick so tests drive aggregation explicitly."""
    from access_monitor.session import StreamSessionController

    ctrl = StreamSessionController(transport_factory, tick_interval_ms=60_000)
    yield ctrl
    await ctrl.shutdown()


async def wait_for(predicate, timeout=2.0, interval=0.01):
    """Polls until predicate() is true or the timeout expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
