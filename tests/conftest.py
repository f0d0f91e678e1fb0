"""Shared fixtures and fakes for fleet-stress tests."""

from dataclasses import replace

import pytest

from fleet_stress.config import load_default_config
from fleet_stress.errors import InvocationError
from fleet_stress.resources import ResourceUsage, ResourceUsageProvider
from fleet_stress.session import LoopbackSessionClient


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FixedLatencySessionClient(LoopbackSessionClient):
    """Loopback client whose pings report a fixed round trip without waiting."""

    def __init__(self, ping_ms: float, **kwargs):
        super().__init__(**kwargs)
        self.ping_ms = ping_ms

    async def ping(self, session):
        if session.closed:
            raise InvocationError(f"Session {session.identity} is closed")
        return self.ping_ms


class FailingInvokeSessionClient(LoopbackSessionClient):
    """Loopback client that rejects every call except registration."""

    async def invoke(self, session, procedure, *args):
        if procedure == "register_player":
            return await super().invoke(session, procedure, *args)
        raise InvocationError(f"{procedure} rejected")


class StaticResourceUsage(ResourceUsageProvider):
    def __init__(self, memory_mb: float = 0.0, cpu_percent: float = 0.0):
        self.usage = ResourceUsage(memory_mb=memory_mb, cpu_percent=cpu_percent)
        self.calls = 0

    def sample(self) -> ResourceUsage:
        self.calls += 1
        return self.usage


@pytest.fixture
def make_config():
    """Factory for a valid config with selected fields overridden."""

    def factory(**overrides):
        return replace(load_default_config(), **overrides)

    return factory


@pytest.fixture
def fake_clock():
    return FakeClock()
