"""Shared fixtures for the security gate tests."""

import pytest

from actiongate.app.security.csrf import CsrfTokenManager
from actiongate.app.security.gate import SecurityGate
from actiongate.app.security.identifier import ClientIdentifierResolver
from actiongate.app.security.rate_limit import RateLimitEngine


class ManualClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def engine(clock):
    return RateLimitEngine(clock=clock)


@pytest.fixture
def csrf_manager(clock):
    return CsrfTokenManager(ttl_seconds=24 * 60 * 60, clock=clock)


@pytest.fixture
def resolver(clock):
    return ClientIdentifierResolver(clock=clock)


@pytest.fixture
def gate(resolver, engine, csrf_manager):
    return SecurityGate(resolver=resolver, engine=engine, csrf=csrf_manager)
