"""Pytest configuration and fixtures for gallery backend tests.

Sets the test environment before any app module is imported, so settings
are loaded with test values.
"""

import os
from datetime import UTC, datetime, timedelta

import pytest

ACTIVATION_KEY = "test-activation-key"


def pytest_configure(config):
    """Configure test environment before any tests run."""
    config.addinivalue_line("markers", "slow: Slow-running tests (excluded from fast)")
    config.addinivalue_line("markers", "integration: Integration tests requiring external services")

    os.environ.setdefault("ENVIRONMENT", "test")
    os.environ.setdefault("STORE_BACKEND", "memory")
    # Background sweeps are exercised directly through run_once()
    os.environ.setdefault("SWEEPER_ENABLED", "false")
    os.environ.setdefault("ACTIVATION_API_KEY", ACTIVATION_KEY)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 14, 12, 0, tzinfo=UTC))
