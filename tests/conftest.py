"""Pytest configuration and shared fixtures.

This module registers custom markers for CI job separation and provides
shared fixtures for the test suite. Archive builders and port fakes live
in factories.py.
"""

from __future__ import annotations

from collections.abc import Callable

import pytest
from factories import FakeClock, FakeTransport, RecordingProgress, build_car


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "core: Core models, decoding, merging and services")
    config.addinivalue_line("markers", "transport: HTTP transport adapter")
    config.addinivalue_line("markers", "cache: Cache store and key/value adapters")
    config.addinivalue_line("markers", "progress: Rich progress integration")
    config.addinivalue_line("markers", "cli: CLI tests")
    config.addinivalue_line("markers", "e2e: End-to-end tests")
    config.addinivalue_line(
        "markers", "tra: Test Responsibility Anchor (TRA) - namespace.Anchor format"
    )
    config.addinivalue_line(
        "markers",
        "tier: Test tier for CI job separation (0=instant, 1=fast, 2=standard, 3=slow, 4=manual)",
    )


@pytest.fixture
def car() -> Callable[..., bytes]:
    """Archive builder (see factories.build_car)."""
    return build_car


@pytest.fixture
def fake_transport() -> FakeTransport:
    """Reusable fake transport for service tests.

    Serves archives from dicts and records every call, so tests can assert
    that no network call happened.
    """
    return FakeTransport()


@pytest.fixture
def clock() -> FakeClock:
    """Controllable clock starting at a fixed time."""
    return FakeClock()


@pytest.fixture
def recording_progress() -> RecordingProgress:
    """Progress reporter that records stages and byte counts."""
    return RecordingProgress()
