"""Shared test fixtures for the booking firewall test suite."""

from __future__ import annotations

import os
from datetime import UTC, datetime

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py picks up local defaults.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ["VALIDATOR_MODE"] = "heuristic"
    os.environ["METRICS_ENABLED"] = "false"
    os.environ.pop("SCHEDULING_API_URL", None)
    os.environ.pop("SETTINGS_API_URL", None)
    os.environ.pop("AUDIT_DB_PATH", None)


class MutableClock:
    """Callable clock returning a settable datetime."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def utc_clock():
    # Monday 2026-10-19, 10:00 UTC
    return MutableClock(datetime(2026, 10, 19, 10, 0, tzinfo=UTC))


@pytest.fixture
def local_clock():
    # Practice-local naive time, same Monday morning
    return MutableClock(datetime(2026, 10, 19, 10, 0))
