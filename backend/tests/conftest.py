"""
Shared fixtures for the points wallet tests.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from points_wallet.memory_store import InMemoryLedgerStore


class FakeClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc))
