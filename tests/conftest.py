"""
Shared test fixtures.
"""

from datetime import datetime, timedelta, timezone

import pytest

START = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    """Clock frozen at 2024-01-15 10:30 UTC."""
    return FrozenClock()
