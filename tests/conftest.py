"""
Shared fixtures: an in-memory SQLite database per test and a settable clock.
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from cardbridge.entities import Base
from cardbridge.settings import create_session_factory


class FixedClock:
    """Callable clock the tests can move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        future=True,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def clock():
    # Monday 2024-01-08 08:00 UTC
    return FixedClock(datetime(2024, 1, 8, 8, 0, tzinfo=timezone.utc))
