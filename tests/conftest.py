"""Shared pytest fixtures: in-memory database, controllable clock and raw store."""

from datetime import timedelta

import pytest

from factories import NOW, FakeGitHub
from impactsync.db import Database
from impactsync.raw_store import RawStore


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def database():
    db = Database(":memory:").init()
    yield db
    db.close()


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def raw_store(database, clock):
    return RawStore(database, clock=clock)


@pytest.fixture
def fake_github():
    return FakeGitHub()
