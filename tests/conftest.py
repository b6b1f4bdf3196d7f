"""Shared test fixtures for the taskboard engine tests."""

from datetime import datetime, timedelta, timezone

import pytest

from taskboard.ratelimit import READ, WRITE, Limit, RateLimiter
from taskboard.schema import Board, Column
from taskboard.service import BoardService
from taskboard.store import BoardStore

START = datetime(2025, 3, 14, 9, 0, 0, tzinfo=timezone.utc)


class TickingClock:
    """UTC clock that advances a fixed step on every read."""

    def __init__(self, start: datetime = START, step_ms: int = 1):
        self.now = start
        self.step = timedelta(milliseconds=step_ms)

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeMsClock:
    """Millisecond clock for the rate limiter; only moves when told to."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float):
        self.now += ms


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def ms_clock():
    return FakeMsClock()


@pytest.fixture
def boards_dir(tmp_path):
    return tmp_path / "boards"


@pytest.fixture
def store(boards_dir, clock):
    return BoardStore(boards_dir=str(boards_dir), clock=clock)


@pytest.fixture
def roomy_limiter():
    """Limits high enough that functional tests never trip them."""
    return RateLimiter(limits={
        READ: Limit(window_ms=60_000, max_requests=10_000),
        WRITE: Limit(window_ms=60_000, max_requests=10_000),
    })


@pytest.fixture
def service(store, roomy_limiter):
    return BoardService(store, limiter=roomy_limiter)


@pytest.fixture
def make_board(store):
    """Save an empty card-first board with the given column names."""

    def _make(name="Demo", columns=("Backlog", "Doing", "Done"), board_id="demo"):
        board = Board(
            id=board_id,
            project_name=name,
            columns=[Column(id=c.lower().replace(" ", "-"), name=c) for c in columns],
        )
        return store.save(board)

    return _make


@pytest.fixture
def demo(make_board):
    return make_board()
