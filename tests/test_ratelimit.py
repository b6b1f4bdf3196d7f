"""Tests for the sliding-window rate limiter."""

import threading

import pytest

from taskboard.errors import RateLimitError, ServerBusyError, ValidationError
from taskboard.ratelimit import READ, WRITE, Limit, RateLimiter


@pytest.fixture
def limiter(ms_clock):
    return RateLimiter(
        limits={READ: Limit(60_000, 5), WRITE: Limit(60_000, 3)},
        max_clients=3,
        cleanup_interval_ms=300_000,
        clock=ms_clock,
    )


class TestAdmission:

    def test_n_plus_one_rejected(self, limiter):
        for _ in range(3):
            limiter.admit("alice", WRITE)
        with pytest.raises(RateLimitError) as exc:
            limiter.admit("alice", WRITE)
        assert exc.value.kind == "RATE_LIMITED"
        assert exc.value.limit == 3
        assert exc.value.remaining == 0
        assert exc.value.retry_after_ms == 60_000

    def test_window_expiry_resets_bucket(self, limiter, ms_clock):
        for _ in range(3):
            limiter.admit("alice", WRITE)
        ms_clock.advance(60_001)
        limiter.admit("alice", WRITE)
        assert limiter.bucket_size("alice", WRITE) == 1

    def test_sliding_not_fixed(self, limiter, ms_clock):
        limiter.admit("alice", WRITE)
        ms_clock.advance(30_000)
        limiter.admit("alice", WRITE)
        limiter.admit("alice", WRITE)
        ms_clock.advance(30_000)
        # first hit has left the window, the other two have not
        info = limiter.admit("alice", WRITE)
        assert info["remaining"] == 0
        with pytest.raises(RateLimitError) as exc:
            limiter.admit("alice", WRITE)
        assert exc.value.retry_after_ms == 30_000

    def test_admission_hints(self, limiter):
        info = limiter.admit("alice", READ)
        assert info == {"limit": 5, "remaining": 4, "reset_ms": 60_000}

    def test_read_and_write_are_independent(self, limiter):
        for _ in range(3):
            limiter.admit("alice", WRITE)
        limiter.admit("alice", READ)

    def test_clients_are_independent(self, limiter):
        for _ in range(3):
            limiter.admit("alice", WRITE)
        limiter.admit("bob", WRITE)

    def test_rejection_does_not_record(self, limiter):
        for _ in range(3):
            limiter.admit("alice", WRITE)
        with pytest.raises(RateLimitError):
            limiter.admit("alice", WRITE)
        assert limiter.bucket_size("alice", WRITE) == 3

    def test_unknown_operation(self, limiter):
        with pytest.raises(ValidationError):
            limiter.admit("alice", "delete")

    def test_retry_after_rounds_up_to_seconds(self):
        assert RateLimitError("x", retry_after_ms=1500).retry_after_secs == 2
        assert RateLimitError("x", retry_after_ms=0).retry_after_secs == 1


class TestClientCeiling:

    def test_unseen_client_rejected_when_full(self, limiter):
        for name in ("a", "b", "c"):
            limiter.admit(name, READ)
        with pytest.raises(ServerBusyError) as exc:
            limiter.admit("d", READ)
        assert exc.value.kind == "SERVER_BUSY"
        assert "Too many clients" in exc.value.message

    def test_known_client_still_admitted_when_full(self, limiter):
        for name in ("a", "b", "c"):
            limiter.admit(name, READ)
        limiter.admit("a", WRITE)

    def test_sweep_evicts_idle_clients(self, limiter, ms_clock):
        for name in ("a", "b", "c"):
            limiter.admit(name, READ)
        ms_clock.advance(60_001)
        limiter.admit("a", READ)
        assert limiter.sweep() == 2
        assert limiter.stats()["trackedClients"] == 1
        limiter.admit("d", READ)

    def test_periodic_sweep_runs_on_admission(self, limiter, ms_clock):
        for name in ("a", "b", "c"):
            limiter.admit(name, READ)
        ms_clock.advance(300_000)
        limiter.admit("d", READ)
        assert limiter.stats()["trackedClients"] == 1


class TestConcurrency:

    def test_no_double_counting(self, ms_clock):
        limiter = RateLimiter(limits={WRITE: Limit(60_000, 50)}, clock=ms_clock)
        admitted = []
        rejected = []

        def worker():
            for _ in range(20):
                try:
                    limiter.admit("shared", WRITE)
                    admitted.append(1)
                except RateLimitError:
                    rejected.append(1)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(admitted) == 50
        assert len(rejected) == 50
        assert limiter.bucket_size("shared", WRITE) == 50
