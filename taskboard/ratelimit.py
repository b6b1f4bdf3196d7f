# Taskboard - sliding-window rate limiter
#
# One bucket per (client, operation class). Each bucket keeps a deque of
# admission timestamps; admit() evicts the ones that left the window and
# either records the new request or raises RateLimitError.
#
# Buckets lock individually so checks for different clients never wait on
# each other. The bucket map has its own lock, held only for lookup,
# creation and the idle sweep.

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .errors import RateLimitError, ServerBusyError, ValidationError

logger = logging.getLogger(__name__)

READ = "read"
WRITE = "write"
OPERATIONS = (READ, WRITE)


@dataclass
class Limit:
    window_ms: int
    max_requests: int


DEFAULT_LIMITS = {
    READ: Limit(window_ms=60_000, max_requests=120),
    WRITE: Limit(window_ms=60_000, max_requests=60),
}


class _Bucket:
    def __init__(self):
        self.lock = threading.Lock()
        self.hits: deque = deque()
        self.last_seen = 0.0


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class RateLimiter:
    """
    Per-client admission control for read and write operations.

    clock: returns milliseconds; injectable so tests can advance time.
    """

    def __init__(self, limits: Optional[Dict[str, Limit]] = None, max_clients: int = 1000,
                 cleanup_interval_ms: int = 300_000, clock: Optional[Callable[[], float]] = None):
        self.limits = dict(DEFAULT_LIMITS)
        if limits:
            self.limits.update(limits)
        self.max_clients = max_clients
        self.cleanup_interval_ms = cleanup_interval_ms
        self.clock = clock or _monotonic_ms

        self._buckets: Dict[Tuple[str, str], _Bucket] = {}
        self._clients: Dict[str, int] = {}   # client -> number of live buckets
        self._map_lock = threading.Lock()
        self._last_sweep = self.clock()

    def _limit(self, operation: str) -> Limit:
        try:
            return self.limits[operation]
        except KeyError:
            raise ValidationError(
                f"Unknown operation class '{operation}'. Use one of: {', '.join(OPERATIONS)}"
            )

    def _bucket(self, client_id: str, operation: str, now: float) -> _Bucket:
        key = (client_id, operation)
        with self._map_lock:
            if now - self._last_sweep >= self.cleanup_interval_ms:
                self._sweep_locked(now)
            bucket = self._buckets.get(key)
            if bucket is not None:
                return bucket
            if client_id not in self._clients and len(self._clients) >= self.max_clients:
                logger.warning(f"Rejecting client {client_id}: tracking {len(self._clients)} clients")
                raise ServerBusyError("Too many clients", limit=0, remaining=0,
                                      retry_after_ms=self.cleanup_interval_ms)
            bucket = _Bucket()
            bucket.last_seen = now
            self._buckets[key] = bucket
            self._clients[client_id] = self._clients.get(client_id, 0) + 1
            return bucket

    def admit(self, client_id: str = "default", operation: str = WRITE) -> Dict[str, int]:
        """
        Record one request or raise RateLimitError.

        Returns {limit, remaining, reset_ms} where reset_ms is the time until
        the oldest tracked request leaves the window.
        """
        limit = self._limit(operation)
        now = self.clock()
        bucket = self._bucket(client_id or "default", operation, now)

        with bucket.lock:
            cutoff = now - limit.window_ms
            while bucket.hits and bucket.hits[0] <= cutoff:
                bucket.hits.popleft()
            bucket.last_seen = now

            if len(bucket.hits) >= limit.max_requests:
                oldest = bucket.hits[0] if bucket.hits else now
                reset_ms = int(oldest + limit.window_ms - now)
                logger.warning(f"Rate limit exceeded for {client_id} ({operation})")
                raise RateLimitError(
                    f"Rate limit exceeded: {limit.max_requests} {operation} requests "
                    f"per {limit.window_ms // 1000}s",
                    limit=limit.max_requests,
                    remaining=0,
                    retry_after_ms=max(reset_ms, 0),
                )

            bucket.hits.append(now)
            reset_ms = int(bucket.hits[0] + limit.window_ms - now)
            return {
                "limit": limit.max_requests,
                "remaining": limit.max_requests - len(bucket.hits),
                "reset_ms": reset_ms,
            }

    def _sweep_locked(self, now: float) -> int:
        evicted = 0
        for key in list(self._buckets):
            client_id, operation = key
            bucket = self._buckets[key]
            if now - bucket.last_seen > self.limits[operation].window_ms:
                del self._buckets[key]
                self._clients[client_id] -= 1
                if self._clients[client_id] <= 0:
                    del self._clients[client_id]
                evicted += 1
        self._last_sweep = now
        if evicted:
            logger.debug(f"Rate limiter evicted {evicted} idle buckets")
        return evicted

    def sweep(self) -> int:
        """Evict buckets idle for longer than their window. Returns the count evicted."""
        with self._map_lock:
            return self._sweep_locked(self.clock())

    def bucket_size(self, client_id: str, operation: str = WRITE) -> int:
        bucket = self._buckets.get((client_id, operation))
        return len(bucket.hits) if bucket else 0

    def stats(self) -> Dict[str, object]:
        with self._map_lock:
            return {
                "trackedClients": len(self._clients),
                "trackedBuckets": len(self._buckets),
                "maxClients": self.max_clients,
                "limits": {
                    op: {"windowMs": l.window_ms, "maxRequests": l.max_requests}
                    for op, l in self.limits.items()
                },
                "lastSweepMs": self._last_sweep,
            }
