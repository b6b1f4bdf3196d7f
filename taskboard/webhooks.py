# Taskboard - webhook dispatcher
#
# Fans change events out to configured HTTP endpoints. Delivery runs on a
# background thread; failed posts go to a bounded retry queue that is
# flushed on the next successful delivery. Nothing here raises into the
# service that emitted the event.

import json
import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from .events import ANY, EVENT_TYPES, ChangeEmitter

logger = logging.getLogger(__name__)


@dataclass
class Webhook:
    url: str
    events: List[str] = field(default_factory=lambda: [ANY])
    secret: Optional[str] = None

    def wants(self, event: str) -> bool:
        return ANY in self.events or event in self.events

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Webhook":
        events = data.get("events") or [ANY]
        unknown = [e for e in events if e != ANY and e not in EVENT_TYPES]
        if unknown:
            raise ValueError(f"Unknown webhook events: {', '.join(unknown)}")
        return cls(url=data["url"], events=list(events), secret=data.get("secret"))


class WebhookDispatcher:
    """Posts change events as JSON to every webhook subscribed to them."""

    def __init__(self, webhooks: List[Webhook], timeout: float = 2.0,
                 retry_limit: int = 1000, session: Optional[requests.Session] = None):
        self.webhooks = list(webhooks)
        self.timeout = timeout
        self.session = session or requests.Session()

        self._outbox: "queue.Queue[Optional[tuple]]" = queue.Queue()
        self._retry_queue: deque = deque(maxlen=retry_limit)
        self._retry_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    def attach(self, emitter: ChangeEmitter) -> None:
        emitter.subscribe(ANY, self.enqueue)

    def enqueue(self, event: Dict[str, Any]) -> None:
        """Queue one event for every interested webhook. Never blocks on the network."""
        payload = json.dumps(event, ensure_ascii=False)
        for hook in self.webhooks:
            if hook.wants(event["event"]):
                self._outbox.put((hook, payload))
        self._ensure_worker()

    def _ensure_worker(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._worker, name="taskboard-webhooks", daemon=True)
        self._thread.start()

    def _worker(self) -> None:
        while True:
            item = self._outbox.get()
            try:
                if item is None:
                    return
                hook, payload = item
                if self.post(hook, payload):
                    self.flush_retries()
                else:
                    with self._retry_lock:
                        self._retry_queue.append((hook, payload, time.time()))
            finally:
                self._outbox.task_done()

    def post(self, hook: Webhook, payload: str) -> bool:
        headers = {"Content-Type": "application/json"}
        if hook.secret:
            headers["X-Webhook-Secret"] = hook.secret
        try:
            r = self.session.post(hook.url, data=payload.encode("utf-8"),
                                  headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Webhook delivery to {hook.url} failed: {e}")
            return False
        if not r.ok:
            logger.warning(f"Webhook delivery to {hook.url} returned HTTP {r.status_code}")
            return False
        return True

    def flush_retries(self) -> int:
        """Re-send queued deliveries in order, stopping at the first failure."""
        sent = 0
        while True:
            with self._retry_lock:
                if not self._retry_queue:
                    break
                hook, payload, _ = self._retry_queue[0]
            if not self.post(hook, payload):
                break
            with self._retry_lock:
                self._retry_queue.popleft()
            sent += 1
        return sent

    @property
    def pending_retries(self) -> int:
        with self._retry_lock:
            return len(self._retry_queue)

    def drain(self) -> None:
        """Block until every queued event has been attempted once."""
        self._outbox.join()

    def close(self) -> None:
        if self._thread and self._thread.is_alive():
            self._outbox.put(None)
            self._thread.join(timeout=self.timeout * 2)
