"""
Change events: the service describes what changed, subscribers deliver it.

Emission never performs I/O itself and never raises into the caller; a
failing subscriber is logged and the remaining subscribers still run.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .schema import format_timestamp

logger = logging.getLogger(__name__)

BOARD_UPDATED = "board.updated"
BOARD_CREATED = "board.created"
BOARD_DELETED = "board.deleted"
BOARD_ARCHIVED = "board.archived"
BOARD_RESTORED = "board.restored"
CARD_CREATED = "card.created"
CARD_UPDATED = "card.updated"
CARD_MOVED = "card.moved"
CARD_DELETED = "card.deleted"
COLUMN_CHANGED = "column.changed"

EVENT_TYPES = (
    BOARD_UPDATED, BOARD_CREATED, BOARD_DELETED, BOARD_ARCHIVED, BOARD_RESTORED,
    CARD_CREATED, CARD_UPDATED, CARD_MOVED, CARD_DELETED, COLUMN_CHANGED,
)
# Subscribe to every event type
ANY = "*"

Subscriber = Callable[[Dict[str, Any]], None]


def make_event(event: str, board_id: Optional[str], data: Optional[Dict[str, Any]] = None,
               now: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "event": event,
        "boardId": board_id,
        "timestamp": format_timestamp(now or datetime.now(timezone.utc)),
        "data": data or {},
    }


class ChangeEmitter:
    """Routes change events to registered callbacks."""

    def __init__(self):
        self.subscribers: Dict[str, List[Subscriber]] = {}

    def subscribe(self, event_type: str, callback: Subscriber) -> None:
        """Register a callback for an event type, or ANY for all of them."""
        if event_type != ANY and event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        if event_type not in self.subscribers:
            self.subscribers[event_type] = []
        self.subscribers[event_type].append(callback)

    def emit(self, event: str, board_id: Optional[str], **data) -> Dict[str, Any]:
        payload = make_event(event, board_id, data)
        for callback in self.subscribers.get(event, []) + self.subscribers.get(ANY, []):
            try:
                callback(payload)
            except Exception:
                logger.exception(f"Error in {event} subscriber")
        return payload
