"""
Card query engine: filter, sort and paginate the cards of one board.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import ValidationError
from .schema import Board, Card, PRIORITY_LEVELS, parse_timestamp

SORT_FIELDS = ("position", "title", "created_at", "updated_at", "priority", "due_date")
SORT_ORDERS = ("asc", "desc")
DEFAULT_LIMIT = 20
MAX_LIMIT = 100

_PRIORITY_RANK = {p: i for i, p in enumerate(PRIORITY_LEVELS)}
_DATE_FILTERS = (
    ("created_after", "created_before", "created_at"),
    ("updated_after", "updated_before", "updated_at"),
    ("due_after", "due_before", "due_date"),
)


@dataclass
class CardQuery:
    text: Optional[str] = None
    column_id: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    assignee: Optional[str] = None
    priority: Optional[str] = None
    created_after: Optional[str] = None
    created_before: Optional[str] = None
    updated_after: Optional[str] = None
    updated_before: Optional[str] = None
    due_after: Optional[str] = None
    due_before: Optional[str] = None
    sort_by: str = "position"
    sort_order: str = "asc"
    limit: int = DEFAULT_LIMIT
    offset: int = 0

    # Wire names accepted by from_dict (HTTP query string, tool arguments)
    _ALIASES = {
        "q": "text",
        "query": "text",
        "columnId": "column_id",
        "sortBy": "sort_by",
        "sortOrder": "sort_order",
    }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CardQuery":
        """Build from loosely typed input; strings are coerced and everything is validated."""
        kwargs: Dict[str, Any] = {}
        names = set(cls.__dataclass_fields__)
        for key, value in data.items():
            if value is None or value == "":
                continue
            name = cls._ALIASES.get(key, key)
            if name not in names:
                raise ValidationError(f"Unknown query parameter '{key}'")
            kwargs[name] = value

        tags = kwargs.get("tags")
        if isinstance(tags, str):
            kwargs["tags"] = [t.strip() for t in tags.split(",") if t.strip()]
        for name in ("limit", "offset"):
            if name in kwargs:
                try:
                    kwargs[name] = int(kwargs[name])
                except (TypeError, ValueError):
                    raise ValidationError(f"'{name}' must be an integer")
        query = cls(**kwargs)
        query.validate()
        return query

    def validate(self) -> None:
        issues = []
        if self.sort_by not in SORT_FIELDS:
            issues.append(f"sort_by must be one of {', '.join(SORT_FIELDS)}")
        if self.sort_order not in SORT_ORDERS:
            issues.append("sort_order must be asc or desc")
        if isinstance(self.limit, bool) or not isinstance(self.limit, int) \
                or not 1 <= self.limit <= MAX_LIMIT:
            issues.append(f"limit must be between 1 and {MAX_LIMIT}")
        if isinstance(self.offset, bool) or not isinstance(self.offset, int) or self.offset < 0:
            issues.append("offset must be >= 0")
        if self.priority is not None and self.priority not in PRIORITY_LEVELS:
            issues.append(f"priority must be one of {', '.join(PRIORITY_LEVELS)}")
        if not isinstance(self.tags, list):
            issues.append("tags must be a list")
        for after, before, _ in _DATE_FILTERS:
            for name in (after, before):
                value = getattr(self, name)
                if value is None:
                    continue
                try:
                    parse_timestamp(value)
                except ValueError:
                    issues.append(f"{name} is not a valid timestamp")
        if issues:
            raise ValidationError(f"Invalid query: {'; '.join(issues)}", issues=issues)


def _timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parse_timestamp(value)
    except ValueError:
        return None


def matches(card: Card, query: CardQuery) -> bool:
    if query.column_id and card.column_id != query.column_id:
        return False
    if query.assignee and (card.assignee or "").lower() != query.assignee.lower():
        return False
    if query.priority and card.priority != query.priority:
        return False
    if query.tags:
        wanted = {t.lower() for t in query.tags}
        if not wanted & {t.lower() for t in card.tags}:
            return False
    if query.text:
        needle = query.text.lower()
        haystack = [card.title, card.content or ""] + card.subtasks + card.tags
        if not any(needle in s.lower() for s in haystack):
            return False

    for after, before, attr in _DATE_FILTERS:
        lower, upper = getattr(query, after), getattr(query, before)
        if lower is None and upper is None:
            continue
        value = _timestamp(getattr(card, attr))
        if value is None:
            return False
        if lower is not None and value < parse_timestamp(lower):
            return False
        if upper is not None and value > parse_timestamp(upper):
            return False
    return True


def _sort_key(card: Card, sort_by: str, column_order: Dict[str, int]):
    # Cards without a value sort last in either direction; see search()
    if sort_by == "position":
        return (column_order.get(card.column_id, len(column_order)), card.position)
    if sort_by == "title":
        return card.title.lower()
    if sort_by == "priority":
        return _PRIORITY_RANK.get(card.priority, -1)
    return _timestamp(getattr(card, sort_by))


def search(board: Board, query: CardQuery) -> Dict[str, Any]:
    """Filter, sort and page the board's cards. Returns {cards, total, limit, offset}."""
    board.require_card_first()
    query.validate()

    column_order = {c.id: i for i, c in enumerate(board.columns)}
    found = [c for c in board.cards if matches(c, query)]

    reverse = query.sort_order == "desc"
    keyed = [(_sort_key(c, query.sort_by, column_order), c) for c in found]
    present = [p for p in keyed if p[0] is not None and p[0] != -1]
    missing = [p for p in keyed if p[0] is None or p[0] == -1]
    present.sort(key=lambda p: p[0], reverse=reverse)
    ordered = [c for _, c in present] + [c for _, c in missing]

    page = ordered[query.offset:query.offset + query.limit]
    return {
        "cards": [c.to_dict() for c in page],
        "total": len(found),
        "limit": query.limit,
        "offset": query.offset,
    }
