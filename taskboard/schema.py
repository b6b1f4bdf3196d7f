"""
Board, column and card schema.

Two on-disk layouts exist:
  card-first  - columns are an ordered list, cards live in a top-level
                array and point at their column through `columnId`
  legacy      - cards ("items") nested inside each column object

Legacy boards can be loaded, listed, projected and saved, but every
card-level operation refuses them (see Board.require_card_first).
"""
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from .errors import FormatMismatchError


PRIORITY_LEVELS = ("low", "medium", "high")

# Leading glyph that marks a subtask string as completed
SUBTASK_DONE_MARK = "✓"


class BoardLayout(Enum):
    """Storage layout of a board document."""
    CARD_FIRST = "card-first"
    LEGACY = "legacy"


# ── Timestamps ───────────────────────────────────────────────────────────────


def format_timestamp(dt: datetime) -> str:
    """ISO-8601 UTC with millisecond precision, e.g. 2025-03-14T09:00:00.000Z"""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 string (trailing Z allowed). Naive values are taken as UTC."""
    if not isinstance(value, str) or not value:
        raise ValueError(f"Not a timestamp: {value!r}")
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> str:
    return format_timestamp(datetime.now(timezone.utc))


class TerminalColumnRule:
    """
    Decides which columns count as "done".

    A column is terminal when its id is listed explicitly or its name
    matches one of `names` case-insensitively. A board with no matching
    column has no terminal column; its cards never get completed_at.
    """

    def __init__(self, names=("done",), column_ids=()):
        self.names = {n.strip().lower() for n in names}
        self.column_ids = set(column_ids)

    def __call__(self, column: "Column") -> bool:
        return column.id in self.column_ids or column.name.strip().lower() in self.names

    def terminal_ids(self, board: "Board") -> set:
        return {c.id for c in board.columns if self(c)}


def detect_layout(data: Dict[str, Any]) -> BoardLayout:
    """Card-first when a top-level cards array exists, legacy when columns carry items."""
    if isinstance(data.get("cards"), list):
        return BoardLayout.CARD_FIRST
    for column in data.get("columns") or []:
        if isinstance(column, dict) and isinstance(column.get("items"), list):
            return BoardLayout.LEGACY
    return BoardLayout.CARD_FIRST


# ── Records ──────────────────────────────────────────────────────────────────


COLUMN_KEYS = ("id", "name", "wipLimit", "items")

CARD_KEYS = (
    "id", "title", "content", "columnId", "position", "collapsed",
    "subtasks", "tags", "dependencies", "created_at", "updated_at",
    "completed_at", "priority", "assignee", "due_date",
)

BOARD_KEYS = (
    "id", "projectName", "description", "last_updated", "archived",
    "archived_at", "columns", "cards",
)


@dataclass
class Column:
    """An ordered lane of a board."""

    id: str
    name: str
    wip_limit: Optional[int] = None
    items: Optional[List[Dict[str, Any]]] = None   # legacy layout only
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "name": self.name}
        if self.wip_limit is not None:
            data["wipLimit"] = self.wip_limit
        if self.items is not None:
            data["items"] = self.items
        data.update(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Column":
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            wip_limit=data.get("wipLimit"),
            items=data.get("items"),
            extra={k: v for k, v in data.items() if k not in COLUMN_KEYS},
        )


@dataclass
class Card:
    """A unit of work positioned inside one column."""

    id: str
    title: str
    column_id: str
    position: int = 0
    content: str = ""
    collapsed: bool = False
    subtasks: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    completed_at: Optional[str] = None     # derived on save, never caller-set

    # Optional planning fields
    priority: Optional[str] = None
    assignee: Optional[str] = None
    due_date: Optional[str] = None

    extra: Dict[str, Any] = field(default_factory=dict)

    def subtask_progress(self) -> tuple:
        """(completed, total) using the leading checkmark convention."""
        done = sum(1 for s in self.subtasks if s.lstrip().startswith(SUBTASK_DONE_MARK))
        return done, len(self.subtasks)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "columnId": self.column_id,
            "position": self.position,
            "collapsed": self.collapsed,
            "subtasks": list(self.subtasks),
            "tags": list(self.tags),
            "dependencies": list(self.dependencies),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }
        if self.priority is not None:
            data["priority"] = self.priority
        if self.assignee is not None:
            data["assignee"] = self.assignee
        if self.due_date is not None:
            data["due_date"] = self.due_date
        data.update(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Card":
        now = utc_now()
        return cls(
            id=data.get("id", ""),
            title=data.get("title", ""),
            column_id=data.get("columnId", ""),
            position=data.get("position", 0),
            content=data.get("content") or "",
            collapsed=data.get("collapsed", False),
            subtasks=list(data.get("subtasks") or []),
            tags=list(data.get("tags") or []),
            dependencies=list(data.get("dependencies") or []),
            created_at=data.get("created_at") or now,
            updated_at=data.get("updated_at") or now,
            completed_at=data.get("completed_at"),
            priority=data.get("priority"),
            assignee=data.get("assignee"),
            due_date=data.get("due_date"),
            extra={k: v for k, v in data.items() if k not in CARD_KEYS},
        )


@dataclass
class Board:
    """Aggregate root: one board file on disk."""

    id: str
    project_name: str
    description: str = ""
    last_updated: Optional[str] = None     # stamped by the store, never caller-set
    archived: bool = False
    archived_at: Optional[str] = None
    columns: List[Column] = field(default_factory=list)
    cards: List[Card] = field(default_factory=list)
    layout: BoardLayout = BoardLayout.CARD_FIRST
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_legacy(self) -> bool:
        return self.layout == BoardLayout.LEGACY

    def require_card_first(self) -> None:
        if self.is_legacy:
            raise FormatMismatchError(self.id)

    def column(self, column_id: str) -> Optional[Column]:
        for column in self.columns:
            if column.id == column_id:
                return column
        return None

    def card(self, card_id: str) -> Optional[Card]:
        for card in self.cards:
            if card.id == card_id:
                return card
        return None

    def cards_in_column(self, column_id: str) -> List[Card]:
        """Cards of one column in position order."""
        return sorted(
            (c for c in self.cards if c.column_id == column_id),
            key=lambda c: c.position,
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.project_name,
            "lastUpdated": self.last_updated,
        }

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "projectName": self.project_name,
            "description": self.description,
            "last_updated": self.last_updated,
            "archived": self.archived,
        }
        if self.archived_at is not None:
            data["archived_at"] = self.archived_at
        data["columns"] = [c.to_dict() for c in self.columns]
        if not self.is_legacy:
            data["cards"] = [c.to_dict() for c in self.cards]
        data.update(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], board_id: Optional[str] = None) -> "Board":
        """Deserialize; `board_id` (the file stem) fills in a missing id."""
        layout = detect_layout(data)
        cards: List[Card] = []
        if layout == BoardLayout.CARD_FIRST:
            cards = [Card.from_dict(c) for c in data.get("cards") or []]
        return cls(
            id=data.get("id") or board_id or "",
            project_name=data.get("projectName") or "Unnamed Board",
            description=data.get("description") or "",
            last_updated=data.get("last_updated"),
            archived=bool(data.get("archived", False)),
            archived_at=data.get("archived_at"),
            columns=[Column.from_dict(c) for c in data.get("columns") or []],
            cards=cards,
            layout=layout,
            extra={k: v for k, v in data.items() if k not in BOARD_KEYS},
        )
