"""
Format projector: read-only views of a board sized for the caller.

Shapes:
  full        complete aggregate, the baseline for size comparisons
  summary     per-column counts and board statistics, no card bodies
  compact     full entities with abbreviated keys and empty fields omitted
  cards-only  just the card array, optionally filtered to one column

Legacy boards project with zero counts and empty card arrays, since their
cards are not addressable by columnId.
"""
import copy
import json
import math
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from .dependencies import build_dependents_index, resolve_titles
from .errors import NotFoundError, ValidationError
from .schema import Board, Column, TerminalColumnRule, parse_timestamp

FULL = "full"
SUMMARY = "summary"
COMPACT = "compact"
CARDS_ONLY = "cards-only"
SHAPES = (FULL, SUMMARY, COMPACT, CARDS_ONLY)

COMPACT_BOARD_KEYS = {
    "projectName": "name",
    "description": "desc",
    "last_updated": "up",
    "columns": "cols",
}
COMPACT_COLUMN_KEYS = {"name": "n", "wipLimit": "wip"}
COMPACT_CARD_KEYS = {
    "title": "t",
    "columnId": "col",
    "position": "p",
    "content": "c",
    "collapsed": "coll",
    "subtasks": "sub",
    "tags": "tag",
    "dependencies": "dep",
    "created_at": "ca",
    "updated_at": "ua",
    "completed_at": "comp",
    "priority": "pri",
    "assignee": "asg",
    "due_date": "due",
}
# Kept even when falsy
_ALWAYS = {"id", "title", "columnId", "position"}


def _empty(value: Any) -> bool:
    return value is None or value is False or value == "" or value == [] or value == {}


def _abbreviate(data: Dict[str, Any], keys: Dict[str, str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {"id": data["id"]}
    for key, short in keys.items():
        if key not in data:
            continue
        value = data[key]
        if key not in _ALWAYS and _empty(value):
            continue
        out[short] = value
    return out


def expand_compact(data: Dict[str, Any]) -> Dict[str, Any]:
    """Decode a compact projection back to canonical key names."""
    board_keys = {v: k for k, v in COMPACT_BOARD_KEYS.items()}
    column_keys = {v: k for k, v in COMPACT_COLUMN_KEYS.items()}
    card_keys = {v: k for k, v in COMPACT_CARD_KEYS.items()}

    out: Dict[str, Any] = {}
    for key, value in data.items():
        if key == "cols":
            out["columns"] = [
                {column_keys.get(k, k): v for k, v in col.items()} for col in value
            ]
        elif key == "cards":
            out["cards"] = [
                {card_keys.get(k, k): v for k, v in card.items()} for card in value
            ]
        else:
            out[board_keys.get(key, key)] = value
    return out


def payload_size(payload: Any) -> Dict[str, int]:
    """Serialized size in bytes and an estimated token count (~4 bytes per token)."""
    size = len(json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))
    return {"bytes": size, "tokens": math.ceil(size / 4)}


class Projector:
    """Renders boards into the supported shapes. Never mutates the board."""

    def __init__(self, is_terminal: Optional[Callable[[Column], bool]] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.is_terminal = is_terminal or TerminalColumnRule()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def project(self, board: Board, shape: str = FULL, column_id: Optional[str] = None) -> Dict[str, Any]:
        shape = (shape or FULL).strip().lower()
        if shape == FULL:
            return self.full(board)
        if shape == SUMMARY:
            return self.summary(board)
        if shape == COMPACT:
            return self.compact(board)
        if shape == CARDS_ONLY:
            return self.cards_only(board, column_id)
        raise ValidationError(f"Unknown format '{shape}'. Use one of: {', '.join(SHAPES)}")

    # ── Shapes ───────────────────────────────────────────────────────────

    def full(self, board: Board) -> Dict[str, Any]:
        return copy.deepcopy(board.to_dict())

    def summary(self, board: Board) -> Dict[str, Any]:
        counts: Dict[str, int] = {c.id: 0 for c in board.columns}
        for card in board.cards:
            if card.column_id in counts:
                counts[card.column_id] += 1

        columns = []
        for column in board.columns:
            entry: Dict[str, Any] = {"id": column.id, "name": column.name, "cardCount": counts[column.id]}
            if column.wip_limit is not None:
                entry["wipLimit"] = column.wip_limit
            columns.append(entry)

        return {
            "id": board.id,
            "projectName": board.project_name,
            "last_updated": board.last_updated,
            "columns": columns,
            "stats": self.stats(board),
        }

    def compact(self, board: Board) -> Dict[str, Any]:
        data = board.to_dict()
        out = _abbreviate(data, {k: v for k, v in COMPACT_BOARD_KEYS.items() if k != "columns"})
        out["cols"] = [_abbreviate(c, COMPACT_COLUMN_KEYS) for c in data["columns"]]
        out["cards"] = [_abbreviate(c, COMPACT_CARD_KEYS) for c in data.get("cards", [])]
        # Re-serialize so nothing in the output aliases the board's lists
        return copy.deepcopy(out)

    def cards_only(self, board: Board, column_id: Optional[str] = None,
                   resolve_dependencies: bool = False) -> Dict[str, Any]:
        cards = [c for c in board.cards if column_id is None or c.column_id == column_id]
        rendered = [c.to_dict() for c in cards]
        if resolve_dependencies:
            by_id = {c.id: c for c in board.cards}
            for data, card in zip(rendered, cards):
                data["dependencyTitles"] = resolve_titles(card.dependencies, by_id)
        return copy.deepcopy({"cards": rendered})

    def card_detail(self, board: Board, card_id: str) -> Dict[str, Any]:
        """One card with dependency titles, dependents and column name resolved."""
        card = board.card(card_id)
        if card is None:
            raise NotFoundError("Card", card_id)
        by_id = {c.id: c for c in board.cards}
        dependents = build_dependents_index(board.cards).get(card.id, [])
        column = board.column(card.column_id)
        done, total = card.subtask_progress()

        data = copy.deepcopy(card.to_dict())
        data["columnName"] = column.name if column else None
        data["dependencyTitles"] = resolve_titles(card.dependencies, by_id)
        data["dependents"] = resolve_titles(dependents, by_id)
        data["subtaskProgress"] = {"done": done, "total": total}
        return data

    # ── Statistics ───────────────────────────────────────────────────────

    def stats(self, board: Board) -> Dict[str, Any]:
        terminal = {c.id for c in board.columns if self.is_terminal(c)}
        now = self.clock()
        total = len(board.cards)
        completed = sum(1 for c in board.cards if c.column_id in terminal)
        overdue = 0
        for card in board.cards:
            if card.due_date and card.column_id not in terminal:
                try:
                    if parse_timestamp(card.due_date) < now:
                        overdue += 1
                except ValueError:
                    continue
        progress = math.floor(completed / total * 100 + 0.5) if total else 0
        return {
            "totalCards": total,
            "completedCards": completed,
            "progressPercentage": progress,
            "overdueCards": overdue,
        }

    def detailed_stats(self, board: Board) -> Dict[str, Any]:
        """Stats plus breakdowns by column name and priority."""
        by_column: Dict[str, int] = {c.name: 0 for c in board.columns}
        names = {c.id: c.name for c in board.columns}
        by_priority: Dict[str, int] = {}
        for card in board.cards:
            if card.column_id in names:
                by_column[names[card.column_id]] += 1
            key = card.priority or "none"
            by_priority[key] = by_priority.get(key, 0) + 1
        result = self.stats(board)
        result["cardsByColumn"] = by_column
        result["cardsByPriority"] = by_priority
        return result
