"""
BoardService: the one entry point shared by the HTTP, CLI and agent-tool
surfaces.

Every call runs the same pipeline:
    admit (rate limiter) -> load -> mutate in memory -> validate -> save -> emit

Validation, dependency and position errors are raised before save, so a
failed call leaves the file on disk untouched.
"""
import csv
import io
import json
import logging
import uuid
from dataclasses import fields
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from . import events
from . import positions
from .config import Config
from .dependencies import drop_references, validate_dependencies
from .errors import NotFoundError, TaskboardError, ValidationError
from .events import ChangeEmitter
from .projector import FULL, Projector
from .query import CardQuery, search
from .ratelimit import READ, WRITE, Limit, RateLimiter
from .schema import Board, Card, Column, TerminalColumnRule, format_timestamp
from .store import BoardStore
from .validator import check_integrity, validate_board, validate_card, validate_column
from .webhooks import Webhook, WebhookDispatcher

logger = logging.getLogger(__name__)

# Fields the engine owns; callers may send them but they are ignored
READ_ONLY_CARD_FIELDS = ("id", "position", "created_at", "updated_at", "completed_at")
COLUMN_UPDATE_FIELDS = ("name", "wipLimit")
BOARD_UPDATE_FIELDS = ("projectName", "description")
BATCH_OPERATIONS = ("create", "update", "move")
MAX_BATCH = 100
REF_PREFIX = "$ref:"

CSV_HEADERS = [
    "id", "title", "column", "position", "priority", "assignee", "due_date",
    "tags", "dependencies", "created_at", "updated_at", "completed_at",
]


def parse_card_data(value: Any, where: str = "cardData") -> Dict[str, Any]:
    """Card data arrives as an object or, from agents, as a JSON string."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError as e:
            raise ValidationError(f"Invalid JSON in {where}: {e}")
    if not isinstance(value, dict):
        raise ValidationError(f"{where} must be an object")
    return value


class BoardService:
    """Board operations with rate limiting, validation, persistence and change events."""

    def __init__(self, store: BoardStore, limiter: Optional[RateLimiter] = None,
                 emitter: Optional[ChangeEmitter] = None, projector: Optional[Projector] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.limiter = limiter or RateLimiter()
        self.emitter = emitter or ChangeEmitter()
        self.clock = clock or store.clock
        self.projector = projector or Projector(is_terminal=store.is_terminal, clock=self.clock)
        self.webhooks: Optional[WebhookDispatcher] = None

    @classmethod
    def from_config(cls, config: Config, clock: Optional[Callable[[], datetime]] = None) -> "BoardService":
        rule = TerminalColumnRule(names=config.terminal_columns)
        store = BoardStore(
            boards_dir=config.boards_dir,
            default_board=config.default_board,
            template_path=config.template_path,
            max_backups=config.max_backups,
            is_terminal=rule,
            clock=clock,
        )
        limiter = RateLimiter(
            limits={
                READ: Limit(config.read_window_ms, config.read_max_requests),
                WRITE: Limit(config.write_window_ms, config.write_max_requests),
            },
            max_clients=config.max_clients,
            cleanup_interval_ms=config.cleanup_interval_ms,
        )
        service = cls(store, limiter=limiter)
        if config.webhooks:
            service.webhooks = WebhookDispatcher([Webhook.from_dict(w) for w in config.webhooks])
            service.webhooks.attach(service.emitter)
        return service

    # ── Pipeline helpers ─────────────────────────────────────────────────

    def _now(self) -> str:
        return format_timestamp(self.clock())

    def _read(self, board_id: Optional[str], client_id: str) -> Board:
        self.limiter.admit(client_id, READ)
        return self.store.load(board_id)

    def _write(self, board_id: Optional[str], client_id: str, card_level: bool = True) -> Board:
        self.limiter.admit(client_id, WRITE)
        board = self.store.load(board_id)
        if card_level:
            board.require_card_first()
        return board

    def _emit(self, event: str, board_id: Optional[str], **data) -> None:
        self.emitter.emit(event, board_id, **data)

    @staticmethod
    def _column(board: Board, column_id: str) -> Column:
        column = board.column(column_id)
        if column is None:
            raise NotFoundError("Column", column_id)
        return column

    @staticmethod
    def _card(board: Board, card_id: str) -> Card:
        card = board.card(card_id)
        if card is None:
            raise NotFoundError("Card", card_id)
        return card

    @staticmethod
    def _check_wip(board: Board, column: Column) -> None:
        if column.wip_limit is None:
            return
        count = sum(1 for c in board.cards if c.column_id == column.id)
        if count >= column.wip_limit:
            raise ValidationError(
                f"Column {column.name} is at its WIP limit ({column.wip_limit})"
            )

    # ── Boards ───────────────────────────────────────────────────────────

    def list_boards(self, client_id: str = "default") -> List[Dict[str, Any]]:
        self.limiter.admit(client_id, READ)
        return self.store.list()

    def get_board(self, board_id: Optional[str] = None, shape: str = FULL,
                  column_id: Optional[str] = None, client_id: str = "default") -> Dict[str, Any]:
        board = self._read(board_id, client_id)
        return self.projector.project(board, shape, column_id=column_id)

    def create_board(self, name: str, description: str = "", client_id: str = "default") -> Dict[str, Any]:
        self.limiter.admit(client_id, WRITE)
        summary = self.store.create(name, description=description or "")
        self._emit(events.BOARD_CREATED, summary["id"], name=summary["name"])
        return summary

    def update_board(self, board_id: Optional[str], data: Dict[str, Any],
                     client_id: str = "default") -> Dict[str, Any]:
        """Rename a board or change its description."""
        unknown = [k for k in data if k not in BOARD_UPDATE_FIELDS]
        if unknown:
            raise ValidationError(f"Unknown board fields: {', '.join(unknown)}")
        board = self._write(board_id, client_id, card_level=False)
        merged = board.to_dict()
        merged.update(data)
        validate_board(merged).raise_if_invalid("board")

        if "projectName" in data:
            board.project_name = data["projectName"].strip()
        if "description" in data:
            board.description = data["description"]
        self.store.save(board, operation="pre_update")
        self._emit(events.BOARD_UPDATED, board.id, fields=sorted(data))
        return board.summary()

    def delete_board(self, board_id: str, client_id: str = "default") -> Dict[str, Any]:
        self.limiter.admit(client_id, WRITE)
        self.store.delete(board_id)
        self._emit(events.BOARD_DELETED, board_id)
        return {"deleted": board_id}

    def archive_board(self, board_id: str, client_id: str = "default") -> Dict[str, Any]:
        self.limiter.admit(client_id, WRITE)
        result = self.store.archive(board_id)
        self._emit(events.BOARD_ARCHIVED, board_id, archiveId=result["archiveId"])
        return result

    def list_archives(self, client_id: str = "default") -> List[Dict[str, Any]]:
        self.limiter.admit(client_id, READ)
        return self.store.list_archives()

    def restore_board(self, archive_id: str, client_id: str = "default") -> Dict[str, Any]:
        self.limiter.admit(client_id, WRITE)
        summary = self.store.restore(archive_id)
        self._emit(events.BOARD_RESTORED, summary["id"], archiveId=archive_id)
        return summary

    def list_backups(self, board_id: Optional[str] = None, client_id: str = "default") -> List[Dict[str, Any]]:
        self.limiter.admit(client_id, READ)
        return self.store.list_backups(board_id or self.store.default_board)

    def board_stats(self, board_id: Optional[str] = None, client_id: str = "default") -> Dict[str, Any]:
        board = self._read(board_id, client_id)
        stats = self.projector.detailed_stats(board)
        return {"boardId": board.id, "projectName": board.project_name, **stats}

    def check_integrity(self, board_id: Optional[str] = None, client_id: str = "default") -> Dict[str, Any]:
        board = self._read(board_id, client_id)
        issues = validate_board(board.to_dict()).issues + check_integrity(board)
        return {"boardId": board.id, "valid": not issues, "issues": issues}

    def export_csv(self, board_id: Optional[str] = None, client_id: str = "default") -> str:
        board = self._read(board_id, client_id)
        board.require_card_first()
        names = {c.id: c.name for c in board.columns}
        order = {c.id: i for i, c in enumerate(board.columns)}

        out = io.StringIO()
        writer = csv.writer(out, lineterminator="\n")
        writer.writerow(CSV_HEADERS)
        for card in sorted(board.cards, key=lambda c: (order.get(c.column_id, len(order)), c.position)):
            writer.writerow([
                card.id, card.title, names.get(card.column_id, ""), card.position,
                card.priority or "", card.assignee or "", card.due_date or "",
                ", ".join(card.tags), ", ".join(card.dependencies),
                card.created_at, card.updated_at, card.completed_at or "",
            ])
        return out.getvalue()

    # ── Cards ────────────────────────────────────────────────────────────

    def get_card(self, board_id: Optional[str], card_id: str, client_id: str = "default") -> Dict[str, Any]:
        board = self._read(board_id, client_id)
        board.require_card_first()
        return self.projector.card_detail(board, card_id)

    def search_cards(self, board_id: Optional[str], query: Union[CardQuery, Dict[str, Any]],
                     client_id: str = "default") -> Dict[str, Any]:
        if not isinstance(query, CardQuery):
            query = CardQuery.from_dict(query or {})
        board = self._read(board_id, client_id)
        return search(board, query)

    def _apply_create(self, board: Board, column_id: str, data: Dict[str, Any],
                      position: Any = positions.LAST) -> Card:
        payload = {k: v for k, v in data.items() if k not in READ_ONLY_CARD_FIELDS}
        payload["columnId"] = column_id
        if "title" not in payload:
            raise ValidationError("Card title is required", issues=["card: missing required field 'title'"])
        validate_card(payload, partial=True).raise_if_invalid("card")

        column = self._column(board, column_id)
        self._check_wip(board, column)
        target = positions.parse_target(position)

        now = self._now()
        card = Card.from_dict({**payload, "id": str(uuid.uuid4()), "created_at": now, "updated_at": now})
        validate_dependencies(card.id, card.dependencies, board.cards)
        positions.place(board, card, column_id, target)
        return card

    def _apply_update(self, board: Board, card_id: str, data: Dict[str, Any]) -> Card:
        card = self._card(board, card_id)
        payload = {k: v for k, v in data.items() if k not in READ_ONLY_CARD_FIELDS}
        validate_card(payload, partial=True).raise_if_invalid("card")

        new_column = payload.pop("columnId", None)
        if new_column is not None and new_column != card.column_id:
            self._check_wip(board, self._column(board, new_column))
        if "dependencies" in payload:
            validate_dependencies(card.id, payload["dependencies"], board.cards)

        merged = card.to_dict()
        merged.update(payload)
        updated = Card.from_dict(merged)
        for f in fields(Card):
            if f.name not in ("column_id", "position"):
                setattr(card, f.name, getattr(updated, f.name))
        card.updated_at = self._now()

        if new_column is not None and new_column != card.column_id:
            positions.place(board, card, new_column, positions.LAST)
        return card

    def _apply_move(self, board: Board, card_id: str, column_id: str, position: Any) -> Card:
        card = self._card(board, card_id)
        column = self._column(board, column_id)
        target = positions.parse_target(position)
        if column_id != card.column_id:
            self._check_wip(board, column)
        positions.place(board, card, column_id, target)
        card.updated_at = self._now()
        return card

    def create_card(self, board_id: Optional[str], column_id: str, data: Dict[str, Any],
                    position: Any = positions.LAST, client_id: str = "default") -> Dict[str, Any]:
        board = self._write(board_id, client_id)
        card = self._apply_create(board, column_id, parse_card_data(data), position)
        self.store.save(board, operation="pre_card_create")
        self._emit(events.CARD_CREATED, board.id, cardId=card.id, columnId=card.column_id,
                   title=card.title)
        return card.to_dict()

    def update_card(self, board_id: Optional[str], card_id: str, data: Dict[str, Any],
                    client_id: str = "default") -> Dict[str, Any]:
        board = self._write(board_id, client_id)
        data = parse_card_data(data)
        card = self._apply_update(board, card_id, data)
        self.store.save(board, operation="pre_card_update")
        self._emit(events.CARD_UPDATED, board.id, cardId=card.id,
                   fields=sorted(k for k in data if k not in READ_ONLY_CARD_FIELDS))
        return card.to_dict()

    def move_card(self, board_id: Optional[str], card_id: str, column_id: str,
                  position: Any = positions.LAST, client_id: str = "default") -> Dict[str, Any]:
        board = self._write(board_id, client_id)
        source = self._card(board, card_id).column_id
        card = self._apply_move(board, card_id, column_id, position)
        self.store.save(board, operation="pre_card_move")
        self._emit(events.CARD_MOVED, board.id, cardId=card.id, fromColumnId=source,
                   toColumnId=card.column_id, position=card.position)
        return card.to_dict()

    def delete_card(self, board_id: Optional[str], card_id: str, client_id: str = "default") -> Dict[str, Any]:
        board = self._write(board_id, client_id)
        card = self._card(board, card_id)
        positions.remove(board, card)
        changed = drop_references(card.id, board.cards)
        now = self._now()
        for other in board.cards:
            if other.id in changed:
                other.updated_at = now
        self.store.save(board, operation="pre_card_delete")
        self._emit(events.CARD_DELETED, board.id, cardId=card.id, columnId=card.column_id)
        return {"deleted": card.id, "updatedDependents": changed}

    def batch_cards(self, board_id: Optional[str], operations: List[Dict[str, Any]],
                    client_id: str = "default") -> Dict[str, Any]:
        """
        Apply up to 100 create/update/move operations with one save.

        Creates run first so later operations can name their cards as
        "$ref:<reference>". Any failing operation aborts the batch.
        """
        if not isinstance(operations, list) or not operations:
            raise ValidationError("At least one operation is required")
        if len(operations) > MAX_BATCH:
            raise ValidationError(f"Maximum {MAX_BATCH} operations allowed")
        for i, op in enumerate(operations):
            if not isinstance(op, dict) or op.get("type") not in BATCH_OPERATIONS:
                raise ValidationError(
                    f"Operation {i + 1}: type must be one of {', '.join(BATCH_OPERATIONS)}"
                )

        board = self._write(board_id, client_id)
        refs: Dict[str, str] = {}
        results: List[Optional[Dict[str, Any]]] = [None] * len(operations)

        def resolve(value: Optional[str]) -> Optional[str]:
            if isinstance(value, str) and value.startswith(REF_PREFIX):
                name = value[len(REF_PREFIX):]
                if name not in refs:
                    raise ValidationError(f"Referenced card '{name}' was not created in this batch")
                return refs[name]
            return value

        ordered = sorted(range(len(operations)), key=lambda i: operations[i]["type"] != "create")
        for i in ordered:
            op = operations[i]
            try:
                if op["type"] == "create":
                    if not op.get("columnId") or op.get("cardData") is None:
                        raise ValidationError("cardData and columnId are required for 'create'")
                    data = parse_card_data(op["cardData"])
                    if "dependencies" in data and isinstance(data["dependencies"], list):
                        data["dependencies"] = [resolve(d) for d in data["dependencies"]]
                    card = self._apply_create(board, op["columnId"], data, op.get("position", positions.LAST))
                    if op.get("reference"):
                        refs[op["reference"]] = card.id
                else:
                    card_id = resolve(op.get("cardId"))
                    if not card_id:
                        raise ValidationError(f"cardId is required for '{op['type']}'")
                    if op["type"] == "update":
                        if op.get("cardData") is None:
                            raise ValidationError("cardData is required for 'update'")
                        data = parse_card_data(op["cardData"])
                        if "dependencies" in data and isinstance(data["dependencies"], list):
                            data["dependencies"] = [resolve(d) for d in data["dependencies"]]
                        card = self._apply_update(board, card_id, data)
                    else:
                        if not op.get("columnId") or op.get("position") is None:
                            raise ValidationError("columnId and position are required for 'move'")
                        card = self._apply_move(board, card_id, op["columnId"], op["position"])
            except TaskboardError as e:
                e.message = f"Operation {i + 1} ({op['type']}): {e.message}"
                e.args = (e.message,)
                raise
            results[i] = {"type": op["type"], "cardId": card.id, "success": True}

        self.store.save(board, operation="pre_batch")
        self._emit(events.BOARD_UPDATED, board.id, batch=len(operations))
        return {"success": True, "results": results, "referenceMap": refs}

    # ── Columns ──────────────────────────────────────────────────────────

    def _check_column_name(self, board: Board, name: Any, exclude: Optional[str] = None) -> None:
        if not isinstance(name, str):
            return
        wanted = name.strip().lower()
        for column in board.columns:
            if column.id != exclude and column.name.strip().lower() == wanted:
                raise ValidationError(f"A column named '{name}' already exists")

    def add_column(self, board_id: Optional[str], name: str, wip_limit: Optional[int] = None,
                   position: Optional[int] = None, client_id: str = "default") -> Dict[str, Any]:
        board = self._write(board_id, client_id, card_level=False)
        data: Dict[str, Any] = {"id": str(uuid.uuid4()), "name": name.strip() if isinstance(name, str) else name}
        if wip_limit is not None:
            data["wipLimit"] = wip_limit
        validate_column(data).raise_if_invalid("column")
        self._check_column_name(board, name)

        column = Column.from_dict(data)
        if board.is_legacy:
            column.items = []
        index = len(board.columns)
        if position is not None:
            if isinstance(position, bool) or not isinstance(position, int) or position < 0:
                raise ValidationError(f"Column position must be a non-negative integer, got {position!r}")
            index = min(position, len(board.columns))
        board.columns.insert(index, column)
        self.store.save(board, operation="pre_column_update")
        self._emit(events.COLUMN_CHANGED, board.id, action="added", columnId=column.id)
        return column.to_dict()

    def update_column(self, board_id: Optional[str], column_id: str, data: Dict[str, Any],
                      client_id: str = "default") -> Dict[str, Any]:
        unknown = [k for k in data if k not in COLUMN_UPDATE_FIELDS]
        if unknown:
            raise ValidationError(f"Unknown column fields: {', '.join(unknown)}")
        board = self._write(board_id, client_id, card_level=False)
        column = self._column(board, column_id)

        merged = column.to_dict()
        merged.update(data)
        if merged.get("wipLimit") is None:
            merged.pop("wipLimit", None)
        validate_column(merged).raise_if_invalid("column")
        self._check_column_name(board, data.get("name"), exclude=column_id)

        if "name" in data:
            column.name = data["name"].strip()
        if "wipLimit" in data:
            column.wip_limit = data["wipLimit"]
        self.store.save(board, operation="pre_column_update")
        self._emit(events.COLUMN_CHANGED, board.id, action="updated", columnId=column.id)
        return column.to_dict()

    def delete_column(self, board_id: Optional[str], column_id: str, client_id: str = "default") -> Dict[str, Any]:
        board = self._write(board_id, client_id, card_level=False)
        column = self._column(board, column_id)
        held = len(column.items or []) if board.is_legacy else \
            sum(1 for c in board.cards if c.column_id == column_id)
        if held:
            raise ValidationError(
                f"Column {column.name} still holds {held} card(s); move or delete them first"
            )
        board.columns = [c for c in board.columns if c.id != column_id]
        self.store.save(board, operation="pre_column_update")
        self._emit(events.COLUMN_CHANGED, board.id, action="deleted", columnId=column_id)
        return {"deleted": column_id}

    def reorder_columns(self, board_id: Optional[str], order: List[str],
                        client_id: str = "default") -> List[Dict[str, Any]]:
        board = self._write(board_id, client_id, card_level=False)
        current = [c.id for c in board.columns]
        if not isinstance(order, list) or len(order) != len(current) or set(order) != set(current):
            raise ValidationError("Column order must list every column exactly once")
        by_id = {c.id: c for c in board.columns}
        board.columns = [by_id[i] for i in order]
        self.store.save(board, operation="pre_column_update")
        self._emit(events.COLUMN_CHANGED, board.id, action="reordered", order=order)
        return [c.to_dict() for c in board.columns]
