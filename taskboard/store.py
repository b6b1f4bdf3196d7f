"""
Board persistence: one JSON file per board.

Layout under boards_dir:
    {boardId}.json                           live boards
    backups/{boardId}_{ts}_{tag}.json        pre-write snapshots, newest N kept
    archives/{boardId}_{ts}.json             archived boards

Writes are atomic from a reader's point of view: the document is written
to a temp file beside the target and renamed over it.
"""
import copy
import json
import logging
import os
import re
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .errors import NotFoundError, PersistenceError, ValidationError
from .schema import (
    Board,
    Column,
    TerminalColumnRule,
    format_timestamp,
    parse_timestamp,
)
from .validator import validate_board

logger = logging.getLogger(__name__)

TEMPLATE_PATH = Path(__file__).parent / "templates" / "_kanban_example.json"
DEFAULT_BOARDS_DIR = Path.home() / ".local" / "share" / "taskboard" / "boards"

_BOARD_ID = re.compile(r"^[A-Za-z0-9_-]+$")
_BACKUP_NAME = re.compile(r"^(?P<board>.+)_(?P<ts>\d{4}-\d{2}-\d{2}T[\d-]+Z)_(?P<tag>[a-z_]+)\.json$")
_ARCHIVE_NAME = re.compile(r"^(?P<board>.+)_(?P<ts>\d{4}-\d{2}-\d{2}T[\d-]+Z)\.json$")


def file_timestamp(dt: datetime) -> str:
    """Timestamp safe for file names: ':' and '.' become '-'."""
    return format_timestamp(dt).replace(":", "-").replace(".", "-")


def _write_atomic(path: Path, data: Dict[str, Any]) -> None:
    """Write to a uniquely named temp file beside `path`, then rename it over `path`."""
    try:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    except OSError as e:
        raise PersistenceError(f"Failed to write {path.name}: {e}") from e
    tmp_file = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.write("\n")
        os.replace(tmp_file, path)
    except OSError as e:
        try:
            tmp_file.unlink()
        except OSError:
            pass
        raise PersistenceError(f"Failed to write {path.name}: {e}") from e


def _read_json(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise PersistenceError(f"Failed to read {path.name}: {e}") from e
    if not isinstance(data, dict):
        raise PersistenceError(f"Failed to read {path.name}: not a JSON object")
    return data


def check_board_id(board_id: str) -> str:
    if not isinstance(board_id, str) or not _BOARD_ID.match(board_id):
        raise ValidationError(
            f"Invalid board id {board_id!r}: use letters, digits, '-' and '_' only"
        )
    return board_id


class BoardStore:
    """File-backed store for board aggregates."""

    def __init__(self, boards_dir: Optional[str] = None, default_board: str = "kanban",
                 template_path: Optional[str] = None, max_backups: int = 10,
                 is_terminal: Optional[Callable[[Column], bool]] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.boards_dir = Path(boards_dir).expanduser() if boards_dir else DEFAULT_BOARDS_DIR
        self.backups_dir = self.boards_dir / "backups"
        self.archives_dir = self.boards_dir / "archives"
        self.default_board = check_board_id(default_board)
        self.template_path = Path(template_path).expanduser() if template_path else TEMPLATE_PATH
        self.max_backups = max_backups
        self.is_terminal = is_terminal or TerminalColumnRule()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.boards_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, board_id: str) -> Path:
        return self.boards_dir / f"{check_board_id(board_id)}.json"

    def exists(self, board_id: str) -> bool:
        return self.path_for(board_id).is_file()

    # ── Load / save ──────────────────────────────────────────────────────

    def load(self, board_id: Optional[str] = None) -> Board:
        """
        Read a board. With no id the default board is used and created from
        the template on first access. A missing non-default board raises
        NotFoundError; an unreadable or invalid file raises PersistenceError.
        The file stem is the board id, whatever id the document carries.
        """
        board_id = board_id or self.default_board
        path = self.path_for(board_id)
        if not path.is_file():
            if board_id == self.default_board:
                return self._bootstrap_default()
            raise NotFoundError("Board", board_id)

        data = _read_json(path)
        if data.get("id") and data["id"] != board_id:
            logger.warning(f"Board file {path.name} carries id {data['id']!r}; using {board_id!r}")
        data["id"] = board_id
        result = validate_board(data)
        if not result.valid:
            raise PersistenceError(f"Board file {path.name} is invalid: {'; '.join(result.issues)}")
        return Board.from_dict(data, board_id=board_id)

    def save(self, board: Board, operation: Optional[str] = None) -> Board:
        """
        Validate, stamp and write `board`.

        When `operation` is given and the board already exists on disk, the
        current file is snapshotted into a backup tagged with it first. The
        board is updated in place (last_updated, completed_at) and returned.
        """
        path = self.path_for(board.id)
        self._stamp(board)

        data = board.to_dict()
        result = validate_board(data)
        if not board.is_legacy:
            column_ids = {c.id for c in board.columns}
            for card in board.cards:
                if card.column_id not in column_ids:
                    result.issues.append(f"card {card.id}: column {card.column_id} does not exist")
        result.raise_if_invalid("board")

        if operation and path.is_file():
            self.backup(board.id, operation)
        _write_atomic(path, data)
        return board

    def _stamp(self, board: Board) -> None:
        now = self.clock()
        previous = None
        if board.last_updated:
            try:
                previous = parse_timestamp(board.last_updated)
            except ValueError:
                previous = None
        if previous is not None and now <= previous:
            now = previous + timedelta(milliseconds=1)
        board.last_updated = format_timestamp(now)

        terminal = {c.id for c in board.columns if self.is_terminal(c)}
        for card in board.cards:
            if card.column_id in terminal:
                if not card.completed_at:
                    card.completed_at = board.last_updated
            else:
                card.completed_at = None
        if board.is_legacy:
            for column in board.columns:
                for item in column.items or []:
                    if not isinstance(item, dict):
                        continue
                    if column.id in terminal:
                        if not item.get("completed_at"):
                            item["completed_at"] = board.last_updated
                    else:
                        item.pop("completed_at", None)

    def _bootstrap_default(self) -> Board:
        board = self._from_template(board_id=self.default_board)
        self.save(board)
        logger.info(f"Bootstrapped default board {board.id} from {self.template_path.name}")
        return board

    def _from_template(self, board_id: str, name: Optional[str] = None,
                       description: Optional[str] = None) -> Board:
        """Copy the template with fresh ids for every column and card."""
        template = copy.deepcopy(_read_json(self.template_path))
        now = format_timestamp(self.clock())

        id_map: Dict[str, str] = {}
        for column in template.get("columns") or []:
            new_id = str(uuid.uuid4())
            id_map[column.get("id", "")] = new_id
            column["id"] = new_id
        card_map: Dict[str, str] = {}
        for card in template.get("cards") or []:
            card_map[card.get("id", "")] = str(uuid.uuid4())
        for card in template.get("cards") or []:
            card["id"] = card_map[card.get("id", "")]
            card["columnId"] = id_map.get(card.get("columnId"), card.get("columnId"))
            card["dependencies"] = [
                card_map[d] for d in card.get("dependencies") or [] if d in card_map
            ]
            card["created_at"] = now
            card["updated_at"] = now
            card["completed_at"] = None

        template["id"] = board_id
        if name:
            template["projectName"] = name
        if description is not None:
            template["description"] = description
        template["last_updated"] = None
        template["archived"] = False
        template.pop("archived_at", None)
        return Board.from_dict(template, board_id=board_id)

    # ── Board lifecycle ──────────────────────────────────────────────────

    def list(self) -> List[Dict[str, Any]]:
        """Summaries of every readable board, sorted by name. Corrupt files are skipped."""
        boards = []
        for path in self.boards_dir.glob("*.json"):
            if not path.is_file() or path.name.startswith("_") or path.name == "config.json":
                continue
            try:
                boards.append(self.load(path.stem).summary())
            except (PersistenceError, ValidationError) as e:
                logger.warning(f"Skipping unreadable board file {path.name}: {e}")
        boards.sort(key=lambda b: (b["name"].lower(), b["id"]))
        return boards

    def create(self, name: str, description: str = "") -> Dict[str, Any]:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Board name is required")
        board_id = str(uuid.uuid4())
        board = self._from_template(board_id=board_id, name=name.strip(), description=description)
        self.save(board)
        logger.info(f"Created board {board_id} ({board.project_name})")
        return board.summary()

    def delete(self, board_id: str) -> None:
        path = self.path_for(board_id)
        if not path.is_file():
            raise NotFoundError("Board", board_id)
        try:
            path.unlink()
        except OSError as e:
            raise PersistenceError(f"Failed to delete board {board_id}: {e}") from e
        logger.info(f"Deleted board {board_id}")

    def archive(self, board_id: str) -> Dict[str, Any]:
        """Move a board into the archive directory, stamped with archived_at."""
        if not self.exists(board_id):
            raise NotFoundError("Board", board_id)
        board = self.load(board_id)
        now = self.clock()
        board.archived = True
        board.archived_at = format_timestamp(now)
        archive_id = f"{board.id}_{file_timestamp(now)}"

        self.archives_dir.mkdir(parents=True, exist_ok=True)
        _write_atomic(self.archives_dir / f"{archive_id}.json", board.to_dict())
        self.delete(board.id)
        logger.info(f"Archived board {board.id} as {archive_id}")
        return {"archiveId": archive_id, **board.summary(), "archivedAt": board.archived_at}

    def list_archives(self) -> List[Dict[str, Any]]:
        if not self.archives_dir.is_dir():
            return []
        archives = []
        for path in sorted(self.archives_dir.glob("*.json"), reverse=True):
            try:
                data = _read_json(path)
            except PersistenceError as e:
                logger.warning(f"Skipping unreadable archive {path.name}: {e}")
                continue
            archives.append({
                "archiveId": path.stem,
                "id": data.get("id"),
                "name": data.get("projectName"),
                "archivedAt": data.get("archived_at"),
            })
        return archives

    def restore(self, archive_id: str) -> Dict[str, Any]:
        """Bring an archived board back. Refuses to overwrite a live board."""
        if not isinstance(archive_id, str) or not _BOARD_ID.match(archive_id):
            raise ValidationError(f"Invalid archive id {archive_id!r}")
        path = self.archives_dir / f"{archive_id}.json"
        if not path.is_file():
            raise NotFoundError("Archive", archive_id)

        data = _read_json(path)
        board = Board.from_dict(data)
        if not board.id:
            match = _ARCHIVE_NAME.match(path.name)
            board.id = match.group("board") if match else archive_id
        if self.exists(board.id):
            raise ValidationError(f"Board {board.id} already exists; delete it before restoring")
        board.archived = False
        board.archived_at = None
        self.save(board)
        try:
            path.unlink()
        except OSError as e:
            raise PersistenceError(f"Restored {board.id} but failed to remove archive: {e}") from e
        logger.info(f"Restored board {board.id} from {archive_id}")
        return board.summary()

    # ── Backups ──────────────────────────────────────────────────────────

    def backup(self, board_id: str, tag: str) -> Path:
        """Snapshot the on-disk board and rotate. Copy failures raise; rotation failures are logged."""
        source = self.path_for(board_id)
        self.backups_dir.mkdir(parents=True, exist_ok=True)
        target = self._reserve_backup(board_id, tag)
        try:
            _write_atomic(target, _read_json(source))
        except PersistenceError:
            target.unlink(missing_ok=True)
            raise
        try:
            self._rotate(board_id)
        except OSError as e:
            logger.warning(f"Backup rotation failed for {board_id}: {e}")
        return target

    def _reserve_backup(self, board_id: str, tag: str) -> Path:
        """Claim an unused backup name, stepping the timestamp forward 1 ms on collision."""
        stamp = self.clock()
        while True:
            target = self.backups_dir / f"{board_id}_{file_timestamp(stamp)}_{tag}.json"
            try:
                with open(target, "x", encoding="utf-8"):
                    return target
            except FileExistsError:
                stamp += timedelta(milliseconds=1)
            except OSError as e:
                raise PersistenceError(f"Failed to create backup for {board_id}: {e}") from e

    def _backup_paths(self, board_id: str) -> List[Path]:
        if not self.backups_dir.is_dir():
            return []
        paths = []
        for path in self.backups_dir.glob(f"{board_id}_*.json"):
            match = _BACKUP_NAME.match(path.name)
            if match and match.group("board") == board_id:
                paths.append(path)
        return sorted(paths, key=lambda p: p.name, reverse=True)

    def _rotate(self, board_id: str) -> None:
        for path in self._backup_paths(board_id)[self.max_backups:]:
            try:
                path.unlink()
            except OSError as e:
                logger.warning(f"Could not remove old backup {path.name}: {e}")

    def list_backups(self, board_id: str) -> List[Dict[str, Any]]:
        """Backups of one board, most recent first."""
        check_board_id(board_id)
        backups = []
        for path in self._backup_paths(board_id):
            match = _BACKUP_NAME.match(path.name)
            backups.append({
                "file": path.name,
                "timestamp": match.group("ts"),
                "operation": match.group("tag"),
            })
        return backups
