"""
Command-line surface.

Every command prints JSON on stdout (CSV for `export`) and exits 0. Engine
errors print {"error": {...}} on stderr and exit with the code mapped
from their kind in EXIT_CODES.
"""
import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from . import __version__
from .config import Config
from .errors import TaskboardError, ValidationError
from .service import BoardService

logger = logging.getLogger(__name__)

CLIENT_ID = "cli"

EXIT_CODES = {
    "VALIDATION_ERROR": 2,
    "NOT_FOUND": 3,
    "DEPENDENCY_ERROR": 4,
    "FORMAT_MISMATCH": 5,
    "RATE_LIMITED": 6,
    "SERVER_BUSY": 6,
    "PERSISTENCE_ERROR": 7,
}


def _csv_list(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    return [v.strip() for v in value.split(",") if v.strip()]


def _card_fields(args) -> Dict[str, Any]:
    """Card fields given as options; --data JSON is merged underneath."""
    data: Dict[str, Any] = {}
    if getattr(args, "data", None):
        try:
            extra = json.loads(args.data)
        except ValueError as e:
            raise ValidationError(f"--data is not valid JSON: {e}")
        if not isinstance(extra, dict):
            raise ValidationError("--data must be a JSON object")
        data.update(extra)
    for option, key in (("title", "title"), ("content", "content"), ("priority", "priority"),
                        ("assignee", "assignee"), ("due", "due_date")):
        value = getattr(args, option, None)
        if value is not None:
            data[key] = value
    for option, key in (("tags", "tags"), ("deps", "dependencies"), ("subtasks", "subtasks")):
        value = _csv_list(getattr(args, option, None))
        if value is not None:
            data[key] = value
    return data


# ── Commands ─────────────────────────────────────────────────────────────────

def cmd_boards(service: BoardService, args):
    return service.list_boards(client_id=CLIENT_ID)


def cmd_create_board(service: BoardService, args):
    return service.create_board(args.name, description=args.description or "", client_id=CLIENT_ID)


def cmd_show(service: BoardService, args):
    return service.get_board(args.board, shape=args.format, column_id=args.column, client_id=CLIENT_ID)


def cmd_update_board(service: BoardService, args):
    data = {}
    if args.name is not None:
        data["projectName"] = args.name
    if args.description is not None:
        data["description"] = args.description
    return service.update_board(args.board, data, client_id=CLIENT_ID)


def cmd_delete_board(service: BoardService, args):
    return service.delete_board(args.board, client_id=CLIENT_ID)


def cmd_archive(service: BoardService, args):
    return service.archive_board(args.board, client_id=CLIENT_ID)


def cmd_archives(service: BoardService, args):
    return service.list_archives(client_id=CLIENT_ID)


def cmd_restore(service: BoardService, args):
    return service.restore_board(args.archive_id, client_id=CLIENT_ID)


def cmd_backups(service: BoardService, args):
    return service.list_backups(args.board, client_id=CLIENT_ID)


def cmd_add_card(service: BoardService, args):
    return service.create_card(args.board, args.column, _card_fields(args),
                               position=args.position, client_id=CLIENT_ID)


def cmd_move_card(service: BoardService, args):
    return service.move_card(args.board, args.card_id, args.column,
                             position=args.position, client_id=CLIENT_ID)


def cmd_update_card(service: BoardService, args):
    data = _card_fields(args)
    if args.column:
        data["columnId"] = args.column
    return service.update_card(args.board, args.card_id, data, client_id=CLIENT_ID)


def cmd_delete_card(service: BoardService, args):
    return service.delete_card(args.board, args.card_id, client_id=CLIENT_ID)


def cmd_card(service: BoardService, args):
    return service.get_card(args.board, args.card_id, client_id=CLIENT_ID)


def cmd_search(service: BoardService, args):
    query = {
        "text": args.text,
        "column_id": args.column,
        "tags": _csv_list(args.tags),
        "assignee": args.assignee,
        "priority": args.priority,
        "sort_by": args.sort_by,
        "sort_order": args.order,
        "limit": args.limit,
        "offset": args.offset,
    }
    return service.search_cards(args.board, query, client_id=CLIENT_ID)


def cmd_add_column(service: BoardService, args):
    return service.add_column(args.board, args.name, wip_limit=args.wip,
                              position=args.position, client_id=CLIENT_ID)


def cmd_delete_column(service: BoardService, args):
    return service.delete_column(args.board, args.column_id, client_id=CLIENT_ID)


def cmd_stats(service: BoardService, args):
    return service.board_stats(args.board, client_id=CLIENT_ID)


def cmd_check(service: BoardService, args):
    return service.check_integrity(args.board, client_id=CLIENT_ID)


def cmd_export(service: BoardService, args):
    text = service.export_csv(args.board, client_id=CLIENT_ID)
    if args.output:
        Path(args.output).write_text(text, encoding="utf-8")
        return {"exported": args.output}
    sys.stdout.write(text)
    return None


# ── Parser ───────────────────────────────────────────────────────────────────

def _position(value: str):
    return int(value) if value.isdigit() else value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taskboard", description="File-backed task boards")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", help="Path to taskboard.yaml (overrides TASKBOARD_CONFIG)")
    parser.add_argument("--boards-dir", help="Board directory (overrides config and env)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    def command(name: str, handler: Callable, help_text: str, board: bool = True):
        p = sub.add_parser(name, help=help_text)
        if board:
            p.add_argument("--board", "-b", help="Board id (default board when omitted)")
        p.set_defaults(handler=handler)
        return p

    def card_options(p):
        p.add_argument("--content")
        p.add_argument("--tags", help="Comma-separated")
        p.add_argument("--deps", help="Comma-separated card ids")
        p.add_argument("--subtasks", help="Comma-separated")
        p.add_argument("--priority", choices=["low", "medium", "high"])
        p.add_argument("--assignee")
        p.add_argument("--due", help="ISO-8601 due date")
        p.add_argument("--data", help="Extra card fields as a JSON object")

    command("boards", cmd_boards, "List boards", board=False)

    p = command("create-board", cmd_create_board, "Create a board from the template", board=False)
    p.add_argument("name")
    p.add_argument("--description")

    p = command("show", cmd_show, "Show a board")
    p.add_argument("--format", "-f", default="full",
                   choices=["full", "summary", "compact", "cards-only"])
    p.add_argument("--column", help="Column id filter for cards-only")

    p = command("update-board", cmd_update_board, "Rename a board or change its description")
    p.add_argument("--name")
    p.add_argument("--description")

    p = command("delete-board", cmd_delete_board, "Delete a board", board=False)
    p.add_argument("board")

    p = command("archive", cmd_archive, "Archive a board", board=False)
    p.add_argument("board")

    command("archives", cmd_archives, "List archived boards", board=False)

    p = command("restore", cmd_restore, "Restore an archived board", board=False)
    p.add_argument("archive_id")

    command("backups", cmd_backups, "List backups of a board")

    p = command("add-card", cmd_add_card, "Add a card")
    p.add_argument("title")
    p.add_argument("--column", "-c", required=True, help="Column id")
    p.add_argument("--position", "-p", type=_position, default="last",
                   help="Index, first or last")
    card_options(p)

    p = command("move-card", cmd_move_card, "Move a card")
    p.add_argument("card_id")
    p.add_argument("--column", "-c", required=True, help="Destination column id")
    p.add_argument("--position", "-p", type=_position, default="last",
                   help="Index, first, last, up or down")

    p = command("update-card", cmd_update_card, "Update card fields")
    p.add_argument("card_id")
    p.add_argument("--title")
    p.add_argument("--column", help="Move to this column (appended last)")
    card_options(p)

    p = command("delete-card", cmd_delete_card, "Delete a card")
    p.add_argument("card_id")

    p = command("card", cmd_card, "Show one card with resolved dependencies")
    p.add_argument("card_id")

    p = command("search", cmd_search, "Search cards")
    p.add_argument("text", nargs="?")
    p.add_argument("--column", help="Column id")
    p.add_argument("--tags", help="Comma-separated, any match")
    p.add_argument("--assignee")
    p.add_argument("--priority", choices=["low", "medium", "high"])
    p.add_argument("--sort-by", default="position",
                   choices=["position", "title", "created_at", "updated_at", "priority", "due_date"])
    p.add_argument("--order", default="asc", choices=["asc", "desc"])
    p.add_argument("--limit", type=int, default=20)
    p.add_argument("--offset", type=int, default=0)

    p = command("add-column", cmd_add_column, "Add a column")
    p.add_argument("name")
    p.add_argument("--wip", type=int, help="WIP limit")
    p.add_argument("--position", type=int, help="Column index (default: end)")

    p = command("delete-column", cmd_delete_column, "Delete an empty column")
    p.add_argument("column_id")

    command("stats", cmd_stats, "Board statistics")
    command("check", cmd_check, "Board integrity report")

    p = command("export", cmd_export, "Export cards as CSV")
    p.add_argument("--output", "-o", help="Write to file instead of stdout")

    p = command("serve", None, "Run the HTTP server", board=False)
    p.add_argument("--host")
    p.add_argument("--port", type=int)
    return parser


def main(argv: Optional[List[str]] = None, service: Optional[BoardService] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [taskboard] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )

    config = Config.load(args.config)
    if args.boards_dir:
        config.boards_dir = str(Path(args.boards_dir).expanduser())

    if args.command == "serve":
        from .server import serve
        logging.getLogger().setLevel(logging.INFO)
        serve(config, host=args.host, port=args.port)
        return 0

    try:
        service = service or BoardService.from_config(config)
        result = args.handler(service, args)
    except TaskboardError as e:
        print(json.dumps({"error": e.to_dict()}, ensure_ascii=False), file=sys.stderr)
        return EXIT_CODES.get(e.kind, 1)

    if result is not None:
        print(json.dumps(result, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
