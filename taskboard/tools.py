"""
Agent tool-invocation surface.

Each tool is a parameter schema plus a handler over BoardService.
Arguments are validated and coerced by ParamValidator before the handler
runs; results (and errors) are wrapped in the tool-result envelope:

    {"content": [{"type": "text", "text": <json>}], "isError": bool}
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .errors import RateLimitError, TaskboardError, ValidationError
from .projector import SHAPES
from .query import MAX_LIMIT, SORT_FIELDS, SORT_ORDERS
from .schema import PRIORITY_LEVELS
from .service import MAX_BATCH, BoardService

logger = logging.getLogger(__name__)

DEFAULT_CLIENT = "agent"

POSITION_SCHEMA = {"type": "position"}


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# ParamValidator - argument validation & coercion
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ParamValidator:
    """
    Validates and coerces tool arguments against a schema.

    Supports:
        - required / optional with defaults
        - types: string, integer, position, array, object
        - allowed-value lists
        - min/max bounds for integers and array lengths
        - rejection of unknown parameters
    """

    def validate(self, params: dict, schema: dict) -> dict:
        """
        Validate and coerce params against schema.

        Raises:
            ValidationError naming the offending parameter.
        """
        result = {}

        for param_name, param_schema in schema.items():
            value = params.get(param_name)
            param_type = param_schema.get("type", "string")
            required = param_schema.get("required", False)
            default = param_schema.get("default")

            # ── Missing value handling ──
            if value is None or value == "":
                if required:
                    raise ValidationError(f"Missing required parameter: {param_name}")
                if default is not None:
                    result[param_name] = default
                continue

            if param_type == "string":
                value = self._string(param_name, value, param_schema)
            elif param_type == "integer":
                value = self._integer(param_name, value, param_schema)
            elif param_type == "position":
                value = self._position(param_name, value)
            elif param_type == "array":
                value = self._array(param_name, value, param_schema)
            elif param_type == "object":
                value = self._object(param_name, value)
            else:
                raise ValidationError(f"Unknown parameter type in schema: {param_type}")

            result[param_name] = value

        # ── Reject unknown parameters ──
        unknown = set(params.keys()) - set(schema.keys())
        if unknown:
            raise ValidationError(f"Unknown parameters: {', '.join(sorted(unknown))}")

        return result

    def _string(self, name: str, value: Any, schema: dict) -> str:
        if isinstance(value, (dict, list)):
            raise ValidationError(f"Parameter {name} must be a string")
        value = str(value)
        allowed = schema.get("allowed")
        if allowed and value not in allowed:
            raise ValidationError(
                f"Invalid value for {name}: '{value}'. "
                f"Allowed: {', '.join(str(a) for a in allowed)}"
            )
        return value

    def _integer(self, name: str, value: Any, schema: dict) -> int:
        if isinstance(value, bool):
            raise ValidationError(f"Parameter {name} must be an integer, got: '{value}'")
        try:
            value = int(value)
        except (ValueError, TypeError):
            raise ValidationError(f"Parameter {name} must be an integer, got: '{value}'")
        min_val = schema.get("min")
        max_val = schema.get("max")
        if min_val is not None and value < min_val:
            raise ValidationError(f"Parameter {name} must be >= {min_val}, got: {value}")
        if max_val is not None and value > max_val:
            raise ValidationError(f"Parameter {name} must be <= {max_val}, got: {value}")
        return value

    def _position(self, name: str, value: Any):
        if isinstance(value, bool):
            raise ValidationError(f"Parameter {name} must be an index or first/last/up/down")
        if isinstance(value, int):
            return value
        text = str(value).strip().lower()
        if text.isdigit():
            return int(text)
        if text in ("first", "last", "up", "down"):
            return text
        raise ValidationError(f"Parameter {name} must be an index or first/last/up/down, got: '{value}'")

    def _array(self, name: str, value: Any, schema: dict) -> list:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                raise ValidationError(f"Parameter {name} must be an array")
        if not isinstance(value, list):
            raise ValidationError(f"Parameter {name} must be an array")
        min_len = schema.get("min")
        max_len = schema.get("max")
        if min_len is not None and len(value) < min_len:
            raise ValidationError(f"Parameter {name} needs at least {min_len} item(s)")
        if max_len is not None and len(value) > max_len:
            raise ValidationError(f"Parameter {name} allows at most {max_len} items")
        return value

    def _object(self, name: str, value: Any) -> dict:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError as e:
                raise ValidationError(f"Parameter {name} is not valid JSON: {e}")
        if not isinstance(value, dict):
            raise ValidationError(f"Parameter {name} must be an object")
        return value


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Tool registry
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass
class Tool:
    name: str
    description: str
    schema: Dict[str, dict]
    handler: Callable[[BoardService, dict, str], Any]


def text_result(payload: Any, is_error: bool = False) -> Dict[str, Any]:
    text = payload if isinstance(payload, str) else json.dumps(payload, indent=2, ensure_ascii=False)
    return {"content": [{"type": "text", "text": text}], "isError": is_error}


def error_result(e: TaskboardError) -> Dict[str, Any]:
    payload = {"error": e.to_dict()}
    result = text_result(payload, is_error=True)
    result["errorKind"] = e.kind
    if isinstance(e, RateLimitError):
        result["retryAfterMs"] = e.retry_after_ms
    return result


BOARD_ID = {"type": "string", "required": True}
OPTIONAL_BOARD_ID = {"type": "string"}
CARD_ID = {"type": "string", "required": True}


TOOLS: List[Tool] = [
    Tool(
        "get-boards", "List all boards with their id, name and last update.",
        {},
        lambda s, a, c: s.list_boards(client_id=c),
    ),
    Tool(
        "create-board", "Create a board from the packaged template.",
        {"name": {"type": "string", "required": True}, "description": {"type": "string"}},
        lambda s, a, c: s.create_board(a["name"], description=a.get("description", ""), client_id=c),
    ),
    Tool(
        "get-board",
        "Get a board. Use format=summary or compact to save tokens; "
        "cards-only with columnId returns one column's cards.",
        {
            "boardId": OPTIONAL_BOARD_ID,
            "format": {"type": "string", "allowed": list(SHAPES), "default": "full"},
            "columnId": {"type": "string"},
        },
        lambda s, a, c: s.get_board(a.get("boardId"), shape=a["format"],
                                    column_id=a.get("columnId"), client_id=c),
    ),
    Tool(
        "delete-board", "Delete a board permanently. Archive it first to keep a copy.",
        {"boardId": BOARD_ID},
        lambda s, a, c: s.delete_board(a["boardId"], client_id=c),
    ),
    Tool(
        "archive-board", "Move a board to the archive.",
        {"boardId": BOARD_ID},
        lambda s, a, c: s.archive_board(a["boardId"], client_id=c),
    ),
    Tool(
        "list-archives", "List archived boards.",
        {},
        lambda s, a, c: s.list_archives(client_id=c),
    ),
    Tool(
        "restore-board", "Restore an archived board by archive id.",
        {"archiveId": {"type": "string", "required": True}},
        lambda s, a, c: s.restore_board(a["archiveId"], client_id=c),
    ),
    Tool(
        "get-card", "Get one card with dependency titles and dependents resolved.",
        {"boardId": OPTIONAL_BOARD_ID, "cardId": CARD_ID},
        lambda s, a, c: s.get_card(a.get("boardId"), a["cardId"], client_id=c),
    ),
    Tool(
        "create-card", "Create a card in a column. cardData is a JSON object or string with at least a title.",
        {
            "boardId": OPTIONAL_BOARD_ID,
            "columnId": {"type": "string", "required": True},
            "cardData": {"type": "object", "required": True},
            "position": {**POSITION_SCHEMA, "default": "last"},
        },
        lambda s, a, c: s.create_card(a.get("boardId"), a["columnId"], a["cardData"],
                                      position=a["position"], client_id=c),
    ),
    Tool(
        "update-card", "Update card fields. A new columnId moves the card to the end of that column.",
        {"boardId": OPTIONAL_BOARD_ID, "cardId": CARD_ID, "cardData": {"type": "object", "required": True}},
        lambda s, a, c: s.update_card(a.get("boardId"), a["cardId"], a["cardData"], client_id=c),
    ),
    Tool(
        "move-card", "Move a card to a column at an index or first/last/up/down.",
        {
            "boardId": OPTIONAL_BOARD_ID,
            "cardId": CARD_ID,
            "columnId": {"type": "string", "required": True},
            "position": {**POSITION_SCHEMA, "required": True},
        },
        lambda s, a, c: s.move_card(a.get("boardId"), a["cardId"], a["columnId"],
                                    position=a["position"], client_id=c),
    ),
    Tool(
        "delete-card", "Delete a card and drop it from other cards' dependencies.",
        {"boardId": OPTIONAL_BOARD_ID, "cardId": CARD_ID},
        lambda s, a, c: s.delete_card(a.get("boardId"), a["cardId"], client_id=c),
    ),
    Tool(
        "batch-cards",
        "Apply up to 100 create/update/move operations in one save. Creates run first; "
        "use cardId '$ref:<reference>' to target a card created in the same batch.",
        {
            "boardId": OPTIONAL_BOARD_ID,
            "operations": {"type": "array", "required": True, "min": 1, "max": MAX_BATCH},
        },
        lambda s, a, c: s.batch_cards(a.get("boardId"), a["operations"], client_id=c),
    ),
    Tool(
        "search-cards", "Search cards by text, column, tags, assignee or priority, sorted and paged.",
        {
            "boardId": OPTIONAL_BOARD_ID,
            "query": {"type": "string"},
            "columnId": {"type": "string"},
            "tags": {"type": "array"},
            "assignee": {"type": "string"},
            "priority": {"type": "string", "allowed": list(PRIORITY_LEVELS)},
            "sortBy": {"type": "string", "allowed": list(SORT_FIELDS), "default": "position"},
            "sortOrder": {"type": "string", "allowed": list(SORT_ORDERS), "default": "asc"},
            "limit": {"type": "integer", "min": 1, "max": MAX_LIMIT, "default": 20},
            "offset": {"type": "integer", "min": 0, "default": 0},
        },
        lambda s, a, c: s.search_cards(
            a.get("boardId"), {k: v for k, v in a.items() if k != "boardId"}, client_id=c),
    ),
    Tool(
        "add-column", "Add a column; names must be unique on the board.",
        {
            "boardId": OPTIONAL_BOARD_ID,
            "name": {"type": "string", "required": True},
            "wipLimit": {"type": "integer", "min": 1},
            "position": {"type": "integer", "min": 0},
        },
        lambda s, a, c: s.add_column(a.get("boardId"), a["name"], wip_limit=a.get("wipLimit"),
                                     position=a.get("position"), client_id=c),
    ),
    Tool(
        "delete-column", "Delete an empty column.",
        {"boardId": OPTIONAL_BOARD_ID, "columnId": {"type": "string", "required": True}},
        lambda s, a, c: s.delete_column(a.get("boardId"), a["columnId"], client_id=c),
    ),
    Tool(
        "board-stats", "Card counts per column and priority, completion and overdue counts.",
        {"boardId": OPTIONAL_BOARD_ID},
        lambda s, a, c: s.board_stats(a.get("boardId"), client_id=c),
    ),
]


class ToolRegistry:
    """Dispatches named tool invocations to BoardService."""

    def __init__(self, service: BoardService, tools: Optional[List[Tool]] = None):
        self.service = service
        self.tools = {t.name: t for t in (tools or TOOLS)}
        self.validator = ParamValidator()

    def list_tools(self) -> List[Dict[str, Any]]:
        return [
            {"name": t.name, "description": t.description, "parameters": t.schema}
            for t in self.tools.values()
        ]

    def call(self, name: str, arguments: Optional[dict] = None,
             client_id: Optional[str] = None) -> Dict[str, Any]:
        """Run one tool. Engine errors come back as isError results, never raised."""
        client_id = client_id or DEFAULT_CLIENT
        tool = self.tools.get(name)
        if tool is None:
            return error_result(ValidationError(
                f"Unknown tool '{name}'. Available: {', '.join(sorted(self.tools))}"
            ))
        try:
            args = self.validator.validate(dict(arguments or {}), tool.schema)
            result = tool.handler(self.service, args, client_id)
        except TaskboardError as e:
            logger.info(f"[{name}] {e.kind}: {e.message}")
            return error_result(e)
        return text_result(result)
