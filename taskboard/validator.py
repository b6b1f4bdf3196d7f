"""
Entity validator: structural and type checks for boards, columns and cards.

Checks never mutate their input and never resolve references between
entities (dependency targets and column membership are checked by the
dependency resolver and the service). Every check collects all
violations instead of stopping at the first one.
"""
from dataclasses import dataclass, field
from typing import Any, List, Optional

from .errors import ValidationError
from .schema import Board, PRIORITY_LEVELS, detect_layout, BoardLayout, parse_timestamp


CARD_TITLE_MAX = 200
COLUMN_NAME_MAX = 100
BOARD_NAME_MAX = 100


@dataclass
class ValidationResult:
    """Outcome of a structural check."""
    issues: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.issues

    def raise_if_invalid(self, what: str = "record") -> None:
        if self.issues:
            raise ValidationError(
                f"Invalid {what}: {'; '.join(self.issues)}", issues=self.issues
            )


# ── Field checks ─────────────────────────────────────────────────────────────


def _check_string(issues: List[str], where: str, name: str, value: Any,
                  required: bool = False, max_len: Optional[int] = None) -> None:
    if value is None:
        if required:
            issues.append(f"{where}: missing required field '{name}'")
        return
    if not isinstance(value, str):
        issues.append(f"{where}: '{name}' must be a string")
        return
    if required and not value.strip():
        issues.append(f"{where}: '{name}' must not be empty")
    if max_len is not None and len(value) > max_len:
        issues.append(f"{where}: '{name}' exceeds {max_len} characters")


def _check_bool(issues: List[str], where: str, name: str, value: Any) -> None:
    if value is not None and not isinstance(value, bool):
        issues.append(f"{where}: '{name}' must be a boolean")


def _check_string_list(issues: List[str], where: str, name: str, value: Any) -> None:
    if value is None:
        return
    if not isinstance(value, list):
        issues.append(f"{where}: '{name}' must be an array")
        return
    for i, item in enumerate(value):
        if not isinstance(item, str):
            issues.append(f"{where}: '{name}[{i}]' must be a string")


def _check_timestamp(issues: List[str], where: str, name: str, value: Any) -> None:
    if value is None:
        return
    try:
        parse_timestamp(value)
    except (ValueError, TypeError):
        issues.append(f"{where}: '{name}' is not a valid timestamp")


def _check_int(issues: List[str], where: str, name: str, value: Any,
               required: bool = False, minimum: Optional[int] = None) -> None:
    if value is None:
        if required:
            issues.append(f"{where}: missing required field '{name}'")
        return
    if isinstance(value, bool) or not isinstance(value, int):
        issues.append(f"{where}: '{name}' must be an integer")
        return
    if minimum is not None and value < minimum:
        issues.append(f"{where}: '{name}' must be >= {minimum}")


# ── Entity checks ────────────────────────────────────────────────────────────


def _card_issues(data: Any, where: str, nested: bool = False, partial: bool = False) -> List[str]:
    """
    Issues for one card dict.

    nested:  legacy item inside a column (no columnId/position)
    partial: caller-supplied update data (only the present fields are checked)
    """
    issues: List[str] = []
    if not isinstance(data, dict):
        return [f"{where}: must be an object"]

    required = not partial
    if not partial or "id" in data:
        _check_string(issues, where, "id", data.get("id"), required=required)
    if not partial or "title" in data:
        _check_string(issues, where, "title", data.get("title"),
                      required=True, max_len=CARD_TITLE_MAX)
    _check_string(issues, where, "content", data.get("content"))
    if not nested:
        if not partial or "columnId" in data:
            _check_string(issues, where, "columnId", data.get("columnId"), required=required)
        if not partial or "position" in data:
            _check_int(issues, where, "position", data.get("position"),
                       required=required, minimum=0)
    _check_bool(issues, where, "collapsed", data.get("collapsed"))
    for name in ("subtasks", "tags", "dependencies"):
        _check_string_list(issues, where, name, data.get(name))
    for name in ("created_at", "updated_at", "completed_at", "due_date"):
        _check_timestamp(issues, where, name, data.get(name))
    _check_string(issues, where, "assignee", data.get("assignee"))
    priority = data.get("priority")
    if priority is not None and priority not in PRIORITY_LEVELS:
        issues.append(
            f"{where}: 'priority' must be one of {', '.join(PRIORITY_LEVELS)}"
        )
    return issues


def validate_card(data: Any, partial: bool = False) -> ValidationResult:
    """Check a card dict. With partial=True only the supplied fields are checked."""
    card_id = data.get("id") if isinstance(data, dict) else None
    where = f"card {card_id}" if card_id else "card"
    return ValidationResult(_card_issues(data, where, partial=partial))


def validate_column(data: Any) -> ValidationResult:
    issues: List[str] = []
    if not isinstance(data, dict):
        return ValidationResult(["column: must be an object"])
    where = f"column {data.get('id')}" if data.get("id") else "column"
    _check_string(issues, where, "id", data.get("id"), required=True)
    _check_string(issues, where, "name", data.get("name"), required=True, max_len=COLUMN_NAME_MAX)
    _check_int(issues, where, "wipLimit", data.get("wipLimit"), minimum=1)
    items = data.get("items")
    if items is not None:
        if not isinstance(items, list):
            issues.append(f"{where}: 'items' must be an array")
        else:
            for i, item in enumerate(items):
                issues.extend(_card_issues(item, f"{where} item {i}", nested=True))
    return ValidationResult(issues)


def validate_board(data: Any) -> ValidationResult:
    """Full structural check of a board document (either layout)."""
    if not isinstance(data, dict):
        return ValidationResult(["board: must be an object"])

    issues: List[str] = []
    where = "board"
    _check_string(issues, where, "id", data.get("id"), required=True)
    _check_string(issues, where, "projectName", data.get("projectName"),
                  required=True, max_len=BOARD_NAME_MAX)
    _check_string(issues, where, "description", data.get("description"))
    _check_timestamp(issues, where, "last_updated", data.get("last_updated"))
    _check_bool(issues, where, "archived", data.get("archived"))
    _check_timestamp(issues, where, "archived_at", data.get("archived_at"))

    columns = data.get("columns")
    if not isinstance(columns, list):
        issues.append("board: 'columns' must be an array")
        columns = []
    seen_columns = set()
    for column in columns:
        issues.extend(validate_column(column).issues)
        if isinstance(column, dict) and isinstance(column.get("id"), str):
            if column["id"] in seen_columns:
                issues.append(f"board: duplicate column id {column['id']}")
            seen_columns.add(column["id"])

    if detect_layout(data) == BoardLayout.CARD_FIRST and "cards" in data:
        seen_cards = set()
        for card in data["cards"]:
            issues.extend(validate_card(card).issues)
            if isinstance(card, dict) and isinstance(card.get("id"), str):
                if card["id"] in seen_cards:
                    issues.append(f"board: duplicate card id {card['id']}")
                seen_cards.add(card["id"])

    return ValidationResult(issues)


def check_integrity(board: Board) -> List[str]:
    """
    Cross-entity consistency report for a card-first board.

    Unlike validate_board this does look across entities: orphaned
    columnIds, non-dense positions and dangling dependencies.
    """
    if board.is_legacy:
        return []
    issues: List[str] = []
    column_ids = {c.id for c in board.columns}
    card_ids = {c.id for c in board.cards}

    for card in board.cards:
        if card.column_id not in column_ids:
            issues.append(f"Card {card.id} references non-existent column {card.column_id}")
        for dep in card.dependencies:
            if dep == card.id:
                issues.append(f"Card {card.id} depends on itself")
            elif dep not in card_ids:
                issues.append(f"Card {card.id} depends on missing card {dep}")

    for column in board.columns:
        positions = sorted(c.position for c in board.cards if c.column_id == column.id)
        if positions != list(range(len(positions))):
            issues.append(f"Column {column.id} positions are not dense: {positions}")
    return issues
