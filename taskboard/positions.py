"""
Position allocator: dense, zero-based card ordering within a column.

This module is the only place that writes Card.position. Every insert,
move and delete ends with a renumber of the affected columns, so each
column always holds exactly positions 0..n-1.

Targets:
    int >= 0        absolute index, clamped to [0, count]
    "first"/"last"  head / tail of the column
    "up"/"down"     one slot toward the head / tail; only valid when the
                    card already sits in the destination column
When a target index is already occupied, the moving card goes before the
occupant.
"""
from typing import List, Optional, Sequence, Union

from .errors import PositionError
from .schema import Board, Card


FIRST = "first"
LAST = "last"
UP = "up"
DOWN = "down"
SYMBOLIC_TARGETS = (FIRST, LAST, UP, DOWN)

Target = Union[int, str]


def parse_target(value: Optional[Target], default: str = LAST) -> Target:
    """
    Normalize a caller-supplied target.

    Accepts ints, digit strings (from CLI/HTTP query parameters) and the
    symbolic names. Raises PositionError for anything else.
    """
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise PositionError(f"Invalid position: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise PositionError(f"Position must be non-negative, got {value}")
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in SYMBOLIC_TARGETS:
            return text
        if text.lstrip("-").isdigit():
            return parse_target(int(text))
    raise PositionError(
        f"Invalid position: {value!r}. Use a non-negative integer or one of "
        f"{', '.join(SYMBOLIC_TARGETS)}"
    )


def _ordered(cards: Sequence[Card]) -> List[Card]:
    # Stable on ties so a damaged file still yields a deterministic order
    return [c for _, c in sorted(enumerate(cards), key=lambda p: (p[1].position, p[0]))]


def allocate(siblings: Sequence[Card], target: Target,
             current: Optional[Card] = None, column_id: Optional[str] = None) -> int:
    """
    Resolve `target` to an insertion index into `siblings`.

    siblings:  cards of the destination column, excluding `current`
    current:   the card being moved (None for a new card)
    column_id: destination column, used to decide whether up/down apply
    """
    count = len(siblings)
    target = parse_target(target)

    if isinstance(target, int):
        return min(max(0, target), count)
    if target == FIRST:
        return 0
    if target == LAST:
        return count

    # Relative moves
    if current is None or column_id is None or current.column_id != column_id:
        raise PositionError(f"Cannot use '{target}' when moving to a different column")
    ordered_ids = [c.id for c in _ordered(list(siblings) + [current])]
    index = ordered_ids.index(current.id)
    if target == UP:
        if index == 0:
            raise PositionError(f"Card {current.id} is already first in its column")
        return index - 1
    if index >= count:
        raise PositionError(f"Card {current.id} is already last in its column")
    return index + 1


def renumber(board: Board, column_id: str) -> None:
    """Rewrite positions of one column to 0..n-1 preserving current order."""
    for i, card in enumerate(_ordered([c for c in board.cards if c.column_id == column_id])):
        card.position = i


def place(board: Board, card: Card, column_id: str, target: Target) -> int:
    """
    Put `card` into `column_id` at `target` and renumber.

    Works for both new cards (not yet in board.cards) and moves. Returns
    the final position.
    """
    source_column = card.column_id
    siblings = _ordered([
        c for c in board.cards if c.column_id == column_id and c.id != card.id
    ])
    is_move = any(c is card for c in board.cards)
    index = allocate(siblings, target, current=card if is_move else None,
                     column_id=column_id)

    siblings.insert(index, card)
    card.column_id = column_id
    for i, c in enumerate(siblings):
        c.position = i
    if not is_move:
        board.cards.append(card)
    if source_column and source_column != column_id:
        renumber(board, source_column)
    return card.position


def remove(board: Board, card: Card) -> None:
    """Drop `card` from the board and close the gap it leaves."""
    board.cards = [c for c in board.cards if c.id != card.id]
    renumber(board, card.column_id)


def is_dense(board: Board, column_id: str) -> bool:
    positions = sorted(c.position for c in board.cards if c.column_id == column_id)
    return positions == list(range(len(positions)))
