"""
Dependency resolver: `dependencies` on a card may only name other cards
of the same board.
"""
from typing import Dict, Iterable, List, Optional

from .errors import DependencyError
from .schema import Card


def validate_dependencies(card_id: Optional[str], dependencies: Iterable[str],
                          cards: Iterable[Card]) -> None:
    """
    Confirm every dependency resolves to an existing card.

    Raises DependencyError naming the first offending identifier
    (self-references included).
    """
    known = {c.id for c in cards}
    for dep in dependencies:
        if card_id is not None and dep == card_id:
            raise DependencyError(f"Card {card_id} cannot depend on itself", dep)
        if dep not in known:
            raise DependencyError(f"Missing dependency: card {dep} does not exist", dep)


def build_dependents_index(cards: Iterable[Card]) -> Dict[str, List[str]]:
    """Reverse lookup in one pass: card id -> ids of cards that depend on it."""
    index: Dict[str, List[str]] = {}
    for card in cards:
        for dep in card.dependencies:
            index.setdefault(dep, []).append(card.id)
    return index


def dependents_of(card_id: str, cards: Iterable[Card]) -> List[str]:
    return build_dependents_index(cards).get(card_id, [])


def resolve_titles(dependencies: Iterable[str], by_id: Dict[str, Card]) -> List[Dict[str, str]]:
    """[{id, title}] for each dependency; unknown ids keep an empty title."""
    return [
        {"id": dep, "title": by_id[dep].title if dep in by_id else ""}
        for dep in dependencies
    ]


def drop_references(card_id: str, cards: Iterable[Card]) -> List[str]:
    """Remove `card_id` from every dependency list. Returns ids of cards that changed."""
    changed = []
    for card in cards:
        if card_id in card.dependencies:
            card.dependencies = [d for d in card.dependencies if d != card_id]
            changed.append(card.id)
    return changed
