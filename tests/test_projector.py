"""
Tests for the format projector.

Covers:
    - full / summary / compact / cards-only shapes
    - compact decodes back to the full projection's values
    - projections never mutate the board
    - payload size ordering against the full baseline
"""

import copy
from datetime import datetime, timezone

import pytest

from taskboard.errors import NotFoundError, ValidationError
from taskboard.projector import Projector, expand_compact, payload_size
from taskboard.schema import Board, BoardLayout, Card, Column

NOW = datetime(2025, 3, 14, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def projector():
    return Projector(clock=lambda: NOW)


@pytest.fixture
def board():
    b = Board(
        id="b1",
        project_name="Demo",
        last_updated="2025-03-14T09:00:00.000Z",
        columns=[Column(id="todo", name="To Do", wip_limit=5), Column(id="doing", name="Doing"),
                 Column(id="done", name="Done")],
    )
    b.cards = [
        Card(id="c0", title="Plan", column_id="todo", position=0, tags=["plan"],
             content="Long description " * 10, due_date="2025-03-01T00:00:00.000Z"),
        Card(id="c1", title="Build", column_id="todo", position=1, dependencies=["c0"],
             priority="high", collapsed=True),
        Card(id="c2", title="Ship", column_id="done", position=0,
             completed_at="2025-03-10T00:00:00.000Z", due_date="2025-03-01T00:00:00.000Z"),
    ]
    return b


class TestShapes:

    def test_full_is_board_document(self, projector, board):
        assert projector.project(board, "full") == board.to_dict()

    def test_summary_counts_and_stats(self, projector, board):
        out = projector.project(board, "summary")
        assert "cards" not in out
        assert [c["cardCount"] for c in out["columns"]] == [2, 0, 1]
        assert out["columns"][0]["wipLimit"] == 5
        assert out["stats"] == {
            "totalCards": 3,
            "completedCards": 1,
            "progressPercentage": 33,
            "overdueCards": 1,     # c2 is past due but already done
        }

    def test_progress_rounds_half_up(self, projector):
        b = Board(id="b", project_name="P", columns=[Column(id="t", name="Todo"), Column(id="d", name="Done")])
        b.cards = [Card(id="1", title="x", column_id="d"), Card(id="2", title="y", column_id="t")]
        b.cards += [Card(id=str(i), title="z", column_id="t") for i in range(3, 9)]
        # 1 of 8 = 12.5%
        assert projector.summary(b)["stats"]["progressPercentage"] == 13

    def test_empty_board_progress_zero(self, projector):
        b = Board(id="b", project_name="P", columns=[Column(id="d", name="Done")])
        assert projector.summary(b)["stats"]["progressPercentage"] == 0

    def test_compact_abbreviates_and_omits_empty(self, projector, board):
        out = projector.project(board, "compact")
        assert out["name"] == "Demo"
        assert out["cols"][0] == {"id": "todo", "n": "To Do", "wip": 5}
        build = out["cards"][1]
        assert build["t"] == "Build"
        assert build["dep"] == ["c0"]
        assert build["coll"] is True
        assert "coll" not in out["cards"][0]
        assert "comp" not in out["cards"][0]
        assert "sub" not in out["cards"][0]
        # positions of zero are kept
        assert out["cards"][0]["p"] == 0

    def test_cards_only_filters_by_column(self, projector, board):
        out = projector.project(board, "cards-only", column_id="todo")
        assert [c["id"] for c in out["cards"]] == ["c0", "c1"]

    def test_cards_only_unknown_column_is_empty(self, projector, board):
        assert projector.project(board, "cards-only", column_id="nope") == {"cards": []}

    def test_unknown_shape(self, projector, board):
        with pytest.raises(ValidationError):
            projector.project(board, "tiny")

    def test_legacy_board_projects_with_zero_counts(self, projector):
        legacy = Board(id="old", project_name="Old", layout=BoardLayout.LEGACY,
                       columns=[Column(id="todo", name="To Do", items=[{"id": "x", "title": "X"}])])
        assert projector.project(legacy, "cards-only") == {"cards": []}
        summary = projector.project(legacy, "summary")
        assert summary["stats"]["totalCards"] == 0
        assert summary["columns"][0]["cardCount"] == 0


class TestLossless:

    def test_compact_round_trip_matches_full(self, projector, board):
        full = projector.project(board, "full")
        decoded = expand_compact(projector.project(board, "compact"))
        for full_card, card in zip(full["cards"], decoded["cards"]):
            for key, value in card.items():
                assert full_card[key] == value
            assert card["title"] == full_card["title"]
            assert card.get("tags", []) == full_card["tags"]
            assert card.get("dependencies", []) == full_card["dependencies"]
        assert decoded["projectName"] == full["projectName"]
        assert [c["name"] for c in decoded["columns"]] == [c["name"] for c in full["columns"]]

    def test_projection_does_not_mutate(self, projector, board):
        before = copy.deepcopy(board.to_dict())
        for shape in ("full", "summary", "compact", "cards-only"):
            out = projector.project(board, shape)
            if "cards" in out and out["cards"]:
                out["cards"][0]["tags"] = ["mutated"]
        assert board.to_dict() == before


class TestSizes:

    def test_reduced_shapes_are_smaller_than_full(self, projector, board):
        full = payload_size(projector.project(board, "full"))["bytes"]
        for shape in ("summary", "compact"):
            assert payload_size(projector.project(board, shape))["bytes"] < full

    def test_token_estimate(self):
        size = payload_size({"a": "b"})
        assert size["bytes"] == len('{"a":"b"}')
        assert size["tokens"] == 3


class TestCardDetail:

    def test_resolves_dependencies_and_dependents(self, projector, board):
        detail = projector.card_detail(board, "c0")
        assert detail["columnName"] == "To Do"
        assert detail["dependents"] == [{"id": "c1", "title": "Build"}]
        detail = projector.card_detail(board, "c1")
        assert detail["dependencyTitles"] == [{"id": "c0", "title": "Plan"}]

    def test_missing_card(self, projector, board):
        with pytest.raises(NotFoundError):
            projector.card_detail(board, "zzz")
