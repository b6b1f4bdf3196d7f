"""Tests for the card query engine."""

import pytest

from taskboard.errors import FormatMismatchError, ValidationError
from taskboard.query import CardQuery, search
from taskboard.schema import Board, BoardLayout, Card, Column


@pytest.fixture
def board():
    b = Board(id="b", project_name="P",
              columns=[Column(id="todo", name="To Do"), Column(id="done", name="Done")])
    b.cards = [
        Card(id="1", title="Write parser", column_id="todo", position=0, tags=["backend"],
             priority="high", assignee="Sam", created_at="2025-01-01T00:00:00.000Z",
             due_date="2025-02-01T00:00:00.000Z"),
        Card(id="2", title="Design logo", column_id="todo", position=1, tags=["design"],
             priority="low", content="Needs a PARSER diagram", created_at="2025-01-05T00:00:00.000Z"),
        Card(id="3", title="Deploy", column_id="done", position=0, tags=["ops", "backend"],
             assignee="sam", subtasks=["✓ write runbook"], created_at="2025-01-10T00:00:00.000Z",
             due_date="2025-01-15T00:00:00.000Z"),
    ]
    return b


def ids(result):
    return [c["id"] for c in result["cards"]]


class TestFilters:

    def test_text_searches_title_content_subtasks_tags(self, board):
        assert ids(search(board, CardQuery(text="parser"))) == ["1", "2"]
        assert ids(search(board, CardQuery(text="runbook"))) == ["3"]
        assert ids(search(board, CardQuery(text="OPS"))) == ["3"]

    def test_column(self, board):
        assert ids(search(board, CardQuery(column_id="done"))) == ["3"]

    def test_tags_any_match(self, board):
        assert ids(search(board, CardQuery(tags=["design", "ops"]))) == ["2", "3"]

    def test_assignee_case_insensitive(self, board):
        assert ids(search(board, CardQuery(assignee="SAM"))) == ["1", "3"]

    def test_priority(self, board):
        assert ids(search(board, CardQuery(priority="low"))) == ["2"]

    def test_date_range(self, board):
        q = CardQuery(created_after="2025-01-02T00:00:00Z", created_before="2025-01-09T00:00:00Z")
        assert ids(search(board, q)) == ["2"]

    def test_due_range_excludes_cards_without_due_date(self, board):
        assert ids(search(board, CardQuery(due_before="2025-12-31T00:00:00Z"))) == ["1", "3"]


class TestSortAndPage:

    def test_default_is_board_order(self, board):
        assert ids(search(board, CardQuery())) == ["1", "2", "3"]

    def test_title_desc(self, board):
        assert ids(search(board, CardQuery(sort_by="title", sort_order="desc"))) == ["1", "2", "3"]
        assert ids(search(board, CardQuery(sort_by="title"))) == ["3", "2", "1"]

    def test_priority_missing_sorts_last(self, board):
        assert ids(search(board, CardQuery(sort_by="priority", sort_order="desc"))) == ["1", "2", "3"]
        assert ids(search(board, CardQuery(sort_by="priority"))) == ["2", "1", "3"]

    def test_due_date(self, board):
        assert ids(search(board, CardQuery(sort_by="due_date"))) == ["3", "1", "2"]

    def test_pagination(self, board):
        result = search(board, CardQuery(limit=1, offset=1))
        assert ids(result) == ["2"]
        assert result["total"] == 3
        assert result["limit"] == 1
        assert result["offset"] == 1


class TestQueryValidation:

    def test_from_dict_coerces_wire_names(self):
        q = CardQuery.from_dict({"q": "x", "columnId": "todo", "tags": "a, b", "limit": "5",
                                 "sortBy": "title", "sortOrder": "desc"})
        assert q.text == "x"
        assert q.column_id == "todo"
        assert q.tags == ["a", "b"]
        assert q.limit == 5
        assert q.sort_by == "title"

    @pytest.mark.parametrize("data", [
        {"limit": 0}, {"limit": 101}, {"offset": -1}, {"sort_by": "color"},
        {"sort_order": "up"}, {"priority": "urgent"}, {"created_after": "soon"},
        {"limit": "many"}, {"bogus": 1},
    ])
    def test_rejects(self, data):
        with pytest.raises(ValidationError):
            CardQuery.from_dict(data)

    def test_legacy_board_refused(self):
        legacy = Board(id="old", project_name="Old", layout=BoardLayout.LEGACY)
        with pytest.raises(FormatMismatchError):
            search(legacy, CardQuery())
