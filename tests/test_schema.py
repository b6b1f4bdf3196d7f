"""
Tests for the data model and the entity validator.

Covers:
    - timestamps            - format / parse helpers
    - layout detection      - card-first vs legacy
    - Board/Card round-trip - unknown keys preserved
    - validate_card/board   - structural rules, all issues collected
    - check_integrity       - cross-entity report
"""

from datetime import datetime, timezone

import pytest

from taskboard.errors import FormatMismatchError, ValidationError
from taskboard.schema import (
    Board,
    BoardLayout,
    Card,
    Column,
    TerminalColumnRule,
    detect_layout,
    format_timestamp,
    parse_timestamp,
)
from taskboard.validator import check_integrity, validate_board, validate_card, validate_column


def card_dict(**overrides):
    data = {
        "id": "c1",
        "title": "Write docs",
        "content": "",
        "columnId": "todo",
        "position": 0,
        "collapsed": False,
        "subtasks": [],
        "tags": [],
        "dependencies": [],
        "created_at": "2025-03-14T09:00:00.000Z",
        "updated_at": "2025-03-14T09:00:00.000Z",
        "completed_at": None,
    }
    data.update(overrides)
    return data


def board_dict(**overrides):
    data = {
        "id": "b1",
        "projectName": "Board",
        "description": "",
        "last_updated": "2025-03-14T09:00:00.000Z",
        "archived": False,
        "columns": [{"id": "todo", "name": "To Do"}, {"id": "done", "name": "Done"}],
        "cards": [card_dict()],
    }
    data.update(overrides)
    return data


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Timestamps and layout
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestTimestamps:

    def test_format_has_millis_and_z(self):
        dt = datetime(2025, 3, 14, 9, 0, 5, 123456, tzinfo=timezone.utc)
        assert format_timestamp(dt) == "2025-03-14T09:00:05.123Z"

    def test_parse_accepts_z_suffix(self):
        assert parse_timestamp("2025-03-14T09:00:05.123Z") == \
            datetime(2025, 3, 14, 9, 0, 5, 123000, tzinfo=timezone.utc)

    def test_naive_is_utc(self):
        assert parse_timestamp("2025-03-14T09:00:00").tzinfo == timezone.utc

    def test_garbage_raises(self):
        with pytest.raises(ValueError):
            parse_timestamp("yesterday")


class TestLayout:

    def test_top_level_cards_is_card_first(self):
        assert detect_layout(board_dict()) == BoardLayout.CARD_FIRST

    def test_nested_items_is_legacy(self):
        data = board_dict(columns=[{"id": "todo", "name": "To Do", "items": []}])
        del data["cards"]
        assert detect_layout(data) == BoardLayout.LEGACY

    def test_legacy_board_refuses_card_operations(self):
        data = board_dict(columns=[{"id": "todo", "name": "To Do", "items": [{"id": "x", "title": "X"}]}])
        del data["cards"]
        board = Board.from_dict(data)
        assert board.is_legacy
        with pytest.raises(FormatMismatchError):
            board.require_card_first()

    def test_legacy_round_trip_keeps_items_and_omits_cards(self):
        data = board_dict(columns=[{"id": "todo", "name": "To Do", "items": [{"id": "x", "title": "X"}]}])
        del data["cards"]
        out = Board.from_dict(data).to_dict()
        assert "cards" not in out
        assert out["columns"][0]["items"] == [{"id": "x", "title": "X"}]


class TestRecords:

    def test_unknown_keys_survive_round_trip(self):
        data = board_dict(theme="dark")
        data["cards"][0]["color"] = "red"
        data["columns"][0]["icon"] = "inbox"
        out = Board.from_dict(data).to_dict()
        assert out["theme"] == "dark"
        assert out["cards"][0]["color"] == "red"
        assert out["columns"][0]["icon"] == "inbox"

    def test_optional_card_fields_only_when_set(self):
        out = Card(id="c", title="t", column_id="todo").to_dict()
        assert "priority" not in out
        assert out["completed_at"] is None

    def test_subtask_progress_uses_checkmark(self):
        card = Card(id="c", title="t", column_id="todo", subtasks=["✓ one", "two", " ✓ three"])
        assert card.subtask_progress() == (2, 3)

    def test_missing_id_filled_from_file_stem(self):
        data = board_dict()
        del data["id"]
        assert Board.from_dict(data, board_id="stem").id == "stem"


class TestTerminalColumnRule:

    def test_matches_done_case_insensitively(self):
        rule = TerminalColumnRule()
        assert rule(Column(id="x", name="DONE"))
        assert not rule(Column(id="y", name="Doing"))

    def test_explicit_column_ids(self):
        rule = TerminalColumnRule(names=(), column_ids=("shipped",))
        assert rule(Column(id="shipped", name="Shipped"))
        assert not rule(Column(id="done", name="Done"))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Validator
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestValidateCard:

    def test_valid_card(self):
        assert validate_card(card_dict()).valid

    def test_collects_every_issue(self):
        result = validate_card(card_dict(title=None, collapsed="yes", tags=["a", 3],
                                         created_at="not-a-date"))
        assert len(result.issues) == 4
        assert any("'title'" in i for i in result.issues)
        assert any("'collapsed' must be a boolean" in i for i in result.issues)
        assert any("'tags[1]'" in i for i in result.issues)
        assert any("'created_at'" in i for i in result.issues)

    def test_negative_position(self):
        assert not validate_card(card_dict(position=-1)).valid

    def test_bool_is_not_an_integer_position(self):
        assert not validate_card(card_dict(position=True)).valid

    def test_priority_values(self):
        assert validate_card(card_dict(priority="high")).valid
        assert not validate_card(card_dict(priority="urgent")).valid

    def test_partial_checks_only_supplied_fields(self):
        assert validate_card({"content": "x"}, partial=True).valid
        assert not validate_card({"title": ""}, partial=True).valid

    def test_does_not_mutate_input(self):
        data = card_dict(tags=["a", 1])
        before = dict(data)
        validate_card(data)
        assert data == before

    def test_raise_if_invalid(self):
        with pytest.raises(ValidationError) as exc:
            validate_card(card_dict(title="")).raise_if_invalid("card")
        assert exc.value.kind == "VALIDATION_ERROR"
        assert exc.value.issues


class TestValidateBoard:

    def test_valid_board(self):
        assert validate_board(board_dict()).valid

    def test_columns_must_be_array(self):
        assert not validate_board(board_dict(columns="todo")).valid

    def test_duplicate_ids(self):
        data = board_dict(cards=[card_dict(), card_dict()])
        assert any("duplicate card id" in i for i in validate_board(data).issues)

    def test_wip_limit_must_be_positive(self):
        assert not validate_column({"id": "c", "name": "C", "wipLimit": 0}).valid

    def test_structural_only(self):
        # Dangling references are the resolver's concern
        data = board_dict(cards=[card_dict(dependencies=["ghost"], columnId="nowhere")])
        assert validate_board(data).valid


class TestCheckIntegrity:

    def test_reports_cross_entity_problems(self):
        data = board_dict(cards=[
            card_dict(id="a", columnId="nowhere"),
            card_dict(id="b", dependencies=["b", "ghost"], position=3),
        ])
        issues = check_integrity(Board.from_dict(data))
        assert any("non-existent column nowhere" in i for i in issues)
        assert any("depends on itself" in i for i in issues)
        assert any("missing card ghost" in i for i in issues)
        assert any("not dense" in i for i in issues)

    def test_clean_board(self):
        assert check_integrity(Board.from_dict(board_dict())) == []
