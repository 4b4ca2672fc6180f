"""Unit tests for crm_import.state (import-run state machine)."""

from __future__ import annotations

import pytest

from crm_import import state
from crm_import.parser import RawTable
from crm_import.schema import load_builtin_schema


TABLE = RawTable(
    headers=("nome", "email"),
    rows=(
        {"nome": "Ana", "email": "ana@example.com"},
        {"nome": "Bruno", "email": ""},
        {"nome": "Carla", "email": "carla@example.com"},
    ),
)

MAPPING = {"nome": "full_name", "email": "email"}


@pytest.fixture(scope="module")
def contact():
    return load_builtin_schema("contact")


def _previewed() -> state.ImportRun:
    run = state.select_file(state.reset(), "contactos.csv")
    run = state.parsed(run, TABLE)
    run = state.mapped(run, MAPPING)
    return state.preview(run)


def _validated() -> state.ImportRun:
    run = state.start_validation(_previewed())
    return state.validated(run, outcomes=[], to_create=[{"full_name": "Bruno"}], duplicate_count=1)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestHappyPath:
    def test_reset_is_idle(self):
        run = state.reset()
        assert run.state == state.IDLE
        assert not run.is_terminal

    def test_parsed_selects_every_row(self):
        run = state.parsed(state.select_file(state.reset(), "x.csv"), TABLE)
        assert run.state == state.PARSED
        assert run.selected == frozenset({0, 1, 2})

    def test_mapping_stored(self):
        run = _previewed()
        assert run.column_mapping == MAPPING
        assert run.state == state.PREVIEWED

    def test_full_walk_to_committed(self):
        run = state.start_commit(_validated())
        assert run.state == state.COMMITTING
        run = state.committed(run, True, 1, "1 contact record(s) created")
        assert run.state == state.COMMITTED
        assert run.created_count == 1
        assert run.is_terminal

    def test_commit_failure(self):
        run = state.start_commit(_validated())
        run = state.committed(run, False, 5, "backend down")
        assert run.state == state.FAILED
        assert run.created_count is None
        assert run.message == "backend down"

    def test_transitions_do_not_mutate(self):
        run = _previewed()
        state.clear_selection(run)
        assert run.selected == frozenset({0, 1, 2})


# ---------------------------------------------------------------------------
# Mapping edits and selection
# ---------------------------------------------------------------------------

class TestMappingAndSelection:
    def test_edit_mapping_loops_in_mapped(self, contact):
        run = state.mapped(state.parsed(state.select_file(state.reset(), "x"), TABLE), MAPPING)
        run = state.edit_mapping(run, "email", "ignore", contact)
        assert run.state == state.MAPPED
        assert run.column_mapping == {"nome": "full_name", "email": "ignore"}

    def test_edit_mapping_after_preview_not_allowed(self, contact):
        with pytest.raises(state.InvalidTransitionError):
            state.edit_mapping(_previewed(), "email", "ignore", contact)

    def test_toggle_row(self):
        run = state.toggle_row(_previewed(), 1)
        assert run.selected == frozenset({0, 2})
        assert [r["nome"] for r in run.selected_rows] == ["Ana", "Carla"]
        assert state.toggle_row(run, 1).selected == frozenset({0, 1, 2})

    def test_toggle_out_of_range(self):
        with pytest.raises(state.InvalidTransitionError, match="out of range"):
            state.toggle_row(_previewed(), 3)

    def test_clear_then_select_all(self):
        run = state.clear_selection(_previewed())
        assert run.selected == frozenset()
        assert state.select_all(run).selected == frozenset({0, 1, 2})


# ---------------------------------------------------------------------------
# NothingToImport exits
# ---------------------------------------------------------------------------

class TestNothingToImport:
    def test_empty_table(self):
        run = state.parsed(state.select_file(state.reset(), "x"), RawTable(headers=("nome",)))
        assert run.state == state.NOTHING_TO_IMPORT
        assert run.message == "empty_source"

    def test_no_rows_selected(self):
        run = state.start_validation(state.clear_selection(_previewed()))
        assert run.state == state.NOTHING_TO_IMPORT
        assert run.message == "no_rows_selected"

    def test_nothing_left_after_validation(self):
        run = state.start_validation(_previewed())
        run = state.validated(run, outcomes=[], to_create=[], duplicate_count=3)
        assert run.state == state.NOTHING_TO_IMPORT
        assert run.duplicate_count == 3

    def test_explicit_early_exit(self):
        run = state.nothing_to_import(state.select_file(state.reset(), "x"), "unsupported_format")
        assert run.state == state.NOTHING_TO_IMPORT
        assert run.message == "unsupported_format"


# ---------------------------------------------------------------------------
# Illegal transitions
# ---------------------------------------------------------------------------

class TestIllegalTransitions:
    def test_select_file_twice(self):
        run = state.select_file(state.reset(), "a")
        with pytest.raises(state.InvalidTransitionError):
            state.select_file(run, "b")

    def test_commit_before_validation(self):
        with pytest.raises(state.InvalidTransitionError):
            state.start_commit(_previewed())

    def test_preview_before_mapping(self):
        run = state.parsed(state.select_file(state.reset(), "x"), TABLE)
        with pytest.raises(state.InvalidTransitionError):
            state.preview(run)

    def test_terminal_states_stay_terminal(self):
        run = state.committed(state.start_commit(_validated()), True, 1, "ok")
        with pytest.raises(state.InvalidTransitionError):
            state.nothing_to_import(run, "late")
        with pytest.raises(state.InvalidTransitionError):
            state.failed(run, "late")

    def test_failed_only_after_validation_started(self):
        with pytest.raises(state.InvalidTransitionError):
            state.failed(_previewed(), "store down")
        assert state.failed(state.start_validation(_previewed()), "store down").state == state.FAILED
