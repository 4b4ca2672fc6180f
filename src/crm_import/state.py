"""crm_import.state

Import-run state machine.

    Idle -> FileSelected -> Parsed -> Mapped (loops on edits) -> Previewed
         -> Validating -> Validated -> Committing -> Committed | Failed

NothingToImport ends a run early (empty or unreadable file, no selected
rows, nothing left after validation and dedup). Committed, Failed and
NothingToImport are terminal; reset() starts the next run.

ImportRun is a frozen value object. Every transition is a pure function
returning a new ImportRun and raises InvalidTransitionError when called from
a state that does not allow it.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

from crm_import.mapper import ColumnMapping, remap
from crm_import.parser import RawTable
from crm_import.schema import TargetSchema

IDLE = "idle"
FILE_SELECTED = "file_selected"
PARSED = "parsed"
MAPPED = "mapped"
PREVIEWED = "previewed"
VALIDATING = "validating"
VALIDATED = "validated"
COMMITTING = "committing"
COMMITTED = "committed"
FAILED = "failed"
NOTHING_TO_IMPORT = "nothing_to_import"

TERMINAL_STATES = frozenset({COMMITTED, FAILED, NOTHING_TO_IMPORT})

_EARLY_EXIT_FROM = frozenset({FILE_SELECTED, PARSED, MAPPED, PREVIEWED, VALIDATING, VALIDATED})

_SELECTION_STATES = frozenset({MAPPED, PREVIEWED})


class InvalidTransitionError(Exception):
    """Raised when a transition is not allowed from the run's current state."""


@dataclass(frozen=True)
class ImportRun:
    state: str = IDLE
    source_name: str | None = None
    table: RawTable | None = None
    mapping: tuple[tuple[str, str], ...] = ()
    selected: frozenset[int] = frozenset()
    outcomes: tuple[Any, ...] = ()
    to_create: tuple[dict[str, Any], ...] = ()
    duplicate_count: int = 0
    created_count: int | None = None
    message: str | None = None

    @property
    def column_mapping(self) -> ColumnMapping:
        return dict(self.mapping)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def selected_rows(self) -> list[dict[str, Any]]:
        if self.table is None:
            return []
        return [row for i, row in enumerate(self.table.rows) if i in self.selected]


def _require(run: ImportRun, *states: str) -> None:
    if run.state not in states:
        raise InvalidTransitionError(
            f"cannot leave state '{run.state}' this way (allowed from {sorted(states)})"
        )


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

def reset() -> ImportRun:
    return ImportRun()


def select_file(run: ImportRun, source_name: str) -> ImportRun:
    _require(run, IDLE)
    return replace(run, state=FILE_SELECTED, source_name=source_name)


def parsed(run: ImportRun, table: RawTable) -> ImportRun:
    """Record the parsed table; every row starts selected."""
    _require(run, FILE_SELECTED)
    if table.is_empty:
        return replace(run, state=NOTHING_TO_IMPORT, table=table, message="empty_source")
    return replace(
        run, state=PARSED, table=table, selected=frozenset(range(len(table.rows)))
    )


def mapped(run: ImportRun, mapping: ColumnMapping) -> ImportRun:
    _require(run, PARSED, MAPPED)
    return replace(run, state=MAPPED, mapping=tuple(mapping.items()))


def edit_mapping(run: ImportRun, header: str, target: str, schema: TargetSchema) -> ImportRun:
    _require(run, MAPPED)
    return mapped(run, remap(run.column_mapping, header, target, schema))


def preview(run: ImportRun) -> ImportRun:
    _require(run, MAPPED, PREVIEWED)
    return replace(run, state=PREVIEWED)


def select_all(run: ImportRun) -> ImportRun:
    _require(run, *_SELECTION_STATES)
    return replace(run, selected=frozenset(range(len(run.table.rows))))


def clear_selection(run: ImportRun) -> ImportRun:
    _require(run, *_SELECTION_STATES)
    return replace(run, selected=frozenset())


def toggle_row(run: ImportRun, index: int) -> ImportRun:
    _require(run, *_SELECTION_STATES)
    if not 0 <= index < len(run.table.rows):
        raise InvalidTransitionError(f"row index {index} out of range")
    return replace(run, selected=run.selected ^ {index})


def start_validation(run: ImportRun) -> ImportRun:
    _require(run, PREVIEWED)
    if not run.selected:
        return replace(run, state=NOTHING_TO_IMPORT, message="no_rows_selected")
    return replace(run, state=VALIDATING)


def validated(
    run: ImportRun,
    outcomes: list[Any],
    to_create: list[dict[str, Any]],
    duplicate_count: int,
) -> ImportRun:
    _require(run, VALIDATING)
    nxt = replace(
        run,
        outcomes=tuple(outcomes),
        to_create=tuple(to_create),
        duplicate_count=duplicate_count,
    )
    if not to_create:
        return replace(nxt, state=NOTHING_TO_IMPORT, message="no_records_after_validation")
    return replace(nxt, state=VALIDATED)


def start_commit(run: ImportRun) -> ImportRun:
    _require(run, VALIDATED)
    return replace(run, state=COMMITTING)


def committed(run: ImportRun, success: bool, created_count: int | None, message: str) -> ImportRun:
    _require(run, COMMITTING)
    if success:
        return replace(run, state=COMMITTED, created_count=created_count, message=message)
    return replace(run, state=FAILED, created_count=None, message=message)


def nothing_to_import(run: ImportRun, reason: str) -> ImportRun:
    _require(run, *_EARLY_EXIT_FROM)
    return replace(run, state=NOTHING_TO_IMPORT, message=reason)


def failed(run: ImportRun, reason: str) -> ImportRun:
    """End a run that broke after validation started (store unavailable)."""
    _require(run, VALIDATING, VALIDATED, COMMITTING)
    return replace(run, state=FAILED, created_count=None, message=reason)
