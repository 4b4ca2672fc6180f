"""crm_import.pipeline

Drive one import run through the state machine:

  1. Parse source                     -> Parsed | NothingToImport
  2. Auto-map headers, apply edits    -> Mapped
  3. Preview, deselect skipped rows   -> Previewed
  4. Project selected rows            -> Validating
  5. Classify missing enum fields (optional, concurrent)
  6. Validate; invalid rows go to the reject CSV
  7. Generate tags for valid rows (optional, concurrent)
  8. Dedupe against the store's natural-key set
                                      -> Validated | NothingToImport
  9. Apply defaults, one create_many  -> Committed | Failed

Every run ends in exactly one of three outcomes: nothing_to_import,
imported or failed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from crm_import import state
from crm_import.committer import commit_batch
from crm_import.dedupe import build_natural_key_set, dedupe
from crm_import.enrichment import DEFAULT_MAX_WORKERS, Classifier, enrich_records
from crm_import.mapper import auto_map_columns, identity_mapping
from crm_import.parser import RawTable, SourceFormatError, load_source, parse_delimited
from crm_import.projector import CandidateRecord, apply_defaults, project_row
from crm_import.schema import TargetSchema
from crm_import.shared import ImportCounters, NullRejectWriter, RejectWriter
from crm_import.store import RecordStore, StoreError
from crm_import.validator import ValidationOutcome, ValidationSummary, summarize, validate_record

log = logging.getLogger(__name__)

OUTCOME_NOTHING = "nothing_to_import"
OUTCOME_IMPORTED = "imported"
OUTCOME_FAILED = "failed"


@dataclass
class ImportSummary:
    outcome: str
    entity_type: str
    run: state.ImportRun
    created_count: int | None = None
    rejected_count: int = 0
    duplicate_count: int = 0
    message: str | None = None
    created_records: list[dict[str, Any]] = field(default_factory=list)
    validation: ValidationSummary | None = None

    def describe(self) -> str:
        if self.outcome == OUTCOME_IMPORTED:
            return (
                f"{self.created_count} imported, {self.rejected_count} rejected, "
                f"{self.duplicate_count} duplicate(s) skipped"
            )
        if self.outcome == OUTCOME_FAILED:
            return f"import failed: {self.message}"
        return f"nothing to import ({self.message})"


def _summary(
    run: state.ImportRun,
    schema: TargetSchema,
    rejected: int = 0,
    validation: ValidationSummary | None = None,
    created_records: list[dict[str, Any]] | None = None,
) -> ImportSummary:
    if run.state == state.COMMITTED:
        outcome = OUTCOME_IMPORTED
    elif run.state == state.FAILED:
        outcome = OUTCOME_FAILED
    else:
        outcome = OUTCOME_NOTHING
    return ImportSummary(
        outcome=outcome,
        entity_type=schema.entity_type,
        run=run,
        created_count=run.created_count if outcome == OUTCOME_IMPORTED else None,
        rejected_count=rejected,
        duplicate_count=run.duplicate_count,
        message=run.message,
        created_records=created_records or [],
        validation=validation,
    )


def _read_source(source: RawTable | Path | str, schema: TargetSchema) -> RawTable:
    if isinstance(source, RawTable):
        return source
    if isinstance(source, Path):
        return load_source(source, schema)
    return parse_delimited(source)


# ---------------------------------------------------------------------------
# Steps 1-3: parse, map, preview
# ---------------------------------------------------------------------------

def prepare_run(
    source: RawTable | Path | str,
    schema: TargetSchema,
    mapping_edits: list[tuple[str, str]] | tuple = (),
    skip_rows: list[int] | tuple = (),
    source_name: str | None = None,
) -> state.ImportRun:
    """Parse, map and preview a source.

    source may be a RawTable, a file Path, or delimited text. skip_rows are
    0-based data-row indexes to deselect. Returns a run in Previewed, or in
    NothingToImport when the source is empty or unreadable.

    Raises:
        MappingError: If a mapping edit names an unknown header or field.
        InvalidTransitionError: If a skipped row index is out of range.
    """
    if source_name is None:
        source_name = str(source) if isinstance(source, Path) else "<text>"
    run = state.select_file(state.reset(), source_name)

    try:
        table = _read_source(source, schema)
    except (SourceFormatError, UnicodeDecodeError) as exc:
        log.warning("could not read %s: %s", source_name, exc)
        return state.nothing_to_import(run, str(exc))

    run = state.parsed(run, table)
    if run.is_terminal:
        return run

    if table.native_fields:
        mapping = identity_mapping(table.headers, schema)
    else:
        mapping = auto_map_columns(table.headers, schema)
    run = state.mapped(run, mapping)
    for header, target in mapping_edits:
        run = state.edit_mapping(run, header, target, schema)

    run = state.preview(run)
    for idx in skip_rows:
        if idx in run.selected:
            run = state.toggle_row(run, idx)
        elif not 0 <= idx < len(table.rows):
            raise state.InvalidTransitionError(f"row index {idx} out of range")
    return run


def project_selected(
    run: state.ImportRun,
    schema: TargetSchema,
) -> list[tuple[int, dict[str, Any], CandidateRecord, list[str]]]:
    """Project every selected row. Returns (row_number, raw_row, record, unparseable)."""
    mapping = run.column_mapping
    out = []
    for idx, row in enumerate(run.table.rows):
        if idx not in run.selected:
            continue
        record, unparseable = project_row(row, mapping, schema)
        out.append((idx + 1, row, record, unparseable))
    return out


# ---------------------------------------------------------------------------
# Full run
# ---------------------------------------------------------------------------

def run_import(
    source: RawTable | Path | str,
    schema: TargetSchema,
    store: RecordStore,
    mapping_edits: list[tuple[str, str]] | tuple = (),
    skip_rows: list[int] | tuple = (),
    classifier: Classifier | None = None,
    tagger: Classifier | None = None,
    counters: ImportCounters | None = None,
    rejects: RejectWriter | NullRejectWriter | None = None,
    max_workers: int = DEFAULT_MAX_WORKERS,
    source_name: str | None = None,
) -> ImportSummary:
    counters = counters if counters is not None else ImportCounters()
    rejects = rejects if rejects is not None else NullRejectWriter()
    entity_type = schema.entity_type

    run = prepare_run(source, schema, mapping_edits, skip_rows, source_name)
    if run.table is not None:
        counters.rows_read = len(run.table.rows)
    if run.is_terminal:
        return _summary(run, schema)

    counters.rows_selected = len(run.selected)
    run = state.start_validation(run)
    if run.is_terminal:
        return _summary(run, schema)

    projected = project_selected(run, schema)
    records = [p[2] for p in projected]
    for _, _, _, unparseable in projected:
        counters.unparseable_values += len(unparseable)

    # -- classification -----------------------------------------------------
    if classifier is not None and schema.classify_fields:
        enriched = enrich_records(records, classifier, schema.classify_fields, schema, max_workers)
        records = enriched.records
        counters.classifier_calls += enriched.calls
        counters.classifier_failures += enriched.failures
        counters.fields_classified += enriched.fields_filled

    # -- validation ---------------------------------------------------------
    outcomes: list[ValidationOutcome] = []
    for (row_number, raw_row, _, unparseable), record in zip(projected, records):
        outcome = validate_record(record, schema, unparseable, row_number)
        outcomes.append(outcome)
        if outcome.warnings:
            counters.rows_with_warnings += 1
        if not outcome.is_valid:
            rejects.write({"_row_number": row_number, **raw_row}, ";".join(outcome.errors))
            counters.rows_rejected += 1
    validation = summarize(outcomes)
    counters.rows_valid = validation.valid
    valid_records = [o.record for o in outcomes if o.is_valid]

    # -- tags ---------------------------------------------------------------
    if tagger is not None and valid_records and "tags" in schema.fields:
        tagged = enrich_records(valid_records, tagger, ("tags",), schema, max_workers)
        valid_records = tagged.records
        counters.tagger_calls += tagged.calls
        counters.tagger_failures += tagged.failures

    # -- dedup --------------------------------------------------------------
    key_set: frozenset[str] = frozenset()
    if schema.natural_key is not None and valid_records:
        try:
            key_set = build_natural_key_set(store.list_records(entity_type), schema)
        except StoreError as exc:
            run = state.failed(run, str(exc))
            return _summary(run, schema, counters.rows_rejected, validation)
    deduped = dedupe(valid_records, key_set, schema)
    counters.duplicates_skipped = deduped.duplicate_count

    run = state.validated(run, outcomes, deduped.to_create, deduped.duplicate_count)
    if run.is_terminal:
        return _summary(run, schema, counters.rows_rejected, validation)

    # -- commit -------------------------------------------------------------
    run = state.start_commit(run)
    batch = [apply_defaults(r, schema) for r in run.to_create]
    result = commit_batch(store, entity_type, batch)
    run = state.committed(run, result.success, result.created_count, result.message)
    if result.success:
        counters.records_created = result.created_count or 0
    log.info("%s import finished in state %s: %s", entity_type, run.state, run.message)

    return _summary(run, schema, counters.rows_rejected, validation, result.created_records)
