"""crm_import.cli

crm-import: import contacts, opportunities or properties from CSV / TSV,
vCard, XML or JSON files into the CRM record store.

Usage:
    crm-import \\
        --entity-type contact \\
        --source-path exports/contactos.csv \\
        --db-dsn "$CRM_DB_DSN"

    crm-import \\
        --entity-type property \\
        --source-path feeds/imoveis.json \\
        --classify --generate-tags \\
        --llm-endpoint https://llm.internal/invoke \\
        --llm-api-key-env CRM_LLM_API_KEY

    # Show the column mapping and projected rows without touching the DB
    crm-import --entity-type opportunity --source-path leads.csv --preview \\
        --map "Contacto=buyer_phone" --skip-row 3

Exit status is 0 only when records were imported.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click
import psycopg
import yaml

from crm_import import state
from crm_import.enrichment import (
    DEFAULT_MAX_WORKERS,
    LlmClient,
    LlmPropertyClassifier,
    LlmTagGenerator,
)
from crm_import.mapper import MappingError
from crm_import.pipeline import OUTCOME_IMPORTED, prepare_run, project_selected, run_import
from crm_import.schema import (
    VALID_ENTITY_TYPES,
    SchemaValidationError,
    load_builtin_schema,
    load_schema,
)
from crm_import.shared import ImportCounters, RejectWriter, write_run_report
from crm_import.store import PostgresRecordStore
from crm_import.validator import validate_record

PREVIEW_ROWS = 10


def _parse_map_option(ctx, param, values: tuple[str, ...]) -> list[tuple[str, str]]:
    edits = []
    for value in values:
        header, sep, target = value.rpartition("=")
        if not sep or not header.strip() or not target.strip():
            raise click.BadParameter(f"expected HEADER=FIELD, got {value!r}")
        edits.append((header.strip(), target.strip()))
    return edits


def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


@click.command()
@click.option(
    "--entity-type",
    required=True,
    type=click.Choice(sorted(VALID_ENTITY_TYPES)),
    help="Target entity type",
)
@click.option(
    "--source-path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Input file (.csv, .txt, .tsv, .vcf, .xml, .json)",
)
@click.option("--db-dsn", default=None, envvar="CRM_DB_DSN", help="PostgreSQL DSN (or CRM_DB_DSN)")
@click.option(
    "--map", "mapping_edits",
    multiple=True,
    callback=_parse_map_option,
    help="Override auto-mapping: HEADER=FIELD (FIELD may be 'ignore'). Repeatable.",
)
@click.option(
    "--skip-row",
    multiple=True,
    type=click.IntRange(min=1),
    help="Deselect a data row (1-based, header excluded). Repeatable.",
)
@click.option(
    "--classify/--no-classify",
    default=False,
    show_default=True,
    help="Ask the LLM for missing classification fields (property_type, listing_type)",
)
@click.option("--generate-tags", is_flag=True, default=False, help="Ask the LLM for search tags on valid records")
@click.option("--llm-endpoint", default=None, envvar="CRM_LLM_ENDPOINT", help="LLM invoke endpoint URL")
@click.option(
    "--llm-api-key-env",
    default="CRM_LLM_API_KEY",
    show_default=True,
    help="Env var name holding the LLM API key",
)
@click.option(
    "--max-workers",
    default=DEFAULT_MAX_WORKERS,
    type=click.IntRange(min=1),
    show_default=True,
    help="Concurrent LLM calls",
)
@click.option("--schema-path", default=None, type=click.Path(exists=True, dir_okay=False), help="Override target schema YAML")
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--rejects-path", default=None, type=click.Path(), help="Reject CSV (default ./artifacts/rejects/<entity>_rejects.csv)")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--preview", is_flag=True, default=False, help="Print mapping and projected rows, then stop")
@click.option("--verbose", is_flag=True, default=False)
def main(
    entity_type: str,
    source_path: str,
    db_dsn: str | None,
    mapping_edits: list[tuple[str, str]],
    skip_row: tuple[int, ...],
    classify: bool,
    generate_tags: bool,
    llm_endpoint: str | None,
    llm_api_key_env: str,
    max_workers: int,
    schema_path: str | None,
    dry_run: bool,
    rejects_path: str | None,
    run_id: str | None,
    preview: bool,
    verbose: bool,
) -> None:
    """Import a tabular file into the CRM."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    skip_rows = [n - 1 for n in skip_row]

    try:
        schema = load_schema(Path(schema_path)) if schema_path else load_builtin_schema(entity_type)
    except (SchemaValidationError, yaml.YAMLError, OSError) as exc:
        _fatal(run_id, f"invalid schema: {exc}")
    if schema.entity_type != entity_type:
        _fatal(run_id, f"schema is for '{schema.entity_type}', not '{entity_type}'")

    click.echo(
        f"[{run_id}] Starting {entity_type} import from {source_path} "
        f"(schema {schema.version}, dry_run={dry_run})"
    )

    if preview:
        _preview(run_id, Path(source_path), schema, mapping_edits, skip_rows)
        return

    if not db_dsn:
        _fatal(run_id, "--db-dsn (or CRM_DB_DSN) is required unless --preview is set")

    classifier = tagger = None
    if classify or generate_tags:
        if not llm_endpoint:
            _fatal(run_id, "--llm-endpoint (or CRM_LLM_ENDPOINT) is required for --classify/--generate-tags")
        # Read the key from env, never from CLI args
        client = LlmClient(endpoint=llm_endpoint, api_key=os.environ.get(llm_api_key_env) or None)
        if classify:
            classifier = LlmPropertyClassifier(client=client, schema=schema)
        if generate_tags:
            tagger = LlmTagGenerator(client=client)

    counters = ImportCounters()
    rejects = RejectWriter(
        Path(rejects_path or f"./artifacts/rejects/{entity_type}_rejects.csv")
    )

    try:
        conn = psycopg.connect(db_dsn, autocommit=False)
    except psycopg.Error as exc:
        rejects.close()
        _fatal(run_id, f"cannot connect to database: {exc}")

    try:
        store = PostgresRecordStore(
            conn=conn,
            run_id=run_id,
            natural_key_field=schema.natural_key,
            dry_run=dry_run,
        )
        summary = run_import(
            Path(source_path),
            schema,
            store,
            mapping_edits=mapping_edits,
            skip_rows=skip_rows,
            classifier=classifier,
            tagger=tagger,
            counters=counters,
            rejects=rejects,
            max_workers=max_workers,
        )
    except (MappingError, state.InvalidTransitionError) as exc:
        _fatal(run_id, str(exc))
    finally:
        conn.close()
        rejects.close()

    report_path = write_run_report(
        run_id, started_at, entity_type, dry_run, source_path,
        schema.version, schema.yaml_hash, summary.outcome, summary.message, counters,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    click.echo(json.dumps(counters.to_dict(), indent=2, default=str))
    if rejects.count:
        click.echo(f"[{run_id}] {rejects.count} rejected row(s) written to {rejects.path}")

    if summary.outcome != OUTCOME_IMPORTED:
        click.echo(f"[{run_id}] {summary.describe()}", err=True)
        sys.exit(1)

    if dry_run:
        click.echo(f"[{run_id}] [dry-run] All changes rolled back.")
    else:
        click.echo(f"[{run_id}] Cached {entity_type} lists are stale; refresh them.")
    click.echo(f"[{run_id}] Done: {summary.describe()}")


def _preview(run_id, source_path, schema, mapping_edits, skip_rows) -> None:
    try:
        run = prepare_run(source_path, schema, mapping_edits, skip_rows)
    except (MappingError, state.InvalidTransitionError) as exc:
        _fatal(run_id, str(exc))
    if run.is_terminal:
        click.echo(f"[{run_id}] nothing to import ({run.message})", err=True)
        sys.exit(1)

    click.echo(f"[{run_id}] Column mapping:")
    for header, target in run.mapping:
        click.echo(f"  {header!r} -> {target}")
    click.echo(
        f"[{run_id}] {len(run.selected)} of {len(run.table.rows)} row(s) selected; "
        f"showing up to {PREVIEW_ROWS}"
    )
    for row_number, _, record, unparseable in project_selected(run, schema)[:PREVIEW_ROWS]:
        outcome = validate_record(record, schema, unparseable, row_number)
        status = "ok" if outcome.is_valid else "invalid: " + ";".join(outcome.errors)
        click.echo(f"  row {row_number}: {json.dumps(record, ensure_ascii=False)} [{status}]")
