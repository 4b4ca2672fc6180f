"""crm_import.store

Record store adapters behind the import pipeline.

Contract (RecordStore):
  list_records(entity_type)              -> list[dict]   every stored record
  filter_records(entity_type, **crit)    -> list[dict]   exact-match on fields
  create_many(entity_type, records)      -> list[dict]   all-or-nothing insert

Returned dicts carry the stored fields plus an 'id'.

PostgresRecordStore keeps records in the crm_record table (one jsonb payload
per record). create_many runs in the connection's transaction and commits
on success, or rolls back on failure and in dry-run mode.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

import psycopg

from crm_import.normalize import normalize_email

log = logging.getLogger(__name__)

SOURCE_SYSTEM = "crm_import"


class StoreError(Exception):
    """Raised when the backing store rejects a read or a batch write."""


class RecordStore(Protocol):
    def list_records(self, entity_type: str) -> list[dict[str, Any]]:
        ...

    def filter_records(self, entity_type: str, **criteria: Any) -> list[dict[str, Any]]:
        ...

    def create_many(self, entity_type: str, records: list[dict[str, Any]]) -> list[dict[str, Any]]:
        ...


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

def _row_to_record(row: tuple) -> dict[str, Any]:
    record_id, payload = row
    return {"id": str(record_id), **(payload or {})}


@dataclass
class PostgresRecordStore:
    conn: psycopg.Connection
    run_id: str | None = None
    natural_key_field: str | None = None
    dry_run: bool = False
    source_system: str = SOURCE_SYSTEM

    def list_records(self, entity_type: str) -> list[dict[str, Any]]:
        try:
            rows = self.conn.execute(
                """
                SELECT id, payload FROM crm_record
                WHERE entity_type = %s
                ORDER BY created_at ASC, id ASC
                """,
                (entity_type,),
            ).fetchall()
        except psycopg.Error as exc:
            self.conn.rollback()
            raise StoreError(str(exc)) from exc
        return [_row_to_record(r) for r in rows]

    def filter_records(self, entity_type: str, **criteria: Any) -> list[dict[str, Any]]:
        try:
            rows = self.conn.execute(
                """
                SELECT id, payload FROM crm_record
                WHERE entity_type = %s AND payload @> %s::jsonb
                ORDER BY created_at ASC, id ASC
                """,
                (entity_type, json.dumps(criteria, ensure_ascii=False, default=str)),
            ).fetchall()
        except psycopg.Error as exc:
            self.conn.rollback()
            raise StoreError(str(exc)) from exc
        return [_row_to_record(r) for r in rows]

    def create_many(self, entity_type: str, records: list[dict[str, Any]]) -> list[dict[str, Any]]:
        created: list[dict[str, Any]] = []
        try:
            for record in records:
                key = None
                if self.natural_key_field and record.get(self.natural_key_field):
                    key = normalize_email(str(record[self.natural_key_field]))
                row = self.conn.execute(
                    """
                    INSERT INTO crm_record
                      (entity_type, natural_key, payload, source_system, run_id)
                    VALUES (%s, %s, %s::jsonb, %s, %s)
                    RETURNING id
                    """,
                    (entity_type, key,
                     json.dumps(record, ensure_ascii=False, default=str),
                     self.source_system, self.run_id),
                ).fetchone()
                created.append({"id": str(row[0]), **record})
        except psycopg.Error as exc:
            self.conn.rollback()
            log.error("create_many(%s) rolled back after %d rows: %s", entity_type, len(created), exc)
            raise StoreError(str(exc)) from exc

        if self.dry_run:
            self.conn.rollback()
            log.info("[dry-run] %d %s record(s) rolled back", len(created), entity_type)
        else:
            self.conn.commit()
        return created


# ---------------------------------------------------------------------------
# In-memory (tests, --preview)
# ---------------------------------------------------------------------------

@dataclass
class InMemoryRecordStore:
    records: dict[str, list[dict[str, Any]]] = field(default_factory=dict)

    def list_records(self, entity_type: str) -> list[dict[str, Any]]:
        return [dict(r) for r in self.records.get(entity_type, [])]

    def filter_records(self, entity_type: str, **criteria: Any) -> list[dict[str, Any]]:
        return [
            dict(r)
            for r in self.records.get(entity_type, [])
            if all(r.get(k) == v for k, v in criteria.items())
        ]

    def create_many(self, entity_type: str, records: list[dict[str, Any]]) -> list[dict[str, Any]]:
        created = [{"id": str(uuid.uuid4()), **r} for r in records]
        self.records.setdefault(entity_type, []).extend(created)
        return [dict(r) for r in created]
