"""crm_import.dedupe

Drop candidates whose natural key (normalized email) already exists in the
store. Records without a key are always kept. Schemas without a natural_key
pass everything through. Repeats inside one source file are not collapsed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from crm_import.normalize import normalize_email
from crm_import.projector import CandidateRecord
from crm_import.schema import TargetSchema


@dataclass
class DedupResult:
    to_create: list[CandidateRecord] = field(default_factory=list)
    duplicate_count: int = 0


def natural_key(record: dict[str, Any], schema: TargetSchema) -> str | None:
    if schema.natural_key is None:
        return None
    value = record.get(schema.natural_key)
    if value is None:
        return None
    return normalize_email(str(value))


def build_natural_key_set(existing: Iterable[dict[str, Any]], schema: TargetSchema) -> frozenset[str]:
    keys = (natural_key(rec, schema) for rec in existing)
    return frozenset(k for k in keys if k)


def dedupe(
    records: list[CandidateRecord],
    key_set: frozenset[str],
    schema: TargetSchema,
) -> DedupResult:
    result = DedupResult()
    for record in records:
        key = natural_key(record, schema)
        if key and key in key_set:
            result.duplicate_count += 1
            continue
        result.to_create.append(record)
    return result
