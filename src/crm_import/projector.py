"""crm_import.projector

Apply a ColumnMapping to one source row, coercing cells by target type:

  numeric      -> float via parse_locale_number; unparseable -> 0.0 and the
                  field name is reported back to the caller
  multi_value  -> list[str] split on ',', ';' or '|'
  enum         -> canonical value via the field's value_aliases
  text         -> trimmed string

Blank cells produce no key. When two headers map to the same field the
later header (in header order) wins.
"""

from __future__ import annotations

from typing import Any

from crm_import.mapper import ColumnMapping
from crm_import.normalize import fold_accents, parse_locale_number, split_multi_value, trim
from crm_import.schema import IGNORE, FieldSpec, TargetSchema

CandidateRecord = dict[str, Any]


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple)):
        return not any(str(v).strip() for v in value if v is not None)
    return False


def canonical_enum_value(value: str, spec: FieldSpec) -> str:
    """Map free text onto one of the field's enum values.

    Exact (case-insensitive) enum members pass through. Otherwise the first
    value_aliases rule with a match fragment inside the text wins; with no
    match the field's fallback is used, or the text is kept as is.
    """
    folded = fold_accents(value).lower()
    for member in spec.enum:
        if folded == member.lower():
            return member
    for canonical, fragments in spec.value_aliases:
        if any(fold_accents(f) in folded for f in fragments):
            return canonical
    if spec.fallback is not None:
        return spec.fallback
    return value


def coerce_value(value: Any, spec: FieldSpec) -> tuple[Any, bool]:
    """Coerce one non-blank cell. Returns (value, parsed_ok)."""
    if spec.type == "numeric":
        number = parse_locale_number(value)
        if number is None:
            return 0.0, False
        return number, True
    if spec.type == "multi_value":
        return split_multi_value(value), True
    text = trim(value if isinstance(value, str) else str(value))
    if spec.type == "enum" and text is not None:
        return canonical_enum_value(text, spec), True
    return text, True


def project_row(
    row: dict[str, Any],
    mapping: ColumnMapping,
    schema: TargetSchema,
) -> tuple[CandidateRecord, list[str]]:
    """Build a CandidateRecord from one row.

    Returns (record, unparseable) where unparseable lists the numeric fields
    whose cell could not be read as a number.
    """
    record: CandidateRecord = {}
    unparseable: list[str] = []
    for header, target in mapping.items():
        if target == IGNORE or target not in schema.fields:
            continue
        value = row.get(header)
        if _is_blank(value):
            continue
        coerced, ok = coerce_value(value, schema.fields[target])
        if coerced == []:
            continue
        record[target] = coerced
        if not ok:
            if target not in unparseable:
                unparseable.append(target)
        elif target in unparseable:
            unparseable.remove(target)
    return record, unparseable


def apply_defaults(record: CandidateRecord, schema: TargetSchema) -> CandidateRecord:
    """Return a copy of record with schema defaults filled where absent."""
    out = dict(record)
    for key, value in schema.defaults.items():
        if _is_blank(out.get(key)):
            out[key] = value
    return out
