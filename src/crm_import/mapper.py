"""crm_import.mapper

Header -> target field mapping.

Auto-mapping walks the schema's fields in declaration order and picks the
first field with an alias that occurs as a substring of the lower-cased
header. Headers with no match map to 'ignore'. User edits go through
remap(), which never mutates its input.
"""

from __future__ import annotations

from crm_import.normalize import header_key
from crm_import.schema import IGNORE, TargetSchema

ColumnMapping = dict[str, str]


class MappingError(ValueError):
    """Raised on an edit naming an unknown header or target field."""


def match_header(header: str, schema: TargetSchema) -> str:
    """Return the target field for one header, or 'ignore'."""
    compact = schema.compact_headers
    key = header_key(header, compact=compact)
    for name, spec in schema.fields.items():
        for alias in spec.aliases:
            if header_key(alias, compact=compact) in key:
                return name
    return IGNORE


def auto_map_columns(headers: tuple[str, ...] | list[str], schema: TargetSchema) -> ColumnMapping:
    return {h: match_header(h, schema) for h in headers}


def identity_mapping(headers: tuple[str, ...] | list[str], schema: TargetSchema) -> ColumnMapping:
    """Mapping for sources whose headers are already field names."""
    return {h: (h if h in schema.fields else IGNORE) for h in headers}


def remap(mapping: ColumnMapping, header: str, target: str, schema: TargetSchema) -> ColumnMapping:
    """Return a copy of mapping with header pointed at target.

    Raises:
        MappingError: If header is not in the mapping or target is neither
            a schema field nor 'ignore'.
    """
    if header not in mapping:
        raise MappingError(f"unknown_header: {header!r}")
    if not schema.is_target(target):
        raise MappingError(f"unknown_target_field: {target!r}")
    updated = dict(mapping)
    updated[header] = target
    return updated


def mapped_fields(mapping: ColumnMapping) -> list[str]:
    """Target fields in use, in header order, without repeats."""
    return list(dict.fromkeys(t for t in mapping.values() if t != IGNORE))
