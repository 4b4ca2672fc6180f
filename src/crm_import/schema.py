"""crm_import.schema

YAML-based target schemas for the tabular import pipeline.

Responsibilities:
  - Load and validate schema files from crm_import/schemas/*.yml
  - Expose the per-entity alias table in declaration order (the mapper's
    first-match tie-break)
  - Expose field types, enums, defaults and validation rules
  - Hash YAML content for run-report traceability

Usage:
    from crm_import.schema import load_builtin_schema

    schema = load_builtin_schema("contact")
    schema.field_names        # ('full_name', 'email', ...)
    schema.fields["phone"].aliases
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SCHEMA_DIR = Path(__file__).parent / "schemas"

VALID_ENTITY_TYPES = frozenset({"contact", "opportunity", "property"})

VALID_FIELD_TYPES = frozenset({"text", "numeric", "multi_value", "enum"})

REQUIRED_YAML_KEYS = frozenset({"entity_type", "version", "fields"})

KNOWN_RULE_KEYS = frozenset({
    "required",
    "min_length",
    "positive",
    "email_format",
    "any_of",
    "min_when",
    "max_when",
})

KNOWN_WARNING_KEYS = frozenset({"min_length", "min_items", "missing"})

IGNORE = "ignore"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SchemaValidationError(ValueError):
    """Raised when a YAML schema file fails validation."""


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FieldSpec:
    """One target field: its type, header aliases and allowed values."""

    name: str
    type: str
    aliases: tuple[str, ...] = ()
    enum: tuple[str, ...] = ()
    value_aliases: tuple[tuple[str, tuple[str, ...]], ...] = ()
    fallback: str | None = None


@dataclass
class TargetSchema:
    """Parsed, validated target schema loaded from a YAML file."""

    entity_type: str
    version: str
    yaml_hash: str
    fields: dict[str, FieldSpec]
    natural_key: str | None = None
    compact_headers: bool = False
    defaults: dict[str, Any] = field(default_factory=dict)
    classify_fields: tuple[str, ...] = ()
    rules: dict[str, Any] = field(default_factory=dict)
    warnings: dict[str, Any] = field(default_factory=dict)
    xml_record_elements: tuple[str, ...] = ()
    xml_identity_fields: tuple[str, ...] = ()
    xml_field_elements: dict[str, tuple[str, ...]] = field(default_factory=dict)
    json_envelopes: tuple[str, ...] = ()
    raw_yaml: str = field(repr=False, default="")

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(self.fields)

    @property
    def numeric_fields(self) -> frozenset[str]:
        return frozenset(n for n, f in self.fields.items() if f.type == "numeric")

    @property
    def multi_value_fields(self) -> frozenset[str]:
        return frozenset(n for n, f in self.fields.items() if f.type == "multi_value")

    @property
    def required_fields(self) -> tuple[str, ...]:
        return tuple(self.rules.get("required") or ())

    def is_target(self, name: str) -> bool:
        return name in self.fields or name == IGNORE


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_builtin_schema(entity_type: str) -> TargetSchema:
    """Load one of the schemas shipped with the package."""
    if entity_type not in VALID_ENTITY_TYPES:
        raise SchemaValidationError(
            f"Unknown entity_type '{entity_type}'. Must be one of {sorted(VALID_ENTITY_TYPES)}."
        )
    return load_schema(SCHEMA_DIR / f"{entity_type}.yml")


def load_schema(yaml_path: Path) -> TargetSchema:
    """Load, validate, and return a TargetSchema from a YAML file.

    Raises:
        SchemaValidationError: If any required key is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_schema_data(data)
    yaml_hash = hashlib.sha256(raw.encode("utf-8")).hexdigest()

    fields: dict[str, FieldSpec] = {}
    for name, spec in data["fields"].items():
        spec = spec or {}
        fields[name] = FieldSpec(
            name=name,
            type=spec.get("type", "text"),
            aliases=tuple(str(a).lower() for a in spec.get("aliases") or ()),
            enum=tuple(str(v) for v in spec.get("enum") or ()),
            value_aliases=tuple(
                (str(rule["value"]), tuple(str(m).lower() for m in rule.get("match") or ()))
                for rule in spec.get("value_aliases") or ()
            ),
            fallback=spec.get("fallback"),
        )

    xml = data.get("xml") or {}
    json_cfg = data.get("json") or {}
    return TargetSchema(
        entity_type=data["entity_type"],
        version=str(data["version"]),
        yaml_hash=yaml_hash,
        fields=fields,
        natural_key=data.get("natural_key"),
        compact_headers=bool(data.get("compact_headers", False)),
        defaults=dict(data.get("defaults") or {}),
        classify_fields=tuple(data.get("classify_fields") or ()),
        rules=dict(data.get("rules") or {}),
        warnings=dict(data.get("warnings") or {}),
        xml_record_elements=tuple(str(e).lower() for e in xml.get("record_elements") or ()),
        xml_identity_fields=tuple(xml.get("identity_fields") or ()),
        xml_field_elements={
            k: tuple(str(e).lower() for e in v)
            for k, v in (xml.get("field_elements") or {}).items()
        },
        json_envelopes=tuple(json_cfg.get("envelopes") or ()),
        raw_yaml=raw,
    )


def validate_schema_data(data: dict[str, Any]) -> None:
    """Raise SchemaValidationError if data does not match the schema format.

    Validates:
      - Required top-level keys present, entity_type allowed
      - fields non-empty, every field type known, enum fields carry an enum
      - value_aliases and fallback values are members of the field's enum
      - rules and warnings entries have the expected shapes
      - natural_key, classify_fields and rule targets name declared fields
    """
    if not isinstance(data, dict):
        raise SchemaValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise SchemaValidationError(f"Missing required YAML keys: {sorted(missing_keys)}")

    entity_type = data.get("entity_type")
    if entity_type not in VALID_ENTITY_TYPES:
        raise SchemaValidationError(
            f"Invalid entity_type '{entity_type}'. Must be one of {sorted(VALID_ENTITY_TYPES)}."
        )

    fields = data.get("fields")
    if not isinstance(fields, dict) or not fields:
        raise SchemaValidationError("'fields' must be a non-empty mapping.")
    if IGNORE in fields:
        raise SchemaValidationError(f"'{IGNORE}' is reserved and cannot be a field name.")

    for name, spec in fields.items():
        if spec is None:
            spec = {}
        if not isinstance(spec, dict):
            raise SchemaValidationError(f"Field '{name}' must be a mapping.")
        ftype = spec.get("type", "text")
        if ftype not in VALID_FIELD_TYPES:
            raise SchemaValidationError(
                f"Field '{name}' has invalid type '{ftype}'. Must be one of {sorted(VALID_FIELD_TYPES)}."
            )
        enum = [str(v) for v in spec.get("enum") or ()]
        if ftype == "enum" and not enum:
            raise SchemaValidationError(f"Enum field '{name}' must declare 'enum' values.")
        for rule in spec.get("value_aliases") or ():
            if not isinstance(rule, dict) or "value" not in rule:
                raise SchemaValidationError(f"Field '{name}' has a value_alias without 'value'.")
            if str(rule["value"]) not in enum:
                raise SchemaValidationError(
                    f"Field '{name}' value_alias '{rule['value']}' is not in its enum."
                )
        fallback = spec.get("fallback")
        if fallback is not None and str(fallback) not in enum:
            raise SchemaValidationError(f"Field '{name}' fallback '{fallback}' is not in its enum.")

    natural_key = data.get("natural_key")
    if natural_key is not None and natural_key not in fields:
        raise SchemaValidationError(f"natural_key '{natural_key}' is not a declared field.")

    for name in data.get("classify_fields") or ():
        if name not in fields:
            raise SchemaValidationError(f"classify_field '{name}' is not a declared field.")

    rules = data.get("rules") or {}
    _check_block_shape(rules, "rules")
    unknown_rules = set(rules) - KNOWN_RULE_KEYS
    if unknown_rules:
        raise SchemaValidationError(f"Unknown rule keys: {sorted(unknown_rules)}")
    for name in _rule_targets(rules):
        if name not in fields:
            raise SchemaValidationError(f"Rule references undeclared field '{name}'.")

    warnings = data.get("warnings") or {}
    _check_block_shape(warnings, "warnings")
    unknown_warnings = set(warnings) - KNOWN_WARNING_KEYS
    if unknown_warnings:
        raise SchemaValidationError(f"Unknown warning keys: {sorted(unknown_warnings)}")
    for name in _rule_targets(warnings):
        if name not in fields:
            raise SchemaValidationError(f"Warning references undeclared field '{name}'.")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_block_shape(block: Any, label: str) -> None:
    """Raise SchemaValidationError unless every entry has the shape the validator reads."""
    if not isinstance(block, dict):
        raise SchemaValidationError(f"'{label}' must be a mapping.")
    for key, value in block.items():
        if value is None:
            continue
        if key in ("required", "positive", "email_format", "missing"):
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise SchemaValidationError(f"{label}.{key} must be a list of field names.")
        elif key in ("min_length", "min_items"):
            if not isinstance(value, dict):
                raise SchemaValidationError(f"{label}.{key} must map field names to numbers.")
            for name, limit in value.items():
                if not _is_number(limit):
                    raise SchemaValidationError(
                        f"{label}.{key} value '{limit}' for '{name}' is not numeric."
                    )
        elif key == "any_of":
            if not isinstance(value, list) or not all(
                isinstance(g, list) and g and all(isinstance(n, str) for n in g) for g in value
            ):
                raise SchemaValidationError(f"{label}.any_of must be a list of field-name lists.")
        elif key in ("min_when", "max_when"):
            bound = "min" if key == "min_when" else "max"
            if not isinstance(value, list):
                raise SchemaValidationError(f"{label}.{key} must be a list of rules.")
            for rule in value:
                if not isinstance(rule, dict) or not isinstance(rule.get("field"), str):
                    raise SchemaValidationError(f"{label}.{key} rule must be a mapping with 'field'.")
                if not isinstance(rule.get("when") or {}, dict):
                    raise SchemaValidationError(f"{label}.{key} 'when' must be a mapping.")
                if not _is_number(rule.get(bound)):
                    raise SchemaValidationError(
                        f"{label}.{key} value '{rule.get(bound)}' for '{rule['field']}' is not numeric."
                    )


def _rule_targets(rules: dict[str, Any]) -> list[str]:
    """Return every field name a rules/warnings block refers to."""
    names: list[str] = []
    for key, value in rules.items():
        if key in ("required", "positive", "email_format", "missing"):
            names.extend(value or ())
        elif key in ("min_length", "min_items"):
            names.extend((value or {}).keys())
        elif key == "any_of":
            for group in value or ():
                names.extend(group)
        elif key in ("min_when", "max_when"):
            for rule in value or ():
                names.append(rule["field"])
                names.extend((rule.get("when") or {}).keys())
    return names
