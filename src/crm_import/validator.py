"""crm_import.validator

Pure per-record validation driven by the schema's ``rules`` (errors) and
``warnings`` blocks. Errors block a record; warnings never do.

Error codes:
  missing_<f>            required / positive field absent
  short_<f>              text shorter than rules.min_length
  non_positive_<f>       positive field <= 0
  unparseable_<f>        numeric cell could not be read (blocking field)
  invalid_<f>            enum value outside the field's enum
  malformed_<f>          email_format field does not look like an email
  missing_<a>_or_<b>     none of an any_of group present
  <f>_below_minimum      min_when rule violated
  <f>_above_maximum      max_when rule violated

Warning codes: missing_<f>, short_<f>, few_<f>, unparseable_<f>.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from crm_import.normalize import is_valid_email, normalize_email
from crm_import.projector import CandidateRecord
from crm_import.schema import TargetSchema


@dataclass
class ValidationOutcome:
    record: CandidateRecord
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    row_number: int | None = None

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass
class ValidationSummary:
    total: int = 0
    valid: int = 0
    invalid: int = 0
    error_counts: dict[str, int] = field(default_factory=dict)
    warning_counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "valid": self.valid,
            "invalid": self.invalid,
            "error_counts": self.error_counts,
            "warning_counts": self.warning_counts,
        }


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, tuple)):
        return len(value) > 0
    return True


def _add(codes: list[str], code: str) -> None:
    if code not in codes:
        codes.append(code)


def _conditions_hold(record: CandidateRecord, when: dict[str, Any]) -> bool:
    return all(record.get(k) == v for k, v in (when or {}).items())


def validate_record(
    record: CandidateRecord,
    schema: TargetSchema,
    unparseable: tuple[str, ...] | list[str] = (),
    row_number: int | None = None,
) -> ValidationOutcome:
    rules = schema.rules
    errors: list[str] = []
    warnings: list[str] = []
    unparseable = set(unparseable)
    blocking = set(rules.get("required") or ()) | set(rules.get("positive") or ())

    # -- errors -------------------------------------------------------------
    for name in rules.get("required") or ():
        if name in unparseable:
            _add(errors, f"unparseable_{name}")
        elif not _present(record.get(name)):
            _add(errors, f"missing_{name}")

    for name, min_len in (rules.get("min_length") or {}).items():
        value = record.get(name)
        if _present(value) and len(str(value).strip()) < min_len:
            _add(errors, f"short_{name}")

    for name in rules.get("positive") or ():
        value = record.get(name)
        if name in unparseable:
            _add(errors, f"unparseable_{name}")
        elif not _present(value):
            _add(errors, f"missing_{name}")
        elif isinstance(value, (int, float)) and value <= 0:
            _add(errors, f"non_positive_{name}")

    for name, spec in schema.fields.items():
        if spec.type == "enum" and _present(record.get(name)) and record[name] not in spec.enum:
            _add(errors, f"invalid_{name}")

    for name in rules.get("email_format") or ():
        value = record.get(name)
        if _present(value) and not is_valid_email(normalize_email(str(value))):
            _add(errors, f"malformed_{name}")

    for group in rules.get("any_of") or ():
        if not any(_present(record.get(name)) for name in group):
            _add(errors, "missing_" + "_or_".join(group))

    for rule in rules.get("min_when") or ():
        name = rule["field"]
        value = record.get(name)
        if (
            name not in unparseable
            and isinstance(value, (int, float))
            and _conditions_hold(record, rule.get("when"))
            and value < rule["min"]
        ):
            _add(errors, f"{name}_below_minimum")

    for rule in rules.get("max_when") or ():
        name = rule["field"]
        value = record.get(name)
        if (
            name not in unparseable
            and isinstance(value, (int, float))
            and _conditions_hold(record, rule.get("when"))
            and value > rule["max"]
        ):
            _add(errors, f"{name}_above_maximum")

    # -- warnings -----------------------------------------------------------
    warn = schema.warnings
    for name, min_len in (warn.get("min_length") or {}).items():
        value = record.get(name)
        if not _present(value):
            _add(warnings, f"missing_{name}")
        elif len(str(value).strip()) < min_len:
            _add(warnings, f"short_{name}")

    for name, min_items in (warn.get("min_items") or {}).items():
        value = record.get(name) or []
        if not value:
            _add(warnings, f"missing_{name}")
        elif len(value) < min_items:
            _add(warnings, f"few_{name}")

    for name in warn.get("missing") or ():
        if not _present(record.get(name)):
            _add(warnings, f"missing_{name}")

    for name in sorted(unparseable - blocking):
        _add(warnings, f"unparseable_{name}")

    return ValidationOutcome(
        record=record, errors=errors, warnings=warnings, row_number=row_number
    )


def summarize(outcomes: list[ValidationOutcome]) -> ValidationSummary:
    error_counts: Counter[str] = Counter()
    warning_counts: Counter[str] = Counter()
    valid = 0
    for outcome in outcomes:
        if outcome.is_valid:
            valid += 1
        error_counts.update(outcome.errors)
        warning_counts.update(outcome.warnings)
    return ValidationSummary(
        total=len(outcomes),
        valid=valid,
        invalid=len(outcomes) - valid,
        error_counts=dict(error_counts),
        warning_counts=dict(warning_counts),
    )
