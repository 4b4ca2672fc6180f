"""crm_import.enrichment

Optional AI enrichment of projected records.

A Classifier looks at one CandidateRecord and returns a Suggestion of field
values. The pipeline only ever copies suggested values into fields that are
still empty, so a NullClassifier (no suggestions at all) is always a valid
choice and is the default.

LLM-backed implementations call a JSON-over-HTTP endpoint that accepts
``{"prompt": ..., "response_json_schema": ...}`` and answers with an object
matching the schema. Every failure becomes Suggestion(error=...); nothing
raised by the endpoint stops an import.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests

from crm_import.normalize import fold_accents, normalize_space
from crm_import.projector import CandidateRecord
from crm_import.schema import TargetSchema

log = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8
DEFAULT_TIMEOUT = 60


# ---------------------------------------------------------------------------
# Exceptions + result types
# ---------------------------------------------------------------------------

class LlmError(Exception):
    """Transport, HTTP or payload failure talking to the LLM endpoint."""


@dataclass(frozen=True)
class Suggestion:
    values: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass
class EnrichmentResult:
    records: list[CandidateRecord]
    calls: int = 0
    fields_filled: int = 0
    failures: int = 0


# ---------------------------------------------------------------------------
# Classifier protocol + implementations
# ---------------------------------------------------------------------------

class Classifier(Protocol):
    def classify(self, record: CandidateRecord) -> Suggestion:
        """Return suggested field values for record."""
        ...


@dataclass
class NullClassifier:
    """Never suggests anything."""

    def classify(self, record: CandidateRecord) -> Suggestion:
        return Suggestion()


@dataclass
class LlmClient:
    """Thin requests wrapper around the JSON LLM endpoint."""

    endpoint: str
    api_key: str | None = None
    timeout: int = DEFAULT_TIMEOUT
    session: requests.Session = field(default_factory=requests.Session)

    def invoke(self, prompt: str, response_schema: dict[str, Any]) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            resp = self.session.post(
                self.endpoint,
                json={"prompt": prompt, "response_json_schema": response_schema},
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise LlmError(f"llm_transport_error: {exc}") from exc

        if resp.status_code >= 400:
            raise LlmError(f"llm_http_{resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise LlmError("llm_invalid_json") from exc
        if not isinstance(data, dict):
            raise LlmError("llm_response_not_object")
        return data


def _fmt_number(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value or 0)


def _enum_members(schema: TargetSchema, name: str) -> list[str]:
    spec = schema.fields.get(name)
    return list(spec.enum) if spec else []


@dataclass
class LlmPropertyClassifier:
    """Suggest property_type / listing_type from title, description and price."""

    client: LlmClient
    schema: TargetSchema

    def build_prompt(self, record: CandidateRecord) -> str:
        return (
            "Classify this real-estate listing.\n\n"
            f"TITLE: \"{record.get('title') or ''}\"\n"
            f"DESCRIPTION: {record.get('description') or 'No description'}\n"
            f"PRICE: €{_fmt_number(record.get('price'))}\n\n"
            "property_type is the nature of the property "
            "(apartment, house, land, building, farm, store, warehouse, office).\n"
            "listing_type is sale or rent; sale prices are typically above €50.000, "
            "monthly rents below €5.000.\n"
            "Use the title, description and price together."
        )

    def response_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "property_type": {
                    "type": "string",
                    "enum": _enum_members(self.schema, "property_type"),
                },
                "listing_type": {
                    "type": "string",
                    "enum": _enum_members(self.schema, "listing_type"),
                },
            },
        }

    def classify(self, record: CandidateRecord) -> Suggestion:
        try:
            result = self.client.invoke(self.build_prompt(record), self.response_schema())
        except LlmError as exc:
            log.warning("property classification failed for %r: %s", record.get("title"), exc)
            return Suggestion(error=str(exc))
        values = {k: result[k] for k in ("property_type", "listing_type") if result.get(k)}
        return Suggestion(values=values)


@dataclass
class LlmTagGenerator:
    """Suggest 5-8 lower-case search tags for a property."""

    client: LlmClient

    def build_prompt(self, record: CandidateRecord) -> str:
        lines = [
            "Generate search tags for this real-estate listing.",
            "",
            f"Title: {record.get('title') or ''}",
            f"Type: {record.get('property_type') or ''}",
            f"Location: {record.get('city') or ''}, {record.get('state') or ''}",
            f"Price: €{_fmt_number(record.get('price'))}",
        ]
        if record.get("bedrooms"):
            lines.append(f"Bedrooms: {_fmt_number(record['bedrooms'])}")
        if record.get("square_feet"):
            lines.append(f"Area: {_fmt_number(record['square_feet'])}m²")
        if record.get("year_built"):
            lines.append(f"Year: {_fmt_number(record['year_built'])}")
        lines.append(f"Description: {record.get('description') or 'No description'}")
        lines.append(f"Amenities: {', '.join(record.get('amenities') or []) or 'None'}")
        lines += [
            "",
            "Return 5 to 8 tags covering location, style, target buyer and",
            "differentiators. Portuguese, lower case, no accents.",
        ]
        return "\n".join(lines)

    def response_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {"tags": {"type": "array", "items": {"type": "string"}}},
        }

    def classify(self, record: CandidateRecord) -> Suggestion:
        try:
            result = self.client.invoke(self.build_prompt(record), self.response_schema())
        except LlmError as exc:
            log.warning("tag generation failed for %r: %s", record.get("title"), exc)
            return Suggestion(error=str(exc))
        tags = result.get("tags")
        if not isinstance(tags, list):
            return Suggestion()
        return Suggestion(values={"tags": tags})


# ---------------------------------------------------------------------------
# Merging suggestions
# ---------------------------------------------------------------------------

def _clean_tags(tags: list[Any]) -> list[str]:
    out: list[str] = []
    for tag in tags:
        v = normalize_space(fold_accents(str(tag)).lower()) if tag is not None else None
        if v and v not in out:
            out.append(v)
    return out


def fill_missing(
    record: CandidateRecord,
    suggestion: Suggestion,
    fields: tuple[str, ...] | list[str],
    schema: TargetSchema,
) -> tuple[CandidateRecord, int]:
    """Copy suggested values into absent fields only.

    Enum fields accept only members of their enum; multi-value fields accept
    a list. Returns (new record, number of fields filled).
    """
    out = dict(record)
    filled = 0
    for name in fields:
        if out.get(name) or name not in suggestion.values:
            continue
        spec = schema.fields.get(name)
        if spec is None:
            continue
        value = suggestion.values[name]
        if spec.type == "enum":
            if value not in spec.enum:
                continue
        elif spec.type == "multi_value":
            if not isinstance(value, list):
                continue
            value = _clean_tags(value)
            if not value:
                continue
        out[name] = value
        filled += 1
    return out, filled


def _safe_classify(classifier: Classifier, record: CandidateRecord) -> Suggestion:
    try:
        return classifier.classify(record)
    except Exception as exc:
        log.warning("classifier raised %s: %s", type(exc).__name__, exc)
        return Suggestion(error=f"{type(exc).__name__}: {exc}")


def enrich_records(
    records: list[CandidateRecord],
    classifier: Classifier,
    fields: tuple[str, ...] | list[str],
    schema: TargetSchema,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> EnrichmentResult:
    """Ask the classifier about every record missing any of fields.

    Calls run concurrently on a thread pool of at most max_workers; the
    returned records keep input order.
    """
    pending = [i for i, rec in enumerate(records) if any(not rec.get(f) for f in fields)]
    result = EnrichmentResult(records=list(records))
    if not pending or isinstance(classifier, NullClassifier):
        return result

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        suggestions = list(
            executor.map(lambda i: _safe_classify(classifier, records[i]), pending)
        )

    for idx, suggestion in zip(pending, suggestions):
        result.calls += 1
        if suggestion.error is not None:
            result.failures += 1
            continue
        result.records[idx], filled = fill_missing(records[idx], suggestion, fields, schema)
        result.fields_filled += filled

    log.debug(
        "enrichment: %d calls, %d fields filled, %d failures",
        result.calls, result.fields_filled, result.failures,
    )
    return result
