"""crm_import.parser

Turn uploaded file text into a RawTable (ordered headers + rows).

Supported sources:
  - Delimited text (.csv / .txt / .tsv): delimiter chosen from the first
    non-blank line (';' beats tab beats ','). No quoted-delimiter support:
    a cell containing the delimiter is split.
  - vCard (.vcf): FN / N / EMAIL / TEL / ORG / TITLE / ADR / NOTE mapped
    directly to contact fields.
  - XML (.xml): record elements found by name, field values by child
    element or attribute, driven by the schema's ``xml`` section.
  - JSON (.json): list of objects, ``{"<envelope>": [...]}`` or one object.

vCard, XML and JSON rows are keyed by target field names already, so the
returned table has ``native_fields=True`` and the mapper uses an identity
mapping for them.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from bs4 import BeautifulSoup

from crm_import.normalize import strip_cell, trim
from crm_import.schema import TargetSchema

DELIMITED_EXTENSIONS = frozenset({".csv", ".txt", ".tsv"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SourceFormatError(Exception):
    """Raised when a source file cannot be read as its declared format."""


# ---------------------------------------------------------------------------
# RawTable
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RawTable:
    headers: tuple[str, ...] = ()
    rows: tuple[dict[str, Any], ...] = ()
    native_fields: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.rows


def _table_from_records(records: list[dict[str, Any]]) -> RawTable:
    """Build a native-field RawTable; headers are keys in first-seen order."""
    headers: dict[str, None] = {}
    for rec in records:
        for key in rec:
            headers.setdefault(key, None)
    return RawTable(
        headers=tuple(headers),
        rows=tuple(dict(rec) for rec in records),
        native_fields=True,
    )


# ---------------------------------------------------------------------------
# Delimited text
# ---------------------------------------------------------------------------

def detect_delimiter(first_line: str) -> str:
    if ";" in first_line:
        return ";"
    if "\t" in first_line:
        return "\t"
    return ","


def parse_delimited(text: str) -> RawTable:
    """Parse CSV-like text into a RawTable.

    Missing trailing cells become '' and extra cells are dropped. A header
    that repeats keeps its first position; its row value is the later cell.
    """
    lines = [ln for ln in text.splitlines() if ln.strip()]
    if not lines:
        return RawTable()

    first = lines[0].lstrip("\ufeff")
    delimiter = detect_delimiter(first)
    raw_headers = [strip_cell(h) for h in first.split(delimiter)]
    headers = tuple(dict.fromkeys(raw_headers))

    rows: list[dict[str, Any]] = []
    for line in lines[1:]:
        values = [strip_cell(v) for v in line.split(delimiter)]
        row: dict[str, Any] = {}
        for idx, header in enumerate(raw_headers):
            row[header] = values[idx] if idx < len(values) else ""
        rows.append(row)

    return RawTable(headers=headers, rows=tuple(rows))


# ---------------------------------------------------------------------------
# vCard
# ---------------------------------------------------------------------------

def parse_vcard(text: str) -> RawTable:
    """Parse one or more vCards into contact-field rows.

    The first EMAIL and TEL win. N is only used when FN is absent.
    Cards with neither a name nor an email are dropped.
    """
    contacts: list[dict[str, Any]] = []
    unfolded = re.sub(r"\r?\n[ \t]", "", text)

    for card in re.split(r"END:VCARD", unfolded, flags=re.IGNORECASE):
        if "BEGIN:VCARD" not in card.upper():
            continue
        contact: dict[str, Any] = {}
        for line in card.splitlines():
            line = line.strip()
            if ":" not in line:
                continue
            prop_params, _, value = line.partition(":")
            prop = prop_params.split(";")[0].upper()
            value = value.strip()

            if prop == "FN":
                if value:
                    contact["full_name"] = value
            elif prop == "N":
                parts = value.split(";")
                if "full_name" not in contact and len(parts) >= 2:
                    name = f"{parts[1]} {parts[0]}".strip()
                    if name:
                        contact["full_name"] = name
            elif prop == "EMAIL":
                if value and "email" not in contact:
                    contact["email"] = value
            elif prop == "TEL":
                if value and "phone" not in contact:
                    contact["phone"] = value
            elif prop == "ORG":
                org = value.replace(";", " ").strip()
                if org:
                    contact["company"] = org
            elif prop == "TITLE":
                if value:
                    contact["position"] = value
            elif prop == "ADR":
                # PO Box;Extended;Street;City;Region;Postal;Country
                parts = (value + ";;;;;;").split(";")
                for key, idx in (("address", 2), ("city", 3), ("country", 6)):
                    part = trim(parts[idx])
                    if part:
                        contact[key] = part
            elif prop == "NOTE":
                if value:
                    contact["notes"] = value

        if contact.get("full_name") or contact.get("email"):
            contacts.append(contact)

    return _table_from_records(contacts)


# ---------------------------------------------------------------------------
# XML
# ---------------------------------------------------------------------------

def _element_text(node, names: tuple[str, ...]) -> str | None:
    """Return the first non-blank descendant element text or attribute value."""
    for name in names:
        child = node.find(lambda t: t.name.lower() == name)
        if child is not None:
            v = trim(child.get_text())
            if v:
                return v
    for name in names:
        for attr, attr_value in node.attrs.items():
            if attr.lower() == name:
                v = trim(str(attr_value))
                if v:
                    return v
    return None


def _element_values(node, names: tuple[str, ...]) -> list[str] | str | None:
    """Values for a multi-value field: one item per child element.

    A container (<images><image>a</image>...</images>) yields its children's
    texts; repeated leaf elements (<image>a</image><image>b</image>) yield
    each text. A leaf with no siblings or an attribute falls back to its
    plain text, which the projector splits on separators.
    """
    for name in names:
        matches = node.find_all(lambda t: t.name.lower() == name)
        if not matches:
            continue
        children = matches[0].find_all(True, recursive=False)
        if children:
            items = [trim(c.get_text()) for c in children]
        elif len(matches) > 1:
            items = [trim(m.get_text()) for m in matches]
        else:
            continue
        items = [v for v in items if v]
        if items:
            return items
    return _element_text(node, names)


def parse_xml(text: str, schema: TargetSchema) -> RawTable:
    """Parse XML records using the schema's xml section.

    Record elements are matched by name, case-insensitively. If none are
    found, any element with a direct child named like one of the identity
    fields is treated as a record.

    Raises:
        SourceFormatError: If the text holds no XML element at all.
    """
    soup = BeautifulSoup(text, "xml")
    if soup.find() is None:
        raise SourceFormatError("malformed_xml")

    record_names = set(schema.xml_record_elements)
    nodes = soup.find_all(lambda t: t.name.lower() in record_names)

    if not nodes:
        identity_names = {
            name
            for field in schema.xml_identity_fields
            for name in schema.xml_field_elements.get(field, ())
        }
        nodes = [
            el
            for el in soup.find_all(True)
            if any(
                child.name.lower() in identity_names
                for child in el.find_all(True, recursive=False)
            )
        ]

    records: list[dict[str, Any]] = []
    for node in nodes:
        rec: dict[str, Any] = {}
        for field, names in schema.xml_field_elements.items():
            spec = schema.fields.get(field)
            if spec is not None and spec.type == "multi_value":
                v = _element_values(node, names)
            else:
                v = _element_text(node, names)
            if v is not None:
                rec[field] = v
        if any(rec.get(f) for f in schema.xml_identity_fields):
            records.append(rec)

    return _table_from_records(records)


# ---------------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------------

def parse_json(text: str, envelopes: tuple[str, ...] = ("properties",)) -> RawTable:
    """Parse a JSON array, an enveloped array or a single object.

    Raises:
        SourceFormatError: On invalid JSON or when a record is not an object.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise SourceFormatError(f"invalid_json: {exc}") from exc

    if isinstance(data, dict):
        for key in envelopes:
            if isinstance(data.get(key), list):
                data = data[key]
                break
        else:
            data = [data]

    if not isinstance(data, list):
        raise SourceFormatError("json_root_not_array_or_object")
    for item in data:
        if not isinstance(item, dict):
            raise SourceFormatError("json_record_not_object")

    return _table_from_records(data)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

def load_source(path: Path, schema: TargetSchema) -> RawTable:
    """Read a source file and parse it according to its extension."""
    ext = path.suffix.lower()
    text = path.read_text(encoding="utf-8-sig")

    if ext in DELIMITED_EXTENSIONS:
        return parse_delimited(text)
    if ext == ".vcf" and schema.entity_type == "contact":
        return parse_vcard(text)
    if ext == ".xml":
        return parse_xml(text, schema)
    if ext == ".json":
        return parse_json(text, schema.json_envelopes or ("properties",))
    raise SourceFormatError("unsupported_format")
