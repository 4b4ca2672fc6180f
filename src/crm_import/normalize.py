"""Normalization functions for CRM tabular imports.

All functions accept str | None and return the appropriate type or None,
except the coercion helpers, which report failure through their return value
instead of raising.
"""

from __future__ import annotations

import re
import unicodedata

_MULTI_VALUE_SPLIT = re.compile(r"[,;|]")
_HEADER_COMPACT = re.compile(r"[_\s-]")
_CURRENCY_AND_SPACE = re.compile(r"[€\s]")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_email  (natural key for contact-like records)
# ---------------------------------------------------------------------------

def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()


def is_valid_email(email_norm: str | None) -> bool:
    """Return True if the normalized email has the minimal expected shape."""
    if not email_norm:
        return False
    at = email_norm.find("@")
    return at > 0 and at < len(email_norm) - 1 and "." in email_norm[at:]


# ---------------------------------------------------------------------------
# Rule 4: strip_quotes  (delimited cells)
# ---------------------------------------------------------------------------

def strip_cell(value: str) -> str:
    """Trim a delimited cell and drop one leading and one trailing double quote.

    Mirrors the import dialogs: the two quotes are removed independently, so
    '"abc' becomes 'abc'. No CSV escaping is understood.
    """
    v = value.strip()
    if v.startswith('"'):
        v = v[1:]
    if v.endswith('"'):
        v = v[:-1]
    return v


# ---------------------------------------------------------------------------
# Rule 5: header matching keys
# ---------------------------------------------------------------------------

def header_key(header: str, compact: bool = False) -> str:
    """Lowercase a header for alias matching.

    With compact=True, underscores, whitespace and hyphens are removed as well,
    so 'Valor Estimado' and 'valor_estimado' compare equal.
    """
    v = header.lower()
    if compact:
        v = _HEADER_COMPACT.sub("", v)
    return v


def fold_accents(value: str) -> str:
    """Decompose unicode and drop combining marks ('Orçamento' -> 'Orcamento')."""
    v = unicodedata.normalize("NFKD", value)
    return "".join(c for c in v if not unicodedata.combining(c))


# ---------------------------------------------------------------------------
# Rule 6: parse_locale_number
# ---------------------------------------------------------------------------

def parse_locale_number(value: str | float | int | None) -> float | None:
    """Parse a Portuguese-formatted number, returning None on failure.

    '120.000,50' -> 120000.5, '120.000' -> 120000.0, '€ 950' -> 950.0.
    Dots are always read as thousands separators, so '2.5' -> 25.0; this is
    the behavior the spreadsheets exported by portals rely on.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    v = trim(value)
    if v is None:
        return None
    v = _CURRENCY_AND_SPACE.sub("", v)
    v = v.replace(".", "").replace(",", ".")
    try:
        return float(v)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Rule 7: split_multi_value
# ---------------------------------------------------------------------------

def split_multi_value(value: str | list | tuple | None) -> list[str]:
    """Split on ',', ';' or '|', trim each piece and drop empty pieces."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        pieces = [str(p) for p in value if p is not None]
    else:
        pieces = _MULTI_VALUE_SPLIT.split(value)
    return [p.strip() for p in pieces if p.strip()]
