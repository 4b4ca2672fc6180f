"""crm_import.shared

Run bookkeeping shared by the pipeline and the CLI: RejectWriter for invalid
rows, ImportCounters, and the JSON run report.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

REPORTS_DIR = Path("./artifacts/reports")


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows.

    The header is taken from the first rejected row plus a trailing
    _reject_reason column. List values are joined with '|'.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    @property
    def path(self) -> Path:
        return self._path

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = {
            k: "|".join(str(x) for x in v) if isinstance(v, (list, tuple)) else v
            for k, v in row.items()
        }
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


class NullRejectWriter:
    """Discards rejects (preview runs, unit tests)."""

    count = 0

    def write(self, row: dict[str, Any], reason: str) -> None:
        self.count += 1

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class ImportCounters:
    rows_read: int = 0
    rows_selected: int = 0
    rows_valid: int = 0
    rows_rejected: int = 0
    rows_with_warnings: int = 0
    unparseable_values: int = 0
    duplicates_skipped: int = 0
    classifier_calls: int = 0
    classifier_failures: int = 0
    fields_classified: int = 0
    tagger_calls: int = 0
    tagger_failures: int = 0
    records_created: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_read": self.rows_read,
            "rows_selected": self.rows_selected,
            "rows_valid": self.rows_valid,
            "rows_rejected": self.rows_rejected,
            "rows_with_warnings": self.rows_with_warnings,
            "unparseable_values": self.unparseable_values,
            "duplicates_skipped": self.duplicates_skipped,
            "classifier_calls": self.classifier_calls,
            "classifier_failures": self.classifier_failures,
            "fields_classified": self.fields_classified,
            "tagger_calls": self.tagger_calls,
            "tagger_failures": self.tagger_failures,
            "records_created": self.records_created,
            "warnings": self.warnings,
        }


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    entity_type: str,
    dry_run: bool,
    source_path: str,
    schema_version: str,
    schema_hash: str,
    outcome: str,
    message: str | None,
    counters: ImportCounters,
    reports_dir: Path = REPORTS_DIR,
) -> Path:
    report = {
        "run_id": run_id,
        "entity_type": entity_type,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        "source_path": source_path,
        "schema_version": schema_version,
        "schema_hash": schema_hash,
        "outcome": outcome,
        "message": message,
        "counters": counters.to_dict(),
    }
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
