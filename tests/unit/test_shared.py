"""Unit tests for crm_import.shared (rejects, counters, run report)."""

from __future__ import annotations

import csv
import json
from pathlib import Path

from crm_import.shared import ImportCounters, NullRejectWriter, RejectWriter, write_run_report


class TestRejectWriter:
    def test_no_file_until_first_reject(self, tmp_path: Path):
        writer = RejectWriter(tmp_path / "rejects" / "contact_rejects.csv")
        writer.close()
        assert not writer.path.exists()
        assert writer.count == 0

    def test_header_and_reason_column(self, tmp_path: Path):
        path = tmp_path / "rejects" / "contact_rejects.csv"
        writer = RejectWriter(path)
        writer.write({"_row_number": 3, "nome": "", "telefone": "912"}, "missing_full_name_or_email")
        writer.write({"_row_number": 5, "nome": "", "telefone": "913"}, "missing_full_name_or_email")
        writer.close()

        with open(path, newline="", encoding="utf-8") as fh:
            rows = list(csv.DictReader(fh))
        assert list(rows[0].keys()) == ["_row_number", "nome", "telefone", "_reject_reason"]
        assert rows[1]["_row_number"] == "5"
        assert rows[1]["_reject_reason"] == "missing_full_name_or_email"
        assert writer.count == 2

    def test_list_values_joined(self, tmp_path: Path):
        path = tmp_path / "r.csv"
        writer = RejectWriter(path)
        writer.write({"images": ["a.jpg", "b.jpg"]}, "missing_title")
        writer.close()
        with open(path, newline="", encoding="utf-8") as fh:
            assert next(csv.DictReader(fh))["images"] == "a.jpg|b.jpg"

    def test_null_writer_counts_only(self):
        writer = NullRejectWriter()
        writer.write({"a": 1}, "x")
        writer.close()
        assert writer.count == 1


class TestWriteRunReport:
    def test_report_contents(self, tmp_path: Path):
        counters = ImportCounters(rows_read=3, rows_valid=2, records_created=1, duplicates_skipped=1)
        path = write_run_report(
            run_id="run-1",
            started_at="2026-01-01T00:00:00+00:00",
            entity_type="contact",
            dry_run=False,
            source_path="contactos.csv",
            schema_version="v1.0.0",
            schema_hash="abc",
            outcome="imported",
            message="1 contact record(s) created",
            counters=counters,
            reports_dir=tmp_path / "reports",
        )
        assert path == tmp_path / "reports" / "run-1.json"
        report = json.loads(path.read_text())
        assert report["outcome"] == "imported"
        assert report["schema_version"] == "v1.0.0"
        assert report["counters"]["rows_read"] == 3
        assert report["counters"]["duplicates_skipped"] == 1
        assert report["finished_at"]

    def test_counters_to_dict_has_every_field(self):
        d = ImportCounters().to_dict()
        assert d["warnings"] == []
        assert set(d) >= {"rows_read", "rows_rejected", "classifier_calls", "records_created"}
