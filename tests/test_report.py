"""Tests for prhealth.report -- markdown and JSON report output."""

import json
from datetime import date

from conftest import make_pull, make_result, make_smoke, make_upgrade

from prhealth.report import _md_cell, relative_date, run
from prhealth.store import MemoryStore

REF = date(2025, 3, 10)


class TestRelativeDate:
    def test_today(self):
        assert relative_date("2025-03-10T08:00:00Z", REF) == "today"

    def test_one_day(self):
        assert relative_date("2025-03-09T23:00:00Z", REF) == "1 day ago"

    def test_days(self):
        assert relative_date("2025-03-01", REF) == "9 days ago"

    def test_empty(self):
        assert relative_date("", REF) == ""

    def test_garbage(self):
        assert relative_date("not a date", REF) == ""


class TestMdCell:
    def test_pipe_escaped(self):
        assert _md_cell("a|b") == "a\\|b"

    def test_none(self):
        assert _md_cell(None) == ""


class TestRun:
    def _store(self):
        store = MemoryStore()
        store.upsert_pull(make_pull(3, labels=["type:healthcheckrun"]))
        store.upsert_smoke_test(make_smoke(3, status="FAIL"))
        for n in (1, 2, 3):
            store.upsert_test_result(make_result(n, "test_common", test_file="c.py"))
        store.upsert_upgrade_test(make_upgrade(status="FAIL"))
        return store

    def test_writes_both_files(self, tmp_path):
        md = tmp_path / "report.md"
        js = tmp_path / "report.json"
        assert run(self._store(), str(md), str(js)) == 0

        text = md.read_text()
        assert text.startswith("# PR Health Report")
        assert "## Common Failures" in text
        assert "`test_common`" in text
        assert "| KVM | 1 | 0 | 1 | 1 |" in text

        data = json.loads(js.read_text())
        assert data["common_failure_threshold"] == 2
        assert data["testFailures"]["stats"]["total_failures"] == 3
        assert data["testFailures"]["commonFailures"][0]["pr_count"] == 3
        assert data["smokeTests"]["fail_runs"] == 1
        assert [p["number"] for p in data["healthPRs"]] == [3]
        assert data["upgradeTests"]["failed"] == 1
        assert "## Upgrade Tests" in text

    def test_empty_store(self, tmp_path, caplog):
        md = tmp_path / "report.md"
        js = tmp_path / "report.json"
        assert run(MemoryStore(), str(md), str(js)) == 0
        assert "(none)" in md.read_text()
        assert json.loads(js.read_text())["flakyTests"] == []
        assert "No smoke tests or test results stored yet" in caplog.text
