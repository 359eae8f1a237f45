"""Tests for prhealth.store -- in-memory store and natural-key upserts."""

from unittest.mock import patch

from conftest import make_approval, make_pull, make_result, make_smoke, make_upgrade

from prhealth.models import CoverageFact
from prhealth.store import MemoryStore, ResultStore, open_store


# ---------------------------------------------------------------------------
# Test results
# ---------------------------------------------------------------------------

class TestUpsertTestResult:
    def test_new_record(self):
        store = MemoryStore()
        assert store.upsert_test_result(make_result(1, "test_a")) is True
        assert len(store.list_test_results()) == 1

    def test_same_key_not_duplicated(self):
        store = MemoryStore()
        store.upsert_test_result(make_result(1, "test_a", result="Error", time_seconds=1.0))
        again = make_result(1, "test_a", result="Failure", time_seconds=2.0, test_file="new.py")
        assert store.upsert_test_result(again) is False

        [stored] = store.list_test_results()
        assert stored.result == "Failure"
        assert stored.time_seconds == 2.0
        assert stored.test_file == ""

    def test_different_platform_is_new(self):
        store = MemoryStore()
        store.upsert_test_result(make_result(1, "test_a", hypervisor="KVM"))
        assert store.upsert_test_result(make_result(1, "test_a", hypervisor="VMWARE"))

    def test_filters(self):
        store = MemoryStore()
        store.upsert_test_result(make_result(1, "test_a"))
        store.upsert_test_result(make_result(2, "test_a"))
        store.upsert_test_result(make_result(2, "test_b"))
        assert len(store.list_test_results(test_name="test_a")) == 2
        assert len(store.list_test_results(pr_number=2)) == 2
        assert len(store.list_test_results(test_name="test_b", pr_number=2)) == 1

    def test_count_other_prs(self):
        store = MemoryStore()
        for n in (1, 2, 3):
            store.upsert_test_result(make_result(n, "test_a"))
        assert store.count_other_prs("test_a", 3) == 2

    def test_remove_duplicates_is_noop(self):
        assert MemoryStore().remove_duplicate_results() == 0


# ---------------------------------------------------------------------------
# Pulls, approvals, coverage, smoke tests
# ---------------------------------------------------------------------------

class TestPulls:
    def test_list_newest_first_with_filters(self):
        store = MemoryStore()
        store.upsert_pull(make_pull(1))
        store.upsert_pull(make_pull(3, labels=["type:healthcheckrun"]))
        store.upsert_pull(make_pull(2, state="closed"))
        assert [p.number for p in store.list_pulls()] == [3, 2, 1]
        assert [p.number for p in store.list_pulls(state="open")] == [3, 1]
        assert [p.number for p in store.list_pulls(label="type:healthcheckrun")] == [3]

    def test_set_state(self):
        store = MemoryStore()
        store.upsert_pull(make_pull(1))
        store.set_pull_state(1, "closed", "2025-03-01T00:00:00Z")
        pull = store.get_pull(1)
        assert pull.state == "closed"
        assert pull.last_checked == "2025-03-01T00:00:00Z"

    def test_set_state_unknown_pr_ignored(self):
        store = MemoryStore()
        store.set_pull_state(99, "closed")
        assert store.get_pull(99) is None


class TestApprovals:
    def test_keyed_by_pr_and_login(self):
        store = MemoryStore()
        store.upsert_approval(make_approval(1, "alice", "COMMENTED"))
        store.upsert_approval(make_approval(1, "alice", "APPROVED"))
        store.upsert_approval(make_approval(1, "bob"))
        store.upsert_approval(make_approval(2, "alice"))
        states = {a.approver_login: a.state for a in store.list_approvals(1)}
        assert states == {"alice": "APPROVED", "bob": "APPROVED"}


class TestCoverage:
    def test_set_and_clear(self):
        store = MemoryStore()
        store.set_coverage(1, CoverageFact(percentage=80.0, change=1.0, url="u"))
        assert store.get_coverage(1).percentage == 80.0
        store.set_coverage(1, None)
        assert store.get_coverage(1) is None


class TestSmokeTests:
    def test_keyed_by_run(self):
        store = MemoryStore()
        store.upsert_smoke_test(make_smoke(1, status="FAIL"))
        store.upsert_smoke_test(make_smoke(1, status="OK"))
        store.upsert_smoke_test(make_smoke(1, created_at="2025-03-02T10:00:00Z"))
        store.upsert_smoke_test(make_smoke(2))
        assert len(store.list_smoke_tests(1)) == 2
        assert len(store.list_smoke_tests()) == 3


# ---------------------------------------------------------------------------
# open_store
# ---------------------------------------------------------------------------

class TestOpenStore:
    def test_memory_without_dsn(self, caplog):
        store = open_store("")
        assert isinstance(store, MemoryStore)
        assert isinstance(store, ResultStore)
        assert "in memory" in caplog.text

    def test_postgres_with_dsn(self):
        with patch("prhealth.postgres.PostgresStore") as mock_cls:
            store = open_store("postgresql://localhost/prhealth")
        mock_cls.assert_called_once_with("postgresql://localhost/prhealth")
        assert store is mock_cls.return_value


# ---------------------------------------------------------------------------
# Upgrade tests
# ---------------------------------------------------------------------------

class TestUpgradeTests:
    def _store(self):
        store = MemoryStore()
        store.upsert_upgrade_test(make_upgrade("2025-03-01T10:00:00Z"))
        store.upsert_upgrade_test(make_upgrade("2025-03-03T10:00:00Z", distro="ubuntu22",
                                               status="FAIL"))
        store.upsert_upgrade_test(make_upgrade("2025-03-02T10:00:00Z", start="4.18.2.0",
                                               hypervisor="VMWARE", status=None))
        return store

    def test_newest_first(self):
        results = self._store().list_upgrade_tests()
        assert [r.timestamp_start[:10] for r in results] == [
            "2025-03-03", "2025-03-02", "2025-03-01",
        ]

    def test_filters(self):
        store = self._store()
        assert len(store.list_upgrade_tests(from_version="4.19.1.0")) == 2
        assert len(store.list_upgrade_tests(to_version="4.20.0.0", distro="ol8")) == 2
        assert [r.hypervisor for r in store.list_upgrade_tests(hypervisor="VMWARE")] == ["VMWARE"]
        assert [r.overall_status for r in store.list_upgrade_tests(status="FAIL")] == ["FAIL"]

    def test_limit(self):
        assert len(self._store().list_upgrade_tests(limit=1)) == 1

    def test_same_run_updated_in_place(self):
        store = MemoryStore()
        store.upsert_upgrade_test(make_upgrade(status=None))
        store.upsert_upgrade_test(make_upgrade(status="PASS", duration_seconds=3600))
        [result] = store.list_upgrade_tests()
        assert result.overall_status == "PASS"
        assert result.duration_seconds == 3600
