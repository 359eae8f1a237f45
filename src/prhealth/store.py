"""Storage contract for scraped PR facts.

Every write is an idempotent upsert on a natural key, so repeated or
overlapping scraper runs never duplicate data:

- pulls:          number
- approvals:      (pr_number, approver_login)
- coverage:       pr_number (latest write wins, None clears it)
- smoke tests:    (pr_number, hypervisor, version, created_at)
- test results:   (pr_number, test_name, hypervisor, hypervisor_version,
                   test_date); only result/time_seconds change on re-write
- upgrade tests:  (timestamp_start, management_server_os, hypervisor,
                   hypervisor_version, upgrade_start_version,
                   upgrade_target_version)
"""

import logging
from typing import Protocol, runtime_checkable

from prhealth.failures import count_other_prs
from prhealth.models import (
    ApprovalRecord,
    CoverageFact,
    PullRecord,
    StoredSmokeTest,
    TestFailureRecord,
    UpgradeTestResult,
)

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Storage backend failure (connection, query, schema)."""


@runtime_checkable
class ResultStore(Protocol):
    def upsert_pull(self, pull: PullRecord) -> None: ...

    def get_pull(self, number: int) -> PullRecord | None: ...

    def list_pulls(
        self, state: str | None = None, label: str | None = None,
    ) -> list[PullRecord]: ...

    def set_pull_state(self, number: int, state: str, checked_at: str = "") -> None: ...

    def upsert_approval(self, approval: ApprovalRecord) -> None: ...

    def list_approvals(self, pr_number: int) -> list[ApprovalRecord]: ...

    def set_coverage(self, pr_number: int, fact: CoverageFact | None) -> None: ...

    def get_coverage(self, pr_number: int) -> CoverageFact | None: ...

    def upsert_smoke_test(self, smoke: StoredSmokeTest) -> None: ...

    def list_smoke_tests(self, pr_number: int | None = None) -> list[StoredSmokeTest]: ...

    def upsert_test_result(self, record: TestFailureRecord) -> bool:
        """Insert or correct a test result. Returns True when it was new."""
        ...

    def list_test_results(
        self, test_name: str | None = None, pr_number: int | None = None,
    ) -> list[TestFailureRecord]: ...

    def count_other_prs(self, test_name: str, pr_number: int) -> int: ...

    def remove_duplicate_results(self) -> int: ...

    def upsert_upgrade_test(self, result: UpgradeTestResult) -> None: ...

    def list_upgrade_tests(
        self,
        from_version: str | None = None,
        to_version: str | None = None,
        distro: str | None = None,
        hypervisor: str | None = None,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[UpgradeTestResult]:
        """Newest first by timestamp_start; None filters match anything."""
        ...

    def close(self) -> None: ...


class MemoryStore:
    """In-process ResultStore. Nothing survives the process."""

    def __init__(self) -> None:
        self._pulls: dict[int, PullRecord] = {}
        self._approvals: dict[tuple, ApprovalRecord] = {}
        self._coverage: dict[int, CoverageFact] = {}
        self._smoke_tests: dict[tuple, StoredSmokeTest] = {}
        self._results: dict[tuple, TestFailureRecord] = {}
        self._upgrades: dict[tuple, UpgradeTestResult] = {}

    # -- pulls ---------------------------------------------------------------

    def upsert_pull(self, pull: PullRecord) -> None:
        self._pulls[pull.number] = pull

    def get_pull(self, number: int) -> PullRecord | None:
        return self._pulls.get(number)

    def list_pulls(self, state=None, label=None) -> list[PullRecord]:
        pulls = [
            p for p in self._pulls.values()
            if (state is None or p.state == state)
            and (label is None or label in p.labels)
        ]
        return sorted(pulls, key=lambda p: p.number, reverse=True)

    def set_pull_state(self, number: int, state: str, checked_at: str = "") -> None:
        pull = self._pulls.get(number)
        if pull is None:
            logger.debug("PR #%s not stored, state update ignored", number)
            return
        pull.state = state
        if checked_at:
            pull.last_checked = checked_at

    # -- approvals -----------------------------------------------------------

    def upsert_approval(self, approval: ApprovalRecord) -> None:
        self._approvals[(approval.pr_number, approval.approver_login)] = approval

    def list_approvals(self, pr_number: int) -> list[ApprovalRecord]:
        return [a for a in self._approvals.values() if a.pr_number == pr_number]

    # -- coverage ------------------------------------------------------------

    def set_coverage(self, pr_number: int, fact: CoverageFact | None) -> None:
        if fact is None:
            self._coverage.pop(pr_number, None)
        else:
            self._coverage[pr_number] = fact

    def get_coverage(self, pr_number: int) -> CoverageFact | None:
        return self._coverage.get(pr_number)

    # -- smoke tests ---------------------------------------------------------

    def upsert_smoke_test(self, smoke: StoredSmokeTest) -> None:
        self._smoke_tests[smoke.key()] = smoke

    def list_smoke_tests(self, pr_number: int | None = None) -> list[StoredSmokeTest]:
        return [
            s for s in self._smoke_tests.values()
            if pr_number is None or s.pr_number == pr_number
        ]

    # -- test results --------------------------------------------------------

    def upsert_test_result(self, record: TestFailureRecord) -> bool:
        existing = self._results.get(record.key())
        if existing is not None:
            existing.result = record.result
            existing.time_seconds = record.time_seconds
            return False
        self._results[record.key()] = record
        return True

    def list_test_results(self, test_name=None, pr_number=None) -> list[TestFailureRecord]:
        return [
            r for r in self._results.values()
            if (test_name is None or r.test_name == test_name)
            and (pr_number is None or r.pr_number == pr_number)
        ]

    def count_other_prs(self, test_name: str, pr_number: int) -> int:
        return count_other_prs(self._results.values(), test_name, pr_number)

    def remove_duplicate_results(self) -> int:
        # keyed by the natural key, duplicates cannot exist
        return 0

    # -- upgrade tests -------------------------------------------------------

    def upsert_upgrade_test(self, result: UpgradeTestResult) -> None:
        self._upgrades[result.key()] = result

    def list_upgrade_tests(self, from_version=None, to_version=None, distro=None,
                           hypervisor=None, status=None, limit=None) -> list[UpgradeTestResult]:
        wanted = {
            "upgrade_start_version": from_version,
            "upgrade_target_version": to_version,
            "management_server_os": distro,
            "hypervisor": hypervisor,
            "overall_status": status,
        }
        results = [
            r for r in self._upgrades.values()
            if all(v is None or getattr(r, k) == v for k, v in wanted.items())
        ]
        results.sort(key=lambda r: r.timestamp_start, reverse=True)
        return results if limit is None else results[:limit]

    def close(self) -> None:
        pass


def open_store(dsn: str | None) -> ResultStore:
    """Open PostgreSQL when a DSN is given, else an in-memory store."""
    if dsn:
        from prhealth.postgres import PostgresStore
        return PostgresStore(dsn)
    logger.warning("No database DSN configured -- results are kept in memory only")
    return MemoryStore()
