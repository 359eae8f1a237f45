"""PostgreSQL implementation of the ResultStore contract.

The natural keys of every table are declared as constraints in the schema
so idempotent upserts are enforced by the database itself (``NULLS NOT
DISTINCT`` needs PostgreSQL 15+). Timestamps are kept as ISO-8601 UTC text,
the same form the GitHub layer produces.
"""

import logging

import psycopg
from psycopg.rows import dict_row

from prhealth.models import (
    ApprovalRecord,
    CoverageFact,
    PullRecord,
    SmokeTestFact,
    StoredSmokeTest,
    TestFailureRecord,
    UpgradeTestResult,
)
from prhealth.store import StoreError

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS pr_states (
    pr_number     INTEGER PRIMARY KEY,
    pr_title      TEXT NOT NULL DEFAULT '',
    pr_state      TEXT NOT NULL DEFAULT 'open',
    merged        BOOLEAN NOT NULL DEFAULT FALSE,
    labels        TEXT[] NOT NULL DEFAULT '{}',
    assignees     TEXT[] NOT NULL DEFAULT '{}',
    created_at    TEXT NOT NULL DEFAULT '',
    updated_at    TEXT NOT NULL DEFAULT '',
    last_checked  TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS pr_approvals (
    pr_number       INTEGER NOT NULL,
    approver_login  TEXT NOT NULL,
    approval_state  TEXT NOT NULL,
    submitted_at    TEXT NOT NULL DEFAULT '',
    CONSTRAINT pr_approvals_natural_key PRIMARY KEY (pr_number, approver_login)
);

CREATE TABLE IF NOT EXISTS pr_coverage (
    pr_number   INTEGER PRIMARY KEY,
    percentage  DOUBLE PRECISION NOT NULL,
    change      DOUBLE PRECISION NOT NULL DEFAULT 0,
    url         TEXT NOT NULL,
    created_at  TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS smoke_tests (
    id            BIGSERIAL PRIMARY KEY,
    pr_number     INTEGER NOT NULL,
    hypervisor    TEXT NOT NULL,
    version       TEXT,
    passed        INTEGER NOT NULL,
    total         INTEGER NOT NULL,
    status        TEXT NOT NULL,
    errors        INTEGER,
    skipped       INTEGER,
    failed_tests  TEXT[] NOT NULL DEFAULT '{}',
    logs_url      TEXT,
    created_at    TEXT NOT NULL DEFAULT '',
    comment       TEXT NOT NULL DEFAULT '',
    CONSTRAINT smoke_tests_natural_key UNIQUE NULLS NOT DISTINCT
        (pr_number, hypervisor, version, created_at),
    CONSTRAINT smoke_tests_counts CHECK (passed >= 0 AND passed <= total)
);

CREATE TABLE IF NOT EXISTS test_results (
    id                  BIGSERIAL PRIMARY KEY,
    pr_number           INTEGER NOT NULL,
    test_name           TEXT NOT NULL,
    test_file           TEXT NOT NULL DEFAULT '',
    result              TEXT NOT NULL,
    time_seconds        DOUBLE PRECISION,
    hypervisor          TEXT,
    hypervisor_version  TEXT,
    test_date           TEXT NOT NULL DEFAULT '',
    logs_url            TEXT,
    CONSTRAINT test_results_natural_key UNIQUE NULLS NOT DISTINCT
        (pr_number, test_name, hypervisor, hypervisor_version, test_date)
);

CREATE INDEX IF NOT EXISTS test_results_test_name_idx ON test_results (test_name);

CREATE TABLE IF NOT EXISTS upgrade_test_results (
    id                       BIGSERIAL PRIMARY KEY,
    timestamp_start          TEXT NOT NULL,
    timestamp_end            TEXT,
    duration_seconds         INTEGER,
    jenkins_build_number     INTEGER,
    management_server_os     TEXT,
    hypervisor               TEXT,
    hypervisor_version       TEXT,
    infrastructure_provider  TEXT,
    upgrade_start_version    TEXT,
    upgrade_target_version   TEXT,
    overall_status           TEXT CHECK (overall_status IN ('PASS', 'FAIL', 'ERROR', 'SKIPPED')),
    failure_stage            TEXT,
    error_log                TEXT,
    upgrade_matrix_url       TEXT,
    upgraded_env_url         TEXT,
    comments                 TEXT,
    CONSTRAINT upgrade_test_results_natural_key UNIQUE NULLS NOT DISTINCT
        (timestamp_start, management_server_os, hypervisor, hypervisor_version,
         upgrade_start_version, upgrade_target_version)
);
"""

UPSERT_PULL = """
INSERT INTO pr_states (pr_number, pr_title, pr_state, merged, labels,
                       assignees, created_at, updated_at, last_checked)
VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
ON CONFLICT (pr_number) DO UPDATE SET
    pr_title = EXCLUDED.pr_title,
    pr_state = EXCLUDED.pr_state,
    merged = EXCLUDED.merged,
    labels = EXCLUDED.labels,
    assignees = EXCLUDED.assignees,
    created_at = EXCLUDED.created_at,
    updated_at = EXCLUDED.updated_at,
    last_checked = EXCLUDED.last_checked
"""

UPSERT_APPROVAL = """
INSERT INTO pr_approvals (pr_number, approver_login, approval_state, submitted_at)
VALUES (%s, %s, %s, %s)
ON CONFLICT ON CONSTRAINT pr_approvals_natural_key DO UPDATE SET
    approval_state = EXCLUDED.approval_state,
    submitted_at = EXCLUDED.submitted_at
"""

UPSERT_COVERAGE = """
INSERT INTO pr_coverage (pr_number, percentage, change, url, created_at)
VALUES (%s, %s, %s, %s, %s)
ON CONFLICT (pr_number) DO UPDATE SET
    percentage = EXCLUDED.percentage,
    change = EXCLUDED.change,
    url = EXCLUDED.url,
    created_at = EXCLUDED.created_at
"""

UPSERT_SMOKE_TEST = """
INSERT INTO smoke_tests (pr_number, hypervisor, version, passed, total, status,
                         errors, skipped, failed_tests, logs_url, created_at, comment)
VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
ON CONFLICT ON CONSTRAINT smoke_tests_natural_key DO UPDATE SET
    passed = EXCLUDED.passed,
    total = EXCLUDED.total,
    status = EXCLUDED.status,
    errors = EXCLUDED.errors,
    skipped = EXCLUDED.skipped,
    failed_tests = EXCLUDED.failed_tests,
    logs_url = EXCLUDED.logs_url,
    comment = EXCLUDED.comment
"""

UPSERT_TEST_RESULT = """
INSERT INTO test_results (pr_number, test_name, test_file, result, time_seconds,
                          hypervisor, hypervisor_version, test_date, logs_url)
VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
ON CONFLICT ON CONSTRAINT test_results_natural_key DO UPDATE SET
    result = EXCLUDED.result,
    time_seconds = EXCLUDED.time_seconds
RETURNING (xmax = 0) AS inserted
"""

COUNT_OTHER_PRS = """
SELECT COUNT(DISTINCT pr_number) AS n
FROM test_results
WHERE test_name = %s AND pr_number <> %s
"""

UPGRADE_COLUMNS = (
    "timestamp_start", "upgrade_start_version", "upgrade_target_version",
    "management_server_os", "hypervisor", "hypervisor_version", "overall_status",
    "timestamp_end", "duration_seconds", "jenkins_build_number",
    "infrastructure_provider", "failure_stage", "error_log", "upgrade_matrix_url",
    "upgraded_env_url", "comments",
)

UPSERT_UPGRADE_TEST = """
INSERT INTO upgrade_test_results (timestamp_start, upgrade_start_version,
    upgrade_target_version, management_server_os, hypervisor, hypervisor_version,
    overall_status, timestamp_end, duration_seconds, jenkins_build_number,
    infrastructure_provider, failure_stage, error_log, upgrade_matrix_url,
    upgraded_env_url, comments)
VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
ON CONFLICT ON CONSTRAINT upgrade_test_results_natural_key DO UPDATE SET
    overall_status = EXCLUDED.overall_status,
    timestamp_end = EXCLUDED.timestamp_end,
    duration_seconds = EXCLUDED.duration_seconds,
    jenkins_build_number = EXCLUDED.jenkins_build_number,
    infrastructure_provider = EXCLUDED.infrastructure_provider,
    failure_stage = EXCLUDED.failure_stage,
    error_log = EXCLUDED.error_log,
    upgrade_matrix_url = EXCLUDED.upgrade_matrix_url,
    upgraded_env_url = EXCLUDED.upgraded_env_url,
    comments = EXCLUDED.comments
"""

SELECT_UPGRADE_TESTS = "SELECT " + ", ".join(UPGRADE_COLUMNS) + " FROM upgrade_test_results WHERE TRUE"

UPGRADE_FILTER_COLUMNS = {
    "from_version": "upgrade_start_version",
    "to_version": "upgrade_target_version",
    "distro": "management_server_os",
    "hypervisor": "hypervisor",
    "status": "overall_status",
}

REMOVE_DUPLICATE_RESULTS = """
DELETE FROM test_results a
USING test_results b
WHERE a.id < b.id
  AND a.pr_number = b.pr_number
  AND a.test_name = b.test_name
  AND a.hypervisor IS NOT DISTINCT FROM b.hypervisor
  AND a.hypervisor_version IS NOT DISTINCT FROM b.hypervisor_version
  AND a.test_date = b.test_date
"""


def _pull_from_row(row: dict) -> PullRecord:
    return PullRecord(
        number=row["pr_number"],
        title=row["pr_title"],
        state=row["pr_state"],
        merged=row["merged"],
        labels=list(row["labels"] or []),
        assignees=list(row["assignees"] or []),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        last_checked=row["last_checked"],
    )


def _result_from_row(row: dict) -> TestFailureRecord:
    return TestFailureRecord(
        pr_number=row["pr_number"],
        test_name=row["test_name"],
        test_file=row["test_file"],
        result=row["result"],
        time_seconds=row["time_seconds"],
        hypervisor=row["hypervisor"],
        hypervisor_version=row["hypervisor_version"],
        test_date=row["test_date"],
        logs_url=row["logs_url"],
    )


def _smoke_from_row(row: dict) -> StoredSmokeTest:
    fact = SmokeTestFact(
        hypervisor=row["hypervisor"],
        version=row["version"],
        passed=row["passed"],
        total=row["total"],
        status=row["status"],
        failed_tests=list(row["failed_tests"] or []),
        errors=row["errors"],
        skipped=row["skipped"],
        logs_url=row["logs_url"],
        created_at=row["created_at"],
    )
    return StoredSmokeTest(pr_number=row["pr_number"], fact=fact, body=row["comment"])


class PostgresStore:
    """ResultStore backed by one autocommit psycopg connection."""

    def __init__(self, dsn: str, *, create_schema: bool = True) -> None:
        try:
            self._conn = psycopg.connect(dsn, autocommit=True)
        except psycopg.Error as e:
            raise StoreError(f"Could not connect to PostgreSQL: {e}") from e
        if create_schema:
            self._execute(SCHEMA)

    def _execute(self, query: str, params: tuple = ()) -> list[dict]:
        """Run one statement and return its rows (empty when none)."""
        try:
            with self._conn.cursor(row_factory=dict_row) as cur:
                cur.execute(query, params)
                if cur.description is None:
                    return []
                return cur.fetchall()
        except psycopg.Error as e:
            raise StoreError(f"PostgreSQL query failed: {e}") from e

    def _rowcount(self, query: str, params: tuple = ()) -> int:
        try:
            with self._conn.cursor() as cur:
                cur.execute(query, params)
                return cur.rowcount
        except psycopg.Error as e:
            raise StoreError(f"PostgreSQL query failed: {e}") from e

    # -- pulls ---------------------------------------------------------------

    def upsert_pull(self, pull: PullRecord) -> None:
        self._execute(UPSERT_PULL, (
            pull.number, pull.title, pull.state, pull.merged, list(pull.labels),
            list(pull.assignees), pull.created_at, pull.updated_at,
            pull.last_checked,
        ))

    def get_pull(self, number: int) -> PullRecord | None:
        rows = self._execute("SELECT * FROM pr_states WHERE pr_number = %s", (number,))
        return _pull_from_row(rows[0]) if rows else None

    def list_pulls(self, state=None, label=None) -> list[PullRecord]:
        query = "SELECT * FROM pr_states WHERE TRUE"
        params: list = []
        if state is not None:
            query += " AND pr_state = %s"
            params.append(state)
        if label is not None:
            query += " AND %s = ANY(labels)"
            params.append(label)
        query += " ORDER BY pr_number DESC"
        return [_pull_from_row(r) for r in self._execute(query, tuple(params))]

    def set_pull_state(self, number: int, state: str, checked_at: str = "") -> None:
        if checked_at:
            self._execute(
                "UPDATE pr_states SET pr_state = %s, last_checked = %s WHERE pr_number = %s",
                (state, checked_at, number),
            )
        else:
            self._execute(
                "UPDATE pr_states SET pr_state = %s WHERE pr_number = %s",
                (state, number),
            )

    # -- approvals -----------------------------------------------------------

    def upsert_approval(self, approval: ApprovalRecord) -> None:
        self._execute(UPSERT_APPROVAL, (
            approval.pr_number, approval.approver_login, approval.state,
            approval.submitted_at,
        ))

    def list_approvals(self, pr_number: int) -> list[ApprovalRecord]:
        rows = self._execute(
            "SELECT * FROM pr_approvals WHERE pr_number = %s ORDER BY approver_login",
            (pr_number,),
        )
        return [
            ApprovalRecord(
                pr_number=r["pr_number"],
                approver_login=r["approver_login"],
                state=r["approval_state"],
                submitted_at=r["submitted_at"],
            )
            for r in rows
        ]

    # -- coverage ------------------------------------------------------------

    def set_coverage(self, pr_number: int, fact: CoverageFact | None) -> None:
        if fact is None:
            self._execute("DELETE FROM pr_coverage WHERE pr_number = %s", (pr_number,))
            return
        self._execute(UPSERT_COVERAGE, (
            pr_number, fact.percentage, fact.change, fact.url, fact.created_at,
        ))

    def get_coverage(self, pr_number: int) -> CoverageFact | None:
        rows = self._execute(
            "SELECT * FROM pr_coverage WHERE pr_number = %s", (pr_number,),
        )
        if not rows:
            return None
        r = rows[0]
        return CoverageFact(
            percentage=r["percentage"], change=r["change"], url=r["url"],
            created_at=r["created_at"],
        )

    # -- smoke tests ---------------------------------------------------------

    def upsert_smoke_test(self, smoke: StoredSmokeTest) -> None:
        fact = smoke.fact
        self._execute(UPSERT_SMOKE_TEST, (
            smoke.pr_number, fact.hypervisor, fact.version, fact.passed,
            fact.total, fact.status, fact.errors, fact.skipped,
            list(fact.failed_tests), fact.logs_url, fact.created_at, smoke.body,
        ))

    def list_smoke_tests(self, pr_number: int | None = None) -> list[StoredSmokeTest]:
        if pr_number is None:
            rows = self._execute("SELECT * FROM smoke_tests ORDER BY created_at DESC")
        else:
            rows = self._execute(
                "SELECT * FROM smoke_tests WHERE pr_number = %s ORDER BY created_at DESC",
                (pr_number,),
            )
        return [_smoke_from_row(r) for r in rows]

    # -- test results --------------------------------------------------------

    def upsert_test_result(self, record: TestFailureRecord) -> bool:
        rows = self._execute(UPSERT_TEST_RESULT, (
            record.pr_number, record.test_name, record.test_file, record.result,
            record.time_seconds, record.hypervisor, record.hypervisor_version,
            record.test_date, record.logs_url,
        ))
        return bool(rows and rows[0]["inserted"])

    def list_test_results(self, test_name=None, pr_number=None) -> list[TestFailureRecord]:
        query = "SELECT * FROM test_results WHERE TRUE"
        params: list = []
        if test_name is not None:
            query += " AND test_name = %s"
            params.append(test_name)
        if pr_number is not None:
            query += " AND pr_number = %s"
            params.append(pr_number)
        query += " ORDER BY test_date DESC, id DESC"
        return [_result_from_row(r) for r in self._execute(query, tuple(params))]

    def count_other_prs(self, test_name: str, pr_number: int) -> int:
        rows = self._execute(COUNT_OTHER_PRS, (test_name, pr_number))
        return int(rows[0]["n"]) if rows else 0

    def remove_duplicate_results(self) -> int:
        deleted = self._rowcount(REMOVE_DUPLICATE_RESULTS)
        logger.info("Removed %d duplicate test results", deleted)
        return deleted

    # -- upgrade tests -------------------------------------------------------

    def upsert_upgrade_test(self, result: UpgradeTestResult) -> None:
        self._execute(
            UPSERT_UPGRADE_TEST,
            tuple(getattr(result, c) for c in UPGRADE_COLUMNS),
        )

    def list_upgrade_tests(self, from_version=None, to_version=None, distro=None,
                           hypervisor=None, status=None, limit=None) -> list[UpgradeTestResult]:
        filters = {
            "from_version": from_version,
            "to_version": to_version,
            "distro": distro,
            "hypervisor": hypervisor,
            "status": status,
        }
        query = SELECT_UPGRADE_TESTS
        params: list = []
        for name, value in filters.items():
            if value is not None:
                query += f" AND {UPGRADE_FILTER_COLUMNS[name]} = %s"
                params.append(value)
        query += " ORDER BY timestamp_start DESC"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        return [UpgradeTestResult(**r) for r in self._execute(query, tuple(params))]

    def close(self) -> None:
        self._conn.close()
