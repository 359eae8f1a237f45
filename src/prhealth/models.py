"""Typed facts produced by the comment extractors and stored per PR."""

from dataclasses import asdict, dataclass, field, fields
from enum import Enum

STATUS_OK = "OK"
STATUS_FAIL = "FAIL"

UNKNOWN_HYPERVISOR = "UNKNOWN"

UPGRADE_STATUSES = ("PASS", "FAIL", "ERROR", "SKIPPED")


class TestResult(str, Enum):
    """Result column values seen in smoke-test tables."""

    __test__ = False

    SUCCESS = "Success"
    FAILURE = "Failure"
    ERROR = "Error"
    SKIP = "Skip"


@dataclass(frozen=True)
class CommentRecord:
    """One GitHub issue comment as handed over by the fetch layer."""

    body: str
    author_login: str = ""
    created_at: str = ""
    hypervisor: str | None = None
    version: str | None = None
    logs_url: str | None = None


@dataclass
class SmokeTestFact:
    """Summary of one Trillian smoke-test run for a hypervisor/version."""

    hypervisor: str
    version: str | None
    passed: int
    total: int
    status: str
    failed_tests: list[str] = field(default_factory=list)
    errors: int | None = None
    skipped: int | None = None
    logs_url: str | None = None
    created_at: str = ""

    def to_dict(self) -> dict:
        return {
            "hypervisor": self.hypervisor,
            "version": self.version,
            "passed": self.passed,
            "total": self.total,
            "status": self.status,
            "failedTests": list(self.failed_tests),
            "logsUrl": self.logs_url,
            "createdAt": self.created_at,
        }


@dataclass
class CoverageFact:
    percentage: float
    change: float
    url: str
    created_at: str = ""

    def to_dict(self) -> dict:
        return {
            "percentage": self.percentage,
            "change": self.change,
            "url": self.url,
        }


@dataclass
class TestFailureRecord:
    """One row of a smoke-test result table, tagged with its run context.

    Identified by (pr_number, test_name, hypervisor, hypervisor_version,
    test_date); see :meth:`key`.
    """

    __test__ = False

    pr_number: int
    test_name: str
    result: str
    test_file: str = ""
    time_seconds: float | None = None
    hypervisor: str | None = None
    hypervisor_version: str | None = None
    test_date: str = ""
    logs_url: str | None = None

    def key(self) -> tuple:
        return (
            self.pr_number,
            self.test_name,
            self.hypervisor,
            self.hypervisor_version,
            self.test_date,
        )

    def to_dict(self) -> dict:
        return {
            "pr_number": self.pr_number,
            "test_name": self.test_name,
            "test_file": self.test_file,
            "result": self.result,
            "time_seconds": self.time_seconds,
            "hypervisor": self.hypervisor,
            "hypervisor_version": self.hypervisor_version,
            "test_date": self.test_date,
            "logs_url": self.logs_url,
        }


@dataclass(frozen=True)
class FailureClassification:
    """Common (flaky/infra) vs unique (possible regression) verdict."""

    occurrence_count: int
    is_common: bool
    severity: str

    def to_dict(self) -> dict:
        return {
            "occurrence_count": self.occurrence_count,
            "is_common": self.is_common,
            "severity": self.severity,
        }


@dataclass
class PullRecord:
    number: int
    title: str = ""
    state: str = "open"
    merged: bool = False
    labels: list[str] = field(default_factory=list)
    assignees: list[str] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""
    last_checked: str = ""


@dataclass
class ApprovalRecord:
    pr_number: int
    approver_login: str
    state: str
    submitted_at: str = ""


@dataclass
class StoredSmokeTest:
    """A smoke-test fact together with the raw comment it came from."""

    pr_number: int
    fact: SmokeTestFact
    body: str = ""

    def key(self) -> tuple:
        return (
            self.pr_number,
            self.fact.hypervisor,
            self.fact.version,
            self.fact.created_at,
        )


@dataclass
class UpgradeTestResult:
    """One upgrade run from ``upgrade_start_version`` to ``upgrade_target_version``.

    Recorded as structured data by the upgrade job, never parsed from
    comments. ``overall_status`` is None while the run is in progress.
    """

    timestamp_start: str
    upgrade_start_version: str | None = None
    upgrade_target_version: str | None = None
    management_server_os: str | None = None
    hypervisor: str | None = None
    hypervisor_version: str | None = None
    overall_status: str | None = None
    timestamp_end: str | None = None
    duration_seconds: int | None = None
    jenkins_build_number: int | None = None
    infrastructure_provider: str | None = None
    failure_stage: str | None = None
    error_log: str | None = None
    upgrade_matrix_url: str | None = None
    upgraded_env_url: str | None = None
    comments: str | None = None

    def key(self) -> tuple:
        return (
            self.timestamp_start,
            self.management_server_os,
            self.hypervisor,
            self.hypervisor_version,
            self.upgrade_start_version,
            self.upgrade_target_version,
        )

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "UpgradeTestResult":
        """Build from a JSON object; unknown keys are ignored.

        Raises ValueError when ``timestamp_start`` is missing or the status
        is not one of UPGRADE_STATUSES.
        """
        if not data.get("timestamp_start"):
            raise ValueError("upgrade test result without timestamp_start")
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        status = values.get("overall_status")
        if status is not None:
            status = str(status).upper()
            if status not in UPGRADE_STATUSES:
                raise ValueError(f"Unknown upgrade test status: {status!r}")
            values["overall_status"] = status
        return cls(**values)
