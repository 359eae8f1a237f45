"""Aggregation queries behind the dashboard views.

Pure functions over stored records, plus a few helpers that read what they
need from a ResultStore. All return plain dicts/lists ready for JSON.
"""

import logging
from collections import defaultdict
from datetime import UTC, datetime, timedelta

from prhealth.coverage import DEFAULT_REPO
from prhealth.failures import COMMON_FAILURE_THRESHOLD, classify_count, classify_stored
from prhealth.models import (
    STATUS_FAIL,
    ApprovalRecord,
    StoredSmokeTest,
    TestFailureRecord,
    TestResult,
    UpgradeTestResult,
)

logger = logging.getLogger(__name__)

HEALTH_CHECK_LABEL = "type:healthcheckrun"
FLAKY_WINDOW_DAYS = 30


def _to_utc(ts: str) -> datetime | None:
    """Parse an ISO timestamp or date string; None for missing/invalid input."""
    if not ts:
        return None
    try:
        dt = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def _platform(hypervisor: str | None, version: str | None) -> str:
    name = hypervisor or "UNKNOWN"
    return f"{name} {version}" if version else name


def _dates(records: list[TestFailureRecord]) -> list[str]:
    return sorted(r.test_date for r in records if r.test_date)


# ---------------------------------------------------------------------------
# Test failure rollups
# ---------------------------------------------------------------------------

def failure_stats(records: list[TestFailureRecord]) -> dict:
    """Totals: failures, unique tests, PRs affected, average per PR."""
    prs = {r.pr_number for r in records}
    return {
        "total_failures": len(records),
        "unique_tests": len({r.test_name for r in records}),
        "prs_affected": len(prs),
        "avg_failures_per_pr": round(len(records) / len(prs), 2) if prs else 0.0,
    }


def common_failures(
    records: list[TestFailureRecord],
    threshold: int = COMMON_FAILURE_THRESHOLD,
    limit: int = 20,
) -> list[dict]:
    """Tests recorded in more than ``threshold`` PRs, most widespread first.

    Any PR carrying one of these tests sees at least ``threshold`` other
    PRs with it, so each of them classifies as common there.
    """
    by_test: dict[str, list[TestFailureRecord]] = defaultdict(list)
    for r in records:
        by_test[r.test_name].append(r)

    rows = []
    for name, test_records in by_test.items():
        prs = {r.pr_number for r in test_records}
        if len(prs) < threshold + 1:
            continue
        dates = _dates(test_records)
        rows.append({
            "test_name": name,
            "test_file": next((r.test_file for r in test_records if r.test_file), ""),
            "occurrence_count": len(test_records),
            "pr_count": len(prs),
            "hypervisors": ", ".join(sorted({r.hypervisor for r in test_records if r.hypervisor})),
            "first_seen": dates[0] if dates else "",
            "last_seen": dates[-1] if dates else "",
        })

    rows.sort(key=lambda x: (-x["pr_count"], -x["occurrence_count"], x["test_name"]))
    return rows[:limit]


def recent_failures(
    records: list[TestFailureRecord],
    threshold: int = COMMON_FAILURE_THRESHOLD,
    limit: int = 50,
) -> list[dict]:
    """Newest records first, each with its common/unique classification."""
    prs_by_test: dict[str, set[int]] = defaultdict(set)
    for r in records:
        prs_by_test[r.test_name].add(r.pr_number)

    ordered = sorted(records, key=lambda r: r.test_date or "", reverse=True)
    rows = []
    for r in ordered[:limit]:
        verdict = classify_count(len(prs_by_test[r.test_name] - {r.pr_number}), threshold)
        row = r.to_dict()
        row["other_pr_count"] = verdict.occurrence_count
        row["is_common"] = verdict.is_common
        row["severity"] = verdict.severity
        rows.append(row)
    return rows


def failures_by_hypervisor(records: list[TestFailureRecord]) -> list[dict]:
    """Failure counts per hypervisor/version platform."""
    by_platform: dict[str, list[TestFailureRecord]] = defaultdict(list)
    for r in records:
        by_platform[_platform(r.hypervisor, r.hypervisor_version)].append(r)

    rows = [
        {
            "platform": platform,
            "failure_count": len(platform_records),
            "unique_tests": len({r.test_name for r in platform_records}),
            "pr_count": len({r.pr_number for r in platform_records}),
        }
        for platform, platform_records in by_platform.items()
    ]
    rows.sort(key=lambda x: (-x["failure_count"], x["platform"]))
    return rows


def failures_summary(
    records: list[TestFailureRecord],
    threshold: int = COMMON_FAILURE_THRESHOLD,
) -> dict:
    return {
        "stats": failure_stats(records),
        "commonFailures": common_failures(records, threshold),
        "recentFailures": recent_failures(records, threshold),
        "byHypervisor": failures_by_hypervisor(records),
    }


def history_for_test(records: list[TestFailureRecord], test_name: str) -> dict | None:
    """Every occurrence of one test. None when the test was never recorded."""
    matching = [r for r in records if r.test_name == test_name]
    if not matching:
        return None

    dates = _dates(matching)
    history = sorted(matching, key=lambda r: r.test_date or "", reverse=True)
    return {
        "test_name": test_name,
        "stats": {
            "total_occurrences": len(matching),
            "prs_affected": len({r.pr_number for r in matching}),
            "platforms": len({_platform(r.hypervisor, r.hypervisor_version) for r in matching}),
            "first_seen": dates[0] if dates else "",
            "last_seen": dates[-1] if dates else "",
            "hypervisors": ", ".join(sorted({r.hypervisor for r in matching if r.hypervisor})),
        },
        "history": [
            {k: v for k, v in r.to_dict().items() if k != "test_name"}
            for r in history
        ],
    }


def flaky_tests_summary(
    records: list[TestFailureRecord],
    now: datetime | None = None,
    window_days: int = FLAKY_WINDOW_DAYS,
) -> list[dict]:
    """Per test/platform run counts over the window, kept when failing twice+."""
    now = now or datetime.now(UTC)
    cutoff = now - timedelta(days=window_days)
    counted = {TestResult.FAILURE.value, TestResult.SUCCESS.value, TestResult.ERROR.value}

    groups: dict[tuple, list[TestFailureRecord]] = defaultdict(list)
    for r in records:
        dt = _to_utc(r.test_date)
        if dt is None or dt < cutoff or r.result not in counted:
            continue
        groups[(r.test_name, r.test_file, r.hypervisor, r.hypervisor_version)].append(r)

    rows = []
    for (name, test_file, hypervisor, version), group in groups.items():
        failures = [r for r in group if r.result == TestResult.FAILURE.value]
        successes = [r for r in group if r.result == TestResult.SUCCESS.value]
        if len(failures) <= 1:
            continue
        last_failure = max(failures, key=lambda r: r.test_date)
        rows.append({
            "test_name": name,
            "test_file": test_file,
            "hypervisor": hypervisor,
            "hypervisor_version": version,
            "total_runs": len(group),
            "failure_count": len(failures),
            "success_count": len(successes),
            "error_count": sum(1 for r in group if r.result == TestResult.ERROR.value),
            "last_failure_date": last_failure.test_date,
            "last_success_date": max((r.test_date for r in successes), default=None),
            "last_run_date": max(r.test_date for r in group),
            "pr_numbers": sorted({r.pr_number for r in group}, reverse=True),
            "last_failure_log_url": last_failure.logs_url,
        })

    rows.sort(key=lambda x: (-x["failure_count"], x["test_name"]))
    return rows


# ---------------------------------------------------------------------------
# Smoke tests and PR views
# ---------------------------------------------------------------------------

def latest_smoke_tests(smoke_tests: list[StoredSmokeTest]) -> list[StoredSmokeTest]:
    """Keep the newest run per (PR, hypervisor, version)."""
    latest: dict[tuple, StoredSmokeTest] = {}
    for smoke in sorted(smoke_tests, key=lambda s: s.fact.created_at or "", reverse=True):
        key = (smoke.pr_number, smoke.fact.hypervisor, smoke.fact.version)
        latest.setdefault(key, smoke)
    return list(latest.values())


def smoke_test_rollup(smoke_tests: list[StoredSmokeTest]) -> dict:
    """Totals and per-hypervisor OK/FAIL counts over the latest runs."""
    latest = latest_smoke_tests(smoke_tests)
    by_hv: dict[str, dict] = {}
    for smoke in latest:
        fact = smoke.fact
        entry = by_hv.setdefault(fact.hypervisor, {
            "hypervisor": fact.hypervisor, "runs": 0, "ok": 0, "fail": 0, "prs": set(),
        })
        entry["runs"] += 1
        entry["fail" if fact.status == STATUS_FAIL else "ok"] += 1
        entry["prs"].add(smoke.pr_number)

    per_hypervisor = []
    for entry in sorted(by_hv.values(), key=lambda e: (-e["runs"], e["hypervisor"])):
        entry["pr_count"] = len(entry.pop("prs"))
        per_hypervisor.append(entry)

    fail = sum(1 for s in latest if s.fact.status == STATUS_FAIL)
    return {
        "total_runs": len(latest),
        "ok_runs": len(latest) - fail,
        "fail_runs": fail,
        "by_hypervisor": per_hypervisor,
    }


def approval_counts(approvals: list[ApprovalRecord]) -> dict:
    return {
        "approved": sum(1 for a in approvals if a.state == "APPROVED"),
        "changesRequested": sum(1 for a in approvals if a.state == "CHANGES_REQUESTED"),
        "commented": sum(1 for a in approvals if a.state == "COMMENTED"),
    }


def classified_failures_for_pr(store, pr_number: int) -> list[dict]:
    """A PR's test results, each with one classification query."""
    rows = []
    for record in store.list_test_results(pr_number=pr_number):
        row = record.to_dict()
        row.update(classify_stored(store, record.test_name, pr_number).to_dict())
        rows.append(row)
    return rows


def pr_view(store, pr_number: int, repo: str = DEFAULT_REPO) -> dict | None:
    """Dashboard card for one PR. None when the PR was never scraped."""
    pull = store.get_pull(pr_number)
    if pull is None:
        return None

    smoke_tests = sorted(
        latest_smoke_tests(store.list_smoke_tests(pr_number)),
        key=lambda s: (s.fact.hypervisor, s.fact.version or ""),
    )
    newest = max(smoke_tests, key=lambda s: s.fact.created_at or "", default=None)
    coverage = store.get_coverage(pr_number)

    return {
        "number": pull.number,
        "title": pull.title,
        "url": f"https://github.com/{repo}/pull/{pull.number}",
        "state": pull.state,
        "createdAt": pull.created_at,
        "updatedAt": pull.updated_at,
        "approvals": approval_counts(store.list_approvals(pr_number)),
        "smokeTests": [s.fact.to_dict() for s in smoke_tests],
        "logsUrl": newest.fact.logs_url if newest else None,
        "codeCoverage": coverage.to_dict() if coverage else None,
        "testFailures": classified_failures_for_pr(store, pr_number),
    }


def health_check_prs(store, repo: str = DEFAULT_REPO) -> list[dict]:
    """PR cards for every PR labelled for health-check runs."""
    views = []
    for pull in store.list_pulls(label=HEALTH_CHECK_LABEL):
        view = pr_view(store, pull.number, repo)
        if view is not None:
            views.append(view)
    return views


# ---------------------------------------------------------------------------
# Upgrade tests
# ---------------------------------------------------------------------------

def upgrade_test_stats(results: list[UpgradeTestResult]) -> dict:
    """Status counts; runs without a status are still running."""
    statuses = [r.overall_status for r in results]
    return {
        "total": len(results),
        "passed": statuses.count("PASS"),
        "failed": statuses.count("FAIL"),
        "error": statuses.count("ERROR"),
        "skipped": statuses.count("SKIPPED"),
        "running": statuses.count(None),
        "latest_test_date": max((r.timestamp_start for r in results), default=None),
    }


def upgrade_test_filters(results: list[UpgradeTestResult]) -> dict:
    """Distinct values to filter upgrade runs by."""
    versions = {
        (r.upgrade_start_version, r.upgrade_target_version) for r in results
        if r.upgrade_start_version and r.upgrade_target_version
    }
    return {
        "versions": [
            {"upgrade_start_version": start, "upgrade_target_version": target}
            for start, target in sorted(versions, key=lambda v: (v[0], v[1]), reverse=True)
        ],
        "distros": sorted({r.management_server_os for r in results if r.management_server_os}),
        "hypervisors": sorted({r.hypervisor for r in results if r.hypervisor}),
    }
