#!/usr/bin/env python3
"""Write the PR health report from stored facts.

Produces:
- report.md    -- smoke-test rollup, common failures, platforms, flaky tests
- report.json  -- the same data for programmatic use
"""

import json
import logging
from datetime import UTC, date, datetime

from prhealth.coverage import DEFAULT_REPO
from prhealth.failures import COMMON_FAILURE_THRESHOLD
from prhealth.stats import (
    failures_summary,
    flaky_tests_summary,
    health_check_prs,
    smoke_test_rollup,
    upgrade_test_stats,
)

logger = logging.getLogger(__name__)


def relative_date(date_str, ref_date):
    """Return a human-friendly relative date string."""
    if not date_str:
        return ""
    try:
        dt = datetime.fromisoformat(date_str.replace("Z", "+00:00")).date()
    except (ValueError, TypeError):
        try:
            dt = datetime.strptime(date_str[:10], "%Y-%m-%d").date()
        except (ValueError, TypeError):
            return ""
    delta = (ref_date - dt).days
    if delta == 0:
        return "today"
    elif delta == 1:
        return "1 day ago"
    else:
        return f"{delta} days ago"


def _md_cell(value) -> str:
    """Render a value for a markdown table cell."""
    if value is None:
        return ""
    return str(value).replace("|", "\\|")


def _write_smoke_section(f, rollup: dict) -> None:
    f.write("## Smoke Tests\n\n")
    f.write(f"**{rollup['total_runs']} latest runs**: "
            f"{rollup['ok_runs']} OK, {rollup['fail_runs']} FAIL.\n\n")
    if not rollup["by_hypervisor"]:
        return
    f.write("| Hypervisor | Runs | OK | FAIL | PRs |\n")
    f.write("|------------|------|----|------|-----|\n")
    for hv in rollup["by_hypervisor"]:
        f.write(f"| {hv['hypervisor']} | {hv['runs']} | {hv['ok']} "
                f"| {hv['fail']} | {hv['pr_count']} |\n")
    f.write("\n")


def _write_common_section(f, common: list[dict], ref_date: date) -> None:
    f.write("## Common Failures\n\n")
    if not common:
        f.write("(none)\n\n")
        return
    f.write("| # | Test | File | PRs | Occurrences | Hypervisors | Last Seen |\n")
    f.write("|---|------|------|-----|-------------|-------------|-----------|\n")
    for i, row in enumerate(common, 1):
        f.write(
            f"| {i} | `{row['test_name']}` | {_md_cell(row['test_file'])} "
            f"| {row['pr_count']} | {row['occurrence_count']} "
            f"| {_md_cell(row['hypervisors'])} "
            f"| {relative_date(row['last_seen'], ref_date)} |\n"
        )
    f.write("\n")


def _write_platform_section(f, platforms: list[dict]) -> None:
    f.write("## Failures by Platform\n\n")
    if not platforms:
        f.write("(none)\n\n")
        return
    f.write("| Platform | Failures | Unique Tests | PRs |\n")
    f.write("|----------|----------|--------------|-----|\n")
    for row in platforms:
        f.write(f"| {row['platform']} | {row['failure_count']} "
                f"| {row['unique_tests']} | {row['pr_count']} |\n")
    f.write("\n")


def _write_flaky_section(f, flaky: list[dict], ref_date: date) -> None:
    f.write("## Flaky Tests (last 30 days)\n\n")
    if not flaky:
        f.write("(none)\n\n")
        return
    f.write("| Test | Platform | Runs | Failures | Errors | Successes | PRs | Last Failure |\n")
    f.write("|------|----------|------|----------|--------|-----------|-----|--------------|\n")
    for row in flaky:
        platform = " ".join(p for p in (row["hypervisor"], row["hypervisor_version"]) if p)
        prs = ", ".join(f"#{n}" for n in row["pr_numbers"])
        f.write(
            f"| `{row['test_name']}` | {platform} | {row['total_runs']} "
            f"| {row['failure_count']} | {row['error_count']} "
            f"| {row['success_count']} | {prs} "
            f"| {relative_date(row['last_failure_date'], ref_date)} |\n"
        )
    f.write("\n")


def _write_recent_section(f, recent: list[dict]) -> None:
    f.write("## Recent Failures\n\n")
    if not recent:
        f.write("(none)\n\n")
        return
    f.write("| PR | Test | Result | Platform | Date | Other PRs | Kind |\n")
    f.write("|----|------|--------|----------|------|-----------|------|\n")
    for row in recent:
        platform = " ".join(
            p for p in (row["hypervisor"], row["hypervisor_version"]) if p
        )
        kind = "common" if row["is_common"] else "unique"
        f.write(
            f"| #{row['pr_number']} | `{row['test_name']}` | {row['result']} "
            f"| {platform} | {(row['test_date'] or '')[:10]} "
            f"| {row['other_pr_count']} | {kind} |\n"
        )
    f.write("\n")


def _write_upgrade_section(f, upgrades: dict) -> None:
    f.write("## Upgrade Tests\n\n")
    if not upgrades["total"]:
        f.write("(none)\n\n")
        return
    f.write(f"**{upgrades['total']} runs**: {upgrades['passed']} PASS, "
            f"{upgrades['failed']} FAIL, {upgrades['error']} ERROR, "
            f"{upgrades['skipped']} SKIPPED, {upgrades['running']} running. "
            f"Latest: {upgrades['latest_test_date']}\n\n")


def _write_report_md(path, summary, flaky, rollup, health, upgrades, analysis_date):
    """Write the markdown report file."""
    stats = summary["stats"]
    with open(path, "w") as f:
        f.write("# PR Health Report\n\n")
        f.write(f"**Date:** {analysis_date.isoformat()}\n\n")
        f.write(f"**{stats['total_failures']} recorded test failures** across "
                f"**{stats['prs_affected']} PRs** "
                f"({stats['unique_tests']} distinct tests, "
                f"{stats['avg_failures_per_pr']} per PR on average).\n\n")
        f.write(f"A failure is *common* when at least {COMMON_FAILURE_THRESHOLD} "
                "other PRs hit the same test; otherwise it is *unique*.\n\n")
        f.write(f"Health-check PRs tracked: {len(health)}\n\n")

        _write_smoke_section(f, rollup)
        f.write("---\n\n")
        _write_common_section(f, summary["commonFailures"], analysis_date)
        _write_platform_section(f, summary["byHypervisor"])
        _write_flaky_section(f, flaky, analysis_date)
        _write_recent_section(f, summary["recentFailures"])
        _write_upgrade_section(f, upgrades)

    logger.info("Wrote %s", path)


def _write_report_json(path, summary, flaky, rollup, health, upgrades, analysis_date):
    """Write the JSON report file."""
    report_json = {
        "date": analysis_date.isoformat(),
        "common_failure_threshold": COMMON_FAILURE_THRESHOLD,
        "testFailures": summary,
        "flakyTests": flaky,
        "smokeTests": rollup,
        "healthPRs": health,
        "upgradeTests": upgrades,
    }
    with open(path, "w") as f:
        json.dump(report_json, f, indent=2)

    logger.info("Wrote %s", path)


def run(
    store,
    output_md: str = "report.md",
    output_json: str = "report.json",
    repo: str = DEFAULT_REPO,
) -> int:
    """Build report.md and report.json from the store. Returns exit code."""
    records = store.list_test_results()
    smoke_tests = store.list_smoke_tests()
    if not records and not smoke_tests:
        logger.warning("No smoke tests or test results stored yet")

    summary = failures_summary(records)
    flaky = flaky_tests_summary(records)
    rollup = smoke_test_rollup(smoke_tests)
    health = health_check_prs(store, repo)
    upgrades = upgrade_test_stats(store.list_upgrade_tests())
    analysis_date = datetime.now(UTC).date()

    _write_report_md(output_md, summary, flaky, rollup, health, upgrades, analysis_date)
    _write_report_json(output_json, summary, flaky, rollup, health, upgrades, analysis_date)

    stats = summary["stats"]
    logger.info("")
    logger.info("=== PR Health Summary ===")
    logger.info("")
    logger.info("  Smoke runs: %d (%d FAIL)", rollup["total_runs"], rollup["fail_runs"])
    logger.info("  Test failures: %d in %d PRs", stats["total_failures"], stats["prs_affected"])
    logger.info("  Common failures: %d", len(summary["commonFailures"]))
    logger.info("  Flaky tests: %d", len(flaky))
    logger.info("")
    for i, row in enumerate(summary["commonFailures"][:10], 1):
        logger.info("  %2d. %-55s  prs=%2d  occurrences=%2d",
                    i, row["test_name"], row["pr_count"], row["occurrence_count"])

    return 0
