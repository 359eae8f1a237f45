"""Turn one PR's comments into stored facts.

Pure up to :func:`store_ingest`: the same comments always produce the same
facts, so a retried fetch can be ingested again without corrupting data.
"""

import logging
from dataclasses import dataclass, field

from prhealth.comments import CommentKind, classify_comment
from prhealth.coverage import DEFAULT_REPO, extract_coverage
from prhealth.models import (
    CommentRecord,
    CoverageFact,
    SmokeTestFact,
    StoredSmokeTest,
    TestFailureRecord,
    UpgradeTestResult,
)
from prhealth.smoketest import extract_smoke_test
from prhealth.tables import parse_result_rows

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    coverage: CoverageFact | None = None
    smoke_tests: list[StoredSmokeTest] = field(default_factory=list)
    test_results: list[TestFailureRecord] = field(default_factory=list)


def check_failure_count(pr_number: int, fact: SmokeTestFact) -> bool:
    """Warn when the failed-test names do not add up to the error count."""
    if fact.errors is None or len(fact.failed_tests) == fact.errors:
        return True
    logger.warning(
        "PR #%s %s%s: %d failed test name(s) parsed but comment reports %d error(s)",
        pr_number, fact.hypervisor, f" {fact.version}" if fact.version else "",
        len(fact.failed_tests), fact.errors,
    )
    return False


def results_from_smoke_test(smoke: StoredSmokeTest) -> list[TestFailureRecord]:
    """Tag every row of the comment's result table with its run context."""
    fact = smoke.fact
    return [
        TestFailureRecord(
            pr_number=smoke.pr_number,
            test_name=row["test_name"],
            test_file=row["test_file"],
            result=row["result"],
            time_seconds=row["time_seconds"],
            hypervisor=fact.hypervisor,
            hypervisor_version=fact.version,
            test_date=fact.created_at,
            logs_url=fact.logs_url,
        )
        for row in parse_result_rows(smoke.body)
    ]


def ingest_comments(
    pr_number: int,
    comments: list[CommentRecord],
    repo: str = DEFAULT_REPO,
) -> IngestResult:
    """Classify and extract every comment of one PR.

    Coverage comes from the first coverage comment encountered. Every
    smoke-test comment with a usable 'N look OK' anchor yields a fact.
    """
    result = IngestResult()
    coverage_seen = False

    for comment in comments:
        kinds = classify_comment(comment.body, comment.author_login)
        if not kinds:
            continue

        if CommentKind.COVERAGE in kinds and not coverage_seen:
            coverage_seen = True
            result.coverage = extract_coverage(
                comment.body, pr_number, repo, created_at=comment.created_at,
            )
            if result.coverage is None:
                logger.debug("PR #%s: coverage comment without a percentage", pr_number)

        if CommentKind.SMOKE_TEST in kinds:
            fact = extract_smoke_test(comment.body, comment)
            if fact is None:
                logger.debug("PR #%s: smoke-test comment without 'look OK' count", pr_number)
                continue
            check_failure_count(pr_number, fact)
            smoke = StoredSmokeTest(pr_number=pr_number, fact=fact, body=comment.body)
            result.smoke_tests.append(smoke)
            result.test_results.extend(results_from_smoke_test(smoke))

    return result


def store_ingest(store, pr_number: int, result: IngestResult) -> int:
    """Upsert an IngestResult. Returns the number of new test results."""
    store.set_coverage(pr_number, result.coverage)
    for smoke in result.smoke_tests:
        store.upsert_smoke_test(smoke)

    new_results = 0
    for record in result.test_results:
        if store.upsert_test_result(record):
            new_results += 1

    logger.info(
        "  Stored coverage=%s, %d smoke test(s), %d new test result(s)",
        "yes" if result.coverage else "no", len(result.smoke_tests), new_results,
    )
    return new_results


def reparse_stored(store) -> int:
    """Re-derive test results from stored smoke-test comment bodies."""
    new_results = 0
    smoke_tests = store.list_smoke_tests()
    for smoke in smoke_tests:
        for record in results_from_smoke_test(smoke):
            if store.upsert_test_result(record):
                new_results += 1
    logger.info("Reparsed %d smoke-test comment(s), %d new test result(s)",
                len(smoke_tests), new_results)
    return new_results


def store_upgrade_tests(store, rows: list[dict]) -> int:
    """Upsert upgrade-test rows exported by the upgrade job.

    Invalid rows are logged and skipped. Returns the number stored.
    """
    stored = 0
    for i, row in enumerate(rows, 1):
        try:
            result = UpgradeTestResult.from_dict(row)
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning("Skipping upgrade test row %d: %s", i, e)
            continue
        store.upsert_upgrade_test(result)
        stored += 1
    logger.info("Stored %d of %d upgrade test result(s)", stored, len(rows))
    return stored
