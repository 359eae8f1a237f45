"""Label a failing test as common (flaky/infra) or unique (possible regression).

A test is common for a PR when at least ``COMMON_FAILURE_THRESHOLD`` other
PRs have recorded the same test name. Seen from the whole data set this is
a test present in ``COMMON_FAILURE_THRESHOLD + 1`` or more PRs.
"""

from collections.abc import Iterable

from prhealth.models import FailureClassification, TestFailureRecord

COMMON_FAILURE_THRESHOLD = 2

SEVERITY_LOW = "low"
SEVERITY_HIGH = "high"


def count_other_prs(
    records: Iterable[TestFailureRecord], test_name: str, pr_number: int,
) -> int:
    """Count distinct PRs other than ``pr_number`` with a record of ``test_name``.

    Exact, case-sensitive name match. Duplicate records never count twice.
    """
    return len({
        r.pr_number for r in records
        if r.test_name == test_name and r.pr_number != pr_number
    })


def classify_count(
    occurrence_count: int, threshold: int = COMMON_FAILURE_THRESHOLD,
) -> FailureClassification:
    is_common = occurrence_count >= threshold
    return FailureClassification(
        occurrence_count=occurrence_count,
        is_common=is_common,
        severity=SEVERITY_LOW if is_common else SEVERITY_HIGH,
    )


def classify_failure(
    records: Iterable[TestFailureRecord],
    test_name: str,
    pr_number: int,
    threshold: int = COMMON_FAILURE_THRESHOLD,
) -> FailureClassification:
    """Classify ``test_name`` as failing in ``pr_number`` against ``records``."""
    return classify_count(count_other_prs(records, test_name, pr_number), threshold)


def classify_stored(
    store, test_name: str, pr_number: int,
    threshold: int = COMMON_FAILURE_THRESHOLD,
) -> FailureClassification:
    """Same as :func:`classify_failure`, with one count query on a store."""
    return classify_count(store.count_other_prs(test_name, pr_number), threshold)
