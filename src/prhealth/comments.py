"""Decide which extractor a bot comment belongs to.

The coverage and smoke-test checks are independent: a single comment can
carry both signals and is then handed to both extractors.
"""

from enum import Enum

SMOKE_TEST_MARKERS = ("Trillian test result", "look OK")


class CommentKind(str, Enum):
    COVERAGE = "coverage"
    SMOKE_TEST = "smoke-test"


def is_coverage_comment(body: str, author_login: str = "") -> bool:
    """True for codecov comments, by body text or by author login."""
    return "codecov" in (body or "").lower() or "codecov" in (author_login or "")


def is_smoke_test_comment(body: str) -> bool:
    """True for Trillian smoke-test summaries (case-sensitive markers)."""
    body = body or ""
    return any(marker in body for marker in SMOKE_TEST_MARKERS)


def classify_comment(body: str, author_login: str = "") -> set[CommentKind]:
    """Return the kinds a comment matches; an empty set means ignore it."""
    kinds = set()
    if is_coverage_comment(body, author_login):
        kinds.add(CommentKind.COVERAGE)
    if is_smoke_test_comment(body):
        kinds.add(CommentKind.SMOKE_TEST)
    return kinds
