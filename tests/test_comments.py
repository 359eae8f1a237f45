"""Tests for prhealth.comments -- routing comments to extractors."""

from conftest import COVERAGE_BODY, SMOKE_FAIL_BODY, UNRELATED_BODY

from prhealth.comments import (
    CommentKind,
    classify_comment,
    is_coverage_comment,
    is_smoke_test_comment,
)


# ---------------------------------------------------------------------------
# is_coverage_comment
# ---------------------------------------------------------------------------

class TestIsCoverageComment:
    def test_body_mentions_codecov(self):
        assert is_coverage_comment(COVERAGE_BODY)

    def test_body_match_is_case_insensitive(self):
        assert is_coverage_comment("see CODECOV for details")

    def test_author_login(self):
        assert is_coverage_comment("Coverage 80%", "codecov[bot]")

    def test_unrelated(self):
        assert not is_coverage_comment(UNRELATED_BODY, "someone")

    def test_none_body_with_author(self):
        assert is_coverage_comment(None, "codecov-commenter")


# ---------------------------------------------------------------------------
# is_smoke_test_comment
# ---------------------------------------------------------------------------

class TestIsSmokeTestComment:
    def test_trillian_marker(self):
        assert is_smoke_test_comment("Trillian test result (tid-1)")

    def test_look_ok_marker(self):
        assert is_smoke_test_comment("141 look OK, 0 have errors")

    def test_markers_are_case_sensitive(self):
        assert not is_smoke_test_comment("trillian TEST RESULT, 3 look ok")

    def test_unrelated(self):
        assert not is_smoke_test_comment(UNRELATED_BODY)


# ---------------------------------------------------------------------------
# classify_comment
# ---------------------------------------------------------------------------

class TestClassifyComment:
    def test_smoke_test(self):
        assert classify_comment(SMOKE_FAIL_BODY, "blueorangutan") == {CommentKind.SMOKE_TEST}

    def test_coverage(self):
        assert classify_comment(COVERAGE_BODY, "codecov[bot]") == {CommentKind.COVERAGE}

    def test_ignored_comment_gives_empty_set(self):
        assert classify_comment(UNRELATED_BODY, "reviewer") == set()

    def test_both_kinds_kept(self):
        body = "codecov says 80% and 12 look OK"
        assert classify_comment(body) == {CommentKind.COVERAGE, CommentKind.SMOKE_TEST}
