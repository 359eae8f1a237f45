"""Tests for prhealth.scrape -- per-PR processing and state refresh."""

from types import SimpleNamespace
from unittest.mock import patch

import pytest
import requests

from conftest import COVERAGE_BODY, SMOKE_FAIL_BODY, make_comment, make_pull

from prhealth.scrape import (
    OUTCOME_CLOSED,
    OUTCOME_ERROR,
    OUTCOME_RATE_LIMITED,
    STATUS_ERROR,
    STATUS_NO_PRS,
    STATUS_OK,
    classify_state_error,
    handle_closed_prs,
    process_pr,
    process_prs,
    refresh_pr_states,
    run,
    run_refresh,
)
from prhealth.store import MemoryStore

REPO = "apache/cloudstack"


def _http_error(status, headers=None):
    resp = SimpleNamespace(status_code=status, headers=headers or {})
    return requests.HTTPError(f"{status} error", response=resp)


def _details(number, **kw):
    details = {
        "number": number, "title": f"PR {number}", "state": "open", "merged": False,
        "labels": [], "assignees": [], "created_at": "2025-03-01T00:00:00Z",
        "updated_at": "2025-03-02T00:00:00Z",
    }
    details.update(kw)
    return details


# ---------------------------------------------------------------------------
# classify_state_error
# ---------------------------------------------------------------------------

class TestClassifyStateError:
    def test_not_found_is_closed(self):
        assert classify_state_error(_http_error(404)) == OUTCOME_CLOSED

    def test_too_many_requests(self):
        assert classify_state_error(_http_error(429)) == OUTCOME_RATE_LIMITED

    def test_forbidden_with_exhausted_quota(self):
        err = _http_error(403, {"X-RateLimit-Remaining": "0"})
        assert classify_state_error(err) == OUTCOME_RATE_LIMITED

    def test_forbidden_otherwise(self):
        assert classify_state_error(_http_error(403)) == OUTCOME_ERROR

    def test_no_response(self):
        assert classify_state_error(requests.ConnectionError("reset")) == OUTCOME_ERROR


# ---------------------------------------------------------------------------
# process_pr / process_prs
# ---------------------------------------------------------------------------

@pytest.fixture
def github_api():
    with patch("prhealth.scrape.get_pull_details") as details, \
            patch("prhealth.scrape.list_pull_reviews") as reviews, \
            patch("prhealth.scrape.list_issue_comments") as comments:
        details.side_effect = lambda repo, n: _details(n)
        reviews.return_value = [
            {"login": "alice", "state": "APPROVED", "submitted_at": "2025-03-02T00:00:00Z"},
        ]
        comments.return_value = [
            make_comment(COVERAGE_BODY, author="codecov[bot]"),
            make_comment(SMOKE_FAIL_BODY),
        ]
        yield SimpleNamespace(details=details, reviews=reviews, comments=comments)


class TestProcessPr:
    def test_stores_everything(self, github_api):
        store = MemoryStore()
        assert process_pr(REPO, store, 12) is True

        pull = store.get_pull(12)
        assert pull.title == "PR 12"
        assert pull.last_checked
        assert store.list_approvals(12)[0].approver_login == "alice"
        assert store.get_coverage(12).percentage == 42.10
        assert len(store.list_smoke_tests(12)) == 1
        assert len(store.list_test_results(pr_number=12)) == 3

    def test_error_is_isolated(self, github_api, caplog):
        github_api.comments.side_effect = RuntimeError("boom")
        assert process_pr(REPO, MemoryStore(), 12) is False
        assert "Error processing PR #12: boom" in caplog.text

    def test_loop_continues_after_failure(self, github_api):
        github_api.details.side_effect = [RuntimeError("boom"), _details(2), _details(3)]
        store = MemoryStore()
        assert process_prs(REPO, store, [1, 2, 3], delay=0) == (2, 1)
        assert [p.number for p in store.list_pulls()] == [3, 2]

    def test_delay_between_prs_only(self, github_api):
        with patch("prhealth.scrape.time.sleep") as mock_sleep:
            process_prs(REPO, MemoryStore(), [1, 2, 3], delay=0.5)
        assert mock_sleep.call_count == 2


# ---------------------------------------------------------------------------
# State refresh
# ---------------------------------------------------------------------------

class TestHandleClosedPrs:
    def test_marks_closed(self):
        store = MemoryStore()
        for n in (1, 2, 3):
            store.upsert_pull(make_pull(n))

        def state(repo, n):
            if n == 2:
                raise _http_error(404)
            if n == 3:
                raise _http_error(500)
            return {"state": "closed", "merged": True, "assignees": []}

        with patch("prhealth.scrape.fetch_pull_state", side_effect=state):
            assert handle_closed_prs(REPO, store, delay=0) == 2

        assert store.get_pull(1).state == "closed"
        assert store.get_pull(2).state == "closed"
        assert store.get_pull(3).state == "open"

    def test_rate_limit_stops_sweep(self):
        store = MemoryStore()
        for n in (1, 2, 3):
            store.upsert_pull(make_pull(n))

        responses = [
            {"state": "closed", "merged": True, "assignees": []},
            _http_error(403, {"X-RateLimit-Remaining": "0"}),
        ]
        with patch("prhealth.scrape.fetch_pull_state", side_effect=responses) as m:
            assert handle_closed_prs(REPO, store, delay=0) == 1

        assert m.call_count == 2
        assert store.get_pull(3).state == "closed"
        assert store.get_pull(1).state == "open"


class TestRefreshPrStates:
    def _store(self):
        store = MemoryStore()
        store.upsert_pull(make_pull(1, last_checked="2025-03-03T00:00:00Z"))
        store.upsert_pull(make_pull(2, last_checked="2025-03-01T00:00:00Z"))
        store.upsert_pull(make_pull(3, last_checked=""))
        return store

    def test_least_recently_checked_first(self):
        store = self._store()
        with patch("prhealth.scrape.fetch_pull_state",
                   return_value={"state": "open", "merged": False, "assignees": ["bob"]}) as m:
            counts = refresh_pr_states(REPO, store, batch_size=2, delay=0)
        assert [c[0][1] for c in m.call_args_list] == [3, 2]
        assert counts == {"checked": 2, "closed": 0, "errors": 0, "rate_limited": False}
        assert store.get_pull(3).assignees == ["bob"]

    def test_not_found_closes(self):
        store = self._store()
        with patch("prhealth.scrape.fetch_pull_state", side_effect=_http_error(404)):
            counts = refresh_pr_states(REPO, store, delay=0)
        assert counts["closed"] == 3
        assert all(p.state == "closed" for p in store.list_pulls())

    def test_rate_limit_stops_batch(self):
        store = self._store()
        responses = [
            {"state": "closed", "merged": True, "assignees": []},
            _http_error(429),
        ]
        with patch("prhealth.scrape.fetch_pull_state", side_effect=responses) as m:
            counts = refresh_pr_states(REPO, store, delay=0)
        assert m.call_count == 2
        assert counts == {"checked": 1, "closed": 1, "errors": 0, "rate_limited": True}
        assert store.get_pull(1).last_checked == "2025-03-03T00:00:00Z"

    def test_other_errors_continue(self):
        store = self._store()
        responses = [
            _http_error(500),
            {"state": "open", "merged": False, "assignees": []},
            {"state": "open", "merged": False, "assignees": []},
        ]
        with patch("prhealth.scrape.fetch_pull_state", side_effect=responses):
            counts = refresh_pr_states(REPO, store, delay=0)
        assert counts["errors"] == 1
        assert counts["checked"] == 2


# ---------------------------------------------------------------------------
# run / run_refresh
# ---------------------------------------------------------------------------

class TestRun:
    def test_bad_repo(self):
        assert run("cloudstack", MemoryStore()) == STATUS_ERROR

    def test_single_pr(self, github_api):
        with patch("prhealth.scrape.list_open_pulls") as mock_list:
            assert run(REPO, MemoryStore(), pr_number=12) == STATUS_OK
        mock_list.assert_not_called()

    def test_no_open_prs(self):
        with patch("prhealth.scrape.list_open_pulls", return_value=[]):
            assert run(REPO, MemoryStore()) == STATUS_NO_PRS

    def test_listing_fails(self):
        with patch("prhealth.scrape.list_open_pulls", side_effect=RuntimeError("no token")):
            assert run(REPO, MemoryStore()) == STATUS_ERROR

    def test_default_mode_sweeps_closed(self, github_api):
        with patch("prhealth.scrape.list_open_pulls",
                   return_value=[{"number": 1, "title": "a"}]), \
                patch("prhealth.scrape.handle_closed_prs", return_value=0) as sweep, \
                patch("prhealth.scrape.check_rate_limit"):
            assert run(REPO, MemoryStore(), delay=0, state_delay=0) == STATUS_OK
        sweep.assert_called_once()

    def test_all_mode_skips_sweep(self, github_api):
        with patch("prhealth.scrape.list_open_pulls",
                   return_value=[{"number": 1, "title": "a"}]), \
                patch("prhealth.scrape.handle_closed_prs") as sweep, \
                patch("prhealth.scrape.check_rate_limit"):
            assert run(REPO, MemoryStore(), all_prs=True, delay=0) == STATUS_OK
        sweep.assert_not_called()


class TestRunRefresh:
    def test_ok(self):
        with patch("prhealth.scrape.refresh_pr_states",
                   return_value={"checked": 1, "closed": 0, "errors": 0, "rate_limited": False}):
            assert run_refresh(REPO, MemoryStore()) == STATUS_OK

    def test_rate_limited_is_error(self):
        with patch("prhealth.scrape.refresh_pr_states",
                   return_value={"checked": 0, "closed": 0, "errors": 0, "rate_limited": True}):
            assert run_refresh(REPO, MemoryStore()) == STATUS_ERROR

    def test_missing_token(self):
        with patch("prhealth.scrape.refresh_pr_states", side_effect=RuntimeError("no token")):
            assert run_refresh(REPO, MemoryStore()) == STATUS_ERROR
