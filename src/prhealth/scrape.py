#!/usr/bin/env python3
"""Scrape PR activity from GitHub into the result store.

Processes one PR at a time with a fixed delay between PRs to keep the
request rate low and predictable. A failing PR is logged and skipped; the
loop carries on with the next one.
"""

import logging
import time
from datetime import UTC, datetime

import requests

from prhealth.github import (
    check_rate_limit,
    fetch_pull_state,
    get_pull_details,
    list_issue_comments,
    list_open_pulls,
    list_pull_reviews,
    validate_repo,
)
from prhealth.ingest import ingest_comments, store_ingest
from prhealth.models import ApprovalRecord, PullRecord

logger = logging.getLogger(__name__)

STATUS_OK = 0
STATUS_ERROR = 1
STATUS_NO_PRS = 20

DEFAULT_PR_DELAY = 0.5
DEFAULT_STATE_DELAY = 0.1
DEFAULT_BATCH_SIZE = 50

STATE_CLOSED = "closed"
OUTCOME_CLOSED = "closed"
OUTCOME_RATE_LIMITED = "rate-limited"
OUTCOME_ERROR = "error"


def _now() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _pause(delay: float) -> None:
    if delay > 0:
        time.sleep(delay)


def classify_state_error(exc: Exception) -> str:
    """Decide what a failed PR-state lookup means.

    404 -> the PR is gone, treat as closed. 429, or 403 with an exhausted
    quota -> rate limited, stop the batch. Anything else -> plain error.
    """
    resp = getattr(exc, "response", None)
    status = getattr(resp, "status_code", None)
    if status == 404:
        return OUTCOME_CLOSED
    if status == 429:
        return OUTCOME_RATE_LIMITED
    if status == 403 and resp.headers.get("X-RateLimit-Remaining") == "0":
        return OUTCOME_RATE_LIMITED
    return OUTCOME_ERROR


# ---------------------------------------------------------------------------
# Per-PR processing
# ---------------------------------------------------------------------------

def store_pull(store, details: dict) -> PullRecord:
    pull = PullRecord(
        number=details["number"],
        title=details.get("title", ""),
        state=details.get("state", "open"),
        merged=details.get("merged", False),
        labels=list(details.get("labels", [])),
        assignees=list(details.get("assignees", [])),
        created_at=details.get("created_at", ""),
        updated_at=details.get("updated_at", ""),
        last_checked=_now(),
    )
    store.upsert_pull(pull)
    return pull


def store_reviews(store, pr_number: int, reviews: list[dict]) -> int:
    for review in reviews:
        store.upsert_approval(ApprovalRecord(
            pr_number=pr_number,
            approver_login=review["login"],
            state=review["state"],
            submitted_at=review.get("submitted_at", ""),
        ))
    return len(reviews)


def process_pr(repo: str, store, pr_number: int) -> bool:
    """Fetch and store one PR's metadata, reviews and comment facts."""
    logger.info("Processing PR #%s...", pr_number)
    try:
        details = get_pull_details(repo, pr_number)
        pull = store_pull(store, details)
        logger.debug("  Title: %s", pull.title)
        logger.debug("  State: %s, labels: %s, assignees: %s",
                     pull.state, ", ".join(pull.labels) or "none",
                     ", ".join(pull.assignees) or "none")

        reviews = list_pull_reviews(repo, pr_number)
        logger.debug("  Stored %d review(s)", store_reviews(store, pr_number, reviews))

        comments = list_issue_comments(repo, pr_number)
        result = ingest_comments(pr_number, comments, repo)
        store_ingest(store, pr_number, result)
    except Exception as e:
        logger.error("  Error processing PR #%s: %s", pr_number, e)
        return False
    return True


def process_prs(repo: str, store, numbers: list[int],
                delay: float = DEFAULT_PR_DELAY) -> tuple[int, int]:
    """Process PRs sequentially. Returns (succeeded, failed)."""
    ok = failed = 0
    total = len(numbers)
    for i, number in enumerate(numbers, 1):
        logger.info("[%d/%d]", i, total)
        if process_pr(repo, store, number):
            ok += 1
        else:
            failed += 1
        if i < total:
            _pause(delay)
    return ok, failed


# ---------------------------------------------------------------------------
# State refresh
# ---------------------------------------------------------------------------

def handle_closed_prs(repo: str, store, delay: float = DEFAULT_STATE_DELAY) -> int:
    """Recheck every PR stored as open; mark the closed ones. Returns count."""
    open_pulls = store.list_pulls(state="open")
    logger.info("Checking %d PRs marked as open for state changes...", len(open_pulls))

    closed = 0
    for pull in open_pulls:
        try:
            state = fetch_pull_state(repo, pull.number)["state"]
        except requests.RequestException as e:
            outcome = classify_state_error(e)
            if outcome == OUTCOME_RATE_LIMITED:
                logger.error("Rate limit hit at PR #%s -- stopping sweep, run again later",
                             pull.number)
                break
            if outcome == OUTCOME_CLOSED:
                state = STATE_CLOSED
            else:
                logger.error("  Error checking PR #%s: %s", pull.number, e)
                _pause(delay)
                continue
        if state == STATE_CLOSED:
            logger.info("  PR #%s is now closed", pull.number)
            store.set_pull_state(pull.number, STATE_CLOSED, _now())
            closed += 1
        _pause(delay)
    return closed


def refresh_pr_states(
    repo: str, store,
    batch_size: int = DEFAULT_BATCH_SIZE,
    delay: float = DEFAULT_STATE_DELAY,
) -> dict:
    """Refresh state/assignees for the least recently checked PRs.

    Stops early when rate limited; unchecked PRs are picked up next run.
    Returns counts: checked, closed, errors, rate_limited (bool).
    """
    pulls = sorted(store.list_pulls(), key=lambda p: p.last_checked or "")[:batch_size]
    logger.info("Refreshing state for %d PR(s), %.1fs delay", len(pulls), delay)

    counts = {"checked": 0, "closed": 0, "errors": 0, "rate_limited": False}
    for pull in pulls:
        try:
            info = fetch_pull_state(repo, pull.number)
        except requests.RequestException as e:
            outcome = classify_state_error(e)
            if outcome == OUTCOME_RATE_LIMITED:
                logger.error("Rate limit hit at PR #%s -- stopping, run again later",
                             pull.number)
                counts["rate_limited"] = True
                break
            if outcome == OUTCOME_ERROR:
                logger.error("  Error fetching PR #%s: %s", pull.number, e)
                counts["errors"] += 1
                _pause(delay)
                continue
            info = {"state": STATE_CLOSED, "merged": pull.merged, "assignees": []}

        counts["checked"] += 1
        if info["state"] != pull.state:
            logger.info("  PR #%s: %s -> %s", pull.number, pull.state, info["state"])
        if info["state"] == STATE_CLOSED and pull.state != STATE_CLOSED:
            counts["closed"] += 1
        pull.state = info["state"]
        pull.merged = info["merged"]
        pull.assignees = info["assignees"]
        pull.last_checked = _now()
        store.upsert_pull(pull)
        _pause(delay)

    return counts


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def run(
    repo: str,
    store,
    pr_number: int | None = None,
    all_prs: bool = False,
    delay: float = DEFAULT_PR_DELAY,
    state_delay: float = DEFAULT_STATE_DELAY,
) -> int:
    """Scrape one PR, or all open PRs. Returns status code.

    The default mode (neither ``pr_number`` nor ``all_prs``) also sweeps
    stored open PRs for ones closed since the last run.
    """
    try:
        validate_repo(repo)
    except ValueError as e:
        logger.error("%s", e)
        return STATUS_ERROR

    if pr_number is not None:
        ok = process_pr(repo, store, pr_number)
        return STATUS_OK if ok else STATUS_ERROR

    try:
        pulls = list_open_pulls(repo)
    except Exception as e:
        logger.error("Failed to list open PRs: %s", e)
        return STATUS_ERROR

    if not pulls:
        logger.info("No open PRs found.")
        return STATUS_NO_PRS

    if all_prs:
        logger.info("Processing ALL %d open PRs (this may take a while)...", len(pulls))
    ok, failed = process_prs(repo, store, [p["number"] for p in pulls], delay)

    if not all_prs:
        try:
            closed = handle_closed_prs(repo, store, state_delay)
        except RuntimeError as e:
            logger.error("State sweep failed: %s", e)
        else:
            logger.info("Marked %d PR(s) closed", closed)

    check_rate_limit()
    logger.info("Scraping completed: %d ok, %d failed", ok, failed)
    return STATUS_OK


def run_refresh(
    repo: str, store,
    batch_size: int = DEFAULT_BATCH_SIZE,
    delay: float = DEFAULT_STATE_DELAY,
) -> int:
    """Refresh stored PR states in one batch. Returns status code."""
    try:
        counts = refresh_pr_states(repo, store, batch_size, delay)
    except (ValueError, RuntimeError) as e:
        logger.error("%s", e)
        return STATUS_ERROR

    logger.info("Checked %d PR(s): %d newly closed, %d error(s)",
                counts["checked"], counts["closed"], counts["errors"])
    return STATUS_ERROR if counts["rate_limited"] else STATUS_OK
