"""Centralized GitHub client using PyGithub.

All GitHub API calls go through this module. Results are returned as plain
dicts / CommentRecords with timestamps formatted as ISO-8601 UTC strings.
"""

import functools
import logging
import os

import requests
from github import Github

from prhealth.models import CommentRecord

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
IGNORED_REVIEW_STATES = ("PENDING", "DISMISSED")


@functools.lru_cache(maxsize=1)
def get_client() -> Github:
    """Create a Github client from GITHUB_TOKEN or GH_TOKEN env var.

    Cached for the lifetime of the process since the token comes from
    environment variables which don't change during a run.
    """
    return Github(_get_token())


def _get_token() -> str:
    """Return the GitHub token from environment."""
    token = os.environ.get("GITHUB_TOKEN") or os.environ.get("GH_TOKEN")
    if not token:
        raise RuntimeError(
            "GitHub token not found. Set GITHUB_TOKEN or GH_TOKEN environment variable."
        )
    return token


def validate_repo(repo_slug: str) -> None:
    """Validate that repo_slug is in 'owner/name' format."""
    if not repo_slug or repo_slug.count("/") != 1:
        raise ValueError(
            f"Invalid repo format: '{repo_slug}'. Expected 'owner/name'."
        )


def _fmt(dt) -> str:
    return dt.strftime(TIMESTAMP_FORMAT) if dt else ""


def check_rate_limit(client: Github | None = None) -> int | None:
    """Log a warning if the GitHub API rate limit is running low.

    Returns the remaining request count, or None when it can't be read.
    """
    try:
        rate = (client or get_client()).get_rate_limit().core
    except Exception as e:
        logger.debug("Could not read GitHub rate limit: %s", e)
        return None
    if rate.remaining < 50:
        logger.warning(
            "GitHub API rate limit low: %d/%d remaining, resets at %s",
            rate.remaining, rate.limit, rate.reset,
        )
    return rate.remaining


def list_open_pulls(repo_slug: str) -> list[dict]:
    """Get all open PRs. Returns dicts with keys: number, title.

    PyGithub pages through the results (100 per page).
    """
    validate_repo(repo_slug)
    repo = get_client().get_repo(repo_slug)
    pulls = [
        {"number": pr.number, "title": pr.title}
        for pr in repo.get_pulls(state="open")
    ]
    logger.info("Found %d open PRs in %s", len(pulls), repo_slug)
    return pulls


def get_pull_details(repo_slug: str, number: int) -> dict:
    """Get PR metadata.

    Returns a dict with keys: number, title, state, merged, labels,
    assignees, created_at, updated_at.
    """
    validate_repo(repo_slug)
    pr = get_client().get_repo(repo_slug).get_pull(number)
    return {
        "number": pr.number,
        "title": pr.title,
        "state": pr.state,
        "merged": bool(pr.merged),
        "labels": [label.name for label in pr.labels],
        "assignees": [a.login for a in pr.assignees],
        "created_at": _fmt(pr.created_at),
        "updated_at": _fmt(pr.updated_at),
    }


def list_pull_reviews(repo_slug: str, number: int) -> list[dict]:
    """Get submitted reviews (PENDING and DISMISSED are dropped).

    Returns dicts with keys: login, state, submitted_at.
    """
    validate_repo(repo_slug)
    pr = get_client().get_repo(repo_slug).get_pull(number)
    results = []
    for review in pr.get_reviews():
        if not review.state or review.state in IGNORED_REVIEW_STATES:
            continue
        results.append({
            "login": review.user.login if review.user else "",
            "state": review.state,
            "submitted_at": _fmt(review.submitted_at),
        })
    return results


def list_issue_comments(repo_slug: str, number: int) -> list[CommentRecord]:
    """Get the PR's conversation comments in creation order."""
    validate_repo(repo_slug)
    issue = get_client().get_repo(repo_slug).get_issue(number)
    return [
        CommentRecord(
            body=comment.body or "",
            author_login=comment.user.login if comment.user else "",
            created_at=_fmt(comment.created_at),
        )
        for comment in issue.get_comments()
    ]


def fetch_pull_state(repo_slug: str, number: int) -> dict:
    """Get a PR's state with one REST call.

    Returns a dict with keys: state, merged, assignees. Raises
    requests.HTTPError on non-2xx so callers can act on the status code.
    """
    validate_repo(repo_slug)
    token = _get_token()
    url = f"https://api.github.com/repos/{repo_slug}/pulls/{number}"
    resp = requests.get(
        url,
        headers={
            "Authorization": f"token {token}",
            "Accept": "application/vnd.github+json",
        },
        timeout=30,
    )
    resp.raise_for_status()
    data = resp.json()
    return {
        "state": data.get("state", ""),
        "merged": bool(data.get("merged")),
        "assignees": [a["login"] for a in data.get("assignees") or []],
    }
