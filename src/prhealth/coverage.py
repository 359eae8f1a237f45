"""Extract code-coverage facts from codecov comments."""

import re

from prhealth.models import CoverageFact

DEFAULT_REPO = "apache/cloudstack"

PERCENTAGE_RE = re.compile(r"(\d+\.?\d*)%")
SIGNED_CHANGE_RE = re.compile(r"([+-]\d+\.?\d*)%")
PHRASE_CHANGE_RE = re.compile(
    r"(increased|decreased)\s+by\s+`?(\d+\.?\d*)%", re.IGNORECASE,
)
CODECOV_URL_RE = re.compile(r"https?://(?:app\.)?codecov\.io/[^\s)\]>\"'`]+")


def fallback_coverage_url(pr_number: int | None, repo: str = DEFAULT_REPO) -> str:
    """Canonical codecov page for a PR (or the repo when the PR is unknown)."""
    if pr_number is None:
        return f"https://app.codecov.io/gh/{repo}"
    return f"https://app.codecov.io/gh/{repo}/pull/{pr_number}"


def extract_change(body: str) -> float:
    """Signed coverage delta; 0.0 when the comment does not state one."""
    match = SIGNED_CHANGE_RE.search(body)
    if match:
        return float(match.group(1))
    match = PHRASE_CHANGE_RE.search(body)
    if match:
        magnitude = float(match.group(2))
        return -magnitude if match.group(1).lower() == "decreased" else magnitude
    return 0.0


def extract_coverage(
    body: str,
    pr_number: int | None = None,
    repo: str = DEFAULT_REPO,
    created_at: str = "",
) -> CoverageFact | None:
    """Parse a codecov comment. Returns None when no percentage is present."""
    if body is None:
        raise TypeError("comment body must be a string, got None")

    match = PERCENTAGE_RE.search(body)
    if not match:
        return None

    url_match = CODECOV_URL_RE.search(body)
    url = url_match.group(0) if url_match else fallback_coverage_url(pr_number, repo)

    return CoverageFact(
        percentage=float(match.group(1)),
        change=extract_change(body),
        url=url,
        created_at=created_at,
    )
