"""Extract smoke-test facts from Trillian bot comments.

A typical comment::

    [SF] Trillian test result (tid-14865)
    Environment: kvm-ol8 (x2), Advanced Networking with Mgmt server ol8
    Total time taken: 51431 seconds
    Marvin logs: https://github.com/blueorangutan/acs-prs/releases/download/trillian/pr12098-t14865-kvm-ol8.zip
    Smoke tests completed. 139 look OK, 2 have errors, 0 did not run
    Only failed and skipped tests results shown below:

    Test | Result | Time (s) | Test File
    --- | --- | --- | ---
    test_01_migrate_vm | `Error` | 51.23 | test_vm_life_cycle.py

``N look OK`` is the mandatory anchor. Everything else degrades to
absent/empty instead of failing.
"""

import logging
import re

from prhealth.models import (
    STATUS_FAIL,
    STATUS_OK,
    UNKNOWN_HYPERVISOR,
    CommentRecord,
    SmokeTestFact,
)
from prhealth.tables import HEADER_PERMISSIVE, scan_table, strip_backticks

logger = logging.getLogger(__name__)

PASSED_RE = re.compile(r"(\d+)\s+look\s+OK", re.IGNORECASE)
ERRORS_RE = re.compile(r"(\d+)\s+have\s+errors", re.IGNORECASE)
SKIPPED_RE = re.compile(r"(\d+)\s+did\s+not\s+run", re.IGNORECASE)
ENVIRONMENT_RE = re.compile(r"Environment:\s*(\w+)", re.IGNORECASE)
MARVIN_LOGS_RE = re.compile(r"Marvin logs:\s*(https://\S+?\.zip)", re.IGNORECASE)
ZIP_URL_RE = re.compile(r"https://[^\s)]+\.zip", re.IGNORECASE)
URL_VERSION_RE = re.compile(
    r"-(kvm|vmware|xenserver|xen|xcpng)-([^./]+)\.zip", re.IGNORECASE,
)
HYPERVISOR_SPLIT_RE = re.compile(r"^([a-zA-Z]+)(.+)$")
LOOSE_FAILURE_RE = re.compile(
    r"\b(test_\w+)\b[^\w\n]*(?:FAILED|FAIL|ERROR)", re.IGNORECASE,
)


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------

def normalize_hypervisor(
    hypervisor_raw: str | None, version_raw: str | None = None,
) -> tuple[str, str | None]:
    """Split a combined token into (HYPERVISOR, version).

    'xcpng82' -> ('XCPNG', '82'), 'vmware70u3' -> ('VMWARE', '70u3'),
    'kvm' -> ('KVM', None). An explicit version is passed through and the
    hypervisor is only upper-cased. Never returns an empty hypervisor.
    """
    hypervisor = (hypervisor_raw or "").strip()
    version = version_raw or None
    if not hypervisor:
        return UNKNOWN_HYPERVISOR, version

    if version is None:
        match = HYPERVISOR_SPLIT_RE.match(hypervisor)
        if match and any(ch.isdigit() for ch in match.group(2)):
            hypervisor, version = match.group(1), match.group(2)

    return hypervisor.upper(), version


def version_from_logs_url(logs_url: str | None) -> str | None:
    """'...pr12098-t14865-kvm-ol8.zip' -> 'ol8'."""
    if not logs_url:
        return None
    match = URL_VERSION_RE.search(logs_url)
    return match.group(2) if match else None


# ---------------------------------------------------------------------------
# Field extractors
# ---------------------------------------------------------------------------

def _first_int(pattern: re.Pattern, body: str) -> int | None:
    match = pattern.search(body)
    return int(match.group(1)) if match else None


def extract_environment(body: str) -> str | None:
    """Return the lowercased word after 'Environment:', if any."""
    match = ENVIRONMENT_RE.search(body)
    return match.group(1).lower() if match else None


def extract_logs_url(body: str) -> str | None:
    """Prefer the 'Marvin logs:' link, else the first .zip URL in the body."""
    match = MARVIN_LOGS_RE.search(body)
    if match:
        return match.group(1)
    match = ZIP_URL_RE.search(body)
    return match.group(0) if match else None


def compute_total(passed: int, errors: int | None, skipped: int | None) -> int:
    """passed + errors (+ skipped), or passed + skipped, or passed."""
    total = passed
    if errors is not None:
        total += errors
    if skipped is not None:
        total += skipped
    return total


def extract_failed_tests(body: str) -> list[str]:
    """Return failed test names in first-seen order, without duplicates.

    Reads the Test/Result table first; when that yields nothing, falls back
    to 'test_xxx ... ERROR|FAIL|FAILED' on a single line anywhere in the
    body. May return an empty list.
    """
    names: list[str] = []
    for cells in scan_table(body.splitlines(), HEADER_PERMISSIVE, min_columns=2):
        name = cells[0]
        result = strip_backticks(cells[1]).lower()
        if not name.startswith("test_"):
            continue
        if "error" in result or "fail" in result:
            if name not in names:
                names.append(name)

    if names:
        return names

    for match in LOOSE_FAILURE_RE.finditer(body):
        name = match.group(1)
        if name not in names:
            names.append(name)
    return names


# ---------------------------------------------------------------------------
# Fact extractor
# ---------------------------------------------------------------------------

def extract_smoke_test(
    body: str, meta: CommentRecord | None = None,
) -> SmokeTestFact | None:
    """Parse a smoke-test comment into a SmokeTestFact.

    Returns None only when the 'N look OK' anchor is missing. ``meta`` may
    carry explicit hypervisor/version/logs_url fields that win over
    anything found in the body.
    """
    if body is None:
        raise TypeError("comment body must be a string, got None")

    passed = _first_int(PASSED_RE, body)
    if passed is None:
        return None

    errors = _first_int(ERRORS_RE, body)
    skipped = _first_int(SKIPPED_RE, body)
    total = compute_total(passed, errors, skipped)
    status = STATUS_FAIL if errors else STATUS_OK

    logs_url = (meta.logs_url if meta else None) or extract_logs_url(body)
    hypervisor_raw = (meta.hypervisor if meta else None) or extract_environment(body)
    version_raw = (meta.version if meta else None) or version_from_logs_url(logs_url)
    hypervisor, version = normalize_hypervisor(hypervisor_raw, version_raw)

    failed_tests = extract_failed_tests(body) if status == STATUS_FAIL else []

    return SmokeTestFact(
        hypervisor=hypervisor,
        version=version,
        passed=passed,
        total=total,
        status=status,
        failed_tests=failed_tests,
        errors=errors,
        skipped=skipped,
        logs_url=logs_url,
        created_at=meta.created_at if meta else "",
    )
