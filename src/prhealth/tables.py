"""Scan markdown result tables embedded in bot comments.

Two header rules exist and are kept apart per call site:

- ``HEADER_STRICT``: the line contains the literal ``Test | Result | Time``.
  Used to turn every table row into a stored test result.
- ``HEADER_PERMISSIVE``: the line contains the words ``Test`` and
  ``Result`` separated by a pipe. Used to pick failed test names.
"""

import logging
import re
from collections.abc import Iterable, Iterator

logger = logging.getLogger(__name__)

HEADER_STRICT = "strict"
HEADER_PERMISSIVE = "permissive"

STRICT_HEADER_TEXT = "Test | Result | Time"
PERMISSIVE_HEADER_RE = re.compile(r"\bTest\b[^|\n]*\|.*\bResult\b")
SEPARATOR_RE = re.compile(r"^\|?\s*:?-{3,}")
TIME_RE = re.compile(r"[\d.]+")

RESULT_ROW_COLUMNS = 4


# ---------------------------------------------------------------------------
# Cell helpers
# ---------------------------------------------------------------------------

def split_row(line: str) -> list[str]:
    """Split a table line on pipes and trim every cell.

    Outer pipes are dropped only as a pair, so ``| a | b |`` and ``a | b``
    give the same cells while ``| b | c`` keeps its empty first cell.
    """
    stripped = line.strip()
    if len(stripped) > 1 and stripped.startswith("|") and stripped.endswith("|"):
        stripped = stripped[1:-1]
    return [cell.strip() for cell in stripped.split("|")]


def strip_backticks(value: str) -> str:
    """'`Error`' -> 'Error'."""
    return value.replace("`", "").strip()


def parse_time(value: str) -> float | None:
    """Return the first number in a time cell, or None when there is none."""
    match = TIME_RE.search(value or "")
    if not match:
        return None
    try:
        return float(match.group(0))
    except ValueError:
        # a run of dots only, e.g. "..."
        return None


# ---------------------------------------------------------------------------
# Scanner
# ---------------------------------------------------------------------------

def is_header(line: str, header: str = HEADER_STRICT) -> bool:
    """Check whether a line opens a result table under the given rule."""
    if header == HEADER_STRICT:
        return STRICT_HEADER_TEXT in line
    if header == HEADER_PERMISSIVE:
        return bool(PERMISSIVE_HEADER_RE.search(line))
    raise ValueError(f"Unknown table header rule: {header!r}")


def scan_table(
    lines: Iterable[str],
    header: str = HEADER_STRICT,
    min_columns: int = 2,
) -> Iterator[list[str]]:
    """Yield the rows of the first result table found in ``lines``.

    Capturing starts after the header line. Separator rows are skipped,
    rows with fewer than ``min_columns`` cells are skipped, and the scan
    stops at the first blank line after the header or at end of input.
    Single forward pass over ``lines``.
    """
    if header not in (HEADER_STRICT, HEADER_PERMISSIVE):
        raise ValueError(f"Unknown table header rule: {header!r}")

    in_table = False
    for line in lines:
        if not in_table:
            in_table = is_header(line, header)
            continue

        stripped = line.strip()
        if not stripped:
            return
        if SEPARATOR_RE.match(stripped):
            continue

        cells = split_row(stripped)
        if len(cells) < min_columns:
            continue
        yield cells


def parse_result_rows(body: str) -> list[dict]:
    """Parse every row of the ``Test | Result | Time | Test File`` table.

    Returns dicts with keys: test_name, result, time_seconds, test_file.
    Rows with an empty name or a repeated header are dropped.
    """
    if not body:
        return []

    rows = []
    for cells in scan_table(body.splitlines(), HEADER_STRICT, RESULT_ROW_COLUMNS):
        test_name = cells[0]
        if not test_name or test_name == "Test":
            continue
        rows.append({
            "test_name": test_name,
            "result": strip_backticks(cells[1]),
            "time_seconds": parse_time(cells[2]),
            "test_file": cells[3],
        })

    logger.debug("Parsed %d result rows", len(rows))
    return rows
