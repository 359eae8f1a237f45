#!/usr/bin/env python3
"""Unified CLI for prhealth -- CloudStack PR quality signals."""

import argparse
import json
import logging
import os
import sys

from prhealth import __version__

logger = logging.getLogger(__name__)

DEFAULT_REPO = "apache/cloudstack"
DSN_ENV = "PRHEALTH_DSN"

STATUS_OK = 0
STATUS_ERROR = 1
STATUS_NOT_FOUND = 2


def _resolve_body(value: str) -> str:
    """Resolve --body value: '@path' reads a file, '-' reads stdin."""
    if not value:
        return ""
    if value == "-":
        return sys.stdin.read()
    if value.startswith("@"):
        with open(value[1:]) as f:
            return f.read()
    return value


def _with_store(args, action) -> int:
    """Open the store, run ``action(store)`` and close it again.

    Storage failures are logged and turned into STATUS_ERROR.
    """
    from prhealth.store import StoreError, open_store

    try:
        store = open_store(args.dsn)
    except StoreError as e:
        logger.error("%s", e)
        return STATUS_ERROR
    try:
        return action(store)
    except StoreError as e:
        logger.error("%s", e)
        return STATUS_ERROR
    finally:
        store.close()


def _print_json(data) -> None:
    json.dump(data, sys.stdout, indent=2)
    sys.stdout.write("\n")


def cmd_scrape(args):
    from prhealth.scrape import run
    return _with_store(args, lambda store: run(
        args.repo, store, pr_number=args.pr_number, all_prs=args.all,
        delay=args.delay, state_delay=args.state_delay,
    ))


def cmd_refresh_states(args):
    from prhealth.scrape import run_refresh
    return _with_store(args, lambda store: run_refresh(
        args.repo, store, args.batch_size, args.state_delay,
    ))


def cmd_reparse(args):
    from prhealth.ingest import reparse_stored

    def action(store):
        reparse_stored(store)
        return STATUS_OK

    return _with_store(args, action)


def cmd_dedupe(args):
    def action(store):
        removed = store.remove_duplicate_results()
        logger.info("Removed %d duplicate test result(s)", removed)
        return STATUS_OK

    return _with_store(args, action)


def cmd_report(args):
    from prhealth.report import run
    return _with_store(args, lambda store: run(
        store, args.output_md, args.output_json, repo=args.repo,
    ))


def cmd_pr(args):
    from prhealth.stats import pr_view

    def action(store):
        view = pr_view(store, args.number, args.repo)
        if view is None:
            logger.error("PR #%s not found", args.number)
            return STATUS_NOT_FOUND
        _print_json(view)
        return STATUS_OK

    return _with_store(args, action)


def cmd_test(args):
    from prhealth.stats import history_for_test

    def action(store):
        history = history_for_test(store.list_test_results(test_name=args.name), args.name)
        if history is None:
            logger.error("No results recorded for %s", args.name)
            return STATUS_NOT_FOUND
        _print_json(history)
        return STATUS_OK

    return _with_store(args, action)


def cmd_upgrades(args):
    from prhealth.stats import upgrade_test_filters, upgrade_test_stats

    def action(store):
        everything = store.list_upgrade_tests()
        results = store.list_upgrade_tests(
            from_version=args.from_version, to_version=args.to_version,
            distro=args.distro, hypervisor=args.hypervisor,
            status=args.status,
            limit=args.limit,
        )
        _print_json({
            "stats": upgrade_test_stats(everything),
            "filters": upgrade_test_filters(everything),
            "results": [r.to_dict() for r in results],
        })
        return STATUS_OK

    return _with_store(args, action)


def cmd_import_upgrades(args):
    from prhealth.ingest import store_upgrade_tests

    try:
        with open(args.input) as f:
            rows = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error("Cannot read %s: %s", args.input, e)
        return STATUS_ERROR
    if not isinstance(rows, list):
        logger.error("%s must hold a JSON list of upgrade test results", args.input)
        return STATUS_ERROR

    def action(store):
        store_upgrade_tests(store, rows)
        return STATUS_OK

    return _with_store(args, action)


def cmd_parse(args):
    """Run the extractors on one comment body without touching GitHub or a store."""
    from prhealth.comments import classify_comment
    from prhealth.ingest import ingest_comments
    from prhealth.models import CommentRecord

    body = _resolve_body(args.body)
    comment = CommentRecord(body=body, author_login=args.author)
    result = ingest_comments(args.pr_number, [comment], args.repo)
    _print_json({
        "kinds": sorted(k.value for k in classify_comment(body, args.author)),
        "coverage": result.coverage.to_dict() if result.coverage else None,
        "smokeTests": [s.fact.to_dict() for s in result.smoke_tests],
        "testResults": [r.to_dict() for r in result.test_results],
    })
    return STATUS_OK


def _add_store_args(p):
    p.add_argument(
        "--dsn", default=os.environ.get(DSN_ENV, ""),
        help=f"PostgreSQL DSN (default: ${DSN_ENV}; in-memory when unset)",
    )


def _add_repo_arg(p):
    p.add_argument(
        "--repo", default=DEFAULT_REPO,
        help=f"Target repository (owner/name, default: {DEFAULT_REPO})",
    )


def main():
    parser = argparse.ArgumentParser(
        prog="prhealth",
        description="PR quality signals -- smoke tests, coverage, and common vs unique test failures",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--debug", action="store_true",
        help="Enable debug logging (verbose output)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # --- scrape ---
    p_scrape = subparsers.add_parser(
        "scrape", help="Scrape PR reviews, coverage and smoke-test comments from GitHub",
    )
    _add_repo_arg(p_scrape)
    _add_store_args(p_scrape)
    p_scrape.add_argument(
        "--pr-number", type=int, default=None,
        help="Process only this PR",
    )
    p_scrape.add_argument(
        "--all", action="store_true",
        help="Process all open PRs without the closed-PR sweep",
    )
    p_scrape.add_argument(
        "--delay", type=float, default=0.5,
        help="Seconds to wait between PRs (default: 0.5)",
    )
    p_scrape.add_argument(
        "--state-delay", type=float, default=0.1,
        help="Seconds to wait between closed-PR checks (default: 0.1)",
    )
    p_scrape.set_defaults(func=cmd_scrape)

    # --- refresh-states ---
    p_refresh = subparsers.add_parser(
        "refresh-states", help="Refresh state of stored PRs in one batch",
    )
    _add_repo_arg(p_refresh)
    _add_store_args(p_refresh)
    p_refresh.add_argument(
        "--batch-size", type=int, default=50,
        help="Maximum PRs to check in this run (default: 50)",
    )
    p_refresh.add_argument(
        "--state-delay", type=float, default=0.1,
        help="Seconds to wait between requests (default: 0.1)",
    )
    p_refresh.set_defaults(func=cmd_refresh_states)

    # --- reparse ---
    p_reparse = subparsers.add_parser(
        "reparse", help="Re-derive test results from stored smoke-test comments",
    )
    _add_store_args(p_reparse)
    p_reparse.set_defaults(func=cmd_reparse)

    # --- dedupe ---
    p_dedupe = subparsers.add_parser(
        "dedupe", help="Remove duplicate test results, keeping the newest",
    )
    _add_store_args(p_dedupe)
    p_dedupe.set_defaults(func=cmd_dedupe)

    # --- report ---
    p_report = subparsers.add_parser(
        "report", help="Write report.md and report.json from stored facts",
    )
    _add_repo_arg(p_report)
    _add_store_args(p_report)
    p_report.add_argument(
        "--output-md", default="report.md",
        help="Output markdown report path (default: report.md)",
    )
    p_report.add_argument(
        "--output-json", default="report.json",
        help="Output JSON report path (default: report.json)",
    )
    p_report.set_defaults(func=cmd_report)

    # --- pr ---
    p_pr = subparsers.add_parser(
        "pr", help="Print one PR's smoke tests, coverage and classified failures as JSON",
    )
    _add_repo_arg(p_pr)
    _add_store_args(p_pr)
    p_pr.add_argument("--number", type=int, required=True, help="PR number")
    p_pr.set_defaults(func=cmd_pr)

    # --- test ---
    p_test = subparsers.add_parser(
        "test", help="Print the failure history of one test as JSON",
    )
    _add_store_args(p_test)
    p_test.add_argument("--name", required=True, help="Exact test name")
    p_test.set_defaults(func=cmd_test)

    # --- upgrades ---
    p_upgrades = subparsers.add_parser(
        "upgrades", help="Print upgrade test results, status counts and filter values as JSON",
    )
    _add_store_args(p_upgrades)
    p_upgrades.add_argument("--from-version", default=None, help="Upgrade start version")
    p_upgrades.add_argument("--to-version", default=None, help="Upgrade target version")
    p_upgrades.add_argument("--distro", default=None, help="Management server OS")
    p_upgrades.add_argument("--hypervisor", default=None, help="Hypervisor name")
    p_upgrades.add_argument(
        "--status", default=None, choices=["PASS", "FAIL", "ERROR", "SKIPPED"],
        type=str.upper, help="Overall status",
    )
    p_upgrades.add_argument(
        "--limit", type=int, default=100,
        help="Maximum results to print (default: 100)",
    )
    p_upgrades.set_defaults(func=cmd_upgrades)

    # --- import-upgrades ---
    p_import = subparsers.add_parser(
        "import-upgrades", help="Load upgrade test results from a JSON list",
    )
    _add_store_args(p_import)
    p_import.add_argument("--input", required=True, help="Path to the JSON file")
    p_import.set_defaults(func=cmd_import_upgrades)

    # --- parse ---
    p_parse = subparsers.add_parser(
        "parse", help="Parse one comment body offline and print the extracted facts",
    )
    _add_repo_arg(p_parse)
    p_parse.add_argument(
        "--body", required=True,
        help="Comment text: inline, @file, or - for stdin",
    )
    p_parse.add_argument(
        "--author", default="",
        help="Comment author login (codecov detection)",
    )
    p_parse.add_argument(
        "--pr-number", type=int, default=0,
        help="PR number used for fallback URLs (default: 0)",
    )
    p_parse.set_defaults(func=cmd_parse)

    args = parser.parse_args()

    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format=(
            "%(message)s" if level == logging.INFO
            else "%(asctime)s %(name)s %(levelname)s %(message)s"
        ),
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
