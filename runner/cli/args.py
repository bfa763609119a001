from __future__ import annotations

import argparse
import os

from runner import __version__

DEFAULT_CONFIG = "runner.json"


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from None
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="runner",
        description="Run every task or build of a monorepo in parallel",
    )

    parser.add_argument(
        "--config",
        default=os.environ.get("RUNNER_CONFIG", DEFAULT_CONFIG),
        help="Path to config file (default: $RUNNER_CONFIG or runner.json)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="More diagnostics on stderr (repeat for debug)",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Only report errors on stderr",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s v{__version__}",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        required=True,
    )

    # run / r
    run = subparsers.add_parser("run", aliases=["r"], help="Run all tasks in parallel")
    _add_run_options(run)

    # build
    build = subparsers.add_parser("build", help="Run all builds in parallel")
    _add_run_options(build)

    # list
    subparsers.add_parser("list", help="List tasks and builds")

    return parser


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--max-parallel",
        type=_positive_int,
        default=None,
        help="Cap on concurrently running units (default: no cap)",
    )
