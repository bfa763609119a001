from __future__ import annotations

import argparse
import logging
import sys

from runner import __version__
from runner.config import ConfigError, load_project
from runner.executor import CANCELLED_EXIT_CODE, Executor, Outcome, RunOutcome

from .args import build_parser

logger = logging.getLogger(__name__)

_log_handler: logging.Handler | None = None

_SUMMARY_TAGS = {
    Outcome.SUCCEEDED: "OK",
    Outcome.FAILED: "FAIL",
    Outcome.SPAWN_FAILED: "SPAWN-FAIL",
    Outcome.SIGNALLED: "SIGNAL",
    Outcome.CANCELLED: "CANCEL",
}


def main() -> None:
    sys.exit(run_cli())


def run_cli(argv: list[str] | None = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
        _configure_logging(args)

        match args.command:
            case "run" | "r":
                return cmd_run(args, "tasks")
            case "build":
                return cmd_run(args, "builds")
            case "list":
                return cmd_list(args)
            case _:
                return 2

    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    except KeyboardInterrupt:
        return CANCELLED_EXIT_CODE


def cmd_run(args: argparse.Namespace, mode: str) -> int:
    project = load_project(args.config)
    print(f"runner initialized v{__version__}")

    executor = Executor(
        project.units(mode),
        kind=mode.removesuffix("s"),
        root=project.root,
        max_parallel=args.max_parallel,
    )
    logger.debug("Selected %d %s from %s", len(executor.units), mode, args.config)
    outcome = executor.execute()
    _print_result(outcome)
    return exit_code(outcome)


def cmd_list(args: argparse.Namespace) -> int:
    project = load_project(args.config)
    for mode in ("tasks", "builds"):
        print(f"{mode}:")
        for unit in project.units(mode):
            print(f"  {unit.name}: {unit.display_command()}")
    return 0


def exit_code(outcome: RunOutcome) -> int:
    if outcome.all_succeeded:
        return 0
    if outcome.cancelled:
        return CANCELLED_EXIT_CODE
    return 1


def _configure_logging(args: argparse.Namespace) -> None:
    global _log_handler

    if args.quiet:
        level = logging.ERROR
    elif args.verbose >= 2:
        level = logging.DEBUG
    elif args.verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING

    package_logger = logging.getLogger("runner")
    package_logger.setLevel(level)
    # Bind to the current sys.stderr on every invocation.
    if _log_handler is not None:
        package_logger.removeHandler(_log_handler)
    _log_handler = logging.StreamHandler(sys.stderr)
    _log_handler.setFormatter(logging.Formatter("runner: [%(levelname)s] %(message)s"))
    package_logger.addHandler(_log_handler)


def _print_result(outcome: RunOutcome) -> None:
    if len(outcome) == 0:
        return
    print()
    for result in outcome.results:
        tag = _SUMMARY_TAGS[result.outcome]
        line = f"{tag} {result.name}, {result.duration_s:.3f}s, exit code = {result.exit_code}"
        if result.error and result.outcome is not Outcome.CANCELLED:
            line += f" ({result.error})"
        print(line)
