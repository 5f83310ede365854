"""CLI entry point for dutrunner.

Provides ``main()`` as the console-script entry point registered in
``pyproject.toml`` as ``dutrunner = "dutrunner.cli:main"``. ``run`` starts a
fresh run from a settings file and a job list; ``resume`` continues an
interrupted run from its results directory.
"""

from __future__ import annotations

import argparse
import sys

from dutrunner.config import ConfigError, configure_logging, load_job_list, load_settings
from dutrunner.executor import (
    ExecutorError,
    execute,
    initialize_execute_state,
    initialize_execute_state_from_resume,
)
from dutrunner.models import JobList, Settings


def _build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser.

    Returns:
        Configured ``ArgumentParser`` with ``run`` and ``resume`` commands.
    """
    parser = argparse.ArgumentParser(
        prog="dutrunner",
        description="Run hardware test binaries with timeouts and resumable results.",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also write the supervisor log to this file.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Start a fresh run.")
    run.add_argument("--settings", required=True, help="Path to the settings YAML file.")
    run.add_argument("--job-list", required=True, help="Path to the job list YAML file.")
    run.add_argument(
        "--dry-run",
        action="store_true",
        help="Prepare the results directory without executing anything.",
    )
    run.add_argument(
        "--overwrite",
        action="store_true",
        help="Clear a previous run in the results directory.",
    )

    resume = sub.add_parser("resume", help="Continue an interrupted run.")
    resume.add_argument("results_path", help="Results directory of the run.")
    return parser


def _print_startup_summary(settings: Settings, job_list: JobList) -> None:
    """Print a startup summary banner to stdout."""
    sep = "=" * 60
    print(sep)
    print("dutrunner")
    print(sep)
    print(f"  Test root:    {settings.test_root}")
    print(f"  Results:      {settings.results_path}")
    print(f"  Jobs:         {job_list.size}")
    print(
        f"  Timeouts:     per-test={settings.per_test_timeout}s, "
        f"inactivity={settings.inactivity_timeout}s, overall={settings.overall_timeout}s"
    )
    print(sep)


def main(argv: list[str] | None = None) -> int:
    """Entry point for the dutrunner CLI application.

    Returns:
        Exit code: 0 on success, 1 on error or an aborted run.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "run":
            overrides: dict[str, bool] = {}
            if args.dry_run:
                overrides["dry_run"] = True
            if args.overwrite:
                overrides["overwrite"] = True
            settings = load_settings(args.settings, **overrides)
            configure_logging(settings.log_level, args.log_file)
            job_list = load_job_list(args.job_list)
            _print_startup_summary(settings, job_list)
            state = initialize_execute_state(settings, job_list)
        else:
            state, settings, job_list = initialize_execute_state_from_resume(args.results_path)
            configure_logging(settings.log_level, args.log_file)

        ok = execute(state, settings, job_list)
    except (ConfigError, ExecutorError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
