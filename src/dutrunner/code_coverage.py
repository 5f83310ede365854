"""Kernel code coverage collection around jobs.

Coverage counters are reset through debugfs before a job (or before the
whole run) and stored afterwards by an external, privileged helper script
that receives the output file name as its only argument.
"""

from __future__ import annotations

import logging
from pathlib import Path
import signal
import subprocess
from typing import TYPE_CHECKING

from dutrunner.results import CODE_COV_RESULTS_PATH

if TYPE_CHECKING:
    from dutrunner.models import Settings
    from dutrunner.monitor import SignalChannel

logger = logging.getLogger(__name__)

GCOV_RESET_PATH = "/sys/kernel/debug/gcov/reset"
DEFAULT_COVERAGE_NAME = "code_coverage"


def code_coverage_start() -> str | None:
    """Reset the kernel coverage counters.

    Returns:
        An abort reason when the counters cannot be reset, else ``None``.
    """
    try:
        with open(GCOV_RESET_PATH, "w", encoding="ascii") as f:
            f.write("0\n")
    except OSError as exc:
        logger.error("Failed to reset gcov counters: %s", exc)
        return f"Failed to reset gcov counters via {GCOV_RESET_PATH}: {exc}"
    return None


def sanitize_job_name(name: str) -> str:
    """Turn a job display name into a file name.

    Runs of characters other than ASCII letters and digits collapse into a
    single ``_``; leading and trailing ones are dropped.

    >>> sanitize_job_name("gem_exec (basic, !flink)")
    'gem_exec_basic_flink'
    """
    out: list[str] = []
    last_was_escaped = True
    for ch in name:
        if ch.isascii() and ch.isalnum():
            out.append(ch)
            last_was_escaped = False
        elif not last_was_escaped:
            out.append("_")
            last_was_escaped = True
    if out and last_was_escaped:
        out.pop()
    return "".join(out)


def code_coverage_name(settings: Settings) -> str:
    """Name of the whole-run tarball: the run name, else the test list stem."""
    if settings.name:
        return settings.name
    if settings.test_list:
        return Path(settings.test_list).stem or DEFAULT_COVERAGE_NAME
    return DEFAULT_COVERAGE_NAME


def run_as_root(argv: list[str], signals: SignalChannel | None = None) -> int:
    """Run a privileged helper command and wait for it.

    The supervisor itself runs as root, so the helper inherits UID 0.

    Args:
        argv: Command line of the helper.
        signals: Installed signal channel; the SIGCHLD the helper causes is
            dropped from it so it does not count as a stray signal.

    Returns:
        The helper's exit status, or -1 if it could not be run.
    """
    logger.debug("Running %s", " ".join(argv))
    try:
        result = subprocess.run(argv, check=False)  # nosec B603
    except (OSError, subprocess.SubprocessError) as exc:
        logger.error("Failed to run %s: %s", argv[0], exc)
        return -1
    finally:
        if signals is not None:
            signals.discard(signal.SIGCHLD)
    return result.returncode


def code_coverage_stop(
    settings: Settings, job_name: str | None, signals: SignalChannel | None = None
) -> str | None:
    """Store the collected coverage through ``code_coverage_script``.

    Args:
        settings: Run settings.
        job_name: Display name of the job for per-test collection, ``None``
            for the whole-run tarball.
        signals: Installed signal channel, see ``run_as_root``.

    Returns:
        An abort reason when the script fails, else ``None``.
    """
    if job_name is None:
        base = code_coverage_name(settings)
    else:
        base = sanitize_job_name(job_name) or DEFAULT_COVERAGE_NAME
    output = settings.results_dir / CODE_COV_RESULTS_PATH / base

    logger.info("Storing code coverage results")
    status = run_as_root([str(settings.code_coverage_script), str(output)], signals)
    if status != 0:
        reason = f"Failed to run {settings.code_coverage_script} (exit status {status})"
        logger.error("%s", reason)
        return reason
    return None
