"""Execution loop: runs the job list one test at a time.

``initialize_execute_state`` prepares a fresh results directory and
``initialize_execute_state_from_resume`` rebuilds the position of an
interrupted run from what it left on disk. ``execute`` then walks the job
list, starting each test as the leader of its own process group and handing
it to the ``OutputMonitor``. A test the monitor had to kill is resumed right
away with the subtests it already started excluded.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
import socket
import subprocess
from typing import Any

from dutrunner.abort import need_to_abort
from dutrunner.code_coverage import code_coverage_start, code_coverage_stop
from dutrunner.comms import (
    CommsParseError,
    PacketType,
    encode,
    exec_packet,
    read_dump,
)
from dutrunner.kmsg import open_kmsg
from dutrunner.models import (
    ExecuteState,
    ExitCode,
    JobList,
    JobListEntry,
    JobOutcome,
    JobStatus,
    Settings,
)
from dutrunner.monitor import EXECUTOR_EXIT, EXECUTOR_TIMEOUT, OutputMonitor, SignalChannel
from dutrunner.results import (
    CODE_COV_RESULTS_PATH,
    ENDTIME,
    STARTTIME,
    clear_prior_results,
    fsync_dir,
    job_dir,
    open_for_read,
    open_for_write,
    read_run_metadata,
    write_abort_file,
    write_run_metadata,
    write_time_marker,
    write_uname,
)
from dutrunner.watchdog import WatchdogSet

logger = logging.getLogger(__name__)

SOCKET_FD_ENV = "DUTRUNNER_SOCKET_FD"
DISABLE_SOCKET_ENV = "DUTRUNNER_DISABLE_SOCKET_COMMUNICATION"
SENTINEL_ON_STDERR_ENV = "DUTRUNNER_SENTINEL_ON_STDERR"
OOM_SCORE_ADJ_PATH = "/proc/self/oom_score_adj"

RUN_SUBTEST_ARG = "--run-subtest"
DYNAMIC_SUBTEST_ARG = "--dynamic-subtest"


class _TerminationRequested(Exception):
    """A termination signal arrived between jobs."""


class _AbortedBeforeStart(Exception):
    """The host was already unhealthy before the first job of this run."""


class ExecutorError(Exception):
    """Failure that stops the run before or while executing a job.

    Attributes:
        diagnostics: Structured context about the failure.
    """

    def __init__(self, message: str, *, diagnostics: dict[str, Any]) -> None:
        """Initialize with a message and structured diagnostics.

        Args:
            message: Human-readable error description.
            diagnostics: Structured context (job index, paths, errno, ...).
        """
        super().__init__(message)
        self.diagnostics = diagnostics


# ---------------------------------------------------------------------------
# Job description helpers
# ---------------------------------------------------------------------------


def build_test_argv(settings: Settings, entry: JobListEntry) -> list[str]:
    """Build the command line of a job.

    Subtest selectors are passed as one comma separated ``--run-subtest``
    list. A selector of the form ``subtest@dynamic`` selects a single
    dynamic subtest; only the first selector may carry one.

    Examples:
        ``["basic", "flink"]`` -> ``--run-subtest basic,flink``
        ``["engines@rcs0"]`` -> ``--run-subtest engines --dynamic-subtest rcs0``
    """
    argv = [str(settings.test_root_path / entry.binary)]
    if not entry.subtests:
        return argv

    first, sep, dynamic = entry.subtests[0].partition("@")
    argv += [RUN_SUBTEST_ARG, ",".join([first, *entry.subtests[1:]])]
    if sep:
        if len(entry.subtests) > 1:
            logger.warning(
                "%s: dynamic subtest selection only applies to the first selector",
                entry.binary,
            )
        argv += [DYNAMIC_SUBTEST_ARG, dynamic]
    return argv


def entry_display_name(entry: JobListEntry) -> str:
    """Return ``binary (sel1, sel2)``, or just the binary without selectors."""
    if not entry.subtests:
        return entry.binary
    return f"{entry.binary} ({', '.join(entry.subtests)})"


def _progress_line(state: ExecuteState, total: int, entry: JobListEntry) -> str:
    width = len(str(total))
    line = f"[{state.next + 1:0{width}d}/{total}]"
    if state.time_left >= 0:
        line += f" ({state.time_left:.0f}s left)"
    return f"{line} {entry_display_name(entry)}"


def _check_root(settings: Settings) -> None:
    if os.getuid() != 0 and not settings.allow_non_root:
        msg = "Runner needs to run as UID 0 (root)"
        raise ExecutorError(msg, diagnostics={"uid": os.getuid()})


def _initial_time_left(settings: Settings) -> float:
    return settings.overall_timeout if settings.overall_timeout > 0 else -1.0


# ---------------------------------------------------------------------------
# Resume
# ---------------------------------------------------------------------------


def prune_from_comms(entry: JobListEntry, data: bytes) -> bool:
    """Exclude every subtest started according to a ``comms`` dump.

    Reading stops at the first corruption; what was parsed before it still
    counts, since a crash typically leaves a truncated last packet.

    Returns:
        True if resuming at the same entry makes sense, False when the entry
        has nothing left to run.
    """
    old_count = len(entry.subtests)
    pruned = 0
    got_exit = False
    timed_out = False
    try:
        for packet in read_dump(data):
            if packet.type == PacketType.EXEC:
                timed_out = False
            elif packet.type == PacketType.SUBTEST_START and packet.name:
                entry.prune_subtest(packet.name)
                pruned += 1
            elif packet.type == PacketType.RESULT_OVERRIDE and packet.result == "timeout":
                timed_out = True
            elif packet.type == PacketType.EXIT:
                # An exit after a timeout override only reports the kill.
                if not timed_out:
                    got_exit = True
                timed_out = False
    except CommsParseError as exc:
        logger.warning("Stopped reading comms dump at offset %d: %s", exc.offset, exc)

    if got_exit or (old_count > 0 and pruned >= old_count):
        entry.mark_completed()
    return pruned > 0


def prune_from_journal(entry: JobListEntry, text: str) -> bool:
    """Exclude every subtest listed in a journal.

    Each plain line names a started subtest. ``exit:`` lines mean the test
    finished, ``timeout:`` lines only mean it was killed.

    Returns:
        True if resuming at the same entry makes sense, False when the entry
        has nothing left to run.
    """
    old_count = len(entry.subtests)
    pruned = 0
    got_exit = False
    for line in text.splitlines():
        token = line.strip()
        if not token or token.startswith(EXECUTOR_TIMEOUT):
            continue
        if token.startswith(EXECUTOR_EXIT):
            got_exit = True
            continue
        entry.prune_subtest(token)
        pruned += 1

    if got_exit or (old_count > 0 and pruned >= old_count):
        entry.mark_completed()
    return pruned > 0


def _uses_comms(data: bytes) -> bool:
    """Whether a dump holds anything besides the supervisor's EXEC packet."""
    try:
        for packet in read_dump(data):
            if packet.type != PacketType.EXEC:
                return True
    except CommsParseError:
        pass
    return False


def _journal_has_exit(text: str) -> bool:
    return any(line.startswith(EXECUTOR_EXIT) for line in text.splitlines())


def _resume_position(
    state: ExecuteState, job_list: JobList, results_path: Path
) -> None:
    """Point *state* after the last job directory found on disk."""
    for index in range(job_list.size - 1, -1, -1):
        directory = job_dir(results_path, index)
        if directory.is_dir():
            break
    else:
        return

    entry = job_list.entries[index]
    state.next = index

    try:
        files = open_for_read(directory)
    except OSError as exc:
        logger.warning("Cannot read results of job %d, running it again: %s", index, exc)
        return

    with files:
        journal = files.journal.read().decode("utf-8", errors="replace")
        comms_data = files.comms.read() if files.comms is not None else b""

    if comms_data and _uses_comms(comms_data):
        resumable = prune_from_comms(entry, comms_data)
        # A desynchronized job gets its terminal marker in the journal.
        if _journal_has_exit(journal):
            entry.mark_completed()
    else:
        resumable = prune_from_journal(entry, journal)

    if not resumable or entry.completed:
        state.next = index + 1


def initialize_execute_state(settings: Settings, job_list: JobList) -> ExecuteState:
    """Prepare the results directory for a fresh run.

    Raises:
        ExecutorError: If not running as root (unless allowed), or the
            results directory already holds a run and ``overwrite`` is off.
    """
    _check_root(settings)
    if settings.overwrite:
        try:
            clear_prior_results(settings.results_path)
        except OSError as exc:
            msg = f"Cannot clear {settings.results_path}"
            raise ExecutorError(msg, diagnostics={"error": str(exc)}) from exc

    try:
        write_run_metadata(settings, job_list)
    except OSError as exc:
        msg = f"Cannot write run metadata to {settings.results_path}: {exc}"
        raise ExecutorError(msg, diagnostics={"results_path": settings.results_path}) from exc

    return ExecuteState(time_left=_initial_time_left(settings), dry=settings.dry_run)


def initialize_execute_state_from_resume(
    results_path: str | Path,
) -> tuple[ExecuteState, Settings, JobList]:
    """Rebuild the execution state of an interrupted run.

    The last job directory that exists is the one that was running; its
    entry is pruned of every subtest that already started. Execution
    continues at that entry, or at the next one when nothing is left.

    Returns:
        The state, and the settings and job list persisted by the run.

    Raises:
        ExecutorError: If the results directory holds no readable metadata,
            or the root check fails.
    """
    path = Path(results_path)
    try:
        settings, job_list = read_run_metadata(path)
    except (OSError, ValueError) as exc:
        msg = f"Failure reading metadata from {path}"
        raise ExecutorError(msg, diagnostics={"error": str(exc)}) from exc
    _check_root(settings)

    state = ExecuteState(resuming=True, time_left=_initial_time_left(settings))
    _resume_position(state, job_list, path)
    return state, settings, job_list


# ---------------------------------------------------------------------------
# Running one job
# ---------------------------------------------------------------------------


def _child_env(child_fd: int) -> dict[str, str]:
    env = dict(os.environ)
    env[SENTINEL_ON_STDERR_ENV] = "1"
    if DISABLE_SOCKET_ENV not in env:
        env[SOCKET_FD_ENV] = str(child_fd)
    return env


def execute_next_entry(
    state: ExecuteState,
    total: int,
    settings: Settings,
    entry: JobListEntry,
    signals: SignalChannel,
    watchdogs: WatchdogSet,
) -> JobOutcome:
    """Run the job at ``state.next`` and monitor it to the end.

    Args:
        state: Current execution state; ``next`` selects the job directory.
        total: Number of jobs, for the progress line.
        settings: Run settings.
        entry: The job to run.
        signals: Installed signal channel.
        watchdogs: Open watchdog devices.

    Returns:
        The monitor's outcome.

    Raises:
        ExecutorError: If the result files, the comms socket or the test
            process cannot be set up.
    """
    directory = job_dir(settings.results_path, state.next)
    diagnostics: dict[str, Any] = {"job": state.next, "binary": entry.binary}
    try:
        directory.mkdir(exist_ok=True)
        outputs = open_for_write(directory)
    except OSError as exc:
        msg = f"Error opening output files in {directory}"
        raise ExecutorError(msg, diagnostics={**diagnostics, "error": str(exc)}) from exc

    with outputs:
        if settings.sync:
            fsync_dir(directory)
            fsync_dir(settings.results_path)

        argv = build_test_argv(settings, entry)
        try:
            parent_sock, child_sock = socket.socketpair(socket.AF_UNIX, socket.SOCK_DGRAM)
        except OSError as exc:
            msg = "Error creating the communication socket"
            raise ExecutorError(msg, diagnostics={**diagnostics, "error": str(exc)}) from exc

        kmsg_fd = open_kmsg()
        logger.info("%s", _progress_line(state, total, entry))

        try:
            # The EXEC packet goes through the socket so it is dumped first.
            child_sock.send(encode(exec_packet(argv)))
            try:
                proc = subprocess.Popen(  # nosec B603
                    argv,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    env=_child_env(child_sock.fileno()),
                    pass_fds=(child_sock.fileno(),),
                    start_new_session=True,
                )
            except OSError as exc:
                outputs.err.write(f"Cannot execute {argv[0]}: {exc}\n".encode())
                outputs.journal.write(f"{EXECUTOR_EXIT}{int(ExitCode.INVALID)} (0.000s)\n".encode())
                msg = f"Cannot execute {argv[0]}"
                raise ExecutorError(
                    msg, diagnostics={**diagnostics, "error": str(exc)}
                ) from exc
            finally:
                child_sock.close()

            monitor = OutputMonitor(
                proc,
                outputs,
                settings,
                signals,
                watchdogs,
                comms=parent_sock,
                kmsg_fd=kmsg_fd,
            )
            kmsg_fd = None
            return monitor.run()
        finally:
            parent_sock.close()
            if kmsg_fd is not None:
                os.close(kmsg_fd)


# ---------------------------------------------------------------------------
# Running the job list
# ---------------------------------------------------------------------------


def _oom_immortal() -> None:
    try:
        Path(OOM_SCORE_ADJ_PATH).write_text("-1000\n", encoding="ascii")
    except OSError:
        logger.warning("Warning: Cannot adjust oom score.")


def _reduce_time_left(settings: Settings, state: ExecuteState, spent: float) -> bool:
    """Deduct *spent* from the budget; return True when it is exhausted."""
    if state.time_left < 0:
        return False
    state.time_left = max(state.time_left - spent, 0.0)
    return state.time_left == 0.0 and settings.overall_timeout > 0


def _run_jobs(
    state: ExecuteState,
    settings: Settings,
    job_list: JobList,
    signals: SignalChannel,
    watchdogs: WatchdogSet,
) -> tuple[bool, bool]:
    """Run jobs from ``state.next`` on.

    Returns:
        ``(status, restart)``: whether the run is still healthy, and whether
        the last job was killed and has to be resumed from its results.

    Raises:
        _AbortedBeforeStart: If an abort condition holds before a fresh run
            starts its first job.
        _TerminationRequested: If a termination signal is pending before a
            job starts.
    """
    results = settings.results_dir

    if not state.resuming:
        reason = need_to_abort(settings, signals=signals)
        if reason is not None:
            next_name = (
                entry_display_name(job_list.entries[state.next])
                if state.next < job_list.size
                else "nothing"
            )
            write_abort_file(results, reason, "nothing", next_name)
            raise _AbortedBeforeStart

    while state.next < job_list.size:
        entry = job_list.entries[state.next]
        if signals.pending_termination() is not None:
            raise _TerminationRequested

        if entry.completed:
            state.next += 1
            continue

        reason: str | None = None
        outcome: JobOutcome | None = None
        per_test_coverage = settings.enable_code_coverage and settings.cov_results_per_test
        job_name = entry_display_name(entry)

        if per_test_coverage:
            reason = code_coverage_start()

        if reason is None:
            try:
                outcome = execute_next_entry(
                    state, job_list.size, settings, entry, signals, watchdogs
                )
            except ExecutorError as exc:
                logger.error("%s (%s)", exc, exc.diagnostics)
                if per_test_coverage:
                    code_coverage_stop(settings, job_name, signals)
                return False, False

            if per_test_coverage:
                reason = code_coverage_stop(settings, job_name, signals)

        if reason is None and outcome is not None:
            reason = outcome.abort_reason
        if reason is None:
            reason = need_to_abort(settings, signals=signals)

        if reason is not None:
            next_name = (
                entry_display_name(job_list.entries[state.next + 1])
                if state.next + 1 < job_list.size
                else "nothing"
            )
            write_abort_file(results, reason, job_name, next_name)
            return False, False

        if outcome is None or outcome.status == JobStatus.ABORT:
            return False, False

        if _reduce_time_left(settings, state, outcome.time_spent):
            logger.info("Overall timeout time exceeded, stopping.")
            return True, False

        if outcome.status == JobStatus.RESTART:
            return True, True

        state.next += 1

    return True, False


def execute(state: ExecuteState, settings: Settings, job_list: JobList) -> bool:
    """Run the job list.

    Args:
        state: Position to start from, from ``initialize_execute_state`` or
            ``initialize_execute_state_from_resume``.
        settings: Run settings.
        job_list: Jobs to run.

    Returns:
        True when the run finished (or ran out of time) without an abort.
    """
    if state.dry:
        logger.info("Dry run, not executing. Invoke 'dutrunner resume' to run.")
        return True

    for key, value in settings.env_vars:
        os.environ[key] = value

    results = settings.results_dir
    if not results.is_dir():
        logger.error("Error: Failure opening results path %s", results)
        return False

    whole_run_coverage = settings.enable_code_coverage and not settings.cov_results_per_test
    if settings.enable_code_coverage:
        (results / CODE_COV_RESULTS_PATH).mkdir(exist_ok=True)
        if whole_run_coverage:
            reason = code_coverage_start()
            if reason is not None:
                logger.error("%s", reason)
                return False

    if not settings.test_root_path.is_dir():
        logger.error("Error: Failure opening test root %s", settings.test_root)
        return False

    write_uname(results)
    write_time_marker(results, STARTTIME)
    _oom_immortal()

    watchdogs = WatchdogSet()
    status = True
    with SignalChannel() as signals:
        try:
            while True:
                watchdogs.open_all(settings)
                status, restart = _run_jobs(state, settings, job_list, signals, watchdogs)
                if not restart:
                    break

                watchdogs.close_all()
                if signals.pending_termination() is not None:
                    raise _TerminationRequested

                time_left = state.time_left
                try:
                    state, settings, job_list = initialize_execute_state_from_resume(results)
                except ExecutorError as exc:
                    logger.error("%s (%s)", exc, exc.diagnostics)
                    status = False
                    break
                state.time_left = time_left
                logger.debug("Resuming from job %d", state.next)

            write_time_marker(results, ENDTIME)
        except (_AbortedBeforeStart, _TerminationRequested):
            # The run ended before it finished; no end time is recorded.
            status = False
        finally:
            if whole_run_coverage:
                reason = code_coverage_stop(settings, None, signals)
                if reason is not None:
                    status = False
            watchdogs.close_all()
            if signals.pending_termination() is not None:
                status = False

    return status
