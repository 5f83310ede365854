"""Per-job output monitoring and timeout enforcement.

``OutputMonitor`` drives one running test: it waits on the test's stdout and
stderr pipes, the comms socket, the kernel log and the signal channel with a
one second ceiling, copies everything into the job's result files, keeps
track of subtest boundaries, and kills the test when it stops making
progress. Kills escalate from SIGQUIT to SIGKILL; a test that survives both
makes the whole run give up on this host.
"""

from __future__ import annotations

from collections import deque
import contextlib
import logging
import os
import selectors
import signal
import socket
import subprocess
import time
from typing import TYPE_CHECKING, Any, BinaryIO

from dutrunner.abort import is_tainted, kernel_tainted
from dutrunner.comms import (
    PacketType,
    RunnerPacket,
    decode_datagram,
    dump_with_canary,
    exit_packet,
    log_packet,
    result_override_packet,
)
from dutrunner.events import (
    EventKind,
    PacketEventSource,
    SubtestEvent,
    TextEventSource,
)
from dutrunner.kmsg import dump_kmsg, show_kernel_task_state
from dutrunner.models import (
    AbortCondition,
    ExitCode,
    JobOutcome,
    JobStatus,
    MonitorState,
    Settings,
)
from dutrunner.results import ResultFiles, sync_file

if TYPE_CHECKING:
    from types import FrameType

    from dutrunner.watchdog import WatchdogSet

logger = logging.getLogger(__name__)

EXECUTOR_EXIT = "exit:"
EXECUTOR_TIMEOUT = "timeout:"
KILLED_TAINT_TAG = "killed:taint"
KILLED_DISK_LIMIT_TAG = "killed:disk-limit"

INTERVAL_SECONDS = 1.0
WATCHDOG_TIMEOUT = 120
READ_BUFSIZE = 256 * 1024

# Seconds to wait for a killed test before escalating again. After SIGKILL
# a tainted kernel gets no grace at all.
KILL_GRACE_SECONDS: dict[int, float] = {
    signal.SIGQUIT: 120.0,
    signal.SIGKILL: 20.0,
}

_STDOUT = 1


# ---------------------------------------------------------------------------
# Signal delivery
# ---------------------------------------------------------------------------


def _record_signal(signum: int, frame: FrameType | None) -> None:
    """Python-level handler; delivery happens through the wakeup fd."""


class SignalChannel:
    """Turns asynchronous signals into bytes readable from a socket.

    The channel installs handlers for SIGCHLD and the termination signals
    and points ``signal.set_wakeup_fd`` at one end of a socket pair, so
    signal arrival becomes just another readable descriptor in the
    monitor's ``selectors`` wait. Must be used from the main thread.
    """

    SIGNALS: tuple[signal.Signals, ...] = (
        signal.SIGCHLD,
        signal.SIGINT,
        signal.SIGTERM,
        signal.SIGQUIT,
        signal.SIGHUP,
    )
    TERMINATION_SIGNALS = frozenset(
        {signal.SIGINT, signal.SIGTERM, signal.SIGQUIT, signal.SIGHUP}
    )

    def __init__(self) -> None:
        self._reader, self._writer = socket.socketpair()
        self._reader.setblocking(False)
        self._writer.setblocking(False)
        self._pending: deque[int] = deque()
        self._previous_handlers: dict[int, Any] = {}
        self._previous_wakeup = -1
        self._installed = False

    def __enter__(self) -> SignalChannel:
        self.install()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def install(self) -> None:
        self._previous_wakeup = signal.set_wakeup_fd(
            self._writer.fileno(), warn_on_full_buffer=False
        )
        for sig in self.SIGNALS:
            self._previous_handlers[sig] = signal.signal(sig, _record_signal)
        self._installed = True

    def restore(self) -> None:
        """Put back the handlers and wakeup fd that were active before."""
        if not self._installed:
            return
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler if handler is not None else signal.SIG_DFL)
        signal.set_wakeup_fd(self._previous_wakeup)
        self._previous_handlers.clear()
        self._installed = False

    def close(self) -> None:
        self.restore()
        self._reader.close()
        self._writer.close()

    def fileno(self) -> int:
        return self._reader.fileno()

    def _fill(self) -> None:
        while True:
            try:
                data = self._reader.recv(4096)
            except (BlockingIOError, InterruptedError):
                return
            if not data:
                return
            self._pending.extend(data)

    def pop(self) -> int | None:
        """Return the next delivered signal number, or ``None``."""
        self._fill()
        while self._pending:
            signum = self._pending.popleft()
            if signum in self.SIGNALS:
                return signum
        return None

    def discard(self, signum: int) -> None:
        """Drop queued deliveries of *signum*."""
        self._fill()
        self._pending = deque(s for s in self._pending if s != signum)

    def pending_termination(self) -> int | None:
        """Check, without blocking, whether a termination signal arrived.

        Stray SIGCHLDs are logged and dropped.

        Returns:
            The termination signal number, or ``None``.
        """
        while (signum := self.pop()) is not None:
            if signum == signal.SIGCHLD:
                logger.error("Runner got stray SIGCHLD while not executing any tests.")
                continue
            logger.error("Runner is being killed by %s", signal.strsignal(signum))
            return signum
        return None


# ---------------------------------------------------------------------------
# Timeout policy
# ---------------------------------------------------------------------------


def disk_usage_limit_exceeded(settings: Settings, disk_usage: int) -> bool:
    return settings.disk_usage_limit != 0 and disk_usage > settings.disk_usage_limit


def need_to_timeout(
    settings: Settings,
    killed: int,
    bad_taints: int,
    time_since_activity: float,
    time_since_subtest: float,
    time_since_kill: float,
    disk_usage: int,
) -> str | None:
    """Decide whether the running test has to be killed (again).

    Args:
        settings: Run settings with the configured timeouts.
        killed: Signal already sent to the test, 0 if none.
        bad_taints: Disqualifying kernel taint bits currently set.
        time_since_activity: Seconds since the test last produced output.
        time_since_subtest: Seconds since the last subtest started.
        time_since_kill: Seconds since the last kill signal.
        disk_usage: Bytes logged by the current subtest.

    Returns:
        A human readable reason when a (next) kill signal is due, else
        ``None``.
    """
    if killed:
        # Once killing, only the grace period of the signal already used
        # matters.
        kill_timeout = KILL_GRACE_SECONDS.get(killed, KILL_GRACE_SECONDS[signal.SIGQUIT])
        if (killed == signal.SIGKILL and is_tainted(bad_taints)) or (
            time_since_kill > kill_timeout
        ):
            return "Timeout. Killing the current test with SIGKILL.\n"
        return None

    decrease = 1
    if settings.aborts_on(AbortCondition.TAINT) and is_tainted(bad_taints):
        if settings.per_test_timeout or settings.inactivity_timeout:
            decrease = 10
        else:
            return "Killing the test because the kernel is tainted.\n"

    if (
        settings.per_test_timeout != 0
        and time_since_subtest > settings.per_test_timeout / decrease
    ):
        if decrease > 1:
            return "Killing the test because the kernel is tainted.\n"
        return show_kernel_task_state(
            "Per-test timeout exceeded. Killing the current test with SIGQUIT.\n"
        )

    if (
        settings.inactivity_timeout != 0
        and time_since_activity > settings.inactivity_timeout / decrease
    ):
        if decrease > 1:
            return "Killing the test because the kernel is tainted.\n"
        return show_kernel_task_state(
            "Inactivity timeout exceeded. Killing the current test with SIGQUIT.\n"
        )

    if disk_usage_limit_exceeded(settings, disk_usage):
        return "Disk usage limit exceeded.\n"

    return None


def next_kill_signal(killed: int) -> int:
    """Return the signal that follows *killed* in the escalation."""
    if killed == 0:
        return signal.SIGQUIT
    if killed == signal.SIGQUIT:
        return signal.SIGKILL
    msg = f"No escalation beyond signal {killed}"
    raise ValueError(msg)


_STATE_BY_KILL: dict[int, MonitorState] = {
    0: MonitorState.RUNNING,
    signal.SIGQUIT: MonitorState.ESCALATING,
    signal.SIGKILL: MonitorState.FORCING,
}


def exit_status(returncode: int) -> int:
    """Map a ``Popen.returncode`` to the status recorded in results.

    Signal deaths stay negative (``-signal``); exit codes of 128 and above,
    which shells use for signal deaths of their children, become
    ``128 - code``.
    """
    if returncode >= 128:
        return 128 - returncode
    return returncode


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------


class OutputMonitor:
    """Watches one test process until it exits or has to be abandoned.

    Args:
        proc: The started test process, leader of its own process group.
        outputs: The job's open result files.
        settings: Run settings.
        signals: Installed signal channel of the executor.
        watchdogs: Watchdog devices to ping every iteration.
        comms: Supervisor end of the comms socket, if any.
        kmsg_fd: Kernel log descriptor from ``open_kmsg``, if any.
    """

    def __init__(
        self,
        proc: subprocess.Popen[bytes],
        outputs: ResultFiles,
        settings: Settings,
        signals: SignalChannel,
        watchdogs: WatchdogSet,
        *,
        comms: socket.socket | None = None,
        kmsg_fd: int | None = None,
    ) -> None:
        self._proc = proc
        self._outputs = outputs
        self._settings = settings
        self._signals = signals
        self._watchdogs = watchdogs
        self._comms = comms
        self._kmsg_fd = kmsg_fd

        self._selector = selectors.DefaultSelector()
        self._text_source = TextEventSource()
        self._packet_source = PacketEventSource()

        self.state = MonitorState.RUNNING
        self._killed = 0
        self._aborting = False
        self._abort_reason: str | None = None
        self._child_running = True
        self._status = 0
        self._time_spent = 0.0

        self._taints = 0
        self._bad_taints = 0
        self._disk_usage = 0
        self._comms_used = False
        self._comms_desynced = False
        self._current_subtest = ""

        now = time.monotonic()
        self._time_begin = now
        self._last_activity = now
        self._last_subtest = now
        self._time_killed = now

    # -- small helpers ------------------------------------------------------

    @property
    def killed(self) -> int:
        """Last kill signal sent to the test, 0 if none."""
        return self._killed

    def _sync(self, f: BinaryIO) -> None:
        sync_file(f, self._settings.sync)

    def _dump_packet(self, packet: RunnerPacket | bytes, *, sync: bool) -> None:
        if self._outputs.comms is not None:
            dump_with_canary(self._outputs.comms, packet, sync=sync)

    def _journal(self, line: str) -> None:
        self._outputs.journal.write(line.encode("utf-8"))
        self._sync(self._outputs.journal)

    def _close_fd(self, name: str) -> None:
        if name == "stdout" and self._proc.stdout is not None:
            self._unregister(self._proc.stdout)
            self._proc.stdout.close()
        elif name == "stderr" and self._proc.stderr is not None:
            self._unregister(self._proc.stderr)
            self._proc.stderr.close()
        elif name == "comms" and self._comms is not None:
            self._unregister(self._comms)
            self._comms.close()
            self._comms = None
        elif name == "kmsg" and self._kmsg_fd is not None:
            self._unregister(self._kmsg_fd)
            os.close(self._kmsg_fd)
            self._kmsg_fd = None

    def _unregister(self, fileobj: object) -> None:
        with contextlib.suppress(KeyError, ValueError):
            self._selector.unregister(fileobj)

    def _registered(self, name: str) -> bool:
        return any(key.data == name for key in self._selector.get_map().values())

    def _kill_child(self, sig: int) -> bool:
        """Signal the test's whole process group and the test itself."""
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(self._proc.pid, sig)
        if not self._child_running:
            return True
        try:
            os.kill(self._proc.pid, sig)
        except ProcessLookupError:
            logger.error("Child process does not exist. This shouldn't happen.")
            return False
        return True

    def _escalate(self, now: float) -> bool:
        self._killed = next_kill_signal(self._killed)
        self.state = _STATE_BY_KILL[self._killed]
        self._time_killed = now
        return self._kill_child(self._killed)

    def _flush_kmsg(self) -> None:
        try:
            dump_kmsg(self._kmsg_fd, self._outputs.dmesg)
        except OSError as exc:
            logger.error("Error reading from kmsg: %s", exc)
        self._sync(self._outputs.dmesg)

    def _close_all(self) -> None:
        for name in ("stdout", "stderr", "comms", "kmsg"):
            self._close_fd(name)
        self._selector.close()

    # -- event bookkeeping --------------------------------------------------

    def _handle_event(self, event: SubtestEvent, now: float, *, textual: bool, size: int) -> None:
        """Shared subtest bookkeeping for textual and packet events."""
        if event.kind == EventKind.SUBTEST_START:
            name = event.name or ""
            if textual:
                self._journal(f"{name}\n")
            self._current_subtest = name
            self._last_subtest = now
            self._disk_usage = size
            logger.debug("Starting subtest: %s", name)
        elif event.kind == EventKind.DYNAMIC_SUBTEST_START:
            self._last_subtest = now
            self._disk_usage = size
            logger.debug("Starting dynamic subtest: %s", event.name)
        elif event.kind == EventKind.SUBTEST_RESULT:
            if textual and event.name is not None and event.name != self._current_subtest:
                # Result of a subtest whose start was never seen.
                self._journal(f"{event.name}\n")
                self._current_subtest = ""
            logger.debug(
                "Subtest %s: %s (%ss)", event.name, event.result, event.time_used or "<unknown>"
            )
        elif event.kind == EventKind.DYNAMIC_SUBTEST_RESULT:
            logger.debug(
                "Dynamic subtest %s: %s (%ss)",
                event.name,
                event.result,
                event.time_used or "<unknown>",
            )

    # -- channel handlers ---------------------------------------------------

    def _read_pipe(self, name: str, now: float) -> None:
        pipe = self._proc.stdout if name == "stdout" else self._proc.stderr
        if pipe is None:
            return
        self._last_activity = now
        try:
            data = os.read(pipe.fileno(), READ_BUFSIZE)
        except OSError as exc:
            logger.error("Error reading test's %s: %s", name, exc)
            data = b""
        if not data:
            self._close_fd(name)
            return

        target = self._outputs.out if name == "stdout" else self._outputs.err
        target.write(data)
        self._disk_usage += len(data)
        self._sync(target)

        if name == "stdout":
            for event in self._text_source.feed(data):
                self._handle_event(event, now, textual=True, size=len(data))

    def _read_comms(self, now: float) -> None:
        if self._comms is None:
            return
        self._last_activity = now
        while self._comms is not None:
            try:
                data = self._comms.recv(READ_BUFSIZE)
            except (BlockingIOError, InterruptedError):
                return
            except OSError as exc:
                logger.error("Error reading from communication socket: %s", exc)
                self._close_fd("comms")
                return
            if not data:
                self._close_fd("comms")
                return
            if self._comms_desynced:
                continue

            packet = decode_datagram(data)
            if packet is None:
                self._desync(len(data))
                continue

            self._dump_packet(packet, sync=self._settings.sync)
            # EXEC is written by the supervisor itself; anything else means
            # the test really speaks the protocol.
            if packet.type != PacketType.EXEC:
                self._comms_used = True

            event = self._packet_source.from_packet(packet)
            if event is not None and event.is_start:
                self._handle_event(event, now, textual=False, size=0)
            elif event is not None:
                self._handle_event(event, now, textual=False, size=self._disk_usage)
            self._disk_usage += len(data)

    def _desync(self, size: int) -> None:
        """Record a protocol error and stop interpreting the socket."""
        logger.error("Socket communication error: Received %d bytes, invalid packet", size)
        self._dump_packet(
            log_packet(
                _STDOUT,
                "\nrunner: Socket communication error, invalid packet size. "
                "Packet is discarded, test result and logs might be incorrect.\n",
            ),
            sync=False,
        )
        self._dump_packet(result_override_packet("warn"), sync=self._settings.sync)
        self._comms_desynced = True
        self._comms_used = False

    def _read_kmsg(self, now: float) -> None:
        self._last_activity = now
        try:
            written = dump_kmsg(self._kmsg_fd, self._outputs.dmesg)
        except OSError as exc:
            logger.error("Error reading from kmsg: %s", exc)
            self._close_fd("kmsg")
            return
        self._sync(self._outputs.dmesg)
        self._disk_usage += written

    def _handle_signals(self, now: float) -> bool:
        """Process queued signals.

        Returns:
            True when an abort was requested during this call, in which case
            the timeout evaluation is skipped for this iteration.
        """
        abort_requested = False
        while self._child_running and (signum := self._signals.pop()) is not None:
            if signum == signal.SIGCHLD:
                self._check_child_exit(now)
                continue
            if self._aborting:
                continue
            self._request_abort(signum, now)
            abort_requested = True
        return abort_requested

    def _request_abort(self, signum: int, now: float) -> None:
        logger.info(
            "Abort requested via %s, terminating children", signal.strsignal(signum)
        )
        if signum == signal.SIGHUP:
            # A hangup is a graceful stop: mark the running test notrun
            # instead of leaving it without a terminal marker.
            logger.info(
                "Exiting gracefully, currently running test will have a 'notrun' result"
            )
            if self._comms_used:
                self._dump_packet(
                    log_packet(
                        _STDOUT,
                        "runner: Exiting gracefully, overriding this test's result to be notrun\n",
                    ),
                    sync=False,
                )
                self._dump_packet(result_override_packet("notrun"), sync=self._settings.sync)
            else:
                self._journal(f"{EXECUTOR_EXIT}{-signal.SIGHUP} ({0.0:.3f}s)\n")

        self._aborting = True
        if self._killed:
            # Already escalating; the pending kill keeps its level and deadline.
            return
        self._killed = signal.SIGQUIT
        self.state = MonitorState.ESCALATING
        self._time_killed = now
        if not self._kill_child(self._killed):
            msg = "Failed to signal the test process"
            raise ChildProcessError(msg)

    def _check_child_exit(self, now: float) -> None:
        returncode = self._proc.poll()
        if returncode is None:
            return
        self._child_running = False
        self._unregister(self._signals)
        status = exit_status(returncode)
        elapsed = max(now - self._time_begin, 0.0)

        if not self._aborting:
            self._write_terminal_marker(status, elapsed)
            if status == ExitCode.ABORT:
                logger.error("Test exited with abort exit code, aborting.")
                self._aborting = True
                self._abort_reason = "Test exited with abort exit code"
            self._time_spent = elapsed
        self._status = status

    def _write_terminal_marker(self, status: int, elapsed: float) -> None:
        timeout_result = self._killed != 0
        tag = ""

        # A kill because of a taint or the disk limit is not a timeout;
        # without a terminal result the consumer infers an incomplete.
        if self._killed and is_tainted(self._bad_taints):
            timeout_result = False
            tag = f" {KILLED_TAINT_TAG}"
            self._inject(
                f"runner: This test was killed due to a kernel taint ({self._taints:#x}).\n"
            )

        if self._killed and disk_usage_limit_exceeded(self._settings, self._disk_usage):
            timeout_result = False
            tag = tag or f" {KILLED_DISK_LIMIT_TAG}"
            self._inject(
                "runner: This test was killed due to exceeding disk usage limit. "
                f"(Used {self._disk_usage} bytes, limit {self._settings.disk_usage_limit})\n"
            )

        if self._comms_used:
            if timeout_result:
                self._dump_packet(result_override_packet("timeout"), sync=False)
            self._dump_packet(exit_packet(status, f"{elapsed:.3f}"), sync=self._settings.sync)
        else:
            marker = EXECUTOR_TIMEOUT if timeout_result else EXECUTOR_EXIT
            self._journal(f"{marker}{status} ({elapsed:.3f}s){tag}\n")

    def _inject(self, message: str) -> None:
        """Add a supervisor note to the test's own output stream."""
        if self._comms_used:
            self._dump_packet(log_packet(_STDOUT, message), sync=self._settings.sync)
        else:
            self._outputs.out.write(f"\n{message}".encode())
            self._sync(self._outputs.out)

    # -- main loop ----------------------------------------------------------

    def _register_all(self) -> None:
        if self._proc.stdout is not None:
            self._selector.register(self._proc.stdout, selectors.EVENT_READ, "stdout")
        if self._proc.stderr is not None:
            self._selector.register(self._proc.stderr, selectors.EVENT_READ, "stderr")
        if self._comms is not None:
            self._comms.setblocking(False)
            self._selector.register(self._comms, selectors.EVENT_READ, "comms")
        if self._kmsg_fd is not None:
            self._selector.register(self._kmsg_fd, selectors.EVENT_READ, "kmsg")
        self._selector.register(self._signals, selectors.EVENT_READ, "signal")

    def _outputs_open(self) -> bool:
        return self._registered("stdout") or self._registered("stderr")

    def run(self) -> JobOutcome:
        """Monitor the test until it is gone.

        Returns:
            ``COMPLETED`` when the test ended on its own, ``RESTART`` when it
            had to be killed, ``ABORT`` when the run must stop.
        """
        wd_timeout = self._watchdogs.set_timeout(WATCHDOG_TIMEOUT)
        if wd_timeout < WATCHDOG_TIMEOUT:
            logger.debug(
                "Watchdog doesn't support the timeout we requested (shortened to %d seconds).",
                wd_timeout,
            )

        self._register_all()
        order = {"stdout": 0, "stderr": 1, "comms": 2, "kmsg": 3, "signal": 4}

        try:
            while self._outputs_open() or self._child_running:
                ready = self._selector.select(timeout=INTERVAL_SECONDS)
                self._watchdogs.ping()
                now = time.monotonic()

                skip_timeout = False
                for key, _ in sorted(ready, key=lambda item: order[item[0].data]):
                    name = key.data
                    if name in ("stdout", "stderr"):
                        self._read_pipe(name, now)
                    elif name == "comms":
                        self._read_comms(now)
                    elif name == "kmsg":
                        self._read_kmsg(now)
                    elif name == "signal" and self._child_running:
                        skip_timeout = self._handle_signals(now)

                if self._child_running and not self._outputs_open():
                    self._check_child_exit(now)

                if skip_timeout:
                    continue

                self._taints, self._bad_taints = kernel_tainted()
                reason = need_to_timeout(
                    self._settings,
                    self._killed,
                    self._bad_taints,
                    now - self._last_activity,
                    now - self._last_subtest,
                    now - self._time_killed,
                    self._disk_usage,
                )
                if reason is None:
                    continue

                if self._killed == signal.SIGKILL:
                    return self._give_up()

                logger.info("%s", reason.rstrip("\n"))
                if not self._escalate(now):
                    return JobOutcome(
                        status=JobStatus.ABORT, abort_reason="Failed to kill the test process"
                    )
        except ChildProcessError as exc:
            self._close_all()
            return JobOutcome(status=JobStatus.ABORT, abort_reason=str(exc))

        self._flush_kmsg()
        self._close_all()
        self.state = MonitorState.DONE

        if self._aborting:
            return JobOutcome(
                status=JobStatus.ABORT,
                time_spent=self._time_spent,
                abort_reason=self._abort_reason,
            )
        if self._killed:
            return JobOutcome(status=JobStatus.RESTART, time_spent=self._time_spent)
        return JobOutcome(status=JobStatus.COMPLETED, time_spent=self._time_spent)

    def _give_up(self) -> JobOutcome:
        """The test survived SIGKILL; nothing more can be done on this host."""
        reason = f"Child refuses to die, tainted {self._taints:#x}."
        logger.error("Child refuses to die, tainted %#x. Aborting.", self._taints)
        if self._child_running:
            try:
                os.kill(self._proc.pid, 0)
            except ProcessLookupError:
                logger.error(
                    "The test process no longer exists, but we didn't get informed of its demise..."
                )
        self._flush_kmsg()
        self._watchdogs.close_all()
        self._close_all()
        return JobOutcome(status=JobStatus.ABORT, abort_reason=reason)
