"""Abort conditions that invalidate further testing on this host.

Three independent checks are evaluated in a fixed order, each only when
enabled in ``Settings.abort_mask``: lockdep having switched itself off, a
disqualifying kernel taint, and loss of network reachability. The first
check that fires provides the abort reason.
"""

from __future__ import annotations

from collections.abc import Callable
import logging
import os
from pathlib import Path
import shutil
import signal
import subprocess
import time
from typing import TYPE_CHECKING

from dutrunner.models import AbortCondition, Settings

if TYPE_CHECKING:
    from dutrunner.monitor import SignalChannel

logger = logging.getLogger(__name__)

LOCKDEP_STATS_PATH = "/proc/lockdep_stats"
TAINTED_PATH = "/proc/sys/kernel/tainted"
PING_HOSTNAME_ENV = "DUTRUNNER_PING_HOSTNAME"

# On some hosts the network takes over 10 seconds to come back after
# suspend.
PING_ABORT_DEADLINE = 20.0

_LOCKDEP_HEADER = "Lockdep not active\n\n/proc/lockdep_stats contents:\n"
_DEBUG_LOCKS = " debug_locks:"

# Taint bits that make further results meaningless.
_BAD_TAINTS: dict[int, str] = {
    4: "TAINT_MACHINE_CHECK: Processor reported a Machine Check Exception.",
    5: "TAINT_BAD_PAGE: Bad page reference or an unexpected page flags.",
    7: "TAINT_DIE: Kernel has died - BUG/OOPS.",
    9: "TAINT_WARN: WARN_ON has happened.",
}
BAD_TAINT_MASK = sum(1 << bit for bit in _BAD_TAINTS)


# ---------------------------------------------------------------------------
# Kernel taint
# ---------------------------------------------------------------------------


def kernel_tainted() -> tuple[int, int]:
    """Read the kernel taint mask.

    Returns:
        ``(taints, bad)``: every set taint bit, and the subset that
        disqualifies the host. Both are 0 when the mask cannot be read.
    """
    try:
        raw = Path(TAINTED_PATH).read_text(encoding="utf-8").strip()
        taints = int(raw or "0")
    except (OSError, ValueError):
        return 0, 0
    return taints, taints & BAD_TAINT_MASK


def is_tainted(bad_taints: int) -> bool:
    return bad_taints != 0


def explain_taints(bad: int) -> list[str]:
    """Return one explanation line per disqualifying bit set in *bad*."""
    return [text for bit, text in sorted(_BAD_TAINTS.items()) if bad & (1 << bit)]


def handle_taint() -> str | None:
    taints, bad = kernel_tainted()
    if not bad:
        return None
    reason = (
        f"Kernel badly tainted ({taints:#x}, {bad:#x}) (check dmesg for details):\n"
    )
    for line in explain_taints(bad):
        reason += f"\t{line}\n"
    return reason


# ---------------------------------------------------------------------------
# Lockdep
# ---------------------------------------------------------------------------


def handle_lockdep() -> str | None:
    """Return the lockdep stats when lockdep reports ``debug_locks`` != 1."""
    try:
        contents = Path(LOCKDEP_STATS_PATH).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None

    report = _LOCKDEP_HEADER + contents
    pos = report.find(_DEBUG_LOCKS)
    if pos < 0:
        return None
    fields = report[pos + len(_DEBUG_LOCKS) :].split()
    try:
        value = int(fields[0])
    except (IndexError, ValueError):
        return None
    if value != 1:
        return report
    return None


# ---------------------------------------------------------------------------
# Ping
# ---------------------------------------------------------------------------


class PingTarget:
    """Network reachability check against a single configured host.

    The host is taken from ``DUTRUNNER_PING_HOSTNAME`` first, then from
    ``Settings.ping_hostname``. Without a host the check is disabled.
    """

    def __init__(self, hostname: str | None) -> None:
        self.hostname = hostname

    @classmethod
    def from_settings(cls, settings: Settings) -> PingTarget:
        hostname = os.environ.get(PING_HOSTNAME_ENV) or settings.ping_hostname
        if not hostname:
            logger.error("abort on ping: No host to ping configured")
        return cls(hostname)

    def _ping_once(self, signals: SignalChannel | None = None) -> bool:
        ping = shutil.which("ping")
        if ping is None or self.hostname is None:
            return False
        try:
            result = subprocess.run(  # nosec B603
                [ping, "-c", "1", "-W", "1", self.hostname],
                capture_output=True,
                timeout=5,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        finally:
            if signals is not None:
                signals.discard(signal.SIGCHLD)
        return result.returncode == 0

    def can_ping(
        self, deadline: float = PING_ABORT_DEADLINE, signals: SignalChannel | None = None
    ) -> bool:
        """Retry single pings until one answers or *deadline* seconds pass.

        The SIGCHLD of every ping is dropped from *signals* so it is not
        mistaken for a stray one.
        """
        end = time.monotonic() + deadline
        while True:
            if self._ping_once(signals):
                return True
            if time.monotonic() >= end:
                return False
            time.sleep(0.5)

    def check(self, signals: SignalChannel | None = None) -> str | None:
        if self.hostname is None:
            return None
        if not self.can_ping(signals=signals):
            return "Ping host did not respond to ping, network down"
        return None


# ---------------------------------------------------------------------------
# Oracle
# ---------------------------------------------------------------------------


def need_to_abort(
    settings: Settings,
    ping_target: PingTarget | None = None,
    signals: SignalChannel | None = None,
) -> str | None:
    """Evaluate the enabled abort conditions in priority order.

    Args:
        settings: Run settings providing ``abort_mask``.
        ping_target: Configured ping check; built from *settings* when
            ``None`` and the ping condition is enabled.
        signals: Installed signal channel, passed on to the ping check.

    Returns:
        The reason of the first condition that fires, or ``None``.
    """
    handlers: list[tuple[AbortCondition, Callable[[], str | None]]] = [
        (AbortCondition.LOCKDEP, handle_lockdep),
        (AbortCondition.TAINT, handle_taint),
    ]
    if settings.aborts_on(AbortCondition.PING):
        target = ping_target if ping_target is not None else PingTarget.from_settings(settings)
        handlers.append((AbortCondition.PING, lambda: target.check(signals)))

    for condition, handler in handlers:
        if not settings.aborts_on(condition):
            continue
        reason = handler()
        if reason is None:
            continue
        logger.error("Aborting: %s", reason)
        return reason

    return None
