"""Hardware watchdog handling.

The supervisor arms every ``/dev/watchdogN`` it can open so a hung host gets
reset, pings them at least once per second while tests run and disarms them
with the magic close character when done. Devices that refuse a timeout are
dropped for the rest of the run.
"""

from __future__ import annotations

import atexit
import contextlib
import fcntl
import logging
import os
import struct
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dutrunner.models import Settings

logger = logging.getLogger(__name__)

WATCHDOG_DEVICE_PATTERN = "/dev/watchdog{index}"

# _IOR('W', 5, int) and _IOWR('W', 6, int) from linux/watchdog.h
WDIOC_KEEPALIVE = 0x80045705
WDIOC_SETTIMEOUT = 0xC0045706

_MAGIC_CLOSE = b"V"
_INT = struct.Struct("i")


class WatchdogSet:
    """The set of watchdog devices opened for one run.

    Instances own their file descriptors; ``close_all`` is idempotent and is
    registered with ``atexit`` on the first ``open_all`` so a crashing
    supervisor still disarms the devices.
    """

    def __init__(self) -> None:
        self._fds: list[int] = []
        self._atexit_registered = False

    @property
    def count(self) -> int:
        """Number of devices currently open."""
        return len(self._fds)

    def open_all(self, settings: Settings) -> None:
        """Open every available watchdog device if *settings* ask for it.

        Devices are probed as ``/dev/watchdog0``, ``/dev/watchdog1``, ...
        until the first one that cannot be opened.
        """
        if not settings.use_watchdog:
            return

        logger.debug("Initializing watchdogs")
        if not self._atexit_registered:
            atexit.register(self.close_all)
            self._atexit_registered = True

        index = 0
        while True:
            path = WATCHDOG_DEVICE_PATTERN.format(index=index)
            try:
                fd = os.open(path, os.O_RDWR | os.O_CLOEXEC)
            except OSError:
                break
            self._fds.append(fd)
            logger.debug("  %s", path)
            index += 1

    def set_timeout(self, timeout: int) -> int:
        """Negotiate a common timeout across all open devices.

        Each device is asked for *timeout*; the driver answers with the value
        it actually applied. When a device shortens it, negotiation restarts
        with the shorter value so every device ends up with the same one.
        Devices whose ioctl fails are disarmed and dropped.

        Args:
            timeout: Requested timeout in seconds.

        Returns:
            The timeout accepted by every remaining device, or *timeout*
            unchanged when no device is open.
        """
        for fd in list(self._fds):
            try:
                answer = fcntl.ioctl(fd, WDIOC_SETTIMEOUT, _INT.pack(timeout))
            except OSError as exc:
                logger.warning("Watchdog refused timeout %d: %s", timeout, exc)
                self._fds.remove(fd)
                self._close_one(fd)
                continue

            (applied,) = _INT.unpack(answer)
            if applied < timeout:
                return self.set_timeout(applied)

        return timeout

    def ping(self) -> None:
        """Send a keep-alive to every open device; failures only warn."""
        for fd in self._fds:
            try:
                fcntl.ioctl(fd, WDIOC_KEEPALIVE, _INT.pack(0))
            except OSError as exc:
                logger.warning("Failed to ping a watchdog: %s", exc)

    def close_all(self) -> None:
        """Disarm and close every device. Safe to call repeatedly."""
        if self._fds:
            logger.debug("Closing watchdogs")
        fds, self._fds = self._fds, []
        for fd in fds:
            self._close_one(fd)

    @staticmethod
    def _close_one(fd: int) -> None:
        try:
            os.write(fd, _MAGIC_CLOSE)
        except OSError as exc:
            logger.error("Failed to stop a watchdog: %s", exc)
        with contextlib.suppress(OSError):
            os.close(fd)
