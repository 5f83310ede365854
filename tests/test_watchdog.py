"""Tests for the hardware watchdog set.

Device nodes are plain files here; the ``fcntl.ioctl`` calls are patched to
emulate drivers that accept, shorten or refuse timeouts.
"""

from __future__ import annotations

import struct
from typing import TYPE_CHECKING
from unittest.mock import patch

from dutrunner.watchdog import WDIOC_KEEPALIVE, WDIOC_SETTIMEOUT, WatchdogSet
import pytest

from tests.conftest import make_settings

if TYPE_CHECKING:
    from pathlib import Path

_MODULE = "dutrunner.watchdog"


def _create_devices(host: Path, count: int) -> list[Path]:
    paths = [host / f"no-watchdog{i}" for i in range(count)]
    for path in paths:
        path.write_bytes(b"")
    return paths


def _fake_driver(limits: dict[int, int]):
    """Emulate ``ioctl`` for devices capping the timeout per fd."""

    def ioctl(fd: int, request: int, arg: bytes) -> bytes:
        if request == WDIOC_SETTIMEOUT:
            (wanted,) = struct.unpack("i", arg)
            limit = limits.get(fd)
            if limit is None:
                msg = "not supported"
                raise OSError(msg)
            return struct.pack("i", min(wanted, limit))
        return arg

    return ioctl


@pytest.mark.unit
class TestOpen:
    """Discovering devices."""

    def test_disabled(self, isolated_host: Path) -> None:
        """Nothing is opened unless watchdogs are enabled."""
        _create_devices(isolated_host, 2)
        watchdogs = WatchdogSet()
        watchdogs.open_all(make_settings(use_watchdog=False))
        assert watchdogs.count == 0

    def test_opens_consecutive_devices(self, isolated_host: Path) -> None:
        """Devices are probed until the first missing index."""
        _create_devices(isolated_host, 2)
        (isolated_host / "no-watchdog3").write_bytes(b"")
        watchdogs = WatchdogSet()
        with patch(f"{_MODULE}.atexit.register") as register:
            watchdogs.open_all(make_settings(use_watchdog=True))
            watchdogs.open_all(make_settings(use_watchdog=False))
        try:
            assert watchdogs.count == 2
            register.assert_called_once_with(watchdogs.close_all)
        finally:
            watchdogs.close_all()

    def test_close_writes_magic_character(self, isolated_host: Path) -> None:
        """Closing disarms every device with ``V``."""
        paths = _create_devices(isolated_host, 2)
        watchdogs = WatchdogSet()
        with patch(f"{_MODULE}.atexit.register"):
            watchdogs.open_all(make_settings(use_watchdog=True))
        watchdogs.close_all()
        watchdogs.close_all()
        assert watchdogs.count == 0
        assert [p.read_bytes() for p in paths] == [b"V", b"V"]


@pytest.mark.unit
class TestSetTimeout:
    """Timeout negotiation."""

    def _open(self, isolated_host: Path, count: int) -> WatchdogSet:
        _create_devices(isolated_host, count)
        watchdogs = WatchdogSet()
        with patch(f"{_MODULE}.atexit.register"):
            watchdogs.open_all(make_settings(use_watchdog=True))
        return watchdogs

    def test_no_devices(self) -> None:
        """Without devices the request is returned unchanged."""
        assert WatchdogSet().set_timeout(120) == 120

    def test_accepted(self, isolated_host: Path) -> None:
        """A driver accepting the value keeps it."""
        watchdogs = self._open(isolated_host, 1)
        fd = watchdogs._fds[0]
        with patch(f"{_MODULE}.fcntl.ioctl", side_effect=_fake_driver({fd: 600})):
            assert watchdogs.set_timeout(120) == 120
        watchdogs.close_all()

    def test_shortest_wins(self, isolated_host: Path) -> None:
        """A shortening driver lowers the common timeout for all devices."""
        watchdogs = self._open(isolated_host, 2)
        first, second = watchdogs._fds
        calls: list[tuple[int, int]] = []
        driver = _fake_driver({first: 600, second: 60})

        def recording(fd: int, request: int, arg: bytes) -> bytes:
            calls.append((fd, struct.unpack("i", arg)[0]))
            return driver(fd, request, arg)

        with patch(f"{_MODULE}.fcntl.ioctl", side_effect=recording):
            assert watchdogs.set_timeout(120) == 60
        assert (first, 60) in calls
        watchdogs.close_all()

    def test_refusing_device_dropped(self, isolated_host: Path) -> None:
        """A device that refuses the ioctl is closed and forgotten."""
        watchdogs = self._open(isolated_host, 2)
        first, _ = watchdogs._fds
        with patch(f"{_MODULE}.fcntl.ioctl", side_effect=_fake_driver({first: 600})):
            assert watchdogs.set_timeout(120) == 120
        assert watchdogs.count == 1
        watchdogs.close_all()


@pytest.mark.unit
class TestPing:
    """Keep-alives."""

    def test_pings_every_device(self, isolated_host: Path) -> None:
        """Each open device gets a keep-alive."""
        _create_devices(isolated_host, 2)
        watchdogs = WatchdogSet()
        with patch(f"{_MODULE}.atexit.register"):
            watchdogs.open_all(make_settings(use_watchdog=True))
        with patch(f"{_MODULE}.fcntl.ioctl") as ioctl:
            watchdogs.ping()
        assert [c.args[1] for c in ioctl.call_args_list] == [WDIOC_KEEPALIVE] * 2
        watchdogs.close_all()

    def test_failed_ping_only_warns(self, isolated_host: Path) -> None:
        """Ping failures do not raise."""
        _create_devices(isolated_host, 1)
        watchdogs = WatchdogSet()
        with patch(f"{_MODULE}.atexit.register"):
            watchdogs.open_all(make_settings(use_watchdog=True))
        with patch(f"{_MODULE}.fcntl.ioctl", side_effect=OSError("gone")):
            watchdogs.ping()
        assert watchdogs.count == 1
        watchdogs.close_all()
