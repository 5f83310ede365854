"""Kernel log access.

Copies the slice of ``/dev/kmsg`` produced while a test runs into its
``dmesg.txt``, and writes supervisor notes into the kernel log. ``/dev/kmsg``
cannot seek relative to the end, so a copy is bounded by sequence number
instead of by position.
"""

from __future__ import annotations

import contextlib
import errno
import logging
import os
import re
from typing import BinaryIO

logger = logging.getLogger(__name__)

KMSG_PATH = "/dev/kmsg"
SYSRQ_TRIGGER_PATH = "/proc/sysrq-trigger"
KMSG_HEADER = "[RUNNER] "
KMSG_WARN = 4

_RECORD_BUFSIZE = 8192
_RECORD_PREFIX = re.compile(rb"^(\d+),(\d+),(\d+),([^;,]*)[;,]")


def _record_seq(record: bytes) -> int | None:
    match = _RECORD_PREFIX.match(record)
    if match is None:
        return None
    return int(match.group(2))


def open_kmsg() -> int | None:
    """Open the kernel log positioned at its current end.

    Returns:
        A non-blocking file descriptor, or ``None`` when the log is not
        accessible.
    """
    try:
        fd = os.open(KMSG_PATH, os.O_RDONLY | os.O_CLOEXEC | os.O_NONBLOCK)
    except OSError:
        logger.warning("Cannot open %s", KMSG_PATH)
        return None
    with contextlib.suppress(OSError):
        os.lseek(fd, 0, os.SEEK_END)
    return fd


def _read_comparison(fd: int) -> int | None:
    """Try to read the first record logged after *fd* was positioned."""
    try:
        record = os.read(fd, _RECORD_BUFSIZE)
    except (BlockingIOError, BrokenPipeError):
        return None
    return _record_seq(record)


def dump_kmsg(kmsg_fd: int | None, out: BinaryIO) -> int:
    """Copy pending kernel log records from *kmsg_fd* into *out*.

    A second reader positioned at the end of the log picks up the first
    record logged after the copy started; copying stops once *kmsg_fd*
    reaches that record's sequence number, or when nothing is pending, so
    a chatty kernel cannot keep the caller here forever.

    Args:
        kmsg_fd: Non-blocking descriptor from ``open_kmsg``, or ``None``.
        out: Destination file.

    Returns:
        The number of bytes written.

    Raises:
        OSError: On an unexpected read error; the caller should stop reading
            the kernel log.
    """
    if kmsg_fd is None:
        return 0

    compare_fd = os.open(KMSG_PATH, os.O_RDONLY | os.O_NONBLOCK | os.O_CLOEXEC)
    os.lseek(compare_fd, 0, os.SEEK_END)
    stop_seq: int | None = None
    written = 0
    underflow_reported = False

    try:
        while True:
            if stop_seq is None:
                try:
                    stop_seq = _read_comparison(compare_fd)
                except OSError as exc:
                    logger.warning("Error reading kmsg comparison record: %s", exc)
                    return written

            try:
                record = os.read(kmsg_fd, _RECORD_BUFSIZE)
            except BlockingIOError:
                return written
            except BrokenPipeError:
                if not underflow_reported:
                    logger.warning("kernel log ringbuffer underflow, some records lost.")
                    underflow_reported = True
                continue
            except OSError as exc:
                if exc.errno == errno.EINVAL:
                    logger.warning("Buffer too small for kernel log record, record lost.")
                    continue
                raise

            if not record:
                return written

            out.write(record)
            written += len(record)

            seq = _record_seq(record)
            if stop_seq is not None and seq is not None and seq >= stop_seq:
                return written
    finally:
        os.close(compare_fd)


def kmsg_log(severity: int, message: str) -> None:
    """Write *message* into the kernel log, ignoring failures."""
    try:
        fd = os.open(KMSG_PATH, os.O_WRONLY)
    except OSError:
        return
    try:
        os.write(fd, f"<{severity}>{KMSG_HEADER}{message}".encode())
    except OSError:
        pass
    finally:
        os.close(fd)


def sysrq(command: str) -> bool:
    try:
        with open(SYSRQ_TRIGGER_PATH, "w", encoding="ascii") as f:
            f.write(command)
    except OSError:
        return False
    return True


def show_kernel_task_state(message: str) -> str:
    """Log *message* to the kernel and dump task state and memory usage."""
    kmsg_log(KMSG_WARN, message)
    sysrq("t")
    sysrq("m")
    return message
