"""Result directory management.

Each job gets a numbered subdirectory of the results path holding its
journal, captured stdout/stderr, kernel log slice and comms dump. The
top level holds run markers (uname, start/end time, abort reason) and the
persisted settings and job list that make a run resumable.
"""

from __future__ import annotations

import contextlib
from dataclasses import dataclass
from datetime import UTC, datetime
import logging
import os
from pathlib import Path
import platform
import shutil
from typing import BinaryIO

import yaml

from dutrunner.models import JobList, JobListEntry, Settings

logger = logging.getLogger(__name__)

JOURNAL = "journal.txt"
OUT = "out.txt"
ERR = "err.txt"
DMESG = "dmesg.txt"
COMMS = "comms"
JOB_FILES: tuple[str, ...] = (JOURNAL, OUT, ERR, DMESG, COMMS)

UNAME = "uname.txt"
STARTTIME = "starttime.txt"
ENDTIME = "endtime.txt"
ABORTED = "aborted.txt"
MARKER_FILES: tuple[str, ...] = (UNAME, STARTTIME, ENDTIME, ABORTED)

METADATA = "metadata.yaml"
JOBLIST = "joblist.txt"
CODE_COV_RESULTS_PATH = "code_cov"


@dataclass
class ResultFiles:
    """Open handles of one job's result files.

    All handles are unbuffered binary files. ``comms`` is ``None`` when
    opened for reading and the test never used the comms socket.
    """

    journal: BinaryIO
    out: BinaryIO
    err: BinaryIO
    dmesg: BinaryIO
    comms: BinaryIO | None

    def close(self) -> None:
        for f in (self.journal, self.out, self.err, self.dmesg, self.comms):
            if f is not None:
                f.close()

    def __enter__(self) -> ResultFiles:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def job_dir(results_path: str | Path, index: int) -> Path:
    return Path(results_path) / str(index)


def _open_at_end(path: Path) -> BinaryIO:
    """Open *path* for appending, making sure it ends with a newline.

    A resumed job appends to files left behind by the interrupted attempt,
    whose last line may be partial.
    """
    f = open(path, "a+b", buffering=0)  # noqa: SIM115
    try:
        if f.seek(0, os.SEEK_END) > 0:
            f.seek(-1, os.SEEK_END)
            if f.read(1) != b"\n":
                f.write(b"\n")
    except OSError:
        f.close()
        raise
    return f


def open_for_write(directory: str | Path) -> ResultFiles:
    """Create or reopen all five result files of a job directory.

    Raises:
        OSError: If any file cannot be opened; already opened files are
            closed again.
    """
    base = Path(directory)
    opened: list[BinaryIO] = []
    try:
        for name in JOB_FILES:
            opened.append(_open_at_end(base / name))
    except OSError:
        for f in opened:
            f.close()
        raise
    return ResultFiles(
        journal=opened[0], out=opened[1], err=opened[2], dmesg=opened[3], comms=opened[4]
    )


def open_for_read(directory: str | Path) -> ResultFiles:
    """Open a job directory's result files read-only.

    The comms dump is optional.

    Raises:
        OSError: If any of the text files is missing.
    """
    base = Path(directory)
    opened: list[BinaryIO] = []
    try:
        for name in JOB_FILES[:-1]:
            opened.append(open(base / name, "rb", buffering=0))  # noqa: SIM115
    except OSError:
        for f in opened:
            f.close()
        raise
    try:
        comms: BinaryIO | None = open(base / COMMS, "rb", buffering=0)  # noqa: SIM115
    except FileNotFoundError:
        comms = None
    return ResultFiles(
        journal=opened[0], out=opened[1], err=opened[2], dmesg=opened[3], comms=comms
    )


def sync_file(f: BinaryIO, sync: bool) -> None:
    if sync:
        os.fdatasync(f.fileno())


def fsync_dir(path: str | Path) -> None:
    fd = os.open(path, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


# ---------------------------------------------------------------------------
# Clearing a previous run
# ---------------------------------------------------------------------------


def _remove(path: Path) -> None:
    with contextlib.suppress(FileNotFoundError):
        path.unlink()


def clear_prior_results(results_path: str | Path) -> None:
    """Delete a previous run from *results_path* before overwriting it.

    Only files this supervisor creates are removed: the per-job files of
    consecutively numbered job directories starting at 0, those directories
    when they end up empty, the top-level markers and run metadata, and the
    coverage tarballs. Anything else is left in place.

    Raises:
        OSError: If a known file exists but cannot be removed.
    """
    root = Path(results_path)
    if not root.is_dir():
        return

    for name in (*MARKER_FILES, METADATA, JOBLIST):
        _remove(root / name)

    index = 0
    while (directory := job_dir(root, index)).is_dir():
        for name in JOB_FILES:
            _remove(directory / name)
        try:
            directory.rmdir()
        except OSError:
            logger.warning("Result directory %s contains extra files", directory)
        index += 1

    cov_dir = root / CODE_COV_RESULTS_PATH
    if cov_dir.is_dir():
        for entry in cov_dir.iterdir():
            try:
                if entry.is_dir():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
            except OSError:
                logger.error("Error removing %s", entry)
        try:
            cov_dir.rmdir()
        except OSError:
            logger.warning("Result directory %s contains extra files", cov_dir)


# ---------------------------------------------------------------------------
# Run metadata
# ---------------------------------------------------------------------------


def serialize_job_list(job_list: JobList) -> str:
    """Render *job_list* as ``joblist.txt`` lines: ``binary [sel,sel,...]``."""
    lines = []
    for entry in job_list.entries:
        if entry.subtests:
            lines.append(f"{entry.binary} {','.join(entry.subtests)}")
        else:
            lines.append(entry.binary)
    return "".join(f"{line}\n" for line in lines)


def parse_job_list(text: str) -> JobList:
    entries = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        binary, _, selectors = line.partition(" ")
        subtests = [s for s in selectors.strip().split(",") if s]
        entries.append(JobListEntry(binary=binary, subtests=subtests))
    return JobList(entries=entries)


def write_run_metadata(settings: Settings, job_list: JobList) -> None:
    """Persist *settings* and *job_list* into the results directory.

    Raises:
        FileExistsError: If metadata already exists and ``overwrite`` is off.
    """
    root = settings.results_dir
    root.mkdir(parents=True, exist_ok=True)
    metadata = root / METADATA
    if metadata.exists() and not settings.overwrite:
        msg = f"{root} already contains results, refusing to overwrite"
        raise FileExistsError(msg)

    with open(metadata, "w", encoding="utf-8") as f:
        yaml.safe_dump(settings.model_dump(mode="json"), f, sort_keys=False)
    (root / JOBLIST).write_text(serialize_job_list(job_list), encoding="utf-8")
    if settings.sync:
        fsync_dir(root)


def read_run_metadata(results_path: str | Path) -> tuple[Settings, JobList]:
    """Load the settings and job list persisted by ``write_run_metadata``.

    Raises:
        FileNotFoundError: If the results directory holds no metadata.
        ValueError: If the metadata is not a mapping.
    """
    root = Path(results_path)
    with open(root / METADATA, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        msg = f"{root / METADATA} must contain a YAML mapping"
        raise ValueError(msg)
    settings = Settings(**data)
    job_list = parse_job_list((root / JOBLIST).read_text(encoding="utf-8"))
    return settings, job_list


# ---------------------------------------------------------------------------
# Top-level markers
# ---------------------------------------------------------------------------


def write_uname(results_path: str | Path) -> None:
    """Record the host identification, keeping an existing file on resume."""
    path = Path(results_path) / UNAME
    if path.exists():
        return
    try:
        u = os.uname()
        text = f"{u.sysname} {u.nodename} {u.release} {u.version} {u.machine}\n"
    except OSError:
        text = f"{platform.platform()}\n"
    path.write_text(text, encoding="utf-8")


def write_time_marker(results_path: str | Path, name: str) -> bool:
    """Write the current time to *name* unless it already exists.

    Returns:
        True if the file was created.
    """
    try:
        with open(Path(results_path) / name, "x", encoding="utf-8") as f:
            f.write(f"{datetime.now(UTC).timestamp():f}\n")
    except FileExistsError:
        return False
    return True


def write_abort_file(
    results_path: str | Path, reason: str, test_before: str, test_after: str
) -> None:
    """Create ``aborted.txt`` explaining why the run stopped.

    An existing file (from an earlier abort of a resumed run) is kept.
    """
    try:
        with open(Path(results_path) / ABORTED, "x", encoding="utf-8") as f:
            f.write("Aborting.\n")
            f.write(f"Previous test: {test_before}\n")
            f.write(f"Next test: {test_after}\n\n")
            f.write(reason)
    except FileExistsError:
        logger.debug("%s already exists, keeping it", ABORTED)
