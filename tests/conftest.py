"""Shared fixtures for the dutrunner test suite."""

from __future__ import annotations

from collections.abc import Iterator
import logging
from pathlib import Path
import sys
import textwrap
from typing import Any

from dutrunner.models import JobList, JobListEntry, Settings
import pytest

# ---------------------------------------------------------------------------
# Factory functions (plain functions, importable from conftest)
# ---------------------------------------------------------------------------


def make_settings(**overrides: Any) -> Settings:
    """Build a valid Settings with sensible defaults.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed Settings instance.
    """
    defaults: dict[str, Any] = {
        "test_root": "/opt/tests",
        "results_path": "/tmp/results",
        "allow_non_root": True,
    }
    defaults.update(overrides)
    return Settings(**defaults)


def make_entry(binary: str = "t1", subtests: list[str] | None = None) -> JobListEntry:
    """Build a JobListEntry, copying *subtests* so callers can reuse lists."""
    return JobListEntry(binary=binary, subtests=list(subtests or []))


def make_job_list(*entries: JobListEntry) -> JobList:
    return JobList(entries=list(entries))


def write_test_binary(test_root: Path, name: str, body: str) -> Path:
    """Write an executable Python script that acts as a test binary.

    The script runs under the interpreter executing the test suite; *body*
    is dedented and placed after a few convenience imports.

    Returns:
        Path of the created script.
    """
    test_root.mkdir(parents=True, exist_ok=True)
    path = test_root / name
    script = (
        f"#!{sys.executable}\n"
        "import os\nimport sys\nimport time\n\n"
        "def say(line):\n"
        "    sys.stdout.write(line + '\\n')\n"
        "    sys.stdout.flush()\n\n"
        f"{textwrap.dedent(body)}"
    )
    path.write_text(script, encoding="utf-8")
    path.chmod(0o755)
    return path


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def isolated_host(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> Path:
    """Point every host interface at harmless locations.

    The kernel log, sysrq trigger, watchdogs, gcov reset and OOM score files
    are redirected so no test touches the machine running the suite. The
    taint file reads ``0`` unless a test rewrites it.

    Returns:
        Directory holding the fake host files.
    """
    host = tmp_path_factory.mktemp("host")
    tainted = host / "tainted"
    tainted.write_text("0\n")

    monkeypatch.setattr("dutrunner.kmsg.KMSG_PATH", str(host / "no-kmsg"))
    monkeypatch.setattr("dutrunner.kmsg.SYSRQ_TRIGGER_PATH", str(host / "sysrq-trigger"))
    monkeypatch.setattr("dutrunner.abort.TAINTED_PATH", str(tainted))
    monkeypatch.setattr("dutrunner.abort.LOCKDEP_STATS_PATH", str(host / "no-lockdep"))
    monkeypatch.setattr(
        "dutrunner.watchdog.WATCHDOG_DEVICE_PATTERN", str(host / "no-watchdog{index}")
    )
    monkeypatch.setattr("dutrunner.code_coverage.GCOV_RESET_PATH", str(host / "gcov-reset"))
    monkeypatch.setattr("dutrunner.executor.OOM_SCORE_ADJ_PATH", str(host / "oom_score_adj"))
    monkeypatch.delenv("DUTRUNNER_PING_HOSTNAME", raising=False)
    monkeypatch.delenv("DUTRUNNER_DISABLE_SOCKET_COMMUNICATION", raising=False)
    for name in ("DUTRUNNER_LOG_LEVEL", "DUTRUNNER_RESULTS_PATH", "DUTRUNNER_OVERALL_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)
    return host


@pytest.fixture()
def taint_file(isolated_host: Path) -> Path:
    """Return the fake ``/proc/sys/kernel/tainted`` file."""
    return isolated_host / "tainted"


@pytest.fixture()
def run_dirs(tmp_path: Path) -> tuple[Path, Path]:
    """Provide an empty test root and a results path inside ``tmp_path``.

    Returns:
        ``(test_root, results_path)``; only the test root exists.
    """
    test_root = tmp_path / "bin"
    test_root.mkdir()
    return test_root, tmp_path / "results"


@pytest.fixture()
def runner_logger() -> Iterator[logging.Logger]:
    """Yield the ``dutrunner`` logger and drop handlers added by the test."""
    log = logging.getLogger("dutrunner")
    original_handlers = list(log.handlers)
    original_level = log.level
    yield log
    for h in log.handlers[:]:
        if h not in original_handlers:
            log.removeHandler(h)
            h.close()
    log.setLevel(original_level)
