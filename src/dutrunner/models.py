"""Core data models for the dutrunner execution supervisor.

Defines the run settings, the job list, the mutable execution state and the
small enums shared by the watchdog, abort, monitor and executor modules.
Settings are frozen once loaded; the job list and execute state are the only
values the executor mutates.
"""

from __future__ import annotations

from enum import IntEnum, IntFlag, StrEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, field_validator, model_validator


class AbortCondition(IntFlag):
    """Host health checks that can stop the whole run."""

    NONE = 0
    TAINT = 1
    LOCKDEP = 2
    PING = 4
    ALL = TAINT | LOCKDEP | PING


class LogLevel(StrEnum):
    """Console verbosity of the supervisor."""

    QUIET = "quiet"
    NORMAL = "normal"
    VERBOSE = "verbose"


class ExitCode(IntEnum):
    """Well-known exit codes of test binaries.

    Anything else is an ordinary failure code or a signal death.
    """

    SUCCESS = 0
    SKIP = 77
    INVALID = 79
    FAILURE = 98
    ABORT = 112


class MonitorState(StrEnum):
    """Lifecycle of a monitored test process."""

    RUNNING = "running"
    ESCALATING = "escalating"
    FORCING = "forcing"
    DONE = "done"


class JobStatus(StrEnum):
    """How a single job ended, as seen by the execution loop.

    ``COMPLETED`` means the test ran to its end (whatever its exit code),
    ``RESTART`` means it had to be killed and the remaining subtests must be
    rebuilt from the journal, ``ABORT`` means the whole run must stop.
    """

    COMPLETED = "completed"
    RESTART = "restart"
    ABORT = "abort"


class Settings(BaseModel):
    """Immutable configuration for one run.

    Attributes:
        test_root: Directory containing the test binaries.
        results_path: Directory receiving all result files.
        per_test_timeout: Seconds allowed since the last subtest start (0 = off).
        inactivity_timeout: Seconds allowed without any output (0 = off).
        overall_timeout: Seconds for the whole run (0 = unbounded).
        abort_mask: Enabled abort conditions.
        use_watchdog: Whether to arm the hardware watchdogs.
        sync: ``fdatasync`` every write to the result files.
        disk_usage_limit: Bytes a single subtest may log (0 = unbounded).
        log_level: Console verbosity.
        allow_non_root: Skip the UID 0 requirement.
        dry_run: Prepare the results directory without executing.
        overwrite: Clear a previous run in ``results_path``.
        env_vars: Ordered environment variables exported before execution.
        enable_code_coverage: Collect kernel code coverage.
        cov_results_per_test: Collect coverage around every job.
        code_coverage_script: Privileged helper that stores counters.
        name: Run name, used for the whole-run coverage tarball.
        test_list: Path of the test list the job list was built from.
        ping_hostname: Host checked by the ping abort condition.
    """

    model_config = ConfigDict(frozen=True)

    test_root: str
    results_path: str
    per_test_timeout: float = 0.0
    inactivity_timeout: float = 0.0
    overall_timeout: float = 0.0
    abort_mask: int = AbortCondition.NONE
    use_watchdog: bool = False
    sync: bool = False
    disk_usage_limit: int = 0
    log_level: LogLevel = LogLevel.NORMAL
    allow_non_root: bool = False
    dry_run: bool = False
    overwrite: bool = False
    env_vars: list[tuple[str, str]] = []

    enable_code_coverage: bool = False
    cov_results_per_test: bool = False
    code_coverage_script: str | None = None
    name: str | None = None
    test_list: str | None = None

    ping_hostname: str | None = None

    @field_validator(
        "per_test_timeout",
        "inactivity_timeout",
        "overall_timeout",
        "disk_usage_limit",
    )
    @classmethod
    def _must_be_non_negative(cls, v: float) -> float:
        """Validate that timeouts and limits are >= 0."""
        if v < 0:
            msg = "Value must be >= 0"
            raise ValueError(msg)
        return v

    @field_validator("abort_mask", mode="before")
    @classmethod
    def _parse_abort_mask(cls, v: object) -> object:
        """Accept a list of condition names as well as a plain bitmask."""
        if isinstance(v, str):
            v = [part for part in v.split(",") if part]
        if isinstance(v, list | tuple):
            mask = AbortCondition.NONE
            for item in v:
                name = str(item).strip().upper()
                if name not in AbortCondition.__members__:
                    msg = f"Unknown abort condition: {item}"
                    raise ValueError(msg)
                mask |= AbortCondition[name]
            return int(mask)
        return v

    @model_validator(mode="after")
    def _check_code_coverage(self) -> Settings:
        """Code coverage needs a script to store the counters."""
        if self.enable_code_coverage and not self.code_coverage_script:
            msg = "enable_code_coverage requires code_coverage_script"
            raise ValueError(msg)
        return self

    @property
    def test_root_path(self) -> Path:
        """``test_root`` as a ``Path``."""
        return Path(self.test_root)

    @property
    def results_dir(self) -> Path:
        """``results_path`` as a ``Path``."""
        return Path(self.results_path)

    def aborts_on(self, condition: AbortCondition) -> bool:
        """Return True when *condition* is enabled in ``abort_mask``."""
        return bool(self.abort_mask & condition)


class JobListEntry(BaseModel):
    """A test binary with an optional subtest selection.

    An empty ``binary`` marks the entry as fully completed; the resume logic
    sets it when a journal shows that nothing is left to run.
    """

    binary: str
    subtests: list[str] = []

    @property
    def completed(self) -> bool:
        return self.binary == ""

    def mark_completed(self) -> None:
        self.binary = ""

    def prune_subtest(self, subtest: str) -> None:
        """Exclude *subtest* from the next execution of this entry.

        The last matching selector decides whether a subtest runs, so
        appending ``!name`` is enough. An empty selection means "all
        subtests", which has to be spelled out as ``*`` before anything can
        be excluded.
        """
        if not self.subtests:
            self.subtests.append("*")
        self.subtests.append(f"!{subtest}")


class JobList(BaseModel):
    """Ordered list of jobs for one run."""

    entries: list[JobListEntry] = []

    @property
    def size(self) -> int:
        return len(self.entries)


class ExecuteState(BaseModel):
    """Mutable position of the execution loop.

    Attributes:
        next: Index of the next job to run.
        time_left: Seconds left in the overall budget, -1 when unbounded and
            0 when exhausted.
        resuming: Whether the state was rebuilt from an existing results
            directory.
        dry: Skip execution entirely.
    """

    next: int = 0
    time_left: float = -1.0
    resuming: bool = False
    dry: bool = False


class JobOutcome(BaseModel):
    """Result of monitoring a single job.

    Attributes:
        status: How the job ended.
        time_spent: Wall-clock seconds the test ran.
        abort_reason: Explanation when ``status`` is ``ABORT``, if any.
    """

    model_config = ConfigDict(frozen=True)

    status: JobStatus
    time_spent: float = 0.0
    abort_reason: str | None = None
