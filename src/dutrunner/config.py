"""Loading of settings and job lists, and logging setup.

Settings and job lists are YAML files validated into the pydantic models of
``dutrunner.models``. A handful of ``DUTRUNNER_*`` environment variables fill
in settings the file leaves out.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError
import yaml

from dutrunner.models import JobList, JobListEntry, LogLevel, Settings

_ENV_FIELD_MAP: dict[str, str] = {
    "DUTRUNNER_LOG_LEVEL": "log_level",
    "DUTRUNNER_RESULTS_PATH": "results_path",
    "DUTRUNNER_OVERALL_TIMEOUT": "overall_timeout",
}
"""Maps environment variable names to Settings field names."""

_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s — %(message)s"

_LOG_LEVELS: dict[LogLevel, int] = {
    LogLevel.QUIET: logging.WARNING,
    LogLevel.NORMAL: logging.INFO,
    LogLevel.VERBOSE: logging.DEBUG,
}


class ConfigError(Exception):
    """A settings or job list file is missing or invalid.

    Attributes:
        diagnostics: Structured context (file, validation errors).
    """

    def __init__(self, message: str, *, diagnostics: dict[str, Any]) -> None:
        super().__init__(message)
        self.diagnostics = diagnostics


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------


def load_yaml(path: str | Path, label: str) -> Any:
    """Parse a YAML file.

    Args:
        path: File path to the YAML file.
        label: Human-readable label for error messages (e.g., "settings").

    Returns:
        The parsed YAML content.

    Raises:
        ConfigError: If the file does not exist or is not valid YAML.
    """
    file_path = Path(path)
    if not file_path.exists():
        msg = f"{label} file not found: {path}"
        raise ConfigError(msg, diagnostics={"path": str(path)})

    try:
        with open(file_path, encoding="utf-8") as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as exc:
        msg = f"{label} file is not valid YAML: {path}"
        raise ConfigError(msg, diagnostics={"path": str(path), "error": str(exc)}) from exc


def apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Fill settings missing from *data* from ``DUTRUNNER_*`` variables.

    Values present in the settings file always win.

    Args:
        data: Raw settings mapping as read from YAML.

    Returns:
        A new mapping with the overrides applied.
    """
    merged = dict(data)
    for env_var, field_name in _ENV_FIELD_MAP.items():
        env_value = os.environ.get(env_var)
        if env_value is None or field_name in merged:
            continue
        merged[field_name] = env_value
    return merged


def load_settings(path: str | Path, **overrides: Any) -> Settings:
    """Load and validate a settings file.

    Args:
        path: Settings YAML file.
        **overrides: Values that replace the file's (command line flags).

    Raises:
        ConfigError: If the file is missing, not a mapping, or invalid.
    """
    data = load_yaml(path, "settings")
    if not isinstance(data, dict):
        msg = f"settings file must contain a YAML mapping, got {type(data).__name__}"
        raise ConfigError(msg, diagnostics={"path": str(path)})

    data = apply_env_overrides(data)
    data.update(overrides)
    try:
        return Settings(**data)
    except ValidationError as exc:
        msg = f"Invalid settings in {path}"
        raise ConfigError(msg, diagnostics={"path": str(path), "errors": exc.errors()}) from exc


def load_job_list(path: str | Path) -> JobList:
    """Load a job list file.

    The file holds a list of jobs, either under a top-level ``jobs`` key or
    as the document itself. A job is a mapping with ``binary`` and optional
    ``subtests``, or just a binary name.

    Raises:
        ConfigError: If the file is missing or malformed.
    """
    data = load_yaml(path, "job list")
    if isinstance(data, dict):
        data = data.get("jobs")
    if not isinstance(data, list):
        msg = "job list file must contain a list of jobs"
        raise ConfigError(msg, diagnostics={"path": str(path)})

    entries = []
    try:
        for item in data:
            if isinstance(item, str):
                entries.append(JobListEntry(binary=item))
            else:
                entries.append(JobListEntry(**item))
    except (TypeError, ValidationError) as exc:
        msg = f"Invalid job in {path}"
        raise ConfigError(msg, diagnostics={"path": str(path), "error": str(exc)}) from exc
    return JobList(entries=entries)


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def configure_logging(level: LogLevel = LogLevel.NORMAL, log_file: str | None = None) -> None:
    """Configure Python logging for the supervisor.

    Sets up the ``"dutrunner"`` logger with a console handler and an
    optional file handler. Repeated calls do not duplicate handlers.

    Args:
        level: Console verbosity from the settings.
        log_file: Optional path of an additional log file.
    """
    runner_logger = logging.getLogger("dutrunner")
    runner_logger.setLevel(_LOG_LEVELS[LogLevel(level)])

    if not any(type(h) is logging.StreamHandler for h in runner_logger.handlers):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(_LOG_FORMAT))
        runner_logger.addHandler(console)

    if log_file is not None:
        has_file = any(
            isinstance(h, logging.FileHandler)
            and getattr(h, "baseFilename", None) == str(Path(log_file).resolve())
            for h in runner_logger.handlers
        )
        if not has_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
            runner_logger.addHandler(file_handler)
