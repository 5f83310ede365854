"""Tests for the execution loop helpers and resume logic.

Covers command line translation, display names, journal and comms pruning,
and rebuilding the execution state from an interrupted results directory.
Running real jobs is covered in ``test_executor_run.py``.
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING
from unittest.mock import patch

from dutrunner.comms import (
    dump_with_canary,
    exec_packet,
    exit_packet,
    result_override_packet,
    subtest_result_packet,
    subtest_start_packet,
)
from dutrunner.executor import (
    ExecutorError,
    build_test_argv,
    entry_display_name,
    initialize_execute_state,
    initialize_execute_state_from_resume,
    prune_from_comms,
    prune_from_journal,
)
from dutrunner.models import JobListEntry
from dutrunner.results import COMMS, JOURNAL, METADATA, job_dir, open_for_write
from hypothesis import given, settings, strategies as st
import pytest

from tests.conftest import make_entry, make_job_list, make_settings

if TYPE_CHECKING:
    from pathlib import Path

    from dutrunner.comms import RunnerPacket

_MODULE = "dutrunner.executor"

_names = st.text(
    alphabet=st.characters(min_codepoint=0x61, max_codepoint=0x7A), min_size=1, max_size=8
)


def _dump(*packets: RunnerPacket) -> bytes:
    f = io.BytesIO()
    for packet in packets:
        dump_with_canary(f, packet)
    return f.getvalue()


# ===========================================================================
# Command line and names
# ===========================================================================


@pytest.mark.unit
class TestBuildTestArgv:
    """Translation of selectors to test arguments."""

    def test_whole_binary(self) -> None:
        """Without selectors only the binary path is passed."""
        argv = build_test_argv(make_settings(test_root="/opt/t"), make_entry("t1"))
        assert argv == ["/opt/t/t1"]

    def test_subtests_joined(self) -> None:
        """Selectors are joined into one comma separated list."""
        argv = build_test_argv(make_settings(test_root="/r"), make_entry("t1", ["a", "b", "!a"]))
        assert argv == ["/r/t1", "--run-subtest", "a,b,!a"]

    def test_dynamic_subtest(self) -> None:
        """``subtest@dynamic`` splits into two options."""
        argv = build_test_argv(make_settings(test_root="/r"), make_entry("t1", ["engines@rcs0"]))
        assert argv == ["/r/t1", "--run-subtest", "engines", "--dynamic-subtest", "rcs0"]

    def test_dynamic_only_from_first_selector(self) -> None:
        """Only the first selector's dynamic part is used."""
        argv = build_test_argv(
            make_settings(test_root="/r"), make_entry("t1", ["engines@rcs0", "basic"])
        )
        assert argv == ["/r/t1", "--run-subtest", "engines,basic", "--dynamic-subtest", "rcs0"]


@pytest.mark.unit
class TestEntryDisplayName:
    """Human readable job names."""

    def test_binary_only(self) -> None:
        """No selectors means just the binary."""
        assert entry_display_name(make_entry("t1")) == "t1"

    def test_with_selectors(self) -> None:
        """Selectors are listed in parentheses."""
        assert entry_display_name(make_entry("t1", ["a", "b"])) == "t1 (a, b)"


# ===========================================================================
# Pruning
# ===========================================================================


@pytest.mark.unit
class TestPruneFromJournal:
    """Excluding subtests recorded in a journal."""

    def test_partial_run(self) -> None:
        """Started subtests are excluded; the rest stays runnable."""
        entry = make_entry("t1", ["a", "b", "c"])
        assert prune_from_journal(entry, "a\nb\n")
        assert entry.subtests == ["a", "b", "c", "!a", "!b"]
        assert not entry.completed

    def test_timeout_marker_keeps_entry(self) -> None:
        """A killed test is resumed with the remaining subtests."""
        entry = make_entry("t1", ["a", "b"])
        assert prune_from_journal(entry, "a\ntimeout:-3 (5.000s)\n")
        assert entry.subtests == ["a", "b", "!a"]
        assert not entry.completed

    def test_exit_marker_completes(self) -> None:
        """An exit marker means the test finished."""
        entry = make_entry("t1", ["a", "b"])
        prune_from_journal(entry, "a\nexit:0 (1.000s)\n")
        assert entry.completed

    def test_all_seen_completes(self) -> None:
        """Seeing as many subtests as requested completes the entry."""
        entry = make_entry("t1", ["a", "b"])
        prune_from_journal(entry, "a\nb\n")
        assert entry.completed

    def test_empty_journal(self) -> None:
        """Nothing started means nothing to resume."""
        entry = make_entry("t1", ["a"])
        assert not prune_from_journal(entry, "")
        assert entry.subtests == ["a"]

    def test_whole_binary(self) -> None:
        """Entries without selectors gain a wildcard before exclusions."""
        entry = make_entry("t1")
        assert prune_from_journal(entry, "x\n")
        assert entry.subtests == ["*", "!x"]
        assert not entry.completed

    def test_tagged_kill_is_terminal(self) -> None:
        """A tagged exit after a taint kill still ends the entry."""
        entry = make_entry("t1", ["a", "b"])
        prune_from_journal(entry, "a\nexit:-3 (1.000s) killed:taint\n")
        assert entry.completed

    @given(
        requested=st.lists(_names, min_size=1, max_size=6, unique=True),
        seen_count=st.integers(min_value=0, max_value=6),
    )
    @settings(max_examples=100)
    def test_never_reruns_started_subtest(self, requested: list[str], seen_count: int) -> None:
        """Every subtest in the journal is excluded exactly once."""
        seen = requested[:seen_count]
        entry = JobListEntry(binary="t", subtests=list(requested))
        prune_from_journal(entry, "".join(f"{name}\n" for name in seen))
        if entry.completed:
            assert len(seen) >= len(requested)
            return
        exclusions = [s[1:] for s in entry.subtests if s.startswith("!")]
        assert exclusions == seen


@pytest.mark.unit
class TestPruneFromComms:
    """Excluding subtests recorded in a comms dump."""

    def test_partial_run(self) -> None:
        """Start packets become exclusions."""
        entry = make_entry("t1", ["a", "b"])
        data = _dump(
            exec_packet(["/r/t1"]),
            subtest_start_packet("a"),
            subtest_result_packet("a", "pass", "0.1"),
        )
        assert prune_from_comms(entry, data)
        assert entry.subtests == ["a", "b", "!a"]
        assert not entry.completed

    def test_exit_completes(self) -> None:
        """An exit packet ends the entry."""
        entry = make_entry("t1", ["a", "b"])
        prune_from_comms(entry, _dump(subtest_start_packet("a"), exit_packet(0, "0.5")))
        assert entry.completed

    def test_timeout_exit_keeps_entry(self) -> None:
        """An exit reporting a timeout kill leaves the rest runnable."""
        entry = make_entry("t1", ["a", "b"])
        data = _dump(
            subtest_start_packet("a"), result_override_packet("timeout"), exit_packet(-3, "9.0")
        )
        assert prune_from_comms(entry, data)
        assert not entry.completed

    def test_restarted_attempt_exit_completes(self) -> None:
        """A clean exit from the attempt after a timeout kill ends the entry."""
        entry = make_entry("t1", ["x", "y", "z"])
        data = _dump(
            exec_packet(["/r/t1"]),
            subtest_start_packet("x"),
            result_override_packet("timeout"),
            exit_packet(-3, "9.0"),
            exec_packet(["/r/t1", "--run-subtest", "x,y,z,!x"]),
            subtest_start_packet("y"),
            exit_packet(0, "0.5"),
        )
        assert prune_from_comms(entry, data)
        assert entry.subtests == ["x", "y", "z", "!x", "!y"]
        assert entry.completed

    def test_corruption_keeps_earlier_packets(self) -> None:
        """Packets before a torn write still count."""
        entry = make_entry("t1", ["a", "b"])
        data = _dump(subtest_start_packet("a"), subtest_start_packet("b"))
        assert prune_from_comms(entry, data[:-2])
        assert entry.subtests == ["a", "b", "!a"]


# ===========================================================================
# State initialization
# ===========================================================================


@pytest.mark.unit
class TestInitializeExecuteState:
    """Fresh runs."""

    def test_fresh(self, tmp_path: Path) -> None:
        """Metadata is written and the budget set."""
        s = make_settings(results_path=str(tmp_path / "r"), overall_timeout=60)
        state = initialize_execute_state(s, make_job_list(make_entry()))
        assert (tmp_path / "r" / METADATA).exists()
        assert state.next == 0
        assert state.time_left == 60
        assert not state.resuming

    def test_unbounded_budget(self, tmp_path: Path) -> None:
        """No overall timeout means an unbounded budget."""
        state = initialize_execute_state(make_settings(results_path=str(tmp_path)), make_job_list())
        assert state.time_left == -1

    def test_dry(self, tmp_path: Path) -> None:
        """Dry runs are flagged."""
        s = make_settings(results_path=str(tmp_path), dry_run=True)
        assert initialize_execute_state(s, make_job_list()).dry

    def test_requires_root(self, tmp_path: Path) -> None:
        """Non-root users need ``allow_non_root``."""
        s = make_settings(results_path=str(tmp_path), allow_non_root=False)
        with patch(f"{_MODULE}.os.getuid", return_value=1000), pytest.raises(ExecutorError) as exc:
            initialize_execute_state(s, make_job_list())
        assert exc.value.diagnostics == {"uid": 1000}

    def test_existing_results_refused(self, tmp_path: Path) -> None:
        """A second fresh run into the same directory fails."""
        s = make_settings(results_path=str(tmp_path))
        initialize_execute_state(s, make_job_list())
        with pytest.raises(ExecutorError, match="already contains results"):
            initialize_execute_state(s, make_job_list())

    def test_overwrite_clears(self, tmp_path: Path) -> None:
        """Overwriting removes the previous run's job directories."""
        s = make_settings(results_path=str(tmp_path), overwrite=True)
        initialize_execute_state(s, make_job_list(make_entry()))
        job_dir(tmp_path, 0).mkdir()
        (job_dir(tmp_path, 0) / JOURNAL).write_text("a\n")
        initialize_execute_state(s, make_job_list(make_entry()))
        assert not job_dir(tmp_path, 0).exists()


@pytest.mark.unit
class TestInitializeFromResume:
    """Rebuilding the position of an interrupted run."""

    def _prepare(self, tmp_path: Path, *entries: JobListEntry) -> Path:
        s = make_settings(results_path=str(tmp_path), overall_timeout=100)
        initialize_execute_state(s, make_job_list(*entries))
        return tmp_path

    def _job(self, results: Path, index: int, journal: str, comms: bytes = b"") -> None:
        """Leave behind the result files of an interrupted job."""
        directory = job_dir(results, index)
        directory.mkdir()
        open_for_write(directory).close()
        (directory / JOURNAL).write_text(journal)
        (directory / COMMS).write_bytes(comms)

    def test_nothing_ran(self, tmp_path: Path) -> None:
        """Without job directories the run starts at the beginning."""
        results = self._prepare(tmp_path, make_entry("t1"), make_entry("t2"))
        state, resumed, job_list = initialize_execute_state_from_resume(results)
        assert state.next == 0
        assert state.resuming
        assert state.time_left == 100
        assert resumed.overall_timeout == 100
        assert job_list.size == 2

    def test_interrupted_mid_job(self, tmp_path: Path) -> None:
        """The last job resumes with started subtests excluded."""
        results = self._prepare(tmp_path, make_entry("t1", ["a", "b"]), make_entry("t2"))
        self._job(results, 0, "a\n")
        state, _, job_list = initialize_execute_state_from_resume(results)
        assert state.next == 0
        assert job_list.entries[0].subtests == ["a", "b", "!a"]

    def test_finished_job_moves_on(self, tmp_path: Path) -> None:
        """A job with an exit marker is done."""
        results = self._prepare(tmp_path, make_entry("t1", ["a", "b"]), make_entry("t2"))
        self._job(results, 0, "a\nexit:0 (1.000s)\n")
        state, _, _ = initialize_execute_state_from_resume(results)
        assert state.next == 1

    def test_highest_directory_wins(self, tmp_path: Path) -> None:
        """Only the last started job is inspected."""
        results = self._prepare(tmp_path, make_entry("t1"), make_entry("t2", ["x", "y"]))
        self._job(results, 0, "exit:0 (1.000s)\n")
        self._job(results, 1, "x\n")
        state, _, job_list = initialize_execute_state_from_resume(results)
        assert state.next == 1
        assert job_list.entries[1].subtests == ["x", "y", "!x"]

    def test_empty_journal_moves_on(self, tmp_path: Path) -> None:
        """An empty journal moves on to the next job."""
        results = self._prepare(tmp_path, make_entry("t1", ["a"]), make_entry("t2"))
        self._job(results, 0, "")
        state, _, _ = initialize_execute_state_from_resume(results)
        assert state.next == 1

    def test_missing_result_files_rerun(self, tmp_path: Path) -> None:
        """A job directory without its result files runs that job again."""
        results = self._prepare(tmp_path, make_entry("t1", ["a"]), make_entry("t2"))
        job_dir(results, 0).mkdir()
        (job_dir(results, 0) / JOURNAL).write_text("a\nexit:0 (1.000s)\n")
        state, _, job_list = initialize_execute_state_from_resume(results)
        assert state.next == 0
        assert job_list.entries[0].subtests == ["a"]

    def test_comms_preferred(self, tmp_path: Path) -> None:
        """A comms dump with test packets is used instead of the journal."""
        results = self._prepare(tmp_path, make_entry("t1", ["a", "b", "c"]))
        self._job(results, 0, "", _dump(exec_packet(["t1"]), subtest_start_packet("b")))
        state, _, job_list = initialize_execute_state_from_resume(results)
        assert state.next == 0
        assert job_list.entries[0].subtests == ["a", "b", "c", "!b"]

    def test_missing_comms_uses_journal(self, tmp_path: Path) -> None:
        """A job that never had a comms dump resumes from its journal."""
        results = self._prepare(tmp_path, make_entry("t1", ["a", "b"]))
        self._job(results, 0, "a\n")
        (job_dir(results, 0) / COMMS).unlink()
        state, _, job_list = initialize_execute_state_from_resume(results)
        assert state.next == 0
        assert job_list.entries[0].subtests == ["a", "b", "!a"]

    def test_exec_only_comms_uses_journal(self, tmp_path: Path) -> None:
        """A dump holding only the launch record defers to the journal."""
        results = self._prepare(tmp_path, make_entry("t1", ["a", "b"]))
        self._job(results, 0, "a\n", _dump(exec_packet(["t1"])))
        state, _, job_list = initialize_execute_state_from_resume(results)
        assert state.next == 0
        assert job_list.entries[0].subtests == ["a", "b", "!a"]

    def test_missing_metadata(self, tmp_path: Path) -> None:
        """Resuming a directory without metadata fails."""
        with pytest.raises(ExecutorError, match="Failure reading metadata"):
            initialize_execute_state_from_resume(tmp_path)
