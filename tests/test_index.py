"""Tests for index.py - append-only run index and its queries.

## Test Coverage

### Storage
- JSONL appends never rewrite earlier bytes
- Concurrent appenders never interleave within a line
- Malformed and non-record lines are skipped with a warning
- MemoryRunLog behaves like the file log

### Derivation
- Effective status follows the most recent record
- Start fields come from the first running record, terminal fields from the last

### Queries
- list_runs filters and newest-first ordering
- stats / stats_by_session aggregates
- dangling runs
- resolve_ref: full id, prefix, symbolic references, errors
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Dict

import pytest

from orchestrate.runtime.errors import RunRefError
from orchestrate.runtime.index import JsonlRunLog, MemoryRunLog, RunIndex

RUN_A = "20261019T100000000000Z__gpt-5.3-codex__100"
RUN_B = "20261019T110000000000Z__sonnet__200"
RUN_C = "20261019T120000000000Z__openai-gpt-4o__300"


def start(run_id: str, created: str, **fields: Any) -> Dict[str, Any]:
    record = {
        "run_id": run_id,
        "status": "running",
        "created_at_utc": created,
        "model": "gpt-5.3-codex",
        "backend_family": "threaded-resumable",
        "session_id": None,
        "labels": {},
        "skills": [],
        "log_dir": f"/work/.orchestrate/runs/agent-runs/{run_id}",
    }
    record.update(fields)
    return record


def terminal(run_id: str, status: str, finished: str, **fields: Any) -> Dict[str, Any]:
    record = {
        "run_id": run_id,
        "status": status,
        "finished_at_utc": finished,
        "duration_seconds": 1.0,
        "failure_reason": None,
        "correlation_handle": None,
    }
    record.update(fields)
    return record


@pytest.fixture
def index():
    return RunIndex(MemoryRunLog())


@pytest.fixture
def populated(index):
    """A completed, a failed and a still-running run."""
    index.append_start(start(RUN_A, "2026-10-19T10:00:00.000000Z", session_id="s1", labels={"team": "core"}))
    index.append_terminal(
        terminal(RUN_A, "completed", "2026-10-19T10:05:00.000000Z", duration_seconds=2.0, correlation_handle="t-a")
    )
    index.append_start(start(RUN_B, "2026-10-19T11:00:00.000000Z", model="sonnet", session_id="s1"))
    index.append_terminal(
        terminal(RUN_B, "failed", "2026-10-19T11:01:00.000000Z", duration_seconds=4.0, failure_reason="timeout")
    )
    index.append_start(start(RUN_C, "2026-10-19T12:00:00.000000Z", model="openai/gpt-4o"))
    return index


# ============================================================================
# Storage
# ============================================================================


class TestJsonlRunLog:
    def test_append_only(self, tmp_path):
        log = JsonlRunLog(tmp_path / "index" / "runs.jsonl")
        log.append(start(RUN_A, "2026-10-19T10:00:00.000000Z"))
        before = log.path.read_bytes()

        log.append(terminal(RUN_A, "completed", "2026-10-19T10:05:00.000000Z"))
        after = log.path.read_bytes()

        assert after.startswith(before)
        assert len(after.splitlines()) == 2
        assert [r["status"] for r in log.scan()] == ["running", "completed"]

    def test_concurrent_appends_do_not_interleave(self, tmp_path):
        log = JsonlRunLog(tmp_path / "runs.jsonl")

        def writer(prefix: str) -> None:
            for i in range(50):
                log.append(start(f"{prefix}-{i:03d}", "2026-10-19T10:00:00.000000Z", labels={"pad": "x" * 200}))

        threads = [threading.Thread(target=writer, args=(name,)) for name in ("w1", "w2", "w3")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        lines = log.path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 150
        assert all(json.loads(line)["status"] == "running" for line in lines)

    def test_malformed_lines_skipped(self, tmp_path, caplog):
        path = tmp_path / "runs.jsonl"
        path.write_text(
            json.dumps(start(RUN_A, "2026-10-19T10:00:00.000000Z"))
            + "\n{not json\n\n[1, 2]\n"
            + json.dumps({"status": "completed"})
            + "\n"
            + json.dumps(terminal(RUN_A, "completed", "2026-10-19T10:05:00.000000Z"))
            + "\n",
            encoding="utf-8",
        )

        with caplog.at_level(logging.WARNING):
            records = list(JsonlRunLog(path).scan())

        assert [r["status"] for r in records] == ["running", "completed"]
        assert "Skipping malformed index line 2" in caplog.text

    def test_missing_file_scans_empty(self, tmp_path):
        assert list(JsonlRunLog(tmp_path / "nope.jsonl").scan()) == []


def test_memory_log_matches_file_semantics(tmp_path):
    memory = RunIndex(MemoryRunLog())
    disk = RunIndex(JsonlRunLog(tmp_path / "runs.jsonl"))
    for idx in (memory, disk):
        idx.append_start(start(RUN_A, "2026-10-19T10:00:00.000000Z"))
        idx.append_terminal(terminal(RUN_A, "completed", "2026-10-19T10:05:00.000000Z"))

    assert memory.records() == disk.records()
    assert len(memory.log) == 2


def test_append_validates_status(index):
    with pytest.raises(ValueError):
        index.append_start(terminal(RUN_A, "completed", "2026-10-19T10:05:00.000000Z"))
    with pytest.raises(ValueError):
        index.append_terminal(start(RUN_A, "2026-10-19T10:00:00.000000Z"))
    assert index.records() == []


# ============================================================================
# Derivation
# ============================================================================


class TestViews:
    def test_effective_status(self, populated):
        statuses = {v.run_id: v.effective_status for v in populated.views()}
        assert statuses == {RUN_A: "completed", RUN_B: "failed", RUN_C: "running"}

    def test_newest_start_first(self, populated):
        assert [v.run_id for v in populated.views()] == [RUN_C, RUN_B, RUN_A]

    def test_in_place_continuation_rows(self, index):
        """running, completed, running -> running; a further terminal finalizes it."""
        index.append_start(start(RUN_A, "2026-10-19T10:00:00.000000Z", labels={"v": "1"}))
        index.append_terminal(terminal(RUN_A, "completed", "2026-10-19T10:05:00.000000Z", correlation_handle="t1"))
        index.append_start(
            start(RUN_A, "2026-10-19T10:10:00.000000Z", continues=RUN_A, continuation_mode="in-place")
        )

        view = index.get_view(RUN_A)
        assert view.effective_status == "running"
        assert not view.is_finalized

        index.append_terminal(terminal(RUN_A, "failed", "2026-10-19T10:12:00.000000Z", failure_reason="agent_error"))
        view = index.get_view(RUN_A)
        assert view.effective_status == "failed"
        assert view.failure_reason == "agent_error"
        assert view.started_at == "2026-10-19T10:00:00.000000Z"
        assert view.labels == {"v": "1"}
        assert view.record_count == 4

    def test_get_view_unknown(self, index):
        assert index.get_view("nope") is None

    def test_to_dict_overlays_terminal(self, populated):
        data = populated.get_view(RUN_A).to_dict()
        assert data["status"] == "completed"
        assert data["effective_status"] == "completed"
        assert data["model"] == "gpt-5.3-codex"
        assert data["record_count"] == 2


# ============================================================================
# Queries
# ============================================================================


class TestListRuns:
    def test_failed_filter(self, populated):
        assert [v.run_id for v in populated.list_runs(failed=True)] == [RUN_B]

    def test_status_filter(self, populated):
        assert [v.run_id for v in populated.list_runs(status="running")] == [RUN_C]

    def test_session_filter(self, populated):
        assert [v.run_id for v in populated.list_runs(session="s1")] == [RUN_B, RUN_A]

    def test_model_filter(self, populated):
        assert [v.run_id for v in populated.list_runs(model="sonnet")] == [RUN_B]

    def test_label_filter(self, populated):
        assert [v.run_id for v in populated.list_runs(labels={"team": "core"})] == [RUN_A]
        assert populated.list_runs(labels={"team": "other"}) == []

    def test_limit(self, populated):
        assert [v.run_id for v in populated.list_runs(limit=2)] == [RUN_C, RUN_B]


class TestStats:
    def test_totals(self, populated):
        stats = populated.stats()
        assert stats.total_runs == 3
        assert (stats.completed, stats.failed, stats.error, stats.running) == (1, 1, 0, 1)
        assert stats.fail_reasons == {"timeout": 1}
        assert stats.models == {"gpt-5.3-codex": 1, "sonnet": 1, "openai/gpt-4o": 1}
        assert stats.total_duration_seconds == 6.0
        assert stats.avg_duration_seconds == 3.0
        assert stats.pass_rate == pytest.approx(1 / 3)

    def test_session(self, populated):
        stats = populated.stats(session="s1")
        assert stats.total_runs == 2
        assert stats.running == 0

    def test_by_session(self, populated):
        by_session = populated.stats_by_session()
        assert list(by_session) == ["-", "s1"]
        assert by_session["-"].running == 1
        assert by_session["s1"].total_runs == 2

    def test_empty(self, index):
        stats = index.stats()
        assert stats.total_runs == 0
        assert stats.pass_rate is None
        assert stats.avg_duration_seconds == 0.0

    def test_continued_run_sums_every_segment(self, index):
        index.append_start(start(RUN_A, "2026-10-19T10:00:00.000000Z"))
        index.append_terminal(terminal(RUN_A, "completed", "2026-10-19T10:00:02.000000Z", duration_seconds=2.0))
        index.append_start(start(RUN_A, "2026-10-19T10:10:00.000000Z", continues=RUN_A))
        index.append_terminal(terminal(RUN_A, "completed", "2026-10-19T10:10:03.000000Z", duration_seconds=3.0))

        assert index.get_view(RUN_A).total_duration_seconds == 5.0
        stats = index.stats()
        assert stats.total_runs == 1
        assert stats.total_duration_seconds == 5.0
        assert stats.avg_duration_seconds == 5.0


def test_dangling(populated):
    assert [v.run_id for v in populated.dangling()] == [RUN_C]


class TestResolveRef:
    def test_full_id(self, populated):
        assert populated.resolve_ref(RUN_B) == RUN_B

    def test_prefix(self, populated):
        assert populated.resolve_ref("20261019T11") == RUN_B

    def test_short_prefix_rejected(self, populated):
        with pytest.raises(RunRefError) as exc_info:
            populated.resolve_ref("2026")
        assert "at least 8" in str(exc_info.value)

    def test_ambiguous_prefix(self, populated):
        with pytest.raises(RunRefError) as exc_info:
            populated.resolve_ref("20261019T")
        assert exc_info.value.candidates == [RUN_A, RUN_B, RUN_C]

    def test_no_match(self, populated):
        with pytest.raises(RunRefError):
            populated.resolve_ref("20991231T000000")

    def test_latest_uses_finish_time(self, index):
        """A run started earlier but finished later is @latest."""
        index.append_start(start(RUN_A, "2026-10-19T10:00:00.000000Z"))
        index.append_start(start(RUN_B, "2026-10-19T11:00:00.000000Z"))
        index.append_terminal(terminal(RUN_B, "completed", "2026-10-19T11:01:00.000000Z"))
        index.append_terminal(terminal(RUN_A, "completed", "2026-10-19T12:00:00.000000Z"))

        assert index.resolve_ref("@latest") == RUN_A

    def test_latest_ignores_running(self, populated):
        assert populated.resolve_ref("@latest") == RUN_B

    def test_last_failed_and_completed(self, populated):
        assert populated.resolve_ref("@last-failed") == RUN_B
        assert populated.resolve_ref("@last-completed") == RUN_A

    def test_latest_tie_broken_by_run_id(self, index):
        for run_id in (RUN_A, RUN_B):
            index.append_start(start(run_id, "2026-10-19T10:00:00.000000Z"))
            index.append_terminal(terminal(run_id, "completed", "2026-10-19T12:00:00.000000Z"))

        assert index.resolve_ref("@latest") == RUN_B

    def test_symbolic_with_no_match(self, index):
        with pytest.raises(RunRefError):
            index.resolve_ref("@latest")

    @pytest.mark.parametrize("ref", ["", "@newest"])
    def test_invalid_refs(self, populated, ref):
        with pytest.raises(RunRefError):
            populated.resolve_ref(ref)
