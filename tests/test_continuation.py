"""Tests for continuation.py - continue, fork and retry.

These tests verify that:
1. Threaded runs continue in place: same run_id and run directory,
   output.jsonl appended, ``exec resume <thread>`` on the wire
2. Session runs continue as a seeded fork in a new run directory
3. Forking a threaded run fails before any side effect
4. Retry replays input.md byte for byte as a new run, and a report the
   replayed prompt sends to an earlier run directory is moved into the new
   run while the earlier report is kept
5. Runs without a handle, still running, or overridden across families
   are rejected
"""

from __future__ import annotations

import pytest

from conftest import read_index, run_dirs
from orchestrate.runtime.continuation import ContinuationController
from orchestrate.runtime.errors import RunRefError, RunStillRunning, UnsupportedOperation, UsageError
from orchestrate.runtime.types import LaunchRequest, RunStatus


@pytest.fixture
def controller(executor):
    return ContinuationController(executor)


# ============================================================================
# Continue
# ============================================================================


def test_continue_threaded_in_place(executor, controller, workdir, fake_bin):
    base = executor.launch(LaunchRequest(model="gpt-5.3-codex", prompt="hello", labels={"v": "1"}))
    assert base.correlation_handle == "thread-base"
    output_before = (base.run_dir / "output.jsonl").read_bytes()

    outcome = controller.continue_run("@latest", "follow up")

    assert outcome.status == RunStatus.COMPLETED
    assert outcome.run_id == base.run_id
    assert outcome.run_dir == base.run_dir
    assert outcome.continuation_mode == "in-place"
    assert outcome.answer == "continued"

    args = fake_bin.args()
    assert len(args) == 2
    assert args[1].startswith("exec resume thread-base -m gpt-5.3-codex")

    output_after = (base.run_dir / "output.jsonl").read_bytes()
    assert output_after.startswith(output_before)
    assert len(output_after.splitlines()) == 4

    continue_input = (base.run_dir / "input.continue-1.md").read_text(encoding="utf-8")
    assert continue_input.startswith("# Task\n\nfollow up\n")
    assert "follow up" in fake_bin.stdin()
    assert (base.run_dir / "input.md").read_text(encoding="utf-8").startswith("# Task\n\nhello\n")

    assert run_dirs(workdir) == [base.run_dir]
    records = read_index(workdir)
    assert [r["status"] for r in records] == ["running", "completed", "running", "completed"]
    assert {r["run_id"] for r in records} == {base.run_id}
    assert records[2]["continues"] == base.run_id
    assert records[2]["continuation_mode"] == "in-place"
    assert records[2]["labels"] == {"v": "1"}

    view = executor.index.get_view(base.run_id)
    assert view.effective_status == "completed"
    assert view.correlation_handle == "thread-resume"


def test_second_continuation_gets_next_input_file(executor, controller, fake_bin):
    base = executor.launch(LaunchRequest(model="gpt-5.3-codex", prompt="hello"))

    controller.continue_run(base.run_id, "second")
    controller.continue_run(base.run_id, "third")

    assert "third" in (base.run_dir / "input.continue-2.md").read_text(encoding="utf-8")


def test_continue_session_family_forks(executor, controller, workdir, fake_bin):
    base = executor.launch(LaunchRequest(model="sonnet", prompt="hello", session="s1", labels={"a": "1"}))

    outcome = controller.continue_run(base.run_id, "follow up", labels={"b": "2"})

    assert outcome.status == RunStatus.COMPLETED
    assert outcome.run_id != base.run_id
    assert outcome.continuation_mode == "fork"
    assert fake_bin.args()[-1].endswith("--resume claude-session --fork-session")

    started = [r for r in read_index(workdir) if r["run_id"] == outcome.run_id and r["status"] == "running"][0]
    assert started["continues"] == base.run_id
    assert started["continuation_mode"] == "fork"
    assert started["session_id"] == "s1"
    assert started["labels"] == {"a": "1", "b": "2"}
    assert len(run_dirs(workdir)) == 2


def test_fork_lightweight_session(executor, controller, fake_bin):
    base = executor.launch(LaunchRequest(model="opencode-gpt-5", prompt="hello"))

    outcome = controller.fork("@last-completed", "branch")

    assert outcome.run_id != base.run_id
    assert outcome.continuation_mode == "fork"
    assert fake_bin.args()[-1].endswith("--session opencode-session")


def test_fork_threaded_rejected_without_side_effects(executor, controller, workdir, fake_bin):
    executor.launch(LaunchRequest(model="gpt-5.3-codex", prompt="hello"))
    dirs_before = run_dirs(workdir)
    records_before = read_index(workdir)

    with pytest.raises(UnsupportedOperation) as exc_info:
        controller.fork("@latest", "branch")

    assert exc_info.value.operation == "fork"
    assert exc_info.value.family == "threaded-resumable"
    assert run_dirs(workdir) == dirs_before
    assert read_index(workdir) == records_before
    assert len(fake_bin.args()) == 1


def test_continue_without_handle_rejected(executor, controller, workdir, fake_bin, monkeypatch):
    monkeypatch.setenv("FAKE_CLAUDE_MODE", "empty")
    base = executor.launch(LaunchRequest(model="sonnet", prompt="hello"))
    assert base.correlation_handle is None

    with pytest.raises(UnsupportedOperation, match="no correlation handle"):
        controller.continue_run(base.run_id, "follow up")
    assert len(run_dirs(workdir)) == 1


def test_continue_running_rejected(executor, controller, workdir):
    run_id = "20261019T100000000000Z__gpt-5.3-codex__1"
    executor.index.append_start(
        {
            "run_id": run_id,
            "status": "running",
            "created_at_utc": "2026-10-19T10:00:00.000000Z",
            "model": "gpt-5.3-codex",
            "backend_family": "threaded-resumable",
            "log_dir": str(workdir / ".orchestrate" / "runs" / "agent-runs" / run_id),
        }
    )

    with pytest.raises(RunStillRunning):
        controller.continue_run(run_id, "follow up")
    with pytest.raises(RunStillRunning):
        controller.retry(run_id)


def test_model_override_must_stay_in_family(executor, controller, fake_bin):
    base = executor.launch(LaunchRequest(model="sonnet", prompt="hello"))

    with pytest.raises(UnsupportedOperation, match="must stay within"):
        controller.continue_run(base.run_id, "follow up", model="gpt-5")

    outcome = controller.continue_run(base.run_id, "follow up", model="opus")
    assert outcome.status == RunStatus.COMPLETED
    assert "--model opus" in fake_bin.args()[-1]


def test_empty_follow_up_rejected(executor, controller, fake_bin):
    executor.launch(LaunchRequest(model="gpt-5.3-codex", prompt="hello"))

    with pytest.raises(UsageError):
        controller.continue_run("@latest", "  ")


def test_unknown_reference(controller):
    with pytest.raises(RunRefError):
        controller.continue_run("@latest", "follow up")


# ============================================================================
# Retry
# ============================================================================


def test_retry_replays_input_exactly(executor, controller, workdir, fake_bin, monkeypatch):
    monkeypatch.setenv("FAKE_CODEX_MODE", "fail")
    base = executor.launch(LaunchRequest(model="gpt-5.3-codex", prompt="original prompt", session="s1"))
    assert base.status == RunStatus.FAILED

    monkeypatch.setenv("FAKE_CODEX_MODE", "ok")
    outcome = controller.retry("@last-failed")

    assert outcome.status == RunStatus.COMPLETED
    assert outcome.run_id != base.run_id
    assert (outcome.run_dir / "input.md").read_bytes() == (base.run_dir / "input.md").read_bytes()
    assert fake_bin.stdin().count("original prompt") == 2
    assert "resume" not in fake_bin.args()[-1]

    records = [r for r in read_index(workdir) if r["run_id"] == outcome.run_id]
    assert [r["status"] for r in records] == ["running", "completed"]
    assert all(r["retries"] == base.run_id for r in records)
    assert records[0]["session_id"] == "s1"
    assert "continues" not in records[0]


AGENT_REPORT = "# Agent report\n\nDid the work.\n"


def test_retry_keeps_prior_report_and_claims_agent_report(executor, controller, workdir, fake_bin, monkeypatch):
    base = executor.launch(LaunchRequest(model="gpt-5.3-codex", prompt="hello"))
    (base.run_dir / "report.md").write_text("ORIGINAL REPORT\n", encoding="utf-8")

    monkeypatch.setenv("FAKE_CODEX_MODE", "report")
    outcome = controller.retry(base.run_id)

    assert outcome.status == RunStatus.COMPLETED
    assert (base.run_dir / "report.md").read_text(encoding="utf-8") == "ORIGINAL REPORT\n"
    assert (outcome.run_dir / "report.md").read_text(encoding="utf-8") == AGENT_REPORT
    assert outcome.report_source == "agent"
    terminal = [r for r in read_index(workdir) if r["run_id"] == outcome.run_id][-1]
    assert terminal["report_source"] == "agent"


def test_retry_of_retry_reclaims_from_first_run(executor, controller, fake_bin, monkeypatch):
    base = executor.launch(LaunchRequest(model="gpt-5.3-codex", prompt="hello"))
    first = controller.retry(base.run_id)
    base_report = (base.run_dir / "report.md").read_bytes()
    first_report = (first.run_dir / "report.md").read_bytes()

    monkeypatch.setenv("FAKE_CODEX_MODE", "report")
    second = controller.retry(first.run_id)

    assert (base.run_dir / "report.md").read_bytes() == base_report
    assert (first.run_dir / "report.md").read_bytes() == first_report
    assert (second.run_dir / "report.md").read_text(encoding="utf-8") == AGENT_REPORT
    assert second.report_source == "agent"


def test_retry_without_agent_report_falls_back(executor, controller, fake_bin):
    base = executor.launch(LaunchRequest(model="gpt-5.3-codex", prompt="hello"))
    before = (base.run_dir / "report.md").read_bytes()

    outcome = controller.retry(base.run_id)

    assert (base.run_dir / "report.md").read_bytes() == before
    assert outcome.report_source == "fallback"
    assert (outcome.run_dir / "report.md").read_text(encoding="utf-8") == "base\n"


def test_retry_model_override(executor, controller, fake_bin):
    executor.launch(LaunchRequest(model="gpt-5.3-codex", prompt="hello"))

    outcome = controller.retry("@latest", model="sonnet")

    assert outcome.status == RunStatus.COMPLETED
    assert fake_bin.args()[-1].startswith("-p - --model sonnet")


def test_retry_without_input_rejected(executor, controller, fake_bin):
    base = executor.launch(LaunchRequest(model="gpt-5.3-codex", prompt="hello"))
    (base.run_dir / "input.md").unlink()

    with pytest.raises(UsageError, match="no input.md"):
        controller.retry(base.run_id)
