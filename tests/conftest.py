"""
Test fixtures and utilities for the orchestrate test suite.

This module provides reusable fixtures for driving the engine end to end
without real executor CLIs:
- workdir: a temporary repository (contains .git) to launch runs in
- fake_bin: bash stand-ins for codex / claude / opencode, wired in through
  ORCHESTRATE_<HARNESS>_CLI and logging their argv and stdin
- executor: a RunExecutor rooted at workdir
"""

import json
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

import pytest

# Add repo root to path for imports
_repo_root = Path(__file__).resolve().parents[1]
if str(_repo_root) not in sys.path:
    sys.path.insert(0, str(_repo_root))

from orchestrate.config.runtime_config import reset_config  # noqa: E402
from orchestrate.runtime.executor import RunExecutor  # noqa: E402

# ============================================================================
# Fake executor CLIs
# ============================================================================

# Modes (FAKE_CODEX_MODE): ok (default), report, fail, sleep
FAKE_CODEX = r"""#!/usr/bin/env bash
set -eu
: "${FAKE_ARGS_LOG:=/dev/null}"
: "${FAKE_STDIN_LOG:=/dev/null}"
printf '%s\n' "$*" >> "$FAKE_ARGS_LOG"
stdin_payload="$(cat)"
printf '<<<\n%s\n>>>\n' "$stdin_payload" >> "$FAKE_STDIN_LOG"
mode="${FAKE_CODEX_MODE:-ok}"
case "$mode" in
  ok) ;;
  report)
    report="$(printf '%s\n' "$stdin_payload" | sed -n 's/.*write a report of your work to: `\([^`]*\)`.*/\1/p' | head -n 1)"
    printf '# Agent report\n\nDid the work.\n' > "$report"
    ;;
  fail)
    echo "codex: model overloaded" >&2
    exit 3
    ;;
  sleep)
    sleep 30
    ;;
  *)
    echo "unknown FAKE_CODEX_MODE=$mode" >&2
    exit 2
    ;;
esac
if [[ "$*" == *"exec resume"* ]]; then
  echo '{"thread_id":"thread-resume"}'
  echo '{"type":"item.completed","item":{"type":"message","role":"assistant","content":[{"type":"text","text":"continued"}]}}'
else
  echo '{"thread_id":"thread-base"}'
  echo '{"type":"item.completed","item":{"type":"message","role":"assistant","content":[{"type":"text","text":"base"}]}}'
fi
"""

# Modes (FAKE_CLAUDE_MODE): ok (default), empty, error
FAKE_CLAUDE = r"""#!/usr/bin/env bash
set -eu
: "${FAKE_ARGS_LOG:=/dev/null}"
: "${FAKE_STDIN_LOG:=/dev/null}"
printf '%s\n' "$*" >> "$FAKE_ARGS_LOG"
stdin_payload="$(cat)"
printf '<<<\n%s\n>>>\n' "$stdin_payload" >> "$FAKE_STDIN_LOG"
mode="${FAKE_CLAUDE_MODE:-ok}"
case "$mode" in
  ok)
    echo '{"type":"system","subtype":"init","session_id":"claude-session"}'
    echo '{"type":"result","session_id":"claude-session","result":{"text":"ok"}}'
    ;;
  empty)
    ;;
  error)
    echo '{"type":"result","subtype":"error_during_execution","is_error":true,"session_id":"claude-session","result":"tool crashed"}'
    ;;
  *)
    echo "unknown FAKE_CLAUDE_MODE=$mode" >&2
    exit 2
    ;;
esac
"""

# Modes (FAKE_OPENCODE_MODE): ok (default), error
FAKE_OPENCODE = r"""#!/usr/bin/env bash
set -eu
: "${FAKE_ARGS_LOG:=/dev/null}"
: "${FAKE_STDIN_LOG:=/dev/null}"
printf '%s\n' "$*" >> "$FAKE_ARGS_LOG"
stdin_payload="$(cat)"
printf '<<<\n%s\n>>>\n' "$stdin_payload" >> "$FAKE_STDIN_LOG"
mode="${FAKE_OPENCODE_MODE:-ok}"
case "$mode" in
  ok)
    echo '{"type":"assistant","sessionID":"opencode-session","content":"ok"}'
    ;;
  error)
    echo '{"type":"error","timestamp":0,"sessionID":"opencode-session","error":{"name":"UnknownError","data":{"message":"Model not found: openai/gpt-4o-mini."}}}'
    ;;
  *)
    echo "unknown FAKE_OPENCODE_MODE=$mode" >&2
    exit 2
    ;;
esac
"""

FAKE_SCRIPTS = {
    "codex": FAKE_CODEX,
    "claude": FAKE_CLAUDE,
    "opencode": FAKE_OPENCODE,
}


@dataclass
class FakeBin:
    """Handles to the fake CLIs and their logs."""

    bin_dir: Path
    args_log: Path
    stdin_log: Path

    def args(self) -> List[str]:
        """One entry per invocation: the space-joined argv after the program name."""
        if not self.args_log.exists():
            return []
        return self.args_log.read_text(encoding="utf-8").splitlines()

    def stdin(self) -> str:
        if not self.stdin_log.exists():
            return ""
        return self.stdin_log.read_text(encoding="utf-8")


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Isolate every test from the caller's ORCHESTRATE_* settings and config cache."""
    for name in (
        "ORCHESTRATE_ROOT",
        "ORCHESTRATE_TIMEOUT_MINUTES",
        "ORCHESTRATE_CODEX_CLI",
        "ORCHESTRATE_CLAUDE_CLI",
        "ORCHESTRATE_OPENCODE_CLI",
        "FAKE_CODEX_MODE",
        "FAKE_CLAUDE_MODE",
        "FAKE_OPENCODE_MODE",
        "CLAUDECODE",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """A temporary repository, with the process cwd deliberately elsewhere."""
    repo = tmp_path / "repo"
    repo.mkdir()
    (repo / ".git").mkdir()
    elsewhere = tmp_path / "elsewhere"
    elsewhere.mkdir()
    monkeypatch.chdir(elsewhere)
    return repo


@pytest.fixture
def fake_bin(tmp_path, monkeypatch):
    """Install the fake executor CLIs and point the engine at them."""
    if shutil.which("bash") is None:
        pytest.skip("fake executor CLIs need bash")

    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    for name, body in FAKE_SCRIPTS.items():
        path = bin_dir / name
        path.write_text(body, encoding="utf-8")
        path.chmod(0o755)
        monkeypatch.setenv(f"ORCHESTRATE_{name.upper()}_CLI", str(path))

    fake = FakeBin(bin_dir=bin_dir, args_log=tmp_path / "args.log", stdin_log=tmp_path / "stdin.log")
    monkeypatch.setenv("FAKE_ARGS_LOG", str(fake.args_log))
    monkeypatch.setenv("FAKE_STDIN_LOG", str(fake.stdin_log))
    return fake


@pytest.fixture
def executor(workdir):
    """A RunExecutor rooted at workdir (default session root and JSONL index)."""
    return RunExecutor(workdir)


# ============================================================================
# Helpers
# ============================================================================


def write_skill(workdir: Path, name: str, text: str, form: str = "dir", base: str = ".agents/skills") -> Path:
    """Create a fragment under workdir in directory form (<name>/SKILL.md) or file form (<name>.md)."""
    skills_dir = workdir / base
    if form == "dir":
        path = skills_dir / name / "SKILL.md"
    else:
        path = skills_dir / f"{name}.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def read_index(workdir: Path) -> List[Dict[str, Any]]:
    """Read every record of the default JSONL index under workdir."""
    path = workdir / ".orchestrate" / "index" / "runs.jsonl"
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


def run_dirs(workdir: Path) -> List[Path]:
    """Run directories under workdir's default session root."""
    runs = workdir / ".orchestrate" / "runs" / "agent-runs"
    if not runs.exists():
        return []
    return sorted(p for p in runs.iterdir() if p.is_dir())
