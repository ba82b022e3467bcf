"""Run types for execution lifecycle and index records.

This module contains types for representing launch requests, run outcomes,
the two kinds of index records (start and terminal), the derived per-run
view the query operations report, and aggregate statistics.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from ._ids import RunId
from ._time import _datetime_to_iso


class RunStatus(str, Enum):
    """Status of a run's execution lifecycle."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED.value, RunStatus.FAILED.value, RunStatus.ERROR.value})


class ContinuationMode(str, Enum):
    """How a continuation relates to the run it continues."""

    IN_PLACE = "in-place"  # Same run directory, thread extended
    FORK = "fork"  # New run directory seeded from the prior handle


class DetailLevel(str, Enum):
    """Report verbosity requested from the executor."""

    BRIEF = "brief"
    STANDARD = "standard"
    DETAILED = "detailed"

    @classmethod
    def values(cls) -> List[str]:
        return [level.value for level in cls]


class FailureReason(str, Enum):
    """Why a run did not complete."""

    AGENT_ERROR = "agent_error"  # Non-zero exit
    EXECUTOR_ERROR = "executor_error"  # Error event in a zero-exit stream
    TIMEOUT = "timeout"
    INTERRUPTED = "interrupted"  # Killed by a signal
    LAUNCH_ERROR = "launch_error"
    PROTOCOL_ERROR = "protocol_error"


@dataclass
class LaunchRequest:
    """Parameters for launching a new run.

    Attributes:
        model: Requested model identifier.
        prompt: Free-text task prompt.
        skills: Ordered fragment identifiers to inject.
        reference_files: Paths listed in the reference-files section.
        variables: Template variables applied to the composed prompt.
        labels: Free-form metadata recorded on the index.
        session: Optional grouping identifier.
        detail: Report detail level (config default if None).
        effort: Reasoning effort passed to the executor (config default if None).
        tools: Tool allow-list for executors that take one (config default if None).
        timeout_minutes: Subprocess timeout (config default if None).
    """

    model: str
    prompt: str = ""
    skills: List[str] = field(default_factory=list)
    reference_files: List[str] = field(default_factory=list)
    variables: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    session: Optional[str] = None
    detail: Optional[str] = DetailLevel.STANDARD.value
    effort: Optional[str] = None
    tools: Optional[str] = None
    timeout_minutes: Optional[float] = None


@dataclass
class RunOutcome:
    """Result of driving one executor invocation to a terminal record."""

    run_id: RunId
    status: RunStatus
    run_dir: Path
    exit_code: Optional[int] = None
    failure_reason: Optional[str] = None
    correlation_handle: Optional[str] = None
    duration_seconds: float = 0.0
    answer: Optional[str] = None
    error: Optional[str] = None
    report_source: Optional[str] = None
    continuation_mode: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.COMPLETED


@dataclass
class StartRecord:
    """The ``running`` record appended before the subprocess is launched."""

    run_id: RunId
    created_at: datetime
    cwd: str
    model: str
    backend_family: str
    harness: str
    log_dir: str
    session_id: Optional[str] = None
    skills: List[str] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)
    detail: str = DetailLevel.STANDARD.value
    effort: Optional[str] = None
    continues: Optional[RunId] = None
    retries: Optional[RunId] = None
    continuation_mode: Optional[str] = None


@dataclass
class TerminalRecord:
    """The ``completed``/``failed``/``error`` record appended after exit."""

    run_id: RunId
    status: RunStatus
    finished_at: datetime
    duration_seconds: float
    model: str
    output_log: str
    report_path: str
    exit_code: Optional[int] = None
    failure_reason: Optional[str] = None
    session_id: Optional[str] = None
    correlation_handle: Optional[str] = None
    report_source: Optional[str] = None
    continues: Optional[RunId] = None
    retries: Optional[RunId] = None
    continuation_mode: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    error: Optional[str] = None


@dataclass
class RunView:
    """Derived per-run view: the start record merged with its latest terminal record.

    Attributes:
        run_id: The run identifier.
        effective_status: Latest terminal status, or ``running`` when the
            most recent record for the run is a ``running`` record.
        start: The first ``running`` record (or the first record) for the run.
        terminal: The most recent terminal record, if any.
        record_count: Number of index records for the run.
        total_duration_seconds: Sum of ``duration_seconds`` over every terminal
            record of the run, so in-place continuations add up.
    """

    run_id: RunId
    effective_status: str
    start: Dict[str, Any]
    terminal: Optional[Dict[str, Any]] = None
    record_count: int = 0
    total_duration_seconds: Optional[float] = None

    def _get(self, key: str, default: Any = None) -> Any:
        if self.terminal and self.terminal.get(key) is not None:
            return self.terminal[key]
        return self.start.get(key, default)

    @property
    def model(self) -> str:
        return self._get("model", "")

    @property
    def backend_family(self) -> Optional[str]:
        return self.start.get("backend_family")

    @property
    def session_id(self) -> Optional[str]:
        return self._get("session_id")

    @property
    def labels(self) -> Dict[str, str]:
        return dict(self.start.get("labels") or {})

    @property
    def skills(self) -> List[str]:
        return list(self.start.get("skills") or [])

    @property
    def started_at(self) -> Optional[str]:
        return self.start.get("created_at_utc")

    @property
    def finished_at(self) -> Optional[str]:
        return self.terminal.get("finished_at_utc") if self.terminal else None

    @property
    def duration_seconds(self) -> Optional[float]:
        return self.terminal.get("duration_seconds") if self.terminal else None

    @property
    def failure_reason(self) -> Optional[str]:
        return self.terminal.get("failure_reason") if self.terminal else None

    @property
    def correlation_handle(self) -> Optional[str]:
        return self.terminal.get("correlation_handle") if self.terminal else None

    @property
    def log_dir(self) -> Optional[str]:
        return self.start.get("log_dir")

    @property
    def is_finalized(self) -> bool:
        return self.effective_status != RunStatus.RUNNING.value

    def to_dict(self) -> Dict[str, Any]:
        """Flatten the view for JSON output (start fields overlaid by terminal fields)."""
        data: Dict[str, Any] = dict(self.start)
        if self.terminal:
            data.update(self.terminal)
        data.update(
            {
                "effective_status": self.effective_status,
                "started_at": self.started_at,
                "finished_at": self.finished_at,
                "record_count": self.record_count,
                "total_duration_seconds": self.total_duration_seconds,
            }
        )
        return data


@dataclass
class RunStats:
    """Aggregate counts and durations over a set of runs."""

    session: Optional[str] = None
    total_runs: int = 0
    completed: int = 0
    failed: int = 0
    error: int = 0
    running: int = 0
    fail_reasons: Dict[str, int] = field(default_factory=dict)
    models: Dict[str, int] = field(default_factory=dict)
    total_duration_seconds: float = 0.0
    avg_duration_seconds: float = 0.0

    @property
    def pass_rate(self) -> Optional[float]:
        if self.total_runs == 0:
            return None
        return self.completed / self.total_runs


# =============================================================================
# Serialization Functions
# =============================================================================


def start_record_to_dict(record: StartRecord) -> Dict[str, Any]:
    """Convert StartRecord to the index line dictionary.

    Args:
        record: The StartRecord to convert.

    Returns:
        Dictionary representation suitable for one JSONL index line.
    """
    data: Dict[str, Any] = {
        "run_id": record.run_id,
        "status": RunStatus.RUNNING.value,
        "created_at_utc": _datetime_to_iso(record.created_at),
        "cwd": record.cwd,
        "session_id": record.session_id,
        "model": record.model,
        "backend_family": record.backend_family,
        "harness": record.harness,
        "skills": list(record.skills),
        "labels": dict(record.labels),
        "detail": record.detail,
        "effort": record.effort,
        "log_dir": record.log_dir,
    }
    if record.continues:
        data["continues"] = record.continues
        data["continuation_mode"] = record.continuation_mode
    if record.retries:
        data["retries"] = record.retries
    return data


def terminal_record_to_dict(record: TerminalRecord) -> Dict[str, Any]:
    """Convert TerminalRecord to the index line dictionary.

    Args:
        record: The TerminalRecord to convert.

    Returns:
        Dictionary representation suitable for one JSONL index line.
    """
    status = record.status.value if isinstance(record.status, RunStatus) else record.status
    data: Dict[str, Any] = {
        "run_id": record.run_id,
        "status": status,
        "finished_at_utc": _datetime_to_iso(record.finished_at),
        "duration_seconds": round(record.duration_seconds, 3),
        "exit_code": record.exit_code,
        "failure_reason": record.failure_reason,
        "session_id": record.session_id,
        "model": record.model,
        "output_log": record.output_log,
        "report_path": record.report_path,
        "report_source": record.report_source,
        "correlation_handle": record.correlation_handle,
        "input_tokens": record.input_tokens,
        "output_tokens": record.output_tokens,
    }
    if record.continues:
        data["continues"] = record.continues
        data["continuation_mode"] = record.continuation_mode
    if record.retries:
        data["retries"] = record.retries
    if record.error:
        data["error"] = record.error
    return data


def run_stats_to_dict(stats: RunStats) -> Dict[str, Any]:
    """Convert RunStats to a dictionary for JSON output."""
    return {
        "session": stats.session,
        "total_runs": stats.total_runs,
        "completed": stats.completed,
        "failed": stats.failed,
        "error": stats.error,
        "running": stats.running,
        "fail_reasons": dict(stats.fail_reasons),
        "models": dict(stats.models),
        "total_duration_seconds": stats.total_duration_seconds,
        "avg_duration_seconds": stats.avg_duration_seconds,
        "pass_rate": stats.pass_rate,
    }
