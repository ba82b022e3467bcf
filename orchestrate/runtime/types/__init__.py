"""
types - Core type definitions for the orchestration runtime.

Usage:
    from orchestrate.runtime.types import (
        RunId, RunStatus, ContinuationMode, DetailLevel, FailureReason,
        LaunchRequest, RunOutcome, StartRecord, TerminalRecord,
        RunView, RunStats, TERMINAL_STATUSES,
        generate_run_id, sanitize_for_id,
        start_record_to_dict, terminal_record_to_dict, run_stats_to_dict,
    )
"""

from __future__ import annotations

from ._ids import RunId, generate_run_id, sanitize_for_id
from ._time import _datetime_to_iso, utc_now
from .runs import (
    TERMINAL_STATUSES,
    ContinuationMode,
    DetailLevel,
    FailureReason,
    LaunchRequest,
    RunOutcome,
    RunStats,
    RunStatus,
    RunView,
    StartRecord,
    TerminalRecord,
    run_stats_to_dict,
    start_record_to_dict,
    terminal_record_to_dict,
)

__all__ = [
    "RunId",
    "generate_run_id",
    "sanitize_for_id",
    "utc_now",
    "_datetime_to_iso",
    "TERMINAL_STATUSES",
    "ContinuationMode",
    "DetailLevel",
    "FailureReason",
    "LaunchRequest",
    "RunOutcome",
    "RunStats",
    "RunStatus",
    "RunView",
    "StartRecord",
    "TerminalRecord",
    "run_stats_to_dict",
    "start_record_to_dict",
    "terminal_record_to_dict",
]
