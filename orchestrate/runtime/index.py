"""
index.py - Append-only run index and its read-side queries.

The index is a log of self-contained JSON records, one per lifecycle event:

    {"run_id": "...", "status": "running",   "created_at_utc": ..., ...}
    {"run_id": "...", "status": "completed", "finished_at_utc": ..., ...}

Records are only ever appended. The storage medium sits behind the small
RunLog interface (append / scan) so the executor and the continuation
controller never touch the file directly:

    JsonlRunLog   <root>/index/runs.jsonl, one os.write per record on an
                  O_APPEND descriptor; concurrent writers never interleave
                  within a line and never rewrite earlier lines.
    MemoryRunLog  list-backed, for tests and embedding.

All query operations (views, list_runs, stats, resolve_ref, dangling) are
pure reductions over scan() and never write.

Usage:
    from orchestrate.runtime.index import JsonlRunLog, RunIndex

    index = RunIndex(JsonlRunLog(root.index_path))
    run_id = index.resolve_ref("@latest")
    view = index.get_view(run_id)
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from .errors import RunRefError
from .types import (
    TERMINAL_STATUSES,
    RunStats,
    RunStatus,
    RunView,
    StartRecord,
    TerminalRecord,
    start_record_to_dict,
    terminal_record_to_dict,
)

# Module logger
logger = logging.getLogger(__name__)

MIN_PREFIX_LENGTH = 8
NO_SESSION = "-"

SYMBOLIC_REFS = ("@latest", "@last-failed", "@last-completed")


# -----------------------------------------------------------------------------
# Storage
# -----------------------------------------------------------------------------


class RunLog(ABC):
    """Append-only record log."""

    @abstractmethod
    def append(self, record: Dict[str, Any]) -> None:
        """Append one self-contained record."""
        ...

    @abstractmethod
    def scan(self) -> Iterator[Dict[str, Any]]:
        """Yield records in append order."""
        ...


class JsonlRunLog(RunLog):
    """JSONL file log with single-write line appends."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def append(self, record: Dict[str, Any]) -> None:
        line = json.dumps(record, ensure_ascii=False, sort_keys=False) + "\n"
        payload = line.encode("utf-8")
        self.path.parent.mkdir(parents=True, exist_ok=True)

        fd = os.open(str(self.path), os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
        try:
            written = os.write(fd, payload)
        finally:
            os.close(fd)
        if written != len(payload):
            raise OSError(
                f"Short write to {self.path}: {written} of {len(payload)} bytes for run {record.get('run_id')}"
            )

    def scan(self) -> Iterator[Dict[str, Any]]:
        if not self.path.exists():
            return
        with open(self.path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.warning("Skipping malformed index line %d in %s: %s", lineno, self.path, e)
                    continue
                if not isinstance(data, dict) or not data.get("run_id"):
                    logger.warning("Skipping index line %d in %s: not a run record", lineno, self.path)
                    continue
                yield data


class MemoryRunLog(RunLog):
    """In-memory log. Records are stored as JSON round-trips so they match file semantics."""

    def __init__(self) -> None:
        self._lines: List[str] = []

    def append(self, record: Dict[str, Any]) -> None:
        self._lines.append(json.dumps(record, ensure_ascii=False))

    def scan(self) -> Iterator[Dict[str, Any]]:
        for line in list(self._lines):
            yield json.loads(line)

    def __len__(self) -> int:
        return len(self._lines)


# -----------------------------------------------------------------------------
# Index
# -----------------------------------------------------------------------------


def _as_dict(record: Union[Dict[str, Any], StartRecord, TerminalRecord]) -> Dict[str, Any]:
    if isinstance(record, StartRecord):
        return start_record_to_dict(record)
    if isinstance(record, TerminalRecord):
        return terminal_record_to_dict(record)
    if is_dataclass(record):
        return asdict(record)
    return dict(record)


def _finished_key(view: RunView) -> tuple:
    return (view.finished_at or "", view.run_id)


class RunIndex:
    """Run lifecycle queries over a RunLog.

    Args:
        log: The record log to append to and scan.
    """

    def __init__(self, log: RunLog):
        self.log = log

    # -- writes ---------------------------------------------------------------

    def append_start(self, record: Union[Dict[str, Any], StartRecord]) -> Dict[str, Any]:
        """Append a ``running`` record."""
        data = _as_dict(record)
        if data.get("status") != RunStatus.RUNNING.value:
            raise ValueError(f"Start record must have status 'running', got {data.get('status')!r}")
        self.log.append(data)
        logger.debug("Indexed start of run %s", data.get("run_id"))
        return data

    def append_terminal(self, record: Union[Dict[str, Any], TerminalRecord]) -> Dict[str, Any]:
        """Append a terminal (completed / failed / error) record."""
        data = _as_dict(record)
        if data.get("status") not in TERMINAL_STATUSES:
            raise ValueError(
                f"Terminal record status must be one of {sorted(TERMINAL_STATUSES)}, got {data.get('status')!r}"
            )
        self.log.append(data)
        logger.debug("Indexed %s for run %s", data.get("status"), data.get("run_id"))
        return data

    # -- reads ----------------------------------------------------------------

    def records(self) -> List[Dict[str, Any]]:
        """All records in append order."""
        return list(self.log.scan())

    def records_for(self, run_id: str) -> List[Dict[str, Any]]:
        """The full record set for one run, in append order."""
        return [r for r in self.log.scan() if r.get("run_id") == run_id]

    def views(self) -> List[RunView]:
        """Per-run derived views, newest start first."""
        grouped: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
        for record in self.log.scan():
            grouped.setdefault(record["run_id"], []).append(record)

        views = [self._derive(run_id, rows) for run_id, rows in grouped.items()]
        views.sort(key=lambda v: (v.started_at or "", v.run_id), reverse=True)
        return views

    @staticmethod
    def _derive(run_id: str, rows: List[Dict[str, Any]]) -> RunView:
        start = next((r for r in rows if r.get("status") == RunStatus.RUNNING.value), rows[0])
        terminal: Optional[Dict[str, Any]] = None
        effective = RunStatus.RUNNING.value
        total_duration: Optional[float] = None
        for row in rows:
            status = row.get("status")
            if status in TERMINAL_STATUSES:
                terminal = row
                effective = status
                if row.get("duration_seconds") is not None:
                    total_duration = (total_duration or 0.0) + float(row["duration_seconds"])
            elif status == RunStatus.RUNNING.value:
                effective = RunStatus.RUNNING.value
        return RunView(
            run_id=run_id,
            effective_status=effective,
            start=start,
            terminal=terminal,
            record_count=len(rows),
            total_duration_seconds=round(total_duration, 3) if total_duration is not None else None,
        )

    def get_view(self, run_id: str) -> Optional[RunView]:
        rows = self.records_for(run_id)
        if not rows:
            return None
        return self._derive(run_id, rows)

    def list_runs(
        self,
        status: Optional[str] = None,
        failed: bool = False,
        session: Optional[str] = None,
        model: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
        limit: Optional[int] = None,
    ) -> List[RunView]:
        """List runs newest first, filtered.

        Args:
            status: Keep runs whose effective status equals this.
            failed: Shorthand for status="failed".
            session: Keep runs in this session.
            model: Keep runs launched with this model.
            labels: Keep runs carrying every one of these label pairs.
            limit: Maximum number of runs returned.
        """
        if failed:
            status = RunStatus.FAILED.value

        result: List[RunView] = []
        for view in self.views():
            if status and view.effective_status != status:
                continue
            if session and view.session_id != session:
                continue
            if model and view.model != model:
                continue
            if labels and any(view.labels.get(k) != v for k, v in labels.items()):
                continue
            result.append(view)
            if limit is not None and len(result) >= limit:
                break
        return result

    def stats(self, session: Optional[str] = None) -> RunStats:
        """Aggregate counts and durations, optionally for one session."""
        views = self.views()
        if session:
            views = [v for v in views if v.session_id == session]
        return self._aggregate(views, session)

    def stats_by_session(self) -> Dict[str, RunStats]:
        """Aggregate per session; runs without a session group under ``-``."""
        grouped: Dict[str, List[RunView]] = {}
        for view in self.views():
            grouped.setdefault(view.session_id or NO_SESSION, []).append(view)
        return {key: self._aggregate(views, key) for key, views in sorted(grouped.items())}

    @staticmethod
    def _aggregate(views: List[RunView], session: Optional[str]) -> RunStats:
        stats = RunStats(session=session, total_runs=len(views))
        finished_durations: List[float] = []
        for view in views:
            status = view.effective_status
            if status == RunStatus.COMPLETED.value:
                stats.completed += 1
            elif status == RunStatus.FAILED.value:
                stats.failed += 1
            elif status == RunStatus.ERROR.value:
                stats.error += 1
            else:
                stats.running += 1

            if status in (RunStatus.FAILED.value, RunStatus.ERROR.value):
                reason = view.failure_reason or "unknown"
                stats.fail_reasons[reason] = stats.fail_reasons.get(reason, 0) + 1

            model = view.model or "unknown"
            stats.models[model] = stats.models.get(model, 0) + 1

            # Every segment of an in-place continued run counts
            if view.is_finalized and view.total_duration_seconds is not None:
                finished_durations.append(view.total_duration_seconds)

        stats.total_duration_seconds = round(sum(finished_durations), 3)
        if finished_durations:
            stats.avg_duration_seconds = round(stats.total_duration_seconds / len(finished_durations), 3)
        return stats

    def dangling(self) -> List[RunView]:
        """Runs whose most recent record is ``running``.

        After the engine returns control these only come from an engine
        crash. They are reported, never repaired.
        """
        return [v for v in self.views() if v.effective_status == RunStatus.RUNNING.value]

    # -- references -----------------------------------------------------------

    def resolve_ref(self, ref: str) -> str:
        """Resolve a run reference to a run_id.

        Accepts a full run_id, a unique prefix of at least 8 characters,
        ``@latest``, ``@last-failed`` or ``@last-completed``. Symbolic
        references pick the highest ``finished_at_utc`` among each run's
        latest terminal record, ties broken by run_id.

        Raises:
            RunRefError: Unknown, too-short or ambiguous reference.
        """
        ref = (ref or "").strip()
        if not ref:
            raise RunRefError(ref, "empty run reference")

        views = self.views()

        if ref.startswith("@"):
            if ref == "@latest":
                wanted = None
            elif ref == "@last-failed":
                wanted = RunStatus.FAILED.value
            elif ref == "@last-completed":
                wanted = RunStatus.COMPLETED.value
            else:
                raise RunRefError(ref, f"unknown symbolic reference (accepted: {', '.join(SYMBOLIC_REFS)})")

            finalized = [
                v
                for v in views
                if v.terminal is not None and (wanted is None or v.terminal.get("status") == wanted)
            ]
            if not finalized:
                raise RunRefError(ref, "no matching finalized run in the index")
            return max(finalized, key=_finished_key).run_id

        for view in views:
            if view.run_id == ref:
                return view.run_id

        if len(ref) < MIN_PREFIX_LENGTH:
            raise RunRefError(
                ref,
                f"prefix must be at least {MIN_PREFIX_LENGTH} characters (got {len(ref)})",
            )

        matches = sorted(v.run_id for v in views if v.run_id.startswith(ref))
        if not matches:
            raise RunRefError(ref, "no run matches")
        if len(matches) > 1:
            raise RunRefError(ref, f"ambiguous, matches {len(matches)} runs", candidates=matches)
        return matches[0]
