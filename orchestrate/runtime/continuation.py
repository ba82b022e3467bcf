"""
continuation.py - Continue, fork and retry prior runs.

    continue  threaded-resumable   resume the thread in place (same run_id,
                                   same run directory, output.jsonl appended)
              other families       new run seeded with the prior handle
                                   (continuation_mode = fork)
    fork      threaded-resumable   UnsupportedOperation, before any side effect
              other families       same as the fork path of continue
    retry     any family           new run whose input.md is the prior
                                   input.md byte for byte, no handle reuse

Run references accept everything RunIndex.resolve_ref does
(full id, 8+ character prefix, @latest, @last-failed, @last-completed).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional

from .errors import RunRefError, RunStillRunning, UnsupportedOperation, UsageError
from .executor import RunExecutor
from .prompt_builder import find_report_path
from .router import BackendFamily, get_capabilities, route_model
from .storage import read_input_bytes
from .types import ContinuationMode, LaunchRequest, RunOutcome, RunView

logger = logging.getLogger(__name__)


class ContinuationController:
    """Re-drives the executor from prior index records.

    Args:
        executor: The RunExecutor whose index and session root are used.
    """

    def __init__(self, executor: RunExecutor):
        self.executor = executor
        self.index = executor.index

    def _resolve(self, run_ref: str) -> RunView:
        run_id = self.index.resolve_ref(run_ref)
        view = self.index.get_view(run_id)
        if view is None:
            raise RunRefError(run_ref, "run vanished from the index")
        return view

    def _finalized(self, run_ref: str) -> RunView:
        view = self._resolve(run_ref)
        if not view.is_finalized:
            raise RunStillRunning(view.run_id, view.backend_family or "")
        return view

    @staticmethod
    def _family(view: RunView) -> BackendFamily:
        if view.backend_family:
            return BackendFamily(view.backend_family)
        return route_model(view.model)

    @staticmethod
    def _check_model_override(family: BackendFamily, model: Optional[str]) -> None:
        if model and route_model(model) != family:
            raise UnsupportedOperation(
                "continue",
                family.value,
                "model override routes to a different backend family",
                message=(
                    f"Model '{model}' routes to {route_model(model).value}; a continuation must "
                    f"stay within {family.value}"
                ),
            )

    @staticmethod
    def _require_prompt(prompt: str) -> None:
        if not prompt or not prompt.strip():
            raise UsageError("A follow-up prompt (-p) is required")

    def continue_run(
        self,
        run_ref: str,
        prompt: str,
        model: Optional[str] = None,
        detail: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
        timeout_minutes: Optional[float] = None,
    ) -> RunOutcome:
        """Continue a finalized run according to its family's capability.

        Raises:
            RunRefError: The reference does not resolve.
            RunStillRunning: The run has no terminal record.
            UnsupportedOperation: No correlation handle, or the model
                override routes to a different family.
        """
        self._require_prompt(prompt)
        view = self._finalized(run_ref)
        family = self._family(view)
        self._check_model_override(family, model)

        if not view.correlation_handle:
            raise UnsupportedOperation(
                "continue",
                family.value,
                "no correlation handle recorded",
                message=f"Cannot continue run {view.run_id}: no correlation handle was recorded",
            )

        if get_capabilities(family).resume_in_place:
            logger.info("Resuming run %s in place (handle %s)", view.run_id, view.correlation_handle)
            return self.executor.resume_in_place(
                view,
                prompt,
                model=model,
                detail=detail,
                labels=labels,
                timeout_minutes=timeout_minutes,
            )
        return self._fork_from(view, prompt, model, detail, labels, timeout_minutes)

    def fork(
        self,
        run_ref: str,
        prompt: str,
        model: Optional[str] = None,
        detail: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
        timeout_minutes: Optional[float] = None,
    ) -> RunOutcome:
        """Branch a new run from a prior run's handle.

        Raises:
            UnsupportedOperation: The family cannot fork (threaded-resumable)
                or the run has no correlation handle. Raised before any run
                directory or index record is created.
        """
        self._require_prompt(prompt)
        view = self._finalized(run_ref)
        family = self._family(view)
        if not get_capabilities(family).fork:
            raise UnsupportedOperation(
                "fork",
                family.value,
                "threads cannot be branched",
                message=(
                    f"Run {view.run_id} uses a {family.value} backend, which does not support "
                    "forking; use continue to resume it in place"
                ),
            )
        self._check_model_override(family, model)
        if not view.correlation_handle:
            raise UnsupportedOperation(
                "fork",
                family.value,
                "no correlation handle recorded",
                message=f"Cannot fork run {view.run_id}: no correlation handle was recorded",
            )
        return self._fork_from(view, prompt, model, detail, labels, timeout_minutes)

    def _fork_from(
        self,
        view: RunView,
        prompt: str,
        model: Optional[str],
        detail: Optional[str],
        labels: Optional[Dict[str, str]],
        timeout_minutes: Optional[float],
    ) -> RunOutcome:
        merged_labels = dict(view.labels)
        merged_labels.update(labels or {})
        request = LaunchRequest(
            model=model or view.model,
            prompt=prompt,
            labels=merged_labels,
            session=view.session_id,
            detail=detail or view.start.get("detail"),
            effort=view.start.get("effort"),
            timeout_minutes=timeout_minutes,
        )
        logger.info("Forking run %s from handle %s", view.run_id, view.correlation_handle)
        return self.executor.run_prompt(
            request,
            fork_handle=view.correlation_handle,
            continues=view.run_id,
            continuation_mode=ContinuationMode.FORK.value,
        )

    def retry(
        self,
        run_ref: str,
        model: Optional[str] = None,
        timeout_minutes: Optional[float] = None,
    ) -> RunOutcome:
        """Replay a run's original input.md as a brand new run.

        The new run keeps the original model (unless overridden), skills,
        session, labels, detail and effort. No correlation handle is reused.
        The replayed prompt still names an earlier run's report path; a report
        the executor writes there is moved into the new run directory and
        the earlier report is left as it was.
        """
        view = self._finalized(run_ref)
        source_dir = Path(view.log_dir) if view.log_dir else self.executor.root.run_dir(view.run_id)
        try:
            payload = read_input_bytes(source_dir)
        except FileNotFoundError:
            raise UsageError("Run has no input.md to retry", value=view.run_id) from None

        report_dir = source_dir
        named_report = find_report_path(payload.decode("utf-8", errors="replace"))
        if named_report:
            named_dir = Path(named_report).parent
            # Only run directories of this session root are reclaimed from
            if named_dir.resolve().parent == self.executor.root.runs_dir.resolve():
                report_dir = named_dir

        request = LaunchRequest(
            model=model or view.model,
            skills=view.skills,
            labels=view.labels,
            session=view.session_id,
            detail=view.start.get("detail"),
            effort=view.start.get("effort"),
            timeout_minutes=timeout_minutes,
        )
        logger.info("Retrying run %s", view.run_id)
        return self.executor.run_prompt(
            request, payload, retries=view.run_id, foreign_report_dir=report_dir
        )
