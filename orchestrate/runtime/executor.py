"""
executor.py - Drive one executor subprocess from run directory to terminal record.

State machine per run:

    created  -> run directory allocated, input.md (and params.json) written
    running  -> "running" index record appended, subprocess launched, prompt
                fed on stdin, stdout appended line by line to output.jsonl
    completed | failed | error
             -> terminal index record appended (always, from a finally path)

Decision table:

    could not launch                        error      launch_error
    killed by the timeout timer             failed     timeout
    killed by a signal                      failed     interrupted
    non-zero exit                           failed     agent_error
    zero exit, error event in the stream    failed     executor_error
    zero exit, no answer event              error      protocol_error
    zero exit, answer event                 completed

Usage:
    from orchestrate.runtime.executor import RunExecutor
    from orchestrate.runtime.types import LaunchRequest

    executor = RunExecutor(work_dir)
    outcome = executor.launch(LaunchRequest(model="gpt-5.3-codex", prompt="hello"))
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from orchestrate.config.runtime_config import (
    get_default_detail,
    get_default_effort,
    get_default_tools,
    get_timeout_minutes,
)

from .engines import (
    AnswerEvent,
    BackendEvent,
    Engine,
    ErrorEvent,
    HandleEvent,
    UnparsedLine,
    UsageEvent,
    get_engine,
)
from .errors import ProtocolError, SubprocessFailure, UnsupportedOperation, UsageError
from .fragments import Fragment, load_fragments
from .index import JsonlRunLog, RunIndex
from .paths import SessionRoot
from .prompt_builder import PromptParams, compose_prompt, validate_detail
from .router import BackendFamily, route_model
from .storage import (
    INPUT_FILE,
    OUTPUT_FILE,
    REPORT_FILE,
    STDERR_FILE,
    count_lines,
    next_continue_input,
    read_report,
    read_report_bytes,
    tail_lines,
    write_input,
    write_params,
    write_report,
    write_report_bytes,
)
from .templates import check_keys, unresolved_placeholders
from .types import (
    ContinuationMode,
    FailureReason,
    LaunchRequest,
    RunId,
    RunOutcome,
    RunStatus,
    RunView,
    StartRecord,
    TerminalRecord,
    _datetime_to_iso,
    generate_run_id,
    utc_now,
)

# Module logger
logger = logging.getLogger(__name__)

# Seconds to wait for the stdin feeder after the process exits
_FEEDER_JOIN_TIMEOUT = 5.0


@dataclass
class DryRunPlan:
    """What a launch would do, computed without touching the filesystem."""

    model: str
    backend_family: str
    harness: str
    argv: List[str]
    prompt: str
    work_dir: str
    run_dir: str
    effort: str
    detail: str
    timeout_minutes: float
    skills: List[str] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)
    session: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "backend_family": self.backend_family,
            "harness": self.harness,
            "argv": list(self.argv),
            "prompt": self.prompt,
            "work_dir": self.work_dir,
            "run_dir": self.run_dir,
            "effort": self.effort,
            "detail": self.detail,
            "timeout_minutes": self.timeout_minutes,
            "skills": list(self.skills),
            "labels": dict(self.labels),
            "session": self.session,
        }


@dataclass
class _Invocation:
    """Everything _execute needs for one subprocess run."""

    engine: Engine
    run_id: RunId
    run_dir: Path
    input_path: Path
    prompt: bytes
    model: str
    effort: str
    tools: str
    detail: str
    timeout_minutes: float
    skills: List[str] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)
    session: Optional[str] = None
    resume_handle: Optional[str] = None
    fork_handle: Optional[str] = None
    continues: Optional[RunId] = None
    retries: Optional[RunId] = None
    continuation_mode: Optional[str] = None
    params: Optional[Dict[str, Any]] = None
    # Directory whose report.md a replayed prompt still names
    foreign_report_dir: Optional[Path] = None


@dataclass
class _StreamResult:
    """What was observed while the subprocess ran."""

    exit_code: Optional[int] = None
    launch_error: Optional[str] = None
    timed_out: bool = False
    answer: Optional[str] = None
    answer_count: int = 0
    handle: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    line_count: int = 0
    unparsed_count: int = 0

    def apply(self, event: BackendEvent) -> None:
        if isinstance(event, AnswerEvent):
            self.answer_count += 1
            if event.text:
                self.answer = event.text
        elif isinstance(event, HandleEvent):
            self.handle = self.handle or event.handle
        elif isinstance(event, UsageEvent):
            if event.input_tokens is not None:
                self.input_tokens = event.input_tokens
            if event.output_tokens is not None:
                self.output_tokens = event.output_tokens
        elif isinstance(event, ErrorEvent):
            self.errors.append(event.message)
        elif isinstance(event, UnparsedLine):
            self.unparsed_count += 1


def _report_signature(path: Path) -> Optional[tuple]:
    try:
        st = path.stat()
    except OSError:
        return None
    return (st.st_mtime_ns, st.st_size)


@dataclass(frozen=True)
class _ReportSnapshot:
    """report.md of another run directory, taken before launch."""

    signature: Optional[tuple]
    content: Optional[bytes]


class RunExecutor:
    """Launches executor subprocesses and records their lifecycle.

    Args:
        work_dir: Resolved working directory; every path derives from it.
        index: Run index (defaults to the JSONL index under the session root).
        root: Session root (defaults to SessionRoot(work_dir)).
    """

    def __init__(
        self,
        work_dir: Path,
        index: Optional[RunIndex] = None,
        root: Optional[SessionRoot] = None,
    ):
        self.work_dir = Path(work_dir).resolve()
        self.root = root or SessionRoot(self.work_dir)
        self.index = index or RunIndex(JsonlRunLog(self.root.index_path))

    # =========================================================================
    # Public operations
    # =========================================================================

    def launch(self, request: LaunchRequest) -> RunOutcome:
        """Compose, launch and finalize a new run.

        Raises:
            UsageError: Missing prompt and fragments, or invalid detail level.
            UnrecognizedModel: The model does not route to a backend family.
            NotFound: A fragment does not resolve.
        """
        return self.run_prompt(request)

    def run_prompt(
        self,
        request: LaunchRequest,
        prompt: Optional[bytes] = None,
        *,
        fork_handle: Optional[str] = None,
        continues: Optional[RunId] = None,
        retries: Optional[RunId] = None,
        continuation_mode: Optional[str] = None,
        foreign_report_dir: Optional[Path] = None,
    ) -> RunOutcome:
        """Launch a new run directory.

        When ``prompt`` is None the prompt is composed from the request;
        otherwise the given bytes are written to input.md and sent verbatim.
        ``foreign_report_dir`` names another run directory whose report.md the
        verbatim prompt still points at; a report written there during this
        run is moved into the new run directory and the original restored.
        All argument, routing and fragment errors are raised before the run
        directory exists.
        """
        engine = get_engine(route_model(request.model))
        detail = validate_detail(request.detail or get_default_detail())
        check_keys(request.labels, "label")

        fragments: List[Fragment] = []
        if prompt is None:
            if not request.prompt.strip() and not request.skills:
                raise UsageError("A prompt (-p) or at least one fragment (-s) is required")
            check_keys(request.variables, "variable")
            fragments = load_fragments(request.skills, self.work_dir)

        if fork_handle and not engine.capabilities.fork:
            raise UnsupportedOperation(
                "fork", engine.family.value, "threads cannot be branched from a prior handle"
            )

        run_id, run_dir = self.root.allocate_run_dir(request.model)

        if prompt is None:
            text = self._compose(request, fragments, run_dir, detail)
            prompt = text.encode("utf-8")
        input_path = write_input(run_dir / INPUT_FILE, prompt)

        inv = _Invocation(
            engine=engine,
            run_id=run_id,
            run_dir=run_dir,
            input_path=input_path,
            prompt=prompt,
            model=request.model,
            effort=request.effort or get_default_effort(),
            tools=request.tools or get_default_tools(),
            detail=detail,
            timeout_minutes=request.timeout_minutes or get_timeout_minutes(),
            skills=list(request.skills),
            labels=dict(request.labels),
            session=request.session,
            fork_handle=fork_handle,
            continues=continues,
            retries=retries,
            continuation_mode=continuation_mode,
            foreign_report_dir=foreign_report_dir,
        )
        inv.params = {
            "reference_files": list(request.reference_files),
            "variables": dict(request.variables),
        }
        return self._execute(inv)

    def resume_in_place(
        self,
        prior: RunView,
        prompt: str,
        *,
        model: Optional[str] = None,
        detail: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
        timeout_minutes: Optional[float] = None,
    ) -> RunOutcome:
        """Extend a threaded-resumable run in its own run directory.

        The continuation prompt goes to ``input.continue-<n>.md``, events are
        appended to the existing output.jsonl, and both new index records
        reuse the prior run_id with ``continues`` and
        ``continuation_mode = in-place``.
        """
        family = BackendFamily(prior.backend_family or route_model(prior.model).value)
        engine = get_engine(family)
        if not engine.capabilities.resume_in_place:
            raise UnsupportedOperation("resume in place", family.value, "no thread resume primitive")
        handle = prior.correlation_handle
        if not handle:
            raise UnsupportedOperation(
                "continue",
                family.value,
                "no correlation handle recorded",
                message=f"Cannot continue run {prior.run_id}: no correlation handle was recorded",
            )

        run_dir = Path(prior.log_dir) if prior.log_dir else self.root.run_dir(prior.run_id)
        if not run_dir.is_dir():
            raise UsageError("Run directory is missing", value=str(run_dir))

        resolved_detail = validate_detail(detail or prior.start.get("detail") or get_default_detail())
        text = compose_prompt(
            PromptParams(
                prompt=prompt,
                report_path=str(run_dir / REPORT_FILE),
                detail=resolved_detail,
            )
        )
        payload = text.encode("utf-8")
        input_path = write_input(next_continue_input(run_dir), payload)

        merged_labels = dict(prior.labels)
        merged_labels.update(labels or {})

        inv = _Invocation(
            engine=engine,
            run_id=prior.run_id,
            run_dir=run_dir,
            input_path=input_path,
            prompt=payload,
            model=model or prior.model,
            effort=prior.start.get("effort") or get_default_effort(),
            tools=get_default_tools(),
            detail=resolved_detail,
            timeout_minutes=timeout_minutes or get_timeout_minutes(),
            skills=prior.skills,
            labels=merged_labels,
            session=prior.session_id,
            resume_handle=handle,
            continues=prior.run_id,
            continuation_mode=ContinuationMode.IN_PLACE.value,
        )
        return self._execute(inv)

    def dry_run(self, request: LaunchRequest) -> DryRunPlan:
        """Route and compose without creating any directory or index record."""
        family = route_model(request.model)
        engine = get_engine(family)
        detail = validate_detail(request.detail or get_default_detail())
        if not request.prompt.strip() and not request.skills:
            raise UsageError("A prompt (-p) or at least one fragment (-s) is required")
        check_keys(request.variables, "variable")
        fragments = load_fragments(request.skills, self.work_dir)

        run_dir = self.root.runs_dir / generate_run_id(request.model)
        effort = request.effort or get_default_effort()
        tools = request.tools or get_default_tools()
        return DryRunPlan(
            model=request.model,
            backend_family=family.value,
            harness=engine.engine_id,
            argv=engine.build_command(request.model, effort, tools),
            prompt=self._compose(request, fragments, run_dir, detail),
            work_dir=str(self.work_dir),
            run_dir=str(run_dir),
            effort=effort,
            detail=detail,
            timeout_minutes=request.timeout_minutes or get_timeout_minutes(),
            skills=list(request.skills),
            labels=dict(request.labels),
            session=request.session,
        )

    # =========================================================================
    # Composition
    # =========================================================================

    def _compose(
        self,
        request: LaunchRequest,
        fragments: List[Fragment],
        run_dir: Path,
        detail: str,
    ) -> str:
        text = compose_prompt(
            PromptParams(
                fragments=tuple(fragments),
                prompt=request.prompt,
                reference_files=tuple(request.reference_files),
                variables=dict(request.variables),
                report_path=str(run_dir / REPORT_FILE),
                detail=detail,
            )
        )
        leftovers = unresolved_placeholders(text, request.variables)
        if leftovers:
            logger.warning("Unresolved template placeholders in prompt: %s", ", ".join(leftovers))
        return text

    # =========================================================================
    # Execution
    # =========================================================================

    def _execute(self, inv: _Invocation) -> RunOutcome:
        engine = inv.engine
        argv = engine.build_command(
            inv.model,
            inv.effort,
            inv.tools,
            resume_handle=inv.resume_handle,
            fork_handle=inv.fork_handle,
        )
        created_at = utc_now()
        output_path = inv.run_dir / OUTPUT_FILE
        report_path = inv.run_dir / REPORT_FILE

        if inv.continuation_mode != ContinuationMode.IN_PLACE.value:
            params: Dict[str, Any] = {
                "run_id": inv.run_id,
                "model": inv.model,
                "backend_family": engine.family.value,
                "harness": engine.engine_id,
                "effort": inv.effort,
                "tools": inv.tools,
                "detail": inv.detail,
                "timeout_minutes": inv.timeout_minutes,
                "skills": list(inv.skills),
                "labels": dict(inv.labels),
                "session": inv.session,
                "cwd": str(self.work_dir),
                "argv": list(argv),
                "created_at": _datetime_to_iso(created_at),
                "continues": inv.continues,
                "retries": inv.retries,
                "continuation_mode": inv.continuation_mode,
            }
            params.update(inv.params or {})
            write_params(inv.run_dir, params)

        self.index.append_start(
            StartRecord(
                run_id=inv.run_id,
                created_at=created_at,
                cwd=str(self.work_dir),
                model=inv.model,
                backend_family=engine.family.value,
                harness=engine.engine_id,
                log_dir=str(inv.run_dir),
                session_id=inv.session,
                skills=inv.skills,
                labels=inv.labels,
                detail=inv.detail,
                effort=inv.effort,
                continues=inv.continues,
                retries=inv.retries,
                continuation_mode=inv.continuation_mode,
            )
        )
        logger.info("Model: %s (%s) | Log: %s", inv.model, engine.family.value, inv.run_dir)

        report_before = _report_signature(report_path)
        foreign_before = self._snapshot_foreign_report(inv)
        started = time.monotonic()
        result = _StreamResult()
        status = RunStatus.ERROR
        failure_reason: Optional[str] = FailureReason.EXECUTOR_ERROR.value
        error: Optional[str] = None

        try:
            result = self._drive(inv, argv, output_path)
            self._check(result)
            status = RunStatus.COMPLETED
            failure_reason = None
        except _LaunchFailure as e:
            status = RunStatus.ERROR
            failure_reason = e.reason
            error = e.detail
        except SubprocessFailure as e:
            status = RunStatus.FAILED
            failure_reason = e.reason
            error = str(e)
        except ProtocolError as e:
            status = RunStatus.ERROR
            failure_reason = FailureReason.PROTOCOL_ERROR.value
            error = str(e)
        except KeyboardInterrupt:
            status = RunStatus.FAILED
            failure_reason = FailureReason.INTERRUPTED.value
            result.exit_code = 128 + signal.SIGINT
            error = "Interrupted"
            raise
        except Exception as e:
            logger.exception("Executor failure for run %s", inv.run_id)
            status = RunStatus.ERROR
            failure_reason = FailureReason.EXECUTOR_ERROR.value
            error = str(e)
        finally:
            duration = time.monotonic() - started
            if foreign_before is not None:
                self._reclaim_foreign_report(inv, foreign_before)
            report_source = self._ensure_report(
                inv, result, status, error, report_path, report_before, output_path
            )
            handle = result.handle or inv.resume_handle
            self.index.append_terminal(
                TerminalRecord(
                    run_id=inv.run_id,
                    status=status,
                    finished_at=utc_now(),
                    duration_seconds=duration,
                    model=inv.model,
                    output_log=str(output_path),
                    report_path=str(report_path),
                    exit_code=result.exit_code,
                    failure_reason=failure_reason,
                    session_id=inv.session,
                    correlation_handle=handle,
                    report_source=report_source,
                    continues=inv.continues,
                    retries=inv.retries,
                    continuation_mode=inv.continuation_mode,
                    input_tokens=result.input_tokens,
                    output_tokens=result.output_tokens,
                    error=error,
                )
            )
            logger.info(
                "Done (status=%s, exit=%s, duration=%.1fs)",
                status.value,
                result.exit_code,
                duration,
            )

        return RunOutcome(
            run_id=inv.run_id,
            status=status,
            run_dir=inv.run_dir,
            exit_code=result.exit_code,
            failure_reason=failure_reason,
            correlation_handle=handle,
            duration_seconds=duration,
            answer=result.answer,
            error=error,
            report_source=report_source,
            continuation_mode=inv.continuation_mode,
        )

    def _drive(self, inv: _Invocation, argv: List[str], output_path: Path) -> _StreamResult:
        """Run the subprocess, streaming stdout into output.jsonl as it arrives."""
        result = _StreamResult()
        parser = inv.engine.new_parser()
        stderr_path = inv.run_dir / STDERR_FILE
        timed_out = threading.Event()

        with open(output_path, "ab") as out, open(stderr_path, "ab") as err:
            try:
                process = subprocess.Popen(
                    argv,
                    cwd=str(self.work_dir),
                    env=inv.engine.environment(),
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=err,
                    start_new_session=True,
                )
            except OSError as e:
                result.launch_error = f"Failed to launch {argv[0]}: {e}"
                logger.error("%s", result.launch_error)
                return result

            def _kill() -> None:
                timed_out.set()
                logger.warning(
                    "Run %s exceeded %.2f minute timeout, killing executor", inv.run_id, inv.timeout_minutes
                )
                _kill_process_group(process)

            timer = threading.Timer(inv.timeout_minutes * 60.0, _kill)
            timer.daemon = True
            feeder = threading.Thread(target=_feed_stdin, args=(process, inv.prompt), daemon=True)

            try:
                timer.start()
                feeder.start()
                assert process.stdout is not None
                for raw in process.stdout:
                    if not raw.endswith(b"\n"):
                        raw += b"\n"
                    out.write(raw)
                    out.flush()
                    result.line_count += 1
                    for event in parser.parse_line(raw.decode("utf-8", errors="replace")):
                        result.apply(event)
                for event in parser.finish():
                    result.apply(event)
                process.wait()
            except BaseException:
                _kill_process_group(process)
                process.wait()
                raise
            finally:
                timer.cancel()
                feeder.join(timeout=_FEEDER_JOIN_TIMEOUT)
                if process.stdout is not None:
                    process.stdout.close()

        returncode = process.returncode
        result.timed_out = timed_out.is_set()
        result.exit_code = 128 - returncode if returncode < 0 else returncode
        return result

    @staticmethod
    def _check(result: _StreamResult) -> None:
        """Raise SubprocessFailure or ProtocolError unless the run completed."""
        if result.launch_error:
            raise _LaunchFailure(result.launch_error)
        if result.timed_out:
            raise SubprocessFailure(result.exit_code or 0, FailureReason.TIMEOUT.value, "Timed out")
        if result.exit_code and result.exit_code > 128:
            raise SubprocessFailure(
                result.exit_code, FailureReason.INTERRUPTED.value, "Killed by signal"
            )
        if result.exit_code:
            detail = result.errors[-1] if result.errors else ""
            raise SubprocessFailure(result.exit_code, FailureReason.AGENT_ERROR.value, detail)
        if result.errors:
            raise SubprocessFailure(0, FailureReason.EXECUTOR_ERROR.value, result.errors[-1])
        if result.answer_count == 0:
            if result.line_count == 0:
                raise ProtocolError("No executor output captured", line_count=0)
            raise ProtocolError(
                f"No terminal answer event in {result.line_count} output lines",
                line_count=result.line_count,
            )

    # =========================================================================
    # Report ownership and fallback
    # =========================================================================

    @staticmethod
    def _snapshot_foreign_report(inv: _Invocation) -> Optional[_ReportSnapshot]:
        source_dir = inv.foreign_report_dir
        if source_dir is None or source_dir.resolve() == inv.run_dir.resolve():
            return None
        report = source_dir / REPORT_FILE
        return _ReportSnapshot(signature=_report_signature(report), content=read_report_bytes(source_dir))

    @staticmethod
    def _reclaim_foreign_report(inv: _Invocation, before: _ReportSnapshot) -> None:
        """Move a report the executor wrote into another run's directory back to this run.

        The other run's report.md is restored to its prior bytes, or removed
        if it did not exist before this run started.
        """
        source_dir = inv.foreign_report_dir
        assert source_dir is not None
        report = source_dir / REPORT_FILE
        if _report_signature(report) == before.signature:
            return
        try:
            written = read_report_bytes(source_dir)
            if written is not None and written != before.content:
                write_report_bytes(inv.run_dir, written)
            if before.content is not None:
                write_report_bytes(source_dir, before.content)
            elif written is not None:
                report.unlink()
        except OSError as e:
            logger.warning("Could not reclaim report written to %s for run %s: %s", report, inv.run_id, e)
            return
        logger.info("Moved report written to %s into run %s", report, inv.run_id)

    def _ensure_report(
        self,
        inv: _Invocation,
        result: _StreamResult,
        status: RunStatus,
        error: Optional[str],
        report_path: Path,
        report_before: Optional[tuple],
        output_path: Path,
    ) -> Optional[str]:
        """Keep the executor's report if it wrote one this run, else write a fallback."""
        signature = _report_signature(report_path)
        existing = read_report(inv.run_dir) if signature else None
        if existing and existing.strip() and signature != report_before:
            return "agent"

        if status == RunStatus.COMPLETED and result.answer:
            text = result.answer if result.answer.endswith("\n") else result.answer + "\n"
        else:
            text = _diagnostic_report(result, status, error, output_path, inv.run_dir / STDERR_FILE)

        try:
            write_report(inv.run_dir, text)
        except OSError as e:
            logger.warning("Could not write fallback report for run %s: %s", inv.run_id, e)
            return None
        return "fallback"


class _LaunchFailure(SubprocessFailure):
    """The executor binary could not be started."""

    def __init__(self, detail: str):
        super().__init__(-1, FailureReason.LAUNCH_ERROR.value, detail)


def _feed_stdin(process: subprocess.Popen, payload: bytes) -> None:
    """Write the prompt to the child's stdin and close it."""
    stdin = process.stdin
    if stdin is None:
        return
    try:
        stdin.write(payload)
        stdin.flush()
    except (BrokenPipeError, ValueError):
        # Child exited or closed stdin without reading the whole prompt
        logger.debug("Executor closed stdin before the prompt was fully written")
    finally:
        try:
            stdin.close()
        except (BrokenPipeError, OSError):
            pass


def _kill_process_group(process: subprocess.Popen) -> None:
    if process.poll() is not None:
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        process.kill()


def _diagnostic_report(
    result: _StreamResult,
    status: RunStatus,
    error: Optional[str],
    output_path: Path,
    stderr_path: Path,
) -> str:
    if result.launch_error:
        status_line = f"{status.value} (launch failed)"
    elif result.exit_code is None or result.exit_code == 0:
        status_line = status.value
    else:
        status_line = f"{status.value} (exit {result.exit_code})"

    if result.timed_out:
        reason = "Timed out"
    elif result.launch_error:
        reason = result.launch_error
    elif count_lines(output_path) == 0:
        reason = "No executor output captured"
    elif result.errors:
        reason = result.errors[-1]
    else:
        reason = error or "No report written by the executor"

    lines = [
        "# Run Report (auto-generated)",
        "",
        f"**Status**: {status_line}",
        f"**Reason**: {reason}",
        f"**Output lines**: {count_lines(output_path)}",
    ]
    stderr_tail = tail_lines(stderr_path, limit=3)
    if stderr_tail:
        lines += ["", "**Last error**:", "```", *stderr_tail, "```"]
    return "\n".join(lines) + "\n"
