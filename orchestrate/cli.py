"""
cli.py - Command-line entry point.

Usage:
    orchestrate run -m gpt-5.3-codex -p "hello" [-s review,scratch] [-f PATH]...
                    [-v KEY=VALUE]... [--label KEY=VALUE]... [--session ID]
                    [-D brief|standard|detailed] [-V EFFORT] [--timeout MIN]
                    [--dry-run]
    orchestrate list [--failed] [--status S] [--session ID] [--model M]
                     [--label KEY=VALUE]... [--limit N]
    orchestrate show <run_ref>
    orchestrate report <run_ref>
    orchestrate stats [--session ID] [--by-session]
    orchestrate continue <run_ref> -p "follow up" [--model M]
    orchestrate fork <run_ref> -p "branch" [--model M]
    orchestrate retry <run_ref> [--model M]

Global options (before or after the command): -C/--cd DIR, --json,
--verbose, --quiet.

Exit codes:
    0    completed
    1    failed
    2    usage, routing, lookup or unsupported-operation error (no run created)
    3    failed by timeout
    4    finished with status "error" (launch or protocol failure)
    130  interrupted (143 when terminated)
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from orchestrate.runtime.continuation import ContinuationController
from orchestrate.runtime.errors import (
    NotFound,
    OrchestrateError,
    RunRefError,
    UnrecognizedModel,
    UnsupportedOperation,
    UsageError,
)
from orchestrate.runtime.executor import RunExecutor
from orchestrate.runtime.paths import resolve_work_dir
from orchestrate.runtime.storage import read_report
from orchestrate.runtime.templates import parse_assignments
from orchestrate.runtime.types import (
    DetailLevel,
    FailureReason,
    LaunchRequest,
    RunOutcome,
    RunStatus,
    RunView,
    run_stats_to_dict,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_TIMEOUT = 3
EXIT_ERROR = 4
EXIT_INTERRUPTED = 130


# =============================================================================
# Output helpers
# =============================================================================


def _emit_json(command: str, data: Any, ok: bool = True, error: Optional[Dict[str, Any]] = None) -> None:
    envelope = {
        "ok": ok,
        "command": command,
        "data": data,
        "error": error,
        "meta": {},
    }
    print(json.dumps(envelope, indent=2, ensure_ascii=False))


def _error_code(exc: OrchestrateError) -> str:
    if isinstance(exc, RunRefError):
        return "run_ref"
    if isinstance(exc, NotFound):
        return "not_found"
    if isinstance(exc, UnrecognizedModel):
        return "unrecognized_model"
    if isinstance(exc, UnsupportedOperation):
        return "unsupported_operation"
    if isinstance(exc, UsageError):
        return "usage_error"
    return "error"


def outcome_exit_code(outcome: RunOutcome) -> int:
    """Map a run outcome to the process exit code."""
    if outcome.status == RunStatus.COMPLETED:
        return EXIT_OK
    if outcome.status == RunStatus.ERROR:
        return EXIT_ERROR
    if outcome.failure_reason == FailureReason.TIMEOUT.value:
        return EXIT_TIMEOUT
    if outcome.failure_reason == FailureReason.INTERRUPTED.value:
        return outcome.exit_code if outcome.exit_code in (130, 143) else EXIT_INTERRUPTED
    return EXIT_FAILED


def _outcome_dict(outcome: RunOutcome) -> Dict[str, Any]:
    return {
        "run_id": outcome.run_id,
        "status": outcome.status.value,
        "exit_code": outcome.exit_code,
        "failure_reason": outcome.failure_reason,
        "correlation_handle": outcome.correlation_handle,
        "duration_seconds": round(outcome.duration_seconds, 3),
        "run_dir": str(outcome.run_dir),
        "report_source": outcome.report_source,
        "continuation_mode": outcome.continuation_mode,
        "error": outcome.error,
    }


def _format_view_line(view: RunView) -> str:
    duration = view.duration_seconds
    duration_text = f"{duration:.1f}s" if isinstance(duration, (int, float)) else "-"
    labels = ",".join(f"{k}={v}" for k, v in sorted(view.labels.items())) or "-"
    return "  ".join(
        [
            view.run_id,
            f"{view.effective_status:<9}",
            view.model or "-",
            duration_text,
            view.session_id or "-",
            labels,
        ]
    )


# =============================================================================
# Commands
# =============================================================================


def _read_prompt(value: Optional[str], allow_stdin: bool) -> str:
    if value == "-":
        return sys.stdin.read()
    if value is None and allow_stdin and not sys.stdin.isatty():
        return sys.stdin.read()
    return value or ""


def _split_skills(values: Optional[List[str]]) -> List[str]:
    skills: List[str] = []
    for value in values or []:
        for name in value.split(","):
            name = name.strip()
            if name and name not in skills:
                skills.append(name)
    return skills


def _cmd_run(args: argparse.Namespace, executor: RunExecutor) -> int:
    skills = _split_skills(args.skills)
    request = LaunchRequest(
        model=args.model,
        prompt=_read_prompt(args.prompt, allow_stdin=not skills),
        skills=skills,
        reference_files=list(args.ref_files or []),
        variables=parse_assignments(args.vars or [], "variable"),
        labels=parse_assignments(args.labels or [], "label"),
        session=args.session,
        detail=args.detail,
        effort=args.effort,
        tools=args.tools,
        timeout_minutes=args.timeout,
    )

    if args.dry_run:
        plan = executor.dry_run(request)
        if args.json:
            _emit_json("run", plan.to_dict())
        else:
            print(f"Model: {plan.model} ({plan.backend_family}, {plan.harness})")
            print(f"Effort: {plan.effort} | Report: {plan.detail} | Timeout: {plan.timeout_minutes}m")
            print(f"Skills: {', '.join(plan.skills) or 'none'}")
            print(f"Working dir: {plan.work_dir}")
            print(f"Run dir: {plan.run_dir}")
            print("Command: " + " ".join(plan.argv))
            print("")
            print(plan.prompt)
        return EXIT_OK

    outcome = executor.launch(request)
    return _report_outcome("run", outcome, args)


def _report_outcome(command: str, outcome: RunOutcome, args: argparse.Namespace) -> int:
    code = outcome_exit_code(outcome)
    if args.json:
        _emit_json(command, _outcome_dict(outcome), ok=code == EXIT_OK)
    else:
        print(outcome.run_id)
        if code != EXIT_OK:
            logger.warning(
                "Run %s %s (%s)", outcome.run_id, outcome.status.value, outcome.failure_reason
            )
    return code


def _cmd_list(args: argparse.Namespace, executor: RunExecutor) -> int:
    views = executor.index.list_runs(
        status=args.status,
        failed=args.failed,
        session=args.session,
        model=args.model,
        labels=parse_assignments(args.labels or [], "label"),
        limit=args.limit,
    )
    if args.json:
        _emit_json("list", [v.to_dict() for v in views], error=None)
        return EXIT_OK
    if not views:
        print("No runs.")
        return EXIT_OK
    for view in views:
        print(_format_view_line(view))
    dangling = executor.index.dangling()
    if dangling:
        logger.info("%d run(s) have no terminal record yet (running or crashed)", len(dangling))
    return EXIT_OK


def _cmd_show(args: argparse.Namespace, executor: RunExecutor) -> int:
    run_id = executor.index.resolve_ref(args.run_ref)
    view = executor.index.get_view(run_id)
    records = executor.index.records_for(run_id)
    if view is None:
        raise RunRefError(args.run_ref, "no records")
    if args.json:
        _emit_json("show", {"run": view.to_dict(), "records": records})
        return EXIT_OK
    print(f"Run: {view.run_id}")
    print(f"Status: {view.effective_status}")
    print(f"Model: {view.model} ({view.backend_family})")
    print(f"Session: {view.session_id or '-'}")
    print(f"Started: {view.started_at}")
    print(f"Finished: {view.finished_at or '-'}")
    if view.failure_reason:
        print(f"Failure reason: {view.failure_reason}")
    if view.correlation_handle:
        print(f"Correlation handle: {view.correlation_handle}")
    print(f"Log dir: {view.log_dir}")
    print("Records:")
    for record in records:
        print("  " + json.dumps(record, ensure_ascii=False))
    return EXIT_OK


def _cmd_report(args: argparse.Namespace, executor: RunExecutor) -> int:
    run_id = executor.index.resolve_ref(args.run_ref)
    view = executor.index.get_view(run_id)
    run_dir = Path(view.log_dir) if view and view.log_dir else executor.root.run_dir(run_id)
    text = read_report(run_dir)
    if text is None:
        raise NotFound("Report", run_id, searched=[str(run_dir)])
    if args.json:
        _emit_json("report", {"run_id": run_id, "report": text})
    else:
        sys.stdout.write(text if text.endswith("\n") else text + "\n")
    return EXIT_OK


def _cmd_stats(args: argparse.Namespace, executor: RunExecutor) -> int:
    if args.by_session:
        by_session = executor.index.stats_by_session()
        if args.json:
            _emit_json("stats", {key: run_stats_to_dict(s) for key, s in by_session.items()})
        else:
            for key, stats in by_session.items():
                print(
                    f"{key}: {stats.total_runs} runs ({stats.completed} completed, "
                    f"{stats.failed} failed, {stats.error} error, {stats.running} running)"
                )
        return EXIT_OK

    stats = executor.index.stats(session=args.session)
    if args.json:
        _emit_json("stats", run_stats_to_dict(stats))
        return EXIT_OK

    pass_rate = f"{int(stats.pass_rate * 100)}%" if stats.pass_rate is not None else "N/A"
    reasons = ", ".join(f"{k}: {v}" for k, v in sorted(stats.fail_reasons.items())) or "none"
    models = ", ".join(f"{k}: {v}" for k, v in sorted(stats.models.items())) or "none"
    print(
        f"Runs: {stats.total_runs} total ({stats.completed} completed, {stats.failed} failed, "
        f"{stats.error} error, {stats.running} running)"
    )
    print(f"Pass rate: {pass_rate}")
    print(f"Failure reasons: {reasons}")
    print(f"Models: {models}")
    print(f"Total duration: {stats.total_duration_seconds}s")
    print(f"Avg duration: {stats.avg_duration_seconds}s")
    return EXIT_OK


def _cmd_continue(args: argparse.Namespace, executor: RunExecutor) -> int:
    controller = ContinuationController(executor)
    outcome = controller.continue_run(
        args.run_ref,
        _read_prompt(args.prompt, allow_stdin=True),
        model=args.model,
        detail=args.detail,
        labels=parse_assignments(args.labels or [], "label"),
        timeout_minutes=args.timeout,
    )
    return _report_outcome("continue", outcome, args)


def _cmd_fork(args: argparse.Namespace, executor: RunExecutor) -> int:
    controller = ContinuationController(executor)
    outcome = controller.fork(
        args.run_ref,
        _read_prompt(args.prompt, allow_stdin=True),
        model=args.model,
        detail=args.detail,
        labels=parse_assignments(args.labels or [], "label"),
        timeout_minutes=args.timeout,
    )
    return _report_outcome("fork", outcome, args)


def _cmd_retry(args: argparse.Namespace, executor: RunExecutor) -> int:
    controller = ContinuationController(executor)
    outcome = controller.retry(args.run_ref, model=args.model, timeout_minutes=args.timeout)
    return _report_outcome("retry", outcome, args)


_COMMANDS = {
    "run": _cmd_run,
    "list": _cmd_list,
    "show": _cmd_show,
    "report": _cmd_report,
    "stats": _cmd_stats,
    "continue": _cmd_continue,
    "fork": _cmd_fork,
    "retry": _cmd_retry,
}


# =============================================================================
# Parser
# =============================================================================


def _positive_minutes(value: str) -> float:
    try:
        minutes = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid timeout: {value!r} (minutes)") from None
    if minutes <= 0:
        raise argparse.ArgumentTypeError(f"timeout must be positive (got {value})")
    return minutes


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {value!r}") from None
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive (got {value})")
    return number


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-C",
        "--cd",
        dest="cd",
        default=argparse.SUPPRESS,
        help="Working directory (default: repository root of the current directory)",
    )
    common.add_argument("--json", action="store_true", default=argparse.SUPPRESS, help="JSON envelope output")
    common.add_argument("--verbose", action="store_true", default=argparse.SUPPRESS, help="Debug logging")
    common.add_argument("--quiet", action="store_true", default=argparse.SUPPRESS, help="Warnings only")

    parser = argparse.ArgumentParser(
        prog="orchestrate",
        description="Launch and track agent runs across executor CLIs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        parents=[common],
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    detail_choices = DetailLevel.values()

    # Run command
    run_parser = subparsers.add_parser("run", help="Launch a new run", parents=[common])
    run_parser.add_argument("-m", "--model", required=True, help="Model identifier")
    run_parser.add_argument(
        "-s", "--skills", action="append", help="Comma-separated fragment names (repeatable)"
    )
    run_parser.add_argument("-p", "--prompt", default=None, help="Task prompt ('-' reads stdin)")
    run_parser.add_argument(
        "-f", "--file", dest="ref_files", action="append", help="Reference file path (repeatable)"
    )
    run_parser.add_argument(
        "-v", "--var", dest="vars", action="append", help="Template variable KEY=VALUE (repeatable)"
    )
    run_parser.add_argument(
        "--label", dest="labels", action="append", help="Run label KEY=VALUE (repeatable)"
    )
    run_parser.add_argument("--session", help="Session ID for grouping related runs")
    run_parser.add_argument(
        "-D", "--detail", choices=detail_choices, default=None, help="Report detail level"
    )
    run_parser.add_argument("-V", "--effort", default=None, help="Reasoning effort / variant")
    run_parser.add_argument("--tools", default=None, help="Comma-separated tool allow-list")
    run_parser.add_argument("--timeout", type=_positive_minutes, default=None, help="Timeout in minutes")
    run_parser.add_argument(
        "--dry-run", action="store_true", help="Show routing, command and prompt without running"
    )

    # List command
    list_parser = subparsers.add_parser("list", help="List runs, newest first", parents=[common])
    list_parser.add_argument("--failed", action="store_true", help="Only failed runs")
    list_parser.add_argument(
        "--status", choices=[s.value for s in RunStatus], default=None, help="Only runs with this status"
    )
    list_parser.add_argument("--session", default=None, help="Only runs in this session")
    list_parser.add_argument("--model", default=None, help="Only runs with this model")
    list_parser.add_argument("--label", dest="labels", action="append", help="Only runs with label KEY=VALUE")
    list_parser.add_argument("--limit", type=_positive_int, default=None, help="Maximum number of runs")

    # Show / report commands
    show_parser = subparsers.add_parser("show", help="Show a run and all its records", parents=[common])
    show_parser.add_argument("run_ref", help="Run ID, 8+ char prefix, @latest, @last-failed, @last-completed")

    report_parser = subparsers.add_parser("report", help="Print a run's report.md", parents=[common])
    report_parser.add_argument("run_ref", help="Run reference")

    # Stats command
    stats_parser = subparsers.add_parser("stats", help="Aggregate run statistics", parents=[common])
    stats_parser.add_argument("--session", default=None, help="Only runs in this session")
    stats_parser.add_argument("--by-session", action="store_true", help="Aggregate per session")

    # Continuation commands
    for name, help_text in (
        ("continue", "Continue a finished run with a follow-up prompt"),
        ("fork", "Branch a new run from a finished run's session"),
    ):
        sub = subparsers.add_parser(name, help=help_text, parents=[common])
        sub.add_argument("run_ref", help="Run reference")
        sub.add_argument("-p", "--prompt", default=None, help="Follow-up prompt ('-' reads stdin)")
        sub.add_argument("--model", default=None, help="Model override (same backend family)")
        sub.add_argument("-D", "--detail", choices=detail_choices, default=None, help="Report detail level")
        sub.add_argument("--label", dest="labels", action="append", help="Extra label KEY=VALUE")
        sub.add_argument("--timeout", type=_positive_minutes, default=None, help="Timeout in minutes")

    retry_parser = subparsers.add_parser("retry", help="Replay a run's exact input as a new run", parents=[common])
    retry_parser.add_argument("run_ref", help="Run reference")
    retry_parser.add_argument("--model", default=None, help="Model override")
    retry_parser.add_argument("--timeout", type=_positive_minutes, default=None, help="Timeout in minutes")

    # UsageError is reported with the usage line of the command that raised it
    for sub in subparsers.choices.values():
        sub.set_defaults(usage_parser=sub)

    return parser


def _configure_logging(verbose: bool, quiet: bool) -> None:
    level = logging.INFO
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point.

    Args:
        argv: Arguments (defaults to sys.argv[1:]).

    Returns:
        Process exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    for name in ("cd", "json", "verbose", "quiet"):
        if not hasattr(args, name):
            setattr(args, name, None if name == "cd" else False)

    _configure_logging(args.verbose, args.quiet)

    if not args.command:
        parser.print_help(sys.stderr)
        return EXIT_USAGE

    try:
        work_dir = resolve_work_dir(args.cd)
        executor = RunExecutor(work_dir)
        return _COMMANDS[args.command](args, executor)
    except OrchestrateError as e:
        if args.json:
            _emit_json(args.command, None, ok=False, error={"code": _error_code(e), "message": str(e)})
        else:
            print(f"ERROR: {e}", file=sys.stderr)
            if isinstance(e, UsageError):
                getattr(args, "usage_parser", parser).print_usage(sys.stderr)
        return EXIT_USAGE
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
