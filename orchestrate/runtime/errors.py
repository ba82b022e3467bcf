"""
errors.py - Exception taxonomy for the orchestration engine.

Argument and routing errors (UsageError, UnrecognizedModel, NotFound,
UnsupportedOperation) are raised before any run directory or index record
exists. SubprocessFailure and ProtocolError describe a launched run's
outcome; the executor converts them into terminal index records instead of
letting them reach the caller.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence


class OrchestrateError(Exception):
    """Base exception for orchestration errors."""

    pass


class UsageError(OrchestrateError):
    """Raised for missing or invalid launch/query arguments."""

    def __init__(self, message: str, value: Optional[str] = None, accepted: Optional[Sequence[str]] = None):
        self.value = value
        self.accepted = list(accepted) if accepted else []
        msg = message
        if value is not None:
            msg += f" (got: {value})"
        if self.accepted:
            msg += f". Accepted: {', '.join(self.accepted)}"
        super().__init__(msg)


class UnrecognizedModel(OrchestrateError):
    """Raised when the model router cannot classify a model identifier."""

    def __init__(self, model: str, supported: Dict[str, Sequence[str]]):
        self.model = model
        self.supported = {family: list(patterns) for family, patterns in supported.items()}
        families = "; ".join(
            f"{family}: {', '.join(patterns)}" for family, patterns in self.supported.items()
        )
        super().__init__(f"Unknown model family: '{model}'. Supported: {families}")


class NotFound(OrchestrateError):
    """Raised when a fragment (or other named resource) does not resolve."""

    def __init__(
        self,
        kind: str,
        name: str,
        searched: Optional[Iterable[str]] = None,
        message: Optional[str] = None,
    ):
        self.kind = kind
        self.name = name
        self.searched: List[str] = [str(p) for p in searched] if searched else []
        msg = message or f"{kind} not found: {name}"
        if self.searched:
            msg += f"\n  Searched: {', '.join(self.searched)}"
        super().__init__(msg)


class RunRefError(NotFound):
    """Raised when a run reference is unknown, too short, or ambiguous."""

    def __init__(self, ref: str, reason: str, candidates: Optional[Sequence[str]] = None):
        self.ref = ref
        self.reason = reason
        self.candidates = list(candidates) if candidates else []
        msg = f"Run reference '{ref}': {reason}"
        if self.candidates:
            msg += f". Candidates: {', '.join(self.candidates)}"
        super().__init__("run", ref, message=msg)


class UnsupportedOperation(OrchestrateError):
    """Raised when a backend family cannot perform a requested operation."""

    def __init__(self, operation: str, family: str, reason: str, message: Optional[str] = None):
        self.operation = operation
        self.family = family
        self.reason = reason
        super().__init__(message or f"{operation} is not supported for {family} backends: {reason}")


class RunStillRunning(UnsupportedOperation):
    """Raised when continuing a run that has no terminal record yet."""

    def __init__(self, run_id: str, family: str = ""):
        self.run_id = run_id
        super().__init__(
            "continue",
            family,
            "no terminal record",
            message=f"Cannot continue run {run_id}: still running or crashed (no terminal record)",
        )


class SubprocessFailure(OrchestrateError):
    """A launched executor exited with a non-zero (or signal) status."""

    def __init__(self, exit_code: int, reason: str, detail: str = ""):
        self.exit_code = exit_code
        self.reason = reason
        self.detail = detail
        msg = f"Executor exited with status {exit_code} ({reason})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class ProtocolError(OrchestrateError):
    """The executor's output never yielded a recognizable terminal event."""

    def __init__(self, message: str, line_count: int = 0):
        self.line_count = line_count
        super().__init__(message)
