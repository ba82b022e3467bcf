# orchestrate/runtime package
# Runs agent executors as subprocesses and tracks them in an append-only index.
#
# Core components:
#   - types: Core dataclasses (LaunchRequest, RunOutcome, RunView, RunStats)
#   - fragments / templates / prompt_builder: prompt composition
#   - router: model identifier -> backend family
#   - engines: per-family argv builders and stream parsers
#   - executor: RunExecutor, one subprocess per run
#   - continuation: ContinuationController (continue / fork / retry)
#   - index: RunIndex over an append-only RunLog
#
# Usage:
#     from orchestrate.runtime import RunExecutor, ContinuationController, LaunchRequest
#     executor = RunExecutor(work_dir)
#     outcome = executor.launch(LaunchRequest(model="gpt-5.3-codex", prompt="hello"))
#     ContinuationController(executor).continue_run("@latest", "follow up")

from .continuation import ContinuationController
from .errors import (
    NotFound,
    OrchestrateError,
    ProtocolError,
    RunRefError,
    RunStillRunning,
    SubprocessFailure,
    UnrecognizedModel,
    UnsupportedOperation,
    UsageError,
)
from .executor import DryRunPlan, RunExecutor
from .index import JsonlRunLog, MemoryRunLog, RunIndex, RunLog
from .paths import SessionRoot, resolve_work_dir
from .router import BackendFamily, route_model
from .types import (
    ContinuationMode,
    DetailLevel,
    FailureReason,
    LaunchRequest,
    RunId,
    RunOutcome,
    RunStats,
    RunStatus,
    RunView,
)

__all__ = [
    # Types
    "RunId",
    "RunStatus",
    "ContinuationMode",
    "DetailLevel",
    "FailureReason",
    "LaunchRequest",
    "RunOutcome",
    "RunView",
    "RunStats",
    # Errors
    "OrchestrateError",
    "UsageError",
    "UnrecognizedModel",
    "NotFound",
    "RunRefError",
    "UnsupportedOperation",
    "RunStillRunning",
    "SubprocessFailure",
    "ProtocolError",
    # Components
    "BackendFamily",
    "route_model",
    "SessionRoot",
    "resolve_work_dir",
    "RunLog",
    "JsonlRunLog",
    "MemoryRunLog",
    "RunIndex",
    "RunExecutor",
    "DryRunPlan",
    "ContinuationController",
]
