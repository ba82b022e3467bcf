"""
codex.py - Threaded-resumable engine (codex CLI).

Invocation:
    codex exec -m <model> -c model_reasoning_effort=<effort>
        --dangerously-bypass-approvals-and-sandbox --json -
Resume in place:
    codex exec resume <thread_id> ...same flags... -

The thread id appears on the first event of the stream. Forking a thread is
not a protocol capability.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..errors import UnsupportedOperation
from ..router import BackendFamily
from .base import (
    AnswerEvent,
    BackendEvent,
    Engine,
    ErrorEvent,
    ProgressEvent,
    StreamParser,
    extract_text,
    usage_from,
)

_ANSWER_ITEM_TYPES = ("agent_message", "assistant_message", "message")


class CodexStreamParser(StreamParser):
    """Parser for ``codex exec --json`` output."""

    def _parse_event(self, data: Dict[str, Any], first: bool) -> List[BackendEvent]:
        events: List[BackendEvent] = []
        event_type = data.get("type", "")

        if first or event_type == "thread.started":
            events.extend(self._handle(data.get("thread_id")))

        if event_type == "item.completed":
            item = data.get("item") or {}
            if isinstance(item, dict) and (
                item.get("role") == "assistant" or item.get("type") in _ANSWER_ITEM_TYPES
            ):
                text = extract_text(item.get("text") if "text" in item else item.get("content"))
                events.append(AnswerEvent(text))
            else:
                events.append(ProgressEvent(event_type))
        elif event_type == "turn.completed":
            usage = usage_from(data.get("usage"))
            if usage:
                events.append(usage)
            events.append(ProgressEvent(event_type))
        elif event_type == "error":
            events.append(ErrorEvent(str(data.get("message") or "codex reported an error")))
        elif event_type == "turn.failed":
            error = data.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else str(error)
            events.append(ErrorEvent(message or "codex turn failed"))
        elif event_type:
            events.append(ProgressEvent(event_type))
        elif not events:
            events.append(ProgressEvent("unknown"))
        return events


class CodexEngine(Engine):
    """Engine for the codex CLI."""

    @property
    def engine_id(self) -> str:
        return "codex"

    @property
    def family(self) -> BackendFamily:
        return BackendFamily.THREADED_RESUMABLE

    def build_command(
        self,
        model: str,
        effort: str,
        tools: str,
        resume_handle: Optional[str] = None,
        fork_handle: Optional[str] = None,
    ) -> List[str]:
        if fork_handle:
            raise UnsupportedOperation("fork", self.family.value, "threads cannot be branched")

        argv = [self.cli_path, "exec"]
        if resume_handle:
            argv += ["resume", resume_handle]
        argv += [
            "-m",
            model,
            "-c",
            f"model_reasoning_effort={effort}",
            "--dangerously-bypass-approvals-and-sandbox",
            "--json",
            "-",
        ]
        return argv

    def new_parser(self) -> StreamParser:
        return CodexStreamParser()
