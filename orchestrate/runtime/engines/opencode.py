"""
opencode.py - Lightweight-session engine (opencode CLI).

Invocation:
    opencode run --model <model> --format json --print-logs --variant <effort>
Seeded from a prior session:
    ... --session <session_id>

``opencode-<x>`` identifiers are passed to the CLI as ``<x>``;
``provider/model`` identifiers pass through unchanged. The session id is
taken from the first event. Error events can arrive with a zero exit code.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

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

MODEL_PREFIX = "opencode-"

_ANSWER_TYPES = ("assistant", "response", "text")


def strip_model_prefix(model: str) -> str:
    """``opencode-gpt-5`` -> ``gpt-5``; other identifiers are returned unchanged."""
    if model.startswith(MODEL_PREFIX) and len(model) > len(MODEL_PREFIX):
        return model[len(MODEL_PREFIX) :]
    return model


def _error_message(data: Dict[str, Any]) -> str:
    error = data.get("error")
    if isinstance(error, dict):
        inner = error.get("data")
        if isinstance(inner, dict) and inner.get("message"):
            return str(inner["message"])
        if error.get("message"):
            return str(error["message"])
        if error.get("name"):
            return str(error["name"])
    elif isinstance(error, str) and error:
        return error
    return str(data.get("message") or "opencode reported an error")


class OpencodeStreamParser(StreamParser):
    """Parser for ``opencode run --format json`` output."""

    def _parse_event(self, data: Dict[str, Any], first: bool) -> List[BackendEvent]:
        events: List[BackendEvent] = []
        event_type = data.get("type", "")

        if first:
            events.extend(self._handle(data.get("sessionID")))

        if event_type in _ANSWER_TYPES:
            payload = data.get("content")
            if payload is None:
                payload = data.get("text")
            if payload is None:
                payload = data.get("part", data.get("message"))
            events.append(AnswerEvent(extract_text(payload)))
        elif event_type == "error":
            events.append(ErrorEvent(_error_message(data)))
        else:
            usage = usage_from(data.get("tokens") or data.get("usage"))
            if usage:
                events.append(usage)
            events.append(ProgressEvent(event_type or "unknown"))
        return events


class OpencodeEngine(Engine):
    """Engine for the opencode CLI."""

    @property
    def engine_id(self) -> str:
        return "opencode"

    @property
    def family(self) -> BackendFamily:
        return BackendFamily.LIGHTWEIGHT_SESSION

    def build_command(
        self,
        model: str,
        effort: str,
        tools: str,
        resume_handle: Optional[str] = None,
        fork_handle: Optional[str] = None,
    ) -> List[str]:
        argv = [
            self.cli_path,
            "run",
            "--model",
            strip_model_prefix(model),
            "--format",
            "json",
            "--print-logs",
            "--variant",
            effort,
        ]
        seed = fork_handle or resume_handle
        if seed:
            argv += ["--session", seed]
        return argv

    def new_parser(self) -> StreamParser:
        return OpencodeStreamParser()
