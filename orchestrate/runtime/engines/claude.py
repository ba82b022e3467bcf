"""
claude.py - Session-conversational engine (claude CLI).

Invocation:
    claude -p - --model <model> --effort <effort> --verbose
        --output-format stream-json --allowedTools <tools>
        --dangerously-skip-permissions
Fork from a prior session:
    ... --resume <session_id> --fork-session

The session id is taken from the top-level ``result`` event. When the
stream has no usable result event, the first ``system`` event that is not a
hook event is used instead; hook events carry unrelated session ids.

CLAUDECODE is removed from the child environment so a nested CLI does not
refuse to start inside another session.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from ..router import BackendFamily
from .base import (
    AnswerEvent,
    BackendEvent,
    Engine,
    ErrorEvent,
    HandleEvent,
    ProgressEvent,
    StreamParser,
    extract_text,
    usage_from,
)

_HOOK_SUBTYPES = ("hook_started", "hook_response")

# Canonical tool names; anything not listed passes through unchanged
_TOOL_NAMES = {
    "read": "Read",
    "write": "Write",
    "edit": "Edit",
    "bash": "Bash",
    "glob": "Glob",
    "grep": "Grep",
    "websearch": "WebSearch",
    "webfetch": "WebFetch",
}


def normalize_tool_token(token: str) -> str:
    """Normalize one tool name, keeping any ``(...)`` suffix: ``bash(git:*)`` -> ``Bash(git:*)``."""
    base, paren, rest = token.partition("(")
    canonical = _TOOL_NAMES.get(base.strip().lower(), base.strip())
    return f"{canonical}{paren}{rest}"


def normalize_tools(tools: str) -> str:
    """Normalize a comma-separated tool list; an empty result returns the input."""
    tokens = [t.strip() for t in (tools or "").split(",")]
    normalized = [normalize_tool_token(t) for t in tokens if t]
    return ",".join(normalized) if normalized else tools


class ClaudeStreamParser(StreamParser):
    """Parser for ``claude --output-format stream-json`` output.

    The ``result`` event carries the handle, so the fallback handle from a
    system event is held back until the stream ends (see ``fallback_handle``).
    """

    def __init__(self) -> None:
        super().__init__()
        self.fallback_handle: Optional[str] = None

    def _parse_event(self, data: Dict[str, Any], first: bool) -> List[BackendEvent]:
        events: List[BackendEvent] = []
        event_type = data.get("type", "")

        if event_type == "result":
            events.extend(self._handle(data.get("session_id")))
            result = data.get("result")
            if data.get("is_error") or str(data.get("subtype") or "").startswith("error"):
                message = extract_text(result) or str(data.get("subtype") or "claude reported an error")
                events.append(ErrorEvent(message))
            else:
                events.append(AnswerEvent(extract_text(result)))

            usage = usage_from(data.get("usage"))
            if usage is None and isinstance(result, dict):
                usage = usage_from(result)
            if usage:
                events.append(usage)
        elif event_type == "system":
            if data.get("subtype") not in _HOOK_SUBTYPES and self.fallback_handle is None:
                handle = data.get("session_id")
                if isinstance(handle, str) and handle:
                    self.fallback_handle = handle
            events.append(ProgressEvent(event_type))
        elif event_type == "error":
            error = data.get("error")
            message = extract_text(error) if not isinstance(error, str) else error
            events.append(ErrorEvent(message or str(data.get("message") or "claude reported an error")))
        else:
            events.append(ProgressEvent(event_type or "unknown"))
        return events

    def finish(self) -> List[BackendEvent]:
        """Events that can only be decided at end of stream."""
        if not self._handle_emitted and self.fallback_handle:
            self._handle_emitted = True
            return [HandleEvent(self.fallback_handle)]
        return []


class ClaudeEngine(Engine):
    """Engine for the claude CLI."""

    @property
    def engine_id(self) -> str:
        return "claude"

    @property
    def family(self) -> BackendFamily:
        return BackendFamily.SESSION_CONVERSATIONAL

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
            "-p",
            "-",
            "--model",
            model,
            "--effort",
            effort,
            "--verbose",
            "--output-format",
            "stream-json",
            "--allowedTools",
            normalize_tools(tools),
            "--dangerously-skip-permissions",
        ]
        # Every invocation is a new process; a continuation is a seeded fork.
        seed = fork_handle or resume_handle
        if seed:
            argv += ["--resume", seed, "--fork-session"]
        return argv

    def new_parser(self) -> StreamParser:
        return ClaudeStreamParser()

    def environment(self, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        env = super().environment(base)
        env.pop("CLAUDECODE", None)
        return env
