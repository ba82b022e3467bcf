"""
base.py - Abstract base classes for executor engines and stream parsers.

This module defines the interface contracts for running one executor CLI:
- Engine: builds the argv and environment for a backend family's CLI
- StreamParser: turns the CLI's newline-delimited JSON output into a lazy
  sequence of typed events

The Run Executor only talks to these interfaces, so it stays
family-agnostic. Engines do NOT own:
- Process lifecycle (that's the executor's job)
- Index records (that's the executor's job)
- Prompt composition (that's the prompt builder's job)
"""

from __future__ import annotations

import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Union

from orchestrate.config.runtime_config import get_cli_path

from ..router import BackendFamily, FamilyCapabilities, get_capabilities

# =============================================================================
# Events
# =============================================================================


@dataclass(frozen=True)
class ProgressEvent:
    """Any recognized event that is neither an answer nor an error."""

    kind: str


@dataclass(frozen=True)
class AnswerEvent:
    """A terminal answer from the model."""

    text: str


@dataclass(frozen=True)
class HandleEvent:
    """The backend's correlation handle (thread id or session id)."""

    handle: str


@dataclass(frozen=True)
class UsageEvent:
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None


@dataclass(frozen=True)
class ErrorEvent:
    """An error reported inside the event stream."""

    message: str


@dataclass(frozen=True)
class UnparsedLine:
    """A non-blank output line that is not a JSON object."""

    text: str


BackendEvent = Union[ProgressEvent, AnswerEvent, HandleEvent, UsageEvent, ErrorEvent, UnparsedLine]


# =============================================================================
# Helpers shared by parsers
# =============================================================================


def extract_text(value: Any) -> str:
    """Flatten a content payload into text.

    Handles plain strings, ``{"text": ...}`` objects and lists of content
    blocks (``{"type": "text" | "output_text", "text": ...}``).
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        for key in ("text", "output_text", "content"):
            if key in value:
                return extract_text(value[key])
        return ""
    if isinstance(value, list):
        parts = []
        for block in value:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type", "text") in ("text", "output_text"):
                text = block.get("text") or block.get("output_text")
                if isinstance(text, str):
                    parts.append(text)
        return "\n".join(p for p in parts if p)
    return ""


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return None


def usage_from(usage: Any) -> Optional[UsageEvent]:
    """Build a UsageEvent from a usage mapping, or None when it has no counts."""
    if not isinstance(usage, dict):
        return None
    input_tokens = _as_int(usage.get("input_tokens", usage.get("prompt_tokens", usage.get("input"))))
    output_tokens = _as_int(usage.get("output_tokens", usage.get("completion_tokens", usage.get("output"))))
    if input_tokens is None and output_tokens is None:
        return None
    return UsageEvent(input_tokens=input_tokens, output_tokens=output_tokens)


# =============================================================================
# Interfaces
# =============================================================================


class StreamParser(ABC):
    """Per-run, stateful parser for one backend's output stream.

    A new parser is created for each executor invocation. ``parse_line``
    handles JSON decoding and bookkeeping; subclasses only map decoded
    objects to events in ``_parse_event``.
    """

    def __init__(self) -> None:
        self.line_count = 0
        self.event_count = 0
        self._handle_emitted = False

    def parse_line(self, line: str) -> List[BackendEvent]:
        """Parse one raw output line into zero or more events."""
        stripped = line.strip()
        if not stripped:
            return []
        self.line_count += 1

        try:
            data = json.loads(stripped)
        except json.JSONDecodeError:
            return [UnparsedLine(stripped)]
        if not isinstance(data, dict):
            return [UnparsedLine(stripped)]

        first = self.event_count == 0
        self.event_count += 1
        return self._parse_event(data, first)

    def iter_events(self, lines: Iterable[str]) -> Iterator[BackendEvent]:
        """Lazily parse a sequence of lines, then emit end-of-stream events."""
        for line in lines:
            yield from self.parse_line(line)
        yield from self.finish()

    def finish(self) -> List[BackendEvent]:
        """Events that can only be decided once the stream has ended."""
        return []

    def _handle(self, value: Any) -> List[BackendEvent]:
        if self._handle_emitted or not isinstance(value, str) or not value:
            return []
        self._handle_emitted = True
        return [HandleEvent(value)]

    @abstractmethod
    def _parse_event(self, data: Dict[str, Any], first: bool) -> List[BackendEvent]:
        """Map one decoded JSON object to events.

        Args:
            data: The decoded object.
            first: True for the first JSON object of the stream.
        """
        ...


class Engine(ABC):
    """Abstract base class for executor CLI engines."""

    @property
    @abstractmethod
    def engine_id(self) -> str:
        """Harness name, also the CLI config key (e.g., 'codex', 'claude')."""
        ...

    @property
    @abstractmethod
    def family(self) -> BackendFamily:
        ...

    @property
    def capabilities(self) -> FamilyCapabilities:
        return get_capabilities(self.family)

    @property
    def cli_path(self) -> str:
        return get_cli_path(self.engine_id)

    @abstractmethod
    def build_command(
        self,
        model: str,
        effort: str,
        tools: str,
        resume_handle: Optional[str] = None,
        fork_handle: Optional[str] = None,
    ) -> List[str]:
        """Build the argv for one invocation.

        Args:
            model: Requested model identifier.
            effort: Reasoning effort / variant.
            tools: Comma-separated tool allow-list (ignored where unsupported).
            resume_handle: Extend this thread in place.
            fork_handle: Start a new session seeded from this handle.

        Returns:
            The argv list. The prompt is always delivered on stdin.
        """
        ...

    @abstractmethod
    def new_parser(self) -> StreamParser:
        ...

    def environment(self, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Environment for the subprocess (defaults to a copy of os.environ)."""
        return dict(os.environ if base is None else base)
