"""
engines/ - Executor engine abstraction for the three backend families.

Interfaces:
- Engine: argv / environment builder for one executor CLI
- StreamParser: lazy typed-event parser for one executor's output

Events:
- ProgressEvent, AnswerEvent, HandleEvent, UsageEvent, ErrorEvent, UnparsedLine

Engines:
- CodexEngine: threaded-resumable (codex exec / exec resume)
- ClaudeEngine: session-conversational (claude stream-json)
- OpencodeEngine: lightweight-session (opencode run --format json)

Factory:
- get_engine(): Engine for a backend family

Usage:
    >>> from orchestrate.runtime.engines import get_engine
    >>> engine = get_engine("threaded-resumable")
    >>> argv = engine.build_command("gpt-5.3-codex", "high", "")
"""

from .base import (
    AnswerEvent,
    BackendEvent,
    Engine,
    ErrorEvent,
    HandleEvent,
    ProgressEvent,
    StreamParser,
    UnparsedLine,
    UsageEvent,
)
from .claude import ClaudeEngine
from .codex import CodexEngine
from .factory import get_engine
from .opencode import OpencodeEngine

__all__ = [
    # Interfaces
    "Engine",
    "StreamParser",
    # Events
    "BackendEvent",
    "ProgressEvent",
    "AnswerEvent",
    "HandleEvent",
    "UsageEvent",
    "ErrorEvent",
    "UnparsedLine",
    # Factory
    "get_engine",
    # Engines
    "CodexEngine",
    "ClaudeEngine",
    "OpencodeEngine",
]
