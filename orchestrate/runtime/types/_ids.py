"""ID types and generators for the types package.

Provides run ID generation plus the RunId type alias.
"""

from __future__ import annotations

import os
import re
from datetime import datetime, timezone
from typing import Optional

# Type aliases
RunId = str

_UNSAFE_ID_CHARS = re.compile(r"[^a-z0-9.-]+")


def sanitize_for_id(value: str) -> str:
    """Sanitize a value for use inside a run ID.

    Lowercases, maps anything outside ``[a-z0-9.-]`` to ``-`` and collapses
    repeats, so ``openai/GPT-4o`` becomes ``openai-gpt-4o``.
    """
    cleaned = _UNSAFE_ID_CHARS.sub("-", value.lower())
    cleaned = re.sub(r"-{2,}", "-", cleaned).strip("-")
    return cleaned or "unknown"


def generate_run_id(model: str, now: Optional[datetime] = None, pid: Optional[int] = None) -> RunId:
    """Generate a unique, time-ordered run ID.

    Creates IDs in the format: YYYYMMDDTHHMMSSffffffZ__<model>__<pid>
    where ffffff is the microsecond part of the UTC start time and pid is
    the engine's process id. The timestamp prefix makes lexical order equal
    to start order.

    Args:
        model: Requested model identifier (sanitized into the ID).
        now: Start time override (defaults to the current UTC time).
        pid: Process identity override (defaults to os.getpid()).

    Returns:
        A run identifier string.

    Example:
        >>> generate_run_id("gpt-5.3-codex")  # doctest: +SKIP
        '20261019T143022123456Z__gpt-5.3-codex__4242'
    """
    now = now or datetime.now(timezone.utc)
    timestamp = now.strftime("%Y%m%dT%H%M%S") + f"{now.microsecond:06d}Z"
    return f"{timestamp}__{sanitize_for_id(model)}__{pid if pid is not None else os.getpid()}"
