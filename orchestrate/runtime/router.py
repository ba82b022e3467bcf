"""
router.py - Classify model identifiers into backend families.

Routing is a pure function over an ordered table of shell-glob patterns.
The first family whose pattern matches wins, so a model like
``claude-3/opus`` routes to the session-conversational family rather than
the slash-qualified lightweight-session family.

    session-conversational  opus*, sonnet*, haiku*, claude-*
    threaded-resumable      gpt-*, o1*, o3*, o4*, codex*
    lightweight-session     opencode-*, */*

Usage:
    from orchestrate.runtime.router import route_model, BackendFamily

    family = route_model("gpt-5.3-codex")  # BackendFamily.THREADED_RESUMABLE
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from fnmatch import fnmatchcase
from typing import Dict, Tuple

from .errors import UnrecognizedModel

logger = logging.getLogger(__name__)


class BackendFamily(str, Enum):
    """Protocol class of an executor."""

    THREADED_RESUMABLE = "threaded-resumable"
    SESSION_CONVERSATIONAL = "session-conversational"
    LIGHTWEIGHT_SESSION = "lightweight-session"


@dataclass(frozen=True)
class FamilyCapabilities:
    """What continuation primitives a backend family supports.

    Attributes:
        resume_in_place: Can extend an existing thread by handle.
        fork: Can start a new session seeded from a prior handle.
    """

    resume_in_place: bool
    fork: bool


# Order matters: first match wins.
_ROUTING_TABLE: Tuple[Tuple[BackendFamily, Tuple[str, ...]], ...] = (
    (BackendFamily.SESSION_CONVERSATIONAL, ("opus*", "sonnet*", "haiku*", "claude-*")),
    (BackendFamily.THREADED_RESUMABLE, ("gpt-*", "o1*", "o3*", "o4*", "codex*")),
    (BackendFamily.LIGHTWEIGHT_SESSION, ("opencode-*", "*/*")),
)

_CAPABILITIES: Dict[BackendFamily, FamilyCapabilities] = {
    BackendFamily.THREADED_RESUMABLE: FamilyCapabilities(resume_in_place=True, fork=False),
    BackendFamily.SESSION_CONVERSATIONAL: FamilyCapabilities(resume_in_place=False, fork=True),
    BackendFamily.LIGHTWEIGHT_SESSION: FamilyCapabilities(resume_in_place=False, fork=True),
}


def supported_patterns() -> Dict[BackendFamily, Tuple[str, ...]]:
    """Return the routing patterns per family, in match order."""
    return {family: patterns for family, patterns in _ROUTING_TABLE}


def route_model(model: str) -> BackendFamily:
    """Map a model identifier to its backend family.

    Args:
        model: Model identifier as given by the caller.

    Returns:
        The matching BackendFamily.

    Raises:
        UnrecognizedModel: If no family pattern matches (including empty input).
    """
    table = supported_patterns()
    candidate = (model or "").strip()
    if candidate:
        for family, patterns in table.items():
            for pattern in patterns:
                if fnmatchcase(candidate, pattern):
                    logger.debug("Routed model %s to %s via %s", candidate, family.value, pattern)
                    return family

    raise UnrecognizedModel(model, {family.value: patterns for family, patterns in table.items()})


def get_capabilities(family: BackendFamily) -> FamilyCapabilities:
    """Return the continuation capabilities of ``family``."""
    return _CAPABILITIES[BackendFamily(family)]
