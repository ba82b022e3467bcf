"""
factory.py - Engine factory functions.

Maps a backend family (or harness name) to its Engine implementation.
"""

from __future__ import annotations

import logging
from typing import Union

from ..router import BackendFamily
from .base import Engine
from .claude import ClaudeEngine
from .codex import CodexEngine
from .opencode import OpencodeEngine

logger = logging.getLogger(__name__)

_ENGINES_BY_FAMILY = {
    BackendFamily.THREADED_RESUMABLE: CodexEngine,
    BackendFamily.SESSION_CONVERSATIONAL: ClaudeEngine,
    BackendFamily.LIGHTWEIGHT_SESSION: OpencodeEngine,
}


def get_engine(family: Union[BackendFamily, str]) -> Engine:
    """Get the engine for a backend family.

    Args:
        family: A BackendFamily, its value ("threaded-resumable", ...), or a
            harness name ("codex", "claude", "opencode").

    Returns:
        Engine instance.

    Raises:
        ValueError: If the family is not recognized.

    Example:
        >>> engine = get_engine(BackendFamily.THREADED_RESUMABLE)
        >>> engine.engine_id
        'codex'
    """
    if not isinstance(family, BackendFamily):
        key = str(family).lower()
        for engine_cls in _ENGINES_BY_FAMILY.values():
            engine = engine_cls()
            if engine.engine_id == key:
                return engine
        try:
            family = BackendFamily(key)
        except ValueError:
            valid = [f.value for f in BackendFamily] + [cls().engine_id for cls in _ENGINES_BY_FAMILY.values()]
            raise ValueError(f"Unknown engine: {family}. Valid options: {', '.join(valid)}") from None

    engine = _ENGINES_BY_FAMILY[family]()
    logger.debug("get_engine(%s): %s via %s", family.value, engine.engine_id, engine.cli_path)
    return engine

