"""Runtime configuration registry for executor harnesses and launch defaults.

Provides centralized configuration for executor paths and run defaults.
Environment variables take precedence over YAML config.

Usage:
    from orchestrate.config.runtime_config import get_cli_path, get_default

    cli = get_cli_path("codex")  # Returns "codex" or $ORCHESTRATE_CODEX_CLI
    effort = get_default("effort", "high")

Launch defaults:
    from orchestrate.config.runtime_config import (
        get_timeout_minutes,
        get_root_dirname,
        get_root_override,
        get_skills_dirs,
        get_default_detail,
    )
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(__file__).parent / "runtime.yaml"
_cached_config: Optional[Dict[str, Any]] = None

DEFAULT_TIMEOUT_MINUTES = 15.0
DEFAULT_DETAIL = "standard"
VALID_DETAIL_LEVELS = ("brief", "standard", "detailed")


def _load_config() -> Dict[str, Any]:
    """Load runtime.yaml configuration, with caching."""
    global _cached_config
    if _cached_config is not None:
        return _cached_config

    if _CONFIG_PATH.exists():
        with open(_CONFIG_PATH) as f:
            _cached_config = yaml.safe_load(f) or {}
    else:
        _cached_config = _default_config()

    return _cached_config


def _default_config() -> Dict[str, Any]:
    """Return default configuration if runtime.yaml doesn't exist."""
    return {
        "version": "1.0",
        "harnesses": {
            "codex": {"cli_path": "codex"},
            "claude": {"cli_path": "claude"},
            "opencode": {"cli_path": "opencode"},
        },
        "defaults": {
            "effort": "high",
            "detail": DEFAULT_DETAIL,
            "timeout_minutes": DEFAULT_TIMEOUT_MINUTES,
            "root_dirname": ".orchestrate",
            "tools": "Read,Edit,Write,Bash,Glob,Grep",
            "skills_dirs": [".agents/skills", ".claude/skills"],
        },
    }


def reset_config() -> None:
    """Reset cached config (for testing)."""
    global _cached_config
    _cached_config = None


def get_cli_path(harness: str) -> str:
    """Get CLI path for a harness, with env var override.

    Environment variable precedence:
    1. ORCHESTRATE_<HARNESS>_CLI (e.g., ORCHESTRATE_CODEX_CLI)
    2. Config file cli_path value
    3. Default: harness name (e.g., "codex", "claude")

    Args:
        harness: Harness identifier ("codex", "claude" or "opencode").

    Returns:
        CLI path string.
    """
    # 1. Check harness-specific CLI env var
    cli_env_var = f"ORCHESTRATE_{harness.upper()}_CLI"
    cli_value = os.environ.get(cli_env_var)
    if cli_value:
        return cli_value

    # 2. Check config file
    config = _load_config()
    harnesses = config.get("harnesses", {})
    harness_config = harnesses.get(harness.lower(), {})
    cli_path = harness_config.get("cli_path")
    if cli_path:
        return cli_path

    # 3. Default to harness name
    return harness.lower()


def get_default(key: str, fallback: Any = None) -> Any:
    """Get a default setting value.

    Args:
        key: Setting key (e.g., "effort", "tools").
        fallback: Value to return if key not found.

    Returns:
        Setting value or fallback.
    """
    config = _load_config()
    defaults = config.get("defaults", {}) or {}
    value = defaults.get(key)
    return fallback if value is None else value


def get_timeout_minutes() -> float:
    """Get the default subprocess timeout in minutes.

    Precedence: ORCHESTRATE_TIMEOUT_MINUTES, then ``defaults.timeout_minutes``.
    Non-numeric or non-positive values fall back to the built-in default.
    """
    raw = os.environ.get("ORCHESTRATE_TIMEOUT_MINUTES")
    source = "ORCHESTRATE_TIMEOUT_MINUTES"
    if not raw:
        raw = get_default("timeout_minutes", DEFAULT_TIMEOUT_MINUTES)
        source = "defaults.timeout_minutes"

    try:
        value = float(raw)
    except (TypeError, ValueError):
        logger.warning(
            "Invalid timeout '%s' from %s, using default %s",
            raw,
            source,
            DEFAULT_TIMEOUT_MINUTES,
        )
        return DEFAULT_TIMEOUT_MINUTES

    if value <= 0:
        logger.warning(
            "Timeout from %s must be positive (got %s), using default %s",
            source,
            raw,
            DEFAULT_TIMEOUT_MINUTES,
        )
        return DEFAULT_TIMEOUT_MINUTES
    return value


def get_default_detail() -> str:
    """Get the default report detail level."""
    detail = str(get_default("detail", DEFAULT_DETAIL)).lower()
    if detail not in VALID_DETAIL_LEVELS:
        logger.warning(
            "Invalid detail level '%s' in config, using default '%s'",
            detail,
            DEFAULT_DETAIL,
        )
        return DEFAULT_DETAIL
    return detail


def get_default_effort() -> str:
    return str(get_default("effort", "high"))


def get_default_tools() -> str:
    return str(get_default("tools", "Read,Edit,Write,Bash,Glob,Grep"))


def get_root_dirname() -> str:
    """Get the session root directory name created under the work dir."""
    return str(get_default("root_dirname", ".orchestrate"))


def get_root_override() -> Optional[str]:
    """Get the session root override from ORCHESTRATE_ROOT, if set."""
    value = os.environ.get("ORCHESTRATE_ROOT")
    return value or None


def get_skills_dirs() -> List[str]:
    """Get the fragment search directories, in search order.

    Relative entries are resolved against the work dir by the caller.
    """
    dirs = get_default("skills_dirs", [".agents/skills", ".claude/skills"])
    if isinstance(dirs, str):
        dirs = [dirs]
    return [str(d) for d in dirs]

