"""
storage.py - Disk I/O helpers for run directory artifacts.

The run directory layout is:

    <root>/runs/agent-runs/<run_id>/
      input.md                 # composed prompt, exactly as sent
      input.continue-<n>.md    # prompts of in-place continuations
      output.jsonl             # raw executor event stream, appended line by line
      stderr.log               # executor stderr
      report.md                # written by the executor, or by the fallback
      params.json              # launch parameters

Usage:
    from orchestrate.runtime.storage import (
        INPUT_FILE, OUTPUT_FILE, REPORT_FILE, PARAMS_FILE, STDERR_FILE,
        write_input, read_input_bytes, next_continue_input,
        write_params, read_params, read_report, read_report_bytes,
        write_report, write_report_bytes, count_lines, tail_lines,
    )
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections import deque
from pathlib import Path
from typing import Any, Dict, List, Optional

# Module logger
logger = logging.getLogger(__name__)

# File names
INPUT_FILE = "input.md"
OUTPUT_FILE = "output.jsonl"
REPORT_FILE = "report.md"
PARAMS_FILE = "params.json"
STDERR_FILE = "stderr.log"
CONTINUE_INPUT_TEMPLATE = "input.continue-{n}.md"


# -----------------------------------------------------------------------------
# Atomic File I/O Helpers
# -----------------------------------------------------------------------------


def _atomic_write_bytes(path: Path, payload: bytes) -> None:
    """Write bytes to a file atomically.

    Uses a temporary file + os.replace pattern to ensure atomicity.
    This prevents partial writes if the process is killed mid-write.
    """
    parent = path.parent
    parent.mkdir(parents=True, exist_ok=True)

    # Write to temp file in same directory (ensures same filesystem for rename)
    fd, tmp_path = tempfile.mkstemp(
        suffix=".tmp",
        prefix=path.name + ".",
        dir=parent,
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())  # Ensure data is on disk

        # Atomic rename (POSIX guarantees)
        os.replace(tmp_path, path)
    except Exception:
        # Clean up temp file on failure
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _atomic_write_json(path: Path, data: Any, indent: int = 2) -> None:
    """Write JSON data to a file atomically."""
    text = json.dumps(data, indent=indent, ensure_ascii=False) + "\n"
    _atomic_write_bytes(path, text.encode("utf-8"))


def _load_json_safe(path: Path, file_type: str = "file") -> Optional[Dict[str, Any]]:
    """Load JSON file with graceful error handling.

    Returns None on parse errors instead of raising.
    """
    if not path.exists():
        return None

    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        logger.warning("Corrupt %s at %s: %s", file_type, path, e)
        return None
    except OSError as e:
        logger.warning("Failed to read %s at %s: %s", file_type, path, e)
        return None


# -----------------------------------------------------------------------------
# Prompt Artifacts
# -----------------------------------------------------------------------------


def write_input(path: Path, payload: bytes) -> Path:
    """Write a prompt artifact byte-for-byte."""
    _atomic_write_bytes(path, payload)
    return path


def read_input_bytes(run_dir: Path) -> bytes:
    """Read a run's ``input.md`` exactly as it was sent.

    Raises:
        FileNotFoundError: If the run has no input.md.
    """
    return (run_dir / INPUT_FILE).read_bytes()


def next_continue_input(run_dir: Path) -> Path:
    """Return the first unused ``input.continue-<n>.md`` path (n starts at 1)."""
    n = 1
    while (run_dir / CONTINUE_INPUT_TEMPLATE.format(n=n)).exists():
        n += 1
    return run_dir / CONTINUE_INPUT_TEMPLATE.format(n=n)


# -----------------------------------------------------------------------------
# Params
# -----------------------------------------------------------------------------


def write_params(run_dir: Path, params: Dict[str, Any]) -> None:
    """Write the run's launch parameters to params.json atomically."""
    _atomic_write_json(run_dir / PARAMS_FILE, params)


def read_params(run_dir: Path) -> Optional[Dict[str, Any]]:
    """Read params.json, or None when missing or corrupt."""
    return _load_json_safe(run_dir / PARAMS_FILE, "params")


# -----------------------------------------------------------------------------
# Report and Logs
# -----------------------------------------------------------------------------


def write_report(run_dir: Path, text: str) -> Path:
    return write_report_bytes(run_dir, text.encode("utf-8"))


def write_report_bytes(run_dir: Path, payload: bytes) -> Path:
    path = run_dir / REPORT_FILE
    _atomic_write_bytes(path, payload)
    return path


def read_report_bytes(run_dir: Path) -> Optional[bytes]:
    """Read report.md as bytes, or None when absent."""
    try:
        return (run_dir / REPORT_FILE).read_bytes()
    except FileNotFoundError:
        return None


def read_report(run_dir: Path) -> Optional[str]:
    """Read report.md, or None when absent."""
    path = run_dir / REPORT_FILE
    if not path.is_file():
        return None
    return path.read_text(encoding="utf-8")


def count_lines(path: Path) -> int:
    """Count newline-terminated lines in ``path`` (0 when missing)."""
    if not path.exists():
        return 0
    count = 0
    with open(path, "rb") as f:
        for _ in f:
            count += 1
    return count


def tail_lines(path: Path, limit: int = 5) -> List[str]:
    """Return the last ``limit`` non-blank lines of a text file."""
    if not path.exists():
        return []
    window: deque = deque(maxlen=limit)
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            line = line.rstrip("\n")
            if line.strip():
                window.append(line)
    return list(window)
