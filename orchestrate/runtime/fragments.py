"""
fragments.py - Load named capability fragments from the skill directories.

A fragment is a markdown document resolved by name from the configured
search directories:

    <work_dir>/.agents/skills/
        review/SKILL.md        # directory form (preferred)
        scratch.md             # single-file form
    <work_dir>/.claude/skills/
        ...

An optional YAML metadata block at the very start of the document
(opened by a ``---`` first line and closed by the next ``---`` line) is
parsed into ``Fragment.metadata`` and removed from the body. The rest of the
document is returned verbatim.

Usage:
    from orchestrate.runtime.fragments import load_fragment, load_fragments

    fragment = load_fragment("review", work_dir)
    fragments = load_fragments(["review", "scratch"], work_dir)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml

from orchestrate.config.runtime_config import get_skills_dirs

from .errors import NotFound, UsageError

# Module logger
logger = logging.getLogger(__name__)

METADATA_MARKER = "---"


@dataclass(frozen=True)
class Fragment:
    """A loaded fragment.

    Attributes:
        name: The identifier the fragment was requested by.
        body: Document text with the metadata block removed.
        metadata: Parsed metadata block (empty when absent or unparseable).
        path: The file the fragment was read from.
    """

    name: str
    body: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    path: Optional[Path] = None


def strip_metadata_block(text: str) -> Tuple[Optional[str], str]:
    """Split a document into its leading metadata block and body.

    The block only counts when the first line is exactly the marker and a
    second marker line closes it. A document with an unclosed opening
    marker has no metadata block and is returned whole.

    Args:
        text: The full document text.

    Returns:
        Tuple of (metadata_text or None, body).
    """
    lines = text.splitlines(keepends=True)
    if not lines or lines[0].rstrip("\r\n") != METADATA_MARKER:
        return None, text

    for idx in range(1, len(lines)):
        if lines[idx].rstrip("\r\n") == METADATA_MARKER:
            metadata_text = "".join(lines[1:idx])
            body = "".join(lines[idx + 1 :])
            return metadata_text, body

    return None, text


def _parse_metadata(metadata_text: Optional[str], source: Path) -> Dict[str, Any]:
    if not metadata_text or not metadata_text.strip():
        return {}
    try:
        parsed = yaml.safe_load(metadata_text)
    except yaml.YAMLError as e:
        logger.warning("Unparseable metadata block in %s: %s", source, e)
        return {}
    if not isinstance(parsed, dict):
        logger.warning("Metadata block in %s is not a mapping, ignoring", source)
        return {}
    return parsed


def get_fragment_dirs(work_dir: Path) -> List[Path]:
    """Return the configured fragment directories that exist, in search order.

    Relative entries are resolved against ``work_dir``.
    """
    dirs: List[Path] = []
    for entry in get_skills_dirs():
        candidate = Path(entry).expanduser()
        if not candidate.is_absolute():
            candidate = work_dir / candidate
        if candidate.is_dir() and candidate not in dirs:
            dirs.append(candidate)
    return dirs


def _candidate_paths(name: str, fragment_dirs: Sequence[Path]) -> List[Path]:
    candidates: List[Path] = []
    for directory in fragment_dirs:
        candidates.append(directory / name / "SKILL.md")
        candidates.append(directory / f"{name}.md")
    return candidates


def load_fragment(
    name: str,
    work_dir: Path,
    fragment_dirs: Optional[Sequence[Path]] = None,
) -> Fragment:
    """Load a fragment by name.

    Args:
        name: Fragment identifier (a directory or file stem under a skill dir).
        work_dir: Working directory that relative search dirs resolve against.
        fragment_dirs: Explicit search directories (defaults to config).

    Returns:
        The loaded Fragment.

    Raises:
        UsageError: If the name is empty or tries to escape the search dirs.
        NotFound: If no document resolves for the name.
    """
    name = name.strip()
    if not name:
        raise UsageError("Fragment name must not be empty")
    if name.startswith("/") or ".." in Path(name).parts:
        raise UsageError("Fragment name must be a relative identifier", value=name)

    dirs = list(fragment_dirs) if fragment_dirs is not None else get_fragment_dirs(work_dir)
    candidates = _candidate_paths(name, dirs)

    for path in candidates:
        if not path.is_file():
            continue
        text = path.read_text(encoding="utf-8")
        metadata_text, body = strip_metadata_block(text)
        logger.debug("Loaded fragment %s from %s", name, path)
        return Fragment(
            name=name,
            body=body,
            metadata=_parse_metadata(metadata_text, path),
            path=path,
        )

    searched = [str(d) for d in dirs] or [str(work_dir)]
    raise NotFound("Fragment", name, searched=searched)


def load_fragments(
    names: Sequence[str],
    work_dir: Path,
    fragment_dirs: Optional[Sequence[Path]] = None,
) -> List[Fragment]:
    """Load several fragments, preserving the caller's order."""
    return [load_fragment(name, work_dir, fragment_dirs) for name in names]
