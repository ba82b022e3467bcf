"""
paths.py - Working directory and session root resolution.

Every path the engine writes derives from the resolved working directory,
never from the process's current directory:

    <work_dir>/.orchestrate/            # session root (ORCHESTRATE_ROOT overrides,
                                        # but always inside <work_dir>)
      .gitignore                        # "*" and "!.gitignore"
      runs/agent-runs/<run_id>/         # one directory per run
      index/runs.jsonl                  # the run index

Usage:
    from orchestrate.runtime.paths import resolve_work_dir, SessionRoot

    work_dir = resolve_work_dir("/path/to/repo")
    root = SessionRoot(work_dir)
    run_id, run_dir = root.allocate_run_dir("gpt-5.3-codex")
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Tuple

from orchestrate.config.runtime_config import get_root_dirname, get_root_override

from .errors import UsageError
from .types import RunId, generate_run_id

# Module logger
logger = logging.getLogger(__name__)

RUNS_SUBDIR = Path("runs") / "agent-runs"
INDEX_SUBDIR = "index"
INDEX_FILE = "runs.jsonl"
GITIGNORE_CONTENT = "*\n!.gitignore\n"

# Attempts before giving up on a colliding run directory name
_MAX_ALLOCATION_ATTEMPTS = 5


def find_repo_root(start: Path) -> Path:
    """Return the nearest ancestor of ``start`` containing ``.git``, else ``start``."""
    start = start.resolve()
    for candidate in (start, *start.parents):
        if (candidate / ".git").exists():
            return candidate
    return start


def resolve_work_dir(override: Optional[str] = None) -> Path:
    """Resolve the working directory for a command.

    Args:
        override: Explicit directory (``-C``). Relative values resolve against
            the current directory.

    Returns:
        Absolute path to an existing directory.

    Raises:
        UsageError: If the override does not exist or is not a directory.
    """
    if override:
        path = Path(override).expanduser()
        if not path.is_absolute():
            path = Path.cwd() / path
        path = path.resolve()
        if not path.is_dir():
            raise UsageError("Working directory does not exist", value=str(override))
        return path
    return find_repo_root(Path.cwd())


class SessionRoot:
    """Filesystem layout of one working session root.

    Args:
        work_dir: Resolved working directory.
        root: Explicit root, absolute or relative to ``work_dir`` (defaults
            to ORCHESTRATE_ROOT, then ``<work_dir>/<root_dirname>``). It must
            resolve to a directory strictly inside ``work_dir``.
    """

    def __init__(self, work_dir: Path, root: Optional[Path] = None):
        self.work_dir = Path(work_dir).resolve()
        if root is None:
            override = get_root_override()
            if override:
                root = Path(override).expanduser()
            else:
                root = Path(get_root_dirname())
        root = Path(root)
        if not root.is_absolute():
            root = self.work_dir / root
        root = root.resolve()
        if self.work_dir not in root.parents:
            raise UsageError(
                "Session root must be a directory inside the working directory",
                value=str(root),
            )
        self.root = root

    @property
    def runs_dir(self) -> Path:
        return self.root / RUNS_SUBDIR

    @property
    def index_path(self) -> Path:
        return self.root / INDEX_SUBDIR / INDEX_FILE

    def run_dir(self, run_id: RunId) -> Path:
        """Return the directory for ``run_id`` (not created)."""
        if not run_id or "/" in run_id or run_id in (".", ".."):
            raise UsageError("Invalid run id", value=run_id)
        return self.runs_dir / run_id

    def ensure(self) -> None:
        """Create the root layout and its self-ignoring .gitignore."""
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        self.index_path.parent.mkdir(parents=True, exist_ok=True)
        gitignore = self.root / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text(GITIGNORE_CONTENT, encoding="utf-8")
            logger.debug("Created %s", gitignore)

    def allocate_run_dir(self, model: str) -> Tuple[RunId, Path]:
        """Create a fresh run directory for ``model``.

        The directory is created with ``exist_ok=False`` so two allocations
        can never share a directory; a collision regenerates the id.

        Returns:
            Tuple of (run_id, run_dir).
        """
        self.ensure()
        last_error: Optional[FileExistsError] = None
        for _ in range(_MAX_ALLOCATION_ATTEMPTS):
            run_id = generate_run_id(model)
            run_dir = self.runs_dir / run_id
            try:
                run_dir.mkdir(parents=False, exist_ok=False)
            except FileExistsError as e:
                last_error = e
                logger.debug("Run directory %s already exists, regenerating id", run_dir)
                continue
            return run_id, run_dir
        raise OSError(f"Could not allocate a unique run directory under {self.runs_dir}") from last_error
