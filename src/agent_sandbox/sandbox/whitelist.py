"""Per-task whitelist of paths an agent run may modify."""

from __future__ import annotations

import logging
from pathlib import Path

from agent_sandbox.sandbox.models import normalize_repo_path

logger = logging.getLogger(__name__)

NO_TASK_KEY = "NO-TASK"

Whitelist = tuple[str, ...]


def task_key(task_ref: str | None) -> str:
    """Task id is the first segment of a task reference such as ``T-12/notes``."""

    return (task_ref or "").split("/")[0].strip()


def whitelist_path(working_dir: Path, task_ref: str | None) -> Path | None:
    key = task_key(task_ref)
    if not key:
        return None
    return working_dir / "ai" / "tasks" / key / "whitelist.txt"


def parse_whitelist(text: str) -> Whitelist:
    """Parse one entry per line, skipping blanks and ``#`` comments."""

    entries: list[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        entry = normalize_repo_path(stripped)
        if entry and entry not in entries:
            entries.append(entry)
    return tuple(entries)


def read_whitelist(working_dir: Path, task_ref: str | None) -> Whitelist:
    """Load the task whitelist; a missing task or file means no restriction."""

    path = whitelist_path(working_dir, task_ref)
    if path is None or not path.is_file():
        return ()
    whitelist = parse_whitelist(path.read_text("utf-8"))
    logger.debug("Loaded %d whitelist entries from %s", len(whitelist), path)
    return whitelist
