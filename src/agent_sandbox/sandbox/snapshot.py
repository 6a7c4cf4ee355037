"""Working-tree snapshots built from ``git status``."""

from __future__ import annotations

import logging
from pathlib import Path

from agent_sandbox.sandbox.git import GitClient, GitCommandError
from agent_sandbox.sandbox.models import Snapshot

logger = logging.getLogger(__name__)

_STATUS_PREFIX_LEN = 3


def parse_porcelain(text: str) -> list[str]:
    """Extract paths from ``git status --porcelain=v1 -z`` output.

    Rename and copy records carry a second NUL-terminated field with the
    source path. A rename reports both sides since both differ from HEAD;
    the source of a copy is unchanged and skipped.
    """

    paths: list[str] = []
    records = iter(text.split("\0"))
    for record in records:
        if len(record) <= _STATUS_PREFIX_LEN:
            continue
        status_code = record[:2]
        paths.append(record[_STATUS_PREFIX_LEN:])
        if "R" in status_code or "C" in status_code:
            source = next(records, "")
            if source and "R" in status_code:
                paths.append(source)
    return paths


def capture(working_dir: Path, git: GitClient | None = None) -> Snapshot:
    """Return the uncommitted paths of ``working_dir``.

    Outside of a repository, or when git fails, the snapshot is empty and the
    run continues without enforcement.
    """

    client = git or GitClient()
    if not client.is_repository(working_dir):
        logger.info("Not a git working tree, snapshot is empty: %s", working_dir)
        return Snapshot.empty()
    try:
        return Snapshot.from_paths(parse_porcelain(client.status(working_dir)))
    except GitCommandError as error:
        logger.warning("Snapshot unavailable for %s: %s", working_dir, error)
        return Snapshot.empty()
