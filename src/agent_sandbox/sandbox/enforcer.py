"""Classify changed paths against a whitelist and revert the rest."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

from agent_sandbox.sandbox.git import GitClient
from agent_sandbox.sandbox.models import ReconcileResult, Snapshot, normalize_repo_path

logger = logging.getLogger(__name__)


def is_allowed_edit(path: str, whitelist: Sequence[str]) -> bool:
    """True when ``path`` equals an entry or sits under an entry directory.

    Matching needs a ``/`` boundary: ``src`` allows ``src/a.py`` but not
    ``src-backup/a.py``. An empty whitelist allows everything.
    """

    if not whitelist:
        return True
    normalized = normalize_repo_path(path)
    for raw_entry in whitelist:
        entry = normalize_repo_path(raw_entry)
        if not entry:
            continue
        if normalized == entry or normalized.startswith(f"{entry}/"):
            return True
    return False


def find_blocked(changed: Sequence[str], whitelist: Sequence[str]) -> list[str]:
    if not whitelist:
        return []
    return [path for path in changed if not is_allowed_edit(path, whitelist)]


class ChangeControlEnforcer:
    """Reconciles a run's working-tree changes with the task whitelist."""

    def __init__(self, git: GitClient | None = None) -> None:
        self.git = git or GitClient()

    def reconcile(
        self,
        before: Snapshot,
        after: Snapshot,
        whitelist: Sequence[str],
        cwd: Path,
    ) -> ReconcileResult:
        """Diff ``after - before``, then revert changed paths outside the whitelist.

        ``blocked`` lists the paths judged disallowed. Paths that could not be
        rolled back are reported in ``revert_failures``; re-snapshot when
        certainty is needed.
        """

        changed = after.difference(before)
        blocked = find_blocked(changed, whitelist)
        if not blocked:
            return ReconcileResult(changed=changed)

        logger.warning(
            "Reverting %d change(s) outside the whitelist in %s: %s",
            len(blocked),
            cwd,
            ", ".join(blocked),
        )
        failures = self.git.revert(cwd, blocked)
        for failure in failures:
            logger.error(
                "Could not revert %s (%s): %s",
                failure.path,
                failure.operation,
                failure.message,
            )
        return ReconcileResult(changed=changed, blocked=blocked, revert_failures=failures)
