"""Thin git wrapper used for working-tree snapshots and reverts."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path

from agent_sandbox.sandbox.models import RevertFailure

logger = logging.getLogger(__name__)

_GIT_TIMEOUT_SECONDS = 120


class GitCommandError(RuntimeError):
    """A git invocation could not be started or exited non-zero."""

    def __init__(self, message: str, *, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class GitClient:
    """Runs git commands scoped to a working directory.

    All paths exchanged with this class are relative to the repository root,
    which is what ``git status --porcelain`` reports.
    """

    def __init__(self, executable: str = "git") -> None:
        self.executable = executable

    def is_repository(self, cwd: Path) -> bool:
        try:
            completed = self._run(cwd, ["rev-parse", "--is-inside-work-tree"])
        except GitCommandError:
            return False
        return completed.returncode == 0 and completed.stdout.strip() == "true"

    def toplevel(self, cwd: Path) -> Path:
        completed = self._run(cwd, ["rev-parse", "--show-toplevel"])
        if completed.returncode != 0:
            raise GitCommandError(
                f"git rev-parse --show-toplevel failed in {cwd}",
                returncode=completed.returncode,
                stderr=completed.stderr,
            )
        return Path(completed.stdout.strip())

    def status(self, cwd: Path) -> str:
        """Return NUL-separated ``git status --porcelain=v1`` output."""

        completed = self._run(
            cwd,
            ["status", "--porcelain=v1", "-z", "--untracked-files=all"],
        )
        if completed.returncode != 0:
            raise GitCommandError(
                f"git status failed in {cwd}: {completed.stderr.strip()}",
                returncode=completed.returncode,
                stderr=completed.stderr,
            )
        return completed.stdout

    def revert(self, cwd: Path, paths: Sequence[str]) -> list[RevertFailure]:
        """Roll back ``paths`` to HEAD; paths missing from HEAD are deleted.

        Each git operation is issued once for the whole batch. If the batched
        call fails it is repeated path by path, so one bad path is reported
        without leaving the others in place.
        """

        if not paths:
            return []

        try:
            root = self.toplevel(cwd)
        except GitCommandError as error:
            return [RevertFailure(path, "resolve-root", str(error)) for path in paths]

        in_head = self._paths_in_head(root, paths)
        tracked = [path for path in paths if path in in_head]
        fresh = [path for path in paths if path not in in_head]

        failures: list[RevertFailure] = []
        if tracked:
            failures.extend(
                self._run_batched(root, ["checkout", "HEAD", "--"], tracked, operation="checkout"),
            )
        if fresh:
            failures.extend(
                self._run_batched(
                    root,
                    ["rm", "--cached", "--ignore-unmatch", "--quiet", "--"],
                    fresh,
                    operation="unstage",
                ),
            )
            failures.extend(
                self._run_batched(root, ["clean", "-f", "-q", "--"], fresh, operation="clean"),
            )
        return failures

    def _paths_in_head(self, root: Path, paths: Sequence[str]) -> set[str]:
        try:
            completed = self._run(
                root,
                ["ls-tree", "-r", "-z", "--name-only", "HEAD", "--", *paths],
            )
        except GitCommandError:
            return set()
        if completed.returncode != 0:
            # no commits yet: nothing is in HEAD
            return set()
        return {entry for entry in completed.stdout.split("\0") if entry}

    def _run_batched(
        self,
        root: Path,
        args: list[str],
        paths: Sequence[str],
        *,
        operation: str,
    ) -> list[RevertFailure]:
        try:
            completed = self._run(root, [*args, *paths])
        except GitCommandError as error:
            return [RevertFailure(path, operation, str(error)) for path in paths]
        if completed.returncode == 0:
            return []

        logger.warning(
            "Batched git %s failed for %d paths, retrying one by one: %s",
            operation,
            len(paths),
            completed.stderr.strip(),
        )
        failures: list[RevertFailure] = []
        for path in paths:
            try:
                single = self._run(root, [*args, path])
            except GitCommandError as error:
                failures.append(RevertFailure(path, operation, str(error)))
                continue
            if single.returncode != 0:
                failures.append(
                    RevertFailure(path, operation, single.stderr.strip() or "git exited non-zero"),
                )
        return failures

    def _run(self, cwd: Path, args: list[str]) -> subprocess.CompletedProcess[str]:
        # paths are agent-chosen file names, never glob patterns
        try:
            return subprocess.run(  # noqa: S603
                [self.executable, "--literal-pathspecs", *args],
                cwd=cwd,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=_GIT_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as error:
            raise GitCommandError(f"Failed to run git {args[0]} in {cwd}: {error}") from error
