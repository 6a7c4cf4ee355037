"""Domain models for provider sessions, snapshots and runs."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class StreamType(str, Enum):
    """Child process output stream."""

    STDOUT = "stdout"
    STDERR = "stderr"


class RunState(str, Enum):
    """Lifecycle states of one orchestrated run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class OutputEvent:
    """One sanitized chunk of child process output."""

    stream: StreamType
    data: str
    timestamp: datetime
    session_id: str | None = None


@dataclass(frozen=True, slots=True)
class ExitEvent:
    """Emitted once when a session's process has exited."""

    session_id: str
    exit_code: int | None


def normalize_repo_path(value: str) -> str:
    """Normalize a repository-relative path or whitelist entry for comparison."""

    normalized = value.strip().replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized.rstrip("/")


@dataclass(frozen=True, slots=True)
class Snapshot:
    """Paths reported as modified, added, deleted or untracked at one instant.

    Order is the order reported by version control; comparisons use set semantics.
    """

    paths: tuple[str, ...] = ()

    @classmethod
    def empty(cls) -> Snapshot:
        return cls()

    @classmethod
    def from_paths(cls, paths: Iterable[str]) -> Snapshot:
        seen: set[str] = set()
        ordered: list[str] = []
        for raw in paths:
            path = normalize_repo_path(raw)
            if not path or path in seen:
                continue
            seen.add(path)
            ordered.append(path)
        return cls(paths=tuple(ordered))

    def __contains__(self, path: object) -> bool:
        return path in self.paths

    def __iter__(self) -> Iterator[str]:
        return iter(self.paths)

    def __len__(self) -> int:
        return len(self.paths)

    def difference(self, other: Snapshot) -> list[str]:
        """Return paths present here but not in ``other`` (``self - other``)."""

        excluded = set(other.paths)
        return [path for path in self.paths if path not in excluded]


@dataclass(frozen=True, slots=True)
class RevertFailure:
    """A blocked path that could not be rolled back."""

    path: str
    operation: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "operation": self.operation, "message": self.message}


@dataclass(slots=True)
class ReconcileResult:
    """Outcome of diffing two snapshots against a whitelist."""

    changed: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    revert_failures: list[RevertFailure] = field(default_factory=list)


@dataclass(slots=True)
class RunOnceResult:
    """Outcome of a one-shot process execution."""

    ok: bool
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False


@dataclass(slots=True)
class SessionStart:
    """Returned by ``ProcessSessionRegistry.start``.

    ``errors`` holds failures raised by the ``on_started`` hook; they do not
    abort the session.
    """

    session_id: str
    pid: int
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RunRequest:
    """Caller input for one provider run."""

    task_ref: str | None = None
    provider: str | None = None
    prompt: str | None = None
    dry_run: bool = False
    env: dict[str, str] | None = None
    timeout_seconds: float | None = None


@dataclass(frozen=True, slots=True)
class RunResult:
    """Result of one orchestrated run, persisted next to the transcript."""

    ok: bool
    provider: str
    artifacts_dir: str
    changed: tuple[str, ...] = ()
    blocked: tuple[str, ...] = ()
    state: RunState = RunState.COMPLETED
    exit_code: int = 0
    timed_out: bool = False
    revert_failures: tuple[RevertFailure, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "provider": self.provider,
            "artifacts_dir": self.artifacts_dir,
            "changed": list(self.changed),
            "blocked": list(self.blocked),
            "state": self.state.value,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "revert_failures": [failure.to_dict() for failure in self.revert_failures],
        }


@dataclass(slots=True)
class InteractiveSession:
    """Handle returned when a provider is started as a long-lived session."""

    ok: bool
    provider: str
    session_id: str | None
    errors: list[str] = field(default_factory=list)
