"""Artifact directory layout for provider runs."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from agent_sandbox.sandbox.models import RunResult
from agent_sandbox.sandbox.whitelist import NO_TASK_KEY, task_key

TRANSCRIPT_FILENAME = "run.log"
RESULT_FILENAME = "result.json"
PROMPT_FILENAME = "prompt.txt"


def timestamp_dirname(moment: datetime) -> str:
    """ISO-8601 UTC timestamp usable as a directory name on every platform."""

    return moment.astimezone(UTC).isoformat().replace(":", "-")


@dataclass(slots=True)
class RunArtifacts:
    """Materialized artifact paths for one run."""

    run_dir: Path
    transcript_path: Path
    result_path: Path
    prompt_path: Path

    def relative_to(self, working_dir: Path) -> str:
        try:
            return self.run_dir.relative_to(working_dir).as_posix()
        except ValueError:
            return str(self.run_dir)


class ArtifactStore:
    """Creates ``<root>/<dirname>/<taskKey>/<timestamp>/`` run directories."""

    def __init__(self, working_dir: Path, *, dirname: str = "artifacts") -> None:
        self.working_dir = working_dir
        self.root_dir = working_dir / dirname

    def materialize(self, task_ref: str | None, *, now: datetime | None = None) -> RunArtifacts:
        key = task_key(task_ref) or NO_TASK_KEY
        run_dir = self.root_dir / key / timestamp_dirname(now or datetime.now(tz=UTC))
        run_dir.mkdir(parents=True, exist_ok=True)
        return RunArtifacts(
            run_dir=run_dir,
            transcript_path=run_dir / TRANSCRIPT_FILENAME,
            result_path=run_dir / RESULT_FILENAME,
            prompt_path=run_dir / PROMPT_FILENAME,
        )


def write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, "utf-8")


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    write_text(path, json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True))


def write_run_result(path: Path, result: RunResult) -> None:
    write_json(path, result.to_dict())


def read_run_result(path: Path) -> dict[str, Any]:
    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload
