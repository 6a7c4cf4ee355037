from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import allure

from agent_sandbox.sandbox.artifacts import (
    ArtifactStore,
    read_run_result,
    timestamp_dirname,
    write_run_result,
)
from agent_sandbox.sandbox.models import RevertFailure, RunResult, RunState
from agent_sandbox.sandbox.whitelist import (
    parse_whitelist,
    read_whitelist,
    task_key,
    whitelist_path,
)
from tests.conftest import write_whitelist

pytestmark = [
    allure.epic("Change Control"),
    allure.feature("Task Whitelist & Run Artifacts"),
]


def test_task_key_is_first_reference_segment() -> None:
    assert task_key("T-12/notes/today") == "T-12"
    assert task_key("T-12") == "T-12"
    assert task_key(None) == ""
    assert task_key("") == ""


def test_parse_whitelist_skips_comments_and_normalizes() -> None:
    text = "# allowed paths\nsrc/\n\n  ./docs/guide.md  \nsrc\nlib\\shared\n"
    assert parse_whitelist(text) == ("src", "docs/guide.md", "lib/shared")


def test_read_whitelist_uses_task_key(tmp_path: Path) -> None:
    write_whitelist(tmp_path, "T-4", ["src", "tests"])

    assert read_whitelist(tmp_path, "T-4/subtask") == ("src", "tests")
    assert whitelist_path(tmp_path, "T-4/subtask") == tmp_path / "ai/tasks/T-4/whitelist.txt"


def test_read_whitelist_missing_means_unrestricted(tmp_path: Path) -> None:
    assert read_whitelist(tmp_path, "T-404") == ()
    assert read_whitelist(tmp_path, None) == ()
    assert whitelist_path(tmp_path, None) is None


def test_timestamp_dirname_has_no_colons() -> None:
    moment = datetime(2026, 3, 4, 5, 6, 7, 890000, tzinfo=UTC)
    assert timestamp_dirname(moment) == "2026-03-04T05-06-07.890000+00-00"


def test_materialize_creates_task_directory(tmp_path: Path) -> None:
    moment = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)

    artifacts = ArtifactStore(tmp_path).materialize("T-9/notes", now=moment)

    assert artifacts.run_dir == tmp_path / "artifacts" / "T-9" / "2026-01-02T03-04-05+00-00"
    assert artifacts.run_dir.is_dir()
    assert artifacts.transcript_path.name == "run.log"
    assert artifacts.relative_to(tmp_path) == "artifacts/T-9/2026-01-02T03-04-05+00-00"


def test_materialize_without_task_uses_placeholder(tmp_path: Path) -> None:
    artifacts = ArtifactStore(tmp_path, dirname="runs").materialize(None)
    assert artifacts.run_dir.parent == tmp_path / "runs" / "NO-TASK"


def test_run_result_is_persisted_as_json(tmp_path: Path) -> None:
    result = RunResult(
        ok=False,
        provider="codex",
        artifacts_dir="artifacts/T-1/x",
        changed=("src/a.py", "lib/b.py"),
        blocked=("lib/b.py",),
        state=RunState.FAILED,
        exit_code=2,
        revert_failures=(RevertFailure("lib/b.py", "clean", "permission denied"),),
    )

    write_run_result(tmp_path / "result.json", result)
    payload = read_run_result(tmp_path / "result.json")

    assert payload == result.to_dict()
    assert payload["state"] == "failed"
    assert payload["revert_failures"] == [
        {"path": "lib/b.py", "operation": "clean", "message": "permission denied"},
    ]
