from __future__ import annotations

import os
from pathlib import Path

import allure
import pytest

from agent_sandbox.sandbox.enforcer import ChangeControlEnforcer, find_blocked, is_allowed_edit
from agent_sandbox.sandbox.git import GitClient
from agent_sandbox.sandbox.models import Snapshot
from agent_sandbox.sandbox.snapshot import capture
from tests.conftest import RecordingGit, git

pytestmark = [
    allure.epic("Change Control"),
    allure.feature("Change-Control Enforcer"),
]


@pytest.mark.parametrize(
    ("path", "whitelist", "allowed"),
    [
        ("src/a.ts", ["src"], True),
        ("src/nested/deep/a.ts", ["src"], True),
        ("src", ["src"], True),
        ("src-backup/file.ts", ["src"], False),
        ("srcfile.ts", ["src"], False),
        ("lib/b.ts", ["src"], False),
        ("README.md", ["README.md"], True),
        ("README.md.bak", ["README.md"], False),
        ("src/a.ts", ["./src/"], True),
        ("docs\\guide.md", ["docs"], True),
        ("anything/at/all.py", [], True),
    ],
)
def test_is_allowed_edit_requires_separator_boundary(
    path: str,
    whitelist: list[str],
    allowed: bool,
) -> None:
    assert is_allowed_edit(path, whitelist) is allowed


def test_find_blocked_partitions_changed_paths() -> None:
    whitelist = ["src", "docs/README.md"]
    changed = ["src/a.py", "docs/README.md", "docs/other.md", "src-old/x.py", "setup.cfg"]

    blocked = find_blocked(changed, whitelist)

    assert blocked == ["docs/other.md", "src-old/x.py", "setup.cfg"]
    assert all(not is_allowed_edit(path, whitelist) for path in blocked)
    assert all(is_allowed_edit(path, whitelist) for path in set(changed) - set(blocked))


def test_reconcile_blocks_and_reverts_paths_outside_whitelist(tmp_path: Path) -> None:
    fake_git = RecordingGit()
    enforcer = ChangeControlEnforcer(fake_git)

    result = enforcer.reconcile(
        Snapshot.empty(),
        Snapshot.from_paths(["src/a.ts", "lib/b.ts"]),
        ["src"],
        tmp_path,
    )

    assert result.changed == ["src/a.ts", "lib/b.ts"]
    assert result.blocked == ["lib/b.ts"]
    assert fake_git.revert_calls == [["lib/b.ts"]]
    assert result.revert_failures == []


def test_reconcile_with_empty_whitelist_allows_everything(tmp_path: Path) -> None:
    fake_git = RecordingGit()

    result = ChangeControlEnforcer(fake_git).reconcile(
        Snapshot.empty(),
        Snapshot.from_paths(["src/a.ts", "lib/b.ts"]),
        [],
        tmp_path,
    )

    assert result.changed == ["src/a.ts", "lib/b.ts"]
    assert result.blocked == []
    assert fake_git.revert_calls == []


def test_reconcile_same_snapshot_has_no_changes(tmp_path: Path) -> None:
    snapshot = Snapshot.from_paths(["src/a.ts", "lib/b.ts"])
    fake_git = RecordingGit()

    result = ChangeControlEnforcer(fake_git).reconcile(snapshot, snapshot, ["src"], tmp_path)

    assert result.changed == []
    assert result.blocked == []
    assert fake_git.revert_calls == []


def test_reconcile_ignores_paths_dirty_before_the_run(tmp_path: Path) -> None:
    fake_git = RecordingGit()

    result = ChangeControlEnforcer(fake_git).reconcile(
        Snapshot.from_paths(["lib/already-dirty.py"]),
        Snapshot.from_paths(["lib/already-dirty.py", "lib/new.py"]),
        ["src"],
        tmp_path,
    )

    assert result.changed == ["lib/new.py"]
    assert result.blocked == ["lib/new.py"]


def test_reconcile_is_idempotent(tmp_path: Path) -> None:
    before = Snapshot.from_paths(["x.py"])
    after = Snapshot.from_paths(["x.py", "src/a.py", "lib/b.py", "src-old/c.py"])
    enforcer = ChangeControlEnforcer(RecordingGit())

    first = enforcer.reconcile(before, after, ["src"], tmp_path)
    second = enforcer.reconcile(before, after, ["src"], tmp_path)

    assert first.blocked == second.blocked == ["lib/b.py", "src-old/c.py"]


def test_reconcile_reports_revert_failures_without_raising(tmp_path: Path) -> None:
    fake_git = RecordingGit(failing=["lib/stuck.py"])

    result = ChangeControlEnforcer(fake_git).reconcile(
        Snapshot.empty(),
        Snapshot.from_paths(["lib/stuck.py", "lib/fine.py"]),
        ["src"],
        tmp_path,
    )

    assert result.blocked == ["lib/stuck.py", "lib/fine.py"]
    assert [failure.path for failure in result.revert_failures] == ["lib/stuck.py"]


def test_reconcile_reverts_tracked_and_untracked_files_in_real_repo(git_repo: Path) -> None:
    before = capture(git_repo)
    (git_repo / "src" / "app.py").write_text("print('allowed edit')\n", "utf-8")
    (git_repo / "lib" / "util.py").write_text("VALUE = 2\n", "utf-8")
    (git_repo / "lib" / "extra.py").write_text("EXTRA = True\n", "utf-8")
    (git_repo / "README.md").unlink()
    after = capture(git_repo)

    result = ChangeControlEnforcer(GitClient()).reconcile(before, after, ["src"], git_repo)

    assert set(result.changed) == {"src/app.py", "lib/util.py", "lib/extra.py", "README.md"}
    assert set(result.blocked) == {"lib/util.py", "lib/extra.py", "README.md"}
    assert result.revert_failures == []
    assert (git_repo / "lib" / "util.py").read_text("utf-8") == "VALUE = 1\n"
    assert not (git_repo / "lib" / "extra.py").exists()
    assert (git_repo / "README.md").read_text("utf-8") == "readme\n"
    assert (git_repo / "src" / "app.py").read_text("utf-8") == "print('allowed edit')\n"
    assert set(capture(git_repo)) == {"src/app.py"}


@pytest.mark.skipif(os.name == "nt", reason="'*' is not a valid file name character on Windows")
def test_reconcile_treats_glob_characters_in_file_names_literally(git_repo: Path) -> None:
    before = capture(git_repo)
    (git_repo / "src" / "new.py").write_text("KEEP = True\n", "utf-8")
    (git_repo / "*.py").write_text("glob-named\n", "utf-8")
    after = capture(git_repo)

    result = ChangeControlEnforcer(GitClient()).reconcile(before, after, ["src"], git_repo)

    assert result.blocked == ["*.py"]
    assert result.revert_failures == []
    assert not (git_repo / "*.py").exists()
    assert (git_repo / "src" / "new.py").read_text("utf-8") == "KEEP = True\n"


def test_revert_unstages_and_removes_staged_new_file(git_repo: Path) -> None:
    (git_repo / "lib" / "staged.py").write_text("NEW = 1\n", "utf-8")
    git(git_repo, "add", "lib/staged.py")

    failures = GitClient().revert(git_repo, ["lib/staged.py"])

    assert failures == []
    assert not (git_repo / "lib" / "staged.py").exists()
    assert capture(git_repo) == Snapshot.empty()


def test_revert_continues_past_a_path_that_cannot_be_restored(git_repo: Path) -> None:
    (git_repo / "lib" / "util.py").write_text("VALUE = 3\n", "utf-8")
    (git_repo / "lib" / "scratch.py").write_text("TMP = 1\n", "utf-8")

    # "ghost.py" is neither in HEAD nor on disk; the other paths must still be reverted
    failures = GitClient().revert(git_repo, ["lib/util.py", "lib/scratch.py", "ghost.py"])

    assert (git_repo / "lib" / "util.py").read_text("utf-8") == "VALUE = 1\n"
    assert not (git_repo / "lib" / "scratch.py").exists()
    assert all(failure.path == "ghost.py" for failure in failures)


def test_revert_in_repository_without_commits_removes_new_files(tmp_path: Path) -> None:
    repo = tmp_path / "fresh"
    repo.mkdir()
    if GitClient().is_repository(tmp_path):
        pytest.skip("temporary directory is inside a git repository")
    try:
        git(repo, "init", "--quiet")
    except FileNotFoundError:
        pytest.skip("git executable not available")
    (repo / "draft.txt").write_text("draft\n", "utf-8")

    failures = GitClient().revert(repo, ["draft.txt"])

    assert failures == []
    assert not (repo / "draft.txt").exists()
