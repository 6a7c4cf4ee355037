"""Controllers for sandbox CLI commands."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from agent_sandbox.config import Settings
from agent_sandbox.sandbox.git import GitClient
from agent_sandbox.sandbox.models import ExitEvent, RunRequest, RunResult
from agent_sandbox.sandbox.orchestrator import ProviderOrchestrator
from agent_sandbox.sandbox.sessions import OutputCallback, SessionNotFound
from agent_sandbox.sandbox.snapshot import capture
from agent_sandbox.sandbox.whitelist import read_whitelist


@dataclass(slots=True)
class RunCommand:
    """CLI input for a one-shot provider run."""

    working_dir: Path
    task_ref: str | None
    provider: str | None
    prompt: str | None
    dry_run: bool
    timeout_seconds: float | None = None
    env: dict[str, str] | None = None


@dataclass(slots=True)
class SessionCommand:
    """CLI input for an interactive provider session."""

    working_dir: Path
    provider: str | None
    prompt: str | None
    env: dict[str, str] | None = None


@dataclass(slots=True)
class SnapshotCommand:
    """CLI input for listing uncommitted paths."""

    working_dir: Path
    task_ref: str | None = None


@dataclass(slots=True)
class SessionOutcome:
    """How an interactive session ended."""

    exit_code: int | None
    started: bool
    lines: list[str]


class SandboxCliController:
    """Coordinates orchestrator runs and inspection for the CLI."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = Settings.from_env()
            self._settings.validate()
        return self._settings

    def run(self, command: RunCommand, on_output: OutputCallback | None = None) -> RunResult:
        orchestrator = ProviderOrchestrator(settings=self.settings)
        return orchestrator.run(
            command.working_dir,
            RunRequest(
                task_ref=command.task_ref,
                provider=command.provider,
                prompt=command.prompt,
                dry_run=command.dry_run,
                env=command.env,
                timeout_seconds=command.timeout_seconds,
            ),
            on_output=on_output,
        )

    def session(
        self,
        command: SessionCommand,
        input_lines: Iterable[str],
        on_output: OutputCallback | None = None,
    ) -> SessionOutcome:
        """Forward ``input_lines`` to a live session until input ends or it exits.

        End of input closes the session's stdin; ``KeyboardInterrupt`` kills it.
        """

        orchestrator = ProviderOrchestrator(settings=self.settings)
        exited = threading.Event()
        exit_codes: list[int | None] = []

        def _on_exit(event: ExitEvent) -> None:
            exit_codes.append(event.exit_code)
            exited.set()

        started = orchestrator.start_interactive(
            command.working_dir,
            RunRequest(provider=command.provider, prompt=command.prompt, env=command.env),
            on_output=on_output,
            on_exit=_on_exit,
        )
        lines = [f"Provider: {started.provider}"]
        lines.extend(f"Warning: {error}" for error in started.errors)
        if not started.ok or started.session_id is None:
            return SessionOutcome(exit_code=None, started=False, lines=lines)

        session_id = started.session_id
        try:
            for line in input_lines:
                if exited.is_set():
                    break
                text = line if line.endswith("\n") else f"{line}\n"
                orchestrator.write(session_id, text)
            if not exited.is_set():
                orchestrator.close_input(session_id)
            exited.wait()
        except SessionNotFound:
            exited.wait()
        except KeyboardInterrupt:
            orchestrator.kill(session_id)
            exited.wait()
            lines.append("Session interrupted.")

        exit_code = exit_codes[0] if exit_codes else None
        lines.append(f"Session {session_id} exited with code {exit_code}")
        return SessionOutcome(exit_code=exit_code, started=True, lines=lines)

    def snapshot(self, command: SnapshotCommand) -> list[str]:
        working_dir = command.working_dir.resolve()
        git = GitClient(self.settings.sandbox.git_executable)
        if not git.is_repository(working_dir):
            return [f"Not a git working tree: {working_dir}"]

        snapshot = capture(working_dir, git)
        lines = [f"Uncommitted paths: {len(snapshot)}"]
        lines.extend(f"  {path}" for path in snapshot)
        if command.task_ref:
            whitelist = read_whitelist(working_dir, command.task_ref)
            if whitelist:
                lines.append(f"Whitelist for {command.task_ref}: {', '.join(whitelist)}")
            else:
                lines.append(f"Whitelist for {command.task_ref}: empty (all changes allowed)")
        return lines


def format_run_result(result: RunResult) -> list[str]:
    lines = [
        f"Run {result.state.value}: provider={result.provider} "
        f"exit_code={result.exit_code} ok={result.ok}",
        f"Artifacts: {result.artifacts_dir or '-'}",
    ]
    if result.timed_out:
        lines.append("Timed out.")
    lines.append(f"Changed: {', '.join(result.changed) if result.changed else '-'}")
    lines.append(f"Blocked: {', '.join(result.blocked) if result.blocked else '-'}")
    lines.extend(
        f"Revert failed: {failure.path} ({failure.operation}): {failure.message}"
        for failure in result.revert_failures
    )
    return lines
