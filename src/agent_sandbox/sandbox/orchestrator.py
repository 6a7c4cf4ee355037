"""Provider execution façade: run an agent CLI under change control."""

from __future__ import annotations

import logging
from pathlib import Path

from agent_sandbox.config import Settings
from agent_sandbox.sandbox.artifacts import (
    ArtifactStore,
    RunArtifacts,
    write_run_result,
    write_text,
)
from agent_sandbox.sandbox.enforcer import ChangeControlEnforcer, is_allowed_edit
from agent_sandbox.sandbox.git import GitClient, GitCommandError
from agent_sandbox.sandbox.models import (
    InteractiveSession,
    OutputEvent,
    ReconcileResult,
    RunRequest,
    RunResult,
    RunState,
    Snapshot,
)
from agent_sandbox.sandbox.providers import ResolvedProvider, load_provider_registry
from agent_sandbox.sandbox.sessions import (
    ExitCallback,
    OutputCallback,
    ProcessSessionRegistry,
    SessionHandle,
    SpawnError,
)
from agent_sandbox.sandbox.snapshot import capture
from agent_sandbox.sandbox.whitelist import Whitelist, read_whitelist

logger = logging.getLogger(__name__)

DEFAULT_PROMPT = (
    "Read the task from the ai/tasks folder and start or continue the implementation "
    "using strong software engineering principles. Update necessary files and "
    "documentation after completion."
)


def effective_prompt(prompt: str | None) -> str:
    if prompt and prompt.strip():
        return prompt
    return DEFAULT_PROMPT


class ProviderOrchestrator:
    """Entry point for callers: one-shot runs and interactive sessions.

    The session registry is owned by the orchestrator instance, so independent
    orchestrators never see each other's sessions.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        sessions: ProcessSessionRegistry | None = None,
        git: GitClient | None = None,
        enforcer: ChangeControlEnforcer | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.git = git or GitClient(self.settings.sandbox.git_executable)
        self.sessions = sessions or ProcessSessionRegistry(
            kill_grace_seconds=self.settings.sandbox.kill_grace_seconds,
        )
        self.enforcer = enforcer or ChangeControlEnforcer(self.git)

    def resolve_provider(self, working_dir: Path, name: str | None) -> ResolvedProvider:
        registry = load_provider_registry(
            working_dir,
            default_provider=self.settings.providers.default_provider,
        )
        return registry.resolve(name)

    def run(
        self,
        working_dir: Path,
        request: RunRequest,
        on_output: OutputCallback | None = None,
    ) -> RunResult:
        """Run the provider once with the prompt on stdin and reconcile its changes.

        Dry runs still execute the process but never reconcile, so ``changed``
        and ``blocked`` stay empty. Enforcement problems are logged and only
        weaken the guarantee; a ``RunResult`` is always returned.
        """

        working_dir = Path(working_dir).resolve()
        state = RunState.PENDING
        provider = self.resolve_provider(working_dir, request.provider)
        prompt = effective_prompt(request.prompt)
        try:
            artifacts = ArtifactStore(
                working_dir,
                dirname=self.settings.sandbox.artifacts_dirname,
            ).materialize(request.task_ref)
            if self.settings.sandbox.persist_prompt:
                write_text(artifacts.prompt_path, prompt)
        except OSError:
            logger.exception(
                "Could not create artifacts for provider %s, run skipped",
                provider.name,
            )
            return RunResult(
                ok=False,
                provider=provider.name,
                artifacts_dir="",
                state=RunState.FAILED,
                exit_code=-1,
            )
        logger.info(
            "Run %s: provider=%s task=%s dry_run=%s artifacts=%s",
            state.value,
            provider.name,
            request.task_ref or "-",
            request.dry_run,
            artifacts.run_dir,
        )

        versioned = self.git.is_repository(working_dir)
        enforce = versioned and not request.dry_run
        whitelist: Whitelist = ()
        before: Snapshot | None = None
        if enforce:
            whitelist, before = self._prepare_enforcement(working_dir, request.task_ref)
        elif not versioned:
            logger.info("%s is not under git, change control is off for this run", working_dir)

        transcript: list[str] = []

        def _forward(event: OutputEvent) -> None:
            transcript.append(event.data)
            if on_output is not None:
                on_output(event)

        state = RunState.RUNNING
        logger.info("Run %s: %s", state.value, provider.command)
        try:
            outcome = self.sessions.run_once(
                provider.command,
                working_dir,
                input=prompt + "\n",
                env=request.env,
                on_output=_forward,
                timeout_seconds=request.timeout_seconds or self.settings.run_timeout,
            )
        finally:
            try:
                write_text(artifacts.transcript_path, "".join(transcript))
            except OSError:
                logger.exception("Failed to persist transcript to %s", artifacts.transcript_path)

        reconciled = ReconcileResult()
        if before is not None:
            reconciled = self._reconcile(working_dir, before, whitelist, artifacts)

        state = RunState.COMPLETED if outcome.ok else RunState.FAILED
        result = RunResult(
            ok=outcome.ok,
            provider=provider.name,
            artifacts_dir=artifacts.relative_to(working_dir),
            changed=tuple(reconciled.changed),
            blocked=tuple(reconciled.blocked),
            state=state,
            exit_code=outcome.exit_code,
            timed_out=outcome.timed_out,
            revert_failures=tuple(reconciled.revert_failures),
        )
        try:
            write_run_result(artifacts.result_path, result)
        except OSError:
            logger.exception("Failed to persist run result to %s", artifacts.result_path)
        logger.info(
            "Run %s: exit_code=%s changed=%d blocked=%d",
            state.value,
            outcome.exit_code,
            len(result.changed),
            len(result.blocked),
        )
        return result

    def start_interactive(
        self,
        working_dir: Path,
        request: RunRequest,
        on_output: OutputCallback | None = None,
        on_exit: ExitCallback | None = None,
    ) -> InteractiveSession:
        """Start the provider as a long-lived session fed with the prompt.

        Interactive sessions are not reconciled: the caller owns their lifetime.
        """

        working_dir = Path(working_dir).resolve()
        provider = self.resolve_provider(working_dir, request.provider)
        prompt = effective_prompt(request.prompt)

        def _send_prompt(handle: SessionHandle) -> None:
            handle.write(prompt + "\n")

        try:
            started = self.sessions.start(
                provider.command,
                working_dir,
                env=request.env,
                on_output=on_output,
                on_exit=on_exit,
                on_started=_send_prompt,
            )
        except SpawnError as error:
            logger.warning("Could not start provider %s: %s", provider.name, error)
            return InteractiveSession(
                ok=False,
                provider=provider.name,
                session_id=None,
                errors=[str(error)],
            )
        return InteractiveSession(
            ok=True,
            provider=provider.name,
            session_id=started.session_id,
            errors=started.errors,
        )

    def write(self, session_id: str, text: str) -> None:
        self.sessions.write(session_id, text)

    def close_input(self, session_id: str) -> None:
        self.sessions.close_input(session_id)

    def kill(self, session_id: str) -> None:
        self.sessions.kill(session_id)

    def _prepare_enforcement(
        self,
        working_dir: Path,
        task_ref: str | None,
    ) -> tuple[Whitelist, Snapshot | None]:
        try:
            whitelist = read_whitelist(working_dir, task_ref)
        except (OSError, UnicodeDecodeError):
            logger.exception("Whitelist unreadable for task %s, change control is off", task_ref)
            return (), None
        return whitelist, self._own_output_filtered(working_dir, capture(working_dir, self.git))

    def _reconcile(
        self,
        working_dir: Path,
        before: Snapshot,
        whitelist: Whitelist,
        artifacts: RunArtifacts,
    ) -> ReconcileResult:
        try:
            after = self._own_output_filtered(working_dir, capture(working_dir, self.git))
            return self.enforcer.reconcile(before, after, whitelist, working_dir)
        except Exception:
            logger.exception("Change control failed for run %s", artifacts.run_dir)
            return ReconcileResult()

    def _own_output_filtered(self, working_dir: Path, snapshot: Snapshot) -> Snapshot:
        """Drop the artifacts tree; transcripts are never subject to change control."""

        prefix = self._artifacts_prefix(working_dir)
        return Snapshot.from_paths(path for path in snapshot if not is_allowed_edit(path, [prefix]))

    def _artifacts_prefix(self, working_dir: Path) -> str:
        artifacts_root = working_dir / self.settings.sandbox.artifacts_dirname
        try:
            root = self.git.toplevel(working_dir).resolve()
            return artifacts_root.relative_to(root).as_posix()
        except (GitCommandError, ValueError):
            return self.settings.sandbox.artifacts_dirname
