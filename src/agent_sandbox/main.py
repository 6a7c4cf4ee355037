"""CLI entrypoint for agent-sandbox."""

from pathlib import Path

import rich_click as click

from agent_sandbox import __version__
from agent_sandbox.config import Settings
from agent_sandbox.flows import run_task_batch
from agent_sandbox.sandbox.controllers import (
    RunCommand,
    SandboxCliController,
    SessionCommand,
    SnapshotCommand,
    format_run_result,
)
from agent_sandbox.sandbox.models import OutputEvent, StreamType

click.rich_click.USE_MARKDOWN = True

_WORKDIR_OPTION = click.option(
    "--workdir",
    "working_dir",
    type=click.Path(path_type=Path, exists=True, file_okay=False),
    default=Path("."),
    show_default=True,
    help="Repository the agent works in.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-sandbox")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Overrides AGENT_SANDBOX_LOG_LEVEL.",
)
@click.pass_context
def agent_sandbox(ctx: click.Context, log_level: str | None) -> None:
    """Run AI coding agents in a repository, reverting edits outside the task whitelist."""

    try:
        settings = Settings.from_env()
        if log_level:
            settings.log_level = log_level.upper()
        settings.validate()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    settings.configure_logging()
    ctx.obj = SandboxCliController(settings)


@agent_sandbox.command("run")
@_WORKDIR_OPTION
@click.option("--task", "task_ref", default=None, help="Task reference, e.g. T-12 or T-12/notes.")
@click.option("--provider", default=None, help="Provider key from ai/config/providers.json.")
@click.option("--prompt", default=None, help="Prompt sent on stdin. Defaults to the task prompt.")
@click.option(
    "--prompt-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Read the prompt from a file.",
)
@click.option(
    "--dry-run/--no-dry-run",
    default=False,
    show_default=True,
    help="Run the provider without reconciling its changes.",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Kill the provider after this many seconds.",
)
@click.option("--env", "env_pairs", multiple=True, help="KEY=VALUE added to the environment.")
@click.pass_obj
def run(  # noqa: PLR0913
    controller: SandboxCliController,
    working_dir: Path,
    task_ref: str | None,
    provider: str | None,
    prompt: str | None,
    prompt_file: Path | None,
    dry_run: bool,
    timeout_seconds: float | None,
    env_pairs: tuple[str, ...],
) -> None:
    """Run a provider once with the prompt on stdin, streaming its output."""

    if prompt is not None and prompt_file is not None:
        raise click.UsageError("Use either --prompt or --prompt-file, not both.")
    if prompt_file is not None:
        prompt = prompt_file.read_text("utf-8")

    result = controller.run(
        RunCommand(
            working_dir=working_dir,
            task_ref=task_ref,
            provider=provider,
            prompt=prompt,
            dry_run=dry_run,
            timeout_seconds=timeout_seconds,
            env=_parse_env(env_pairs),
        ),
        on_output=_echo_output,
    )
    _emit_lines(format_run_result(result))
    if not result.ok:
        raise click.ClickException("Provider run failed.")


@agent_sandbox.command("session")
@_WORKDIR_OPTION
@click.option("--provider", default=None, help="Provider key from ai/config/providers.json.")
@click.option("--prompt", default=None, help="Initial prompt written to the session.")
@click.option("--env", "env_pairs", multiple=True, help="KEY=VALUE added to the environment.")
@click.pass_obj
def session(
    controller: SandboxCliController,
    working_dir: Path,
    provider: str | None,
    prompt: str | None,
    env_pairs: tuple[str, ...],
) -> None:
    """Start an interactive provider session and forward stdin lines to it."""

    outcome = controller.session(
        SessionCommand(
            working_dir=working_dir,
            provider=provider,
            prompt=prompt,
            env=_parse_env(env_pairs),
        ),
        input_lines=click.get_text_stream("stdin"),
        on_output=_echo_output,
    )
    _emit_lines(outcome.lines)
    if not outcome.started:
        raise click.ClickException("Provider session could not be started.")


@agent_sandbox.command("snapshot")
@_WORKDIR_OPTION
@click.option("--task", "task_ref", default=None, help="Also show this task's whitelist.")
@click.pass_obj
def snapshot(controller: SandboxCliController, working_dir: Path, task_ref: str | None) -> None:
    """List uncommitted paths as seen by change control."""

    _emit_lines(controller.snapshot(SnapshotCommand(working_dir=working_dir, task_ref=task_ref)))


@agent_sandbox.command("batch")
@_WORKDIR_OPTION
@click.option("--task", "task_refs", multiple=True, required=True, help="Task reference. Repeat.")
@click.option("--provider", default=None, help="Provider key from ai/config/providers.json.")
@click.option("--prompt", default=None, help="Prompt sent to every task run.")
@click.option("--dry-run/--no-dry-run", default=False, show_default=True)
@click.option(
    "--stop-on-failure/--keep-going",
    default=False,
    show_default=True,
    help="Stop after the first failed run.",
)
def batch(  # noqa: PLR0913
    working_dir: Path,
    task_refs: tuple[str, ...],
    provider: str | None,
    prompt: str | None,
    dry_run: bool,
    stop_on_failure: bool,
) -> None:
    """Run the provider for several tasks in sequence as a Prefect flow."""

    results = run_task_batch(
        working_dir=working_dir.resolve(),
        task_refs=list(task_refs),
        provider=provider,
        prompt=prompt,
        dry_run=dry_run,
        stop_on_failure=stop_on_failure,
    )
    for task_ref, result in zip(task_refs, results, strict=False):
        _emit_lines([f"[{task_ref}]", *format_run_result(result)])
    if any(not result.ok for result in results):
        raise click.ClickException("At least one provider run failed.")


def _parse_env(pairs: tuple[str, ...]) -> dict[str, str] | None:
    env: dict[str, str] = {}
    for pair in pairs:
        key, separator, value = pair.partition("=")
        if not separator or not key.strip():
            raise click.BadParameter(f"Expected KEY=VALUE, got {pair!r}", param_hint="--env")
        env[key.strip()] = value
    return env or None


def _echo_output(event: OutputEvent) -> None:
    click.echo(event.data, nl=False, err=event.stream is StreamType.STDERR)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_sandbox()
