"""Prefect flow running provider tasks one after another.

Runs against one working tree share git state, so the batch never runs two
tasks concurrently. Prefect supplies run tracking and state reporting.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

from prefect import flow, task

from agent_sandbox.config import Settings
from agent_sandbox.sandbox.models import RunRequest, RunResult
from agent_sandbox.sandbox.orchestrator import ProviderOrchestrator

logger = logging.getLogger(__name__)


@task
def run_provider_task(  # noqa: PLR0913
    *,
    working_dir: Path,
    task_ref: str,
    provider: str | None = None,
    prompt: str | None = None,
    dry_run: bool = False,
    settings: Settings | None = None,
) -> RunResult:
    """Execute one provider run for ``task_ref`` and return its result."""

    orchestrator = ProviderOrchestrator(settings=settings)
    result = orchestrator.run(
        working_dir,
        RunRequest(task_ref=task_ref, provider=provider, prompt=prompt, dry_run=dry_run),
    )
    logger.info(
        "Provider task finished: task=%s ok=%s changed=%d blocked=%d",
        task_ref,
        result.ok,
        len(result.changed),
        len(result.blocked),
    )
    return result


@flow(name="agent-sandbox-batch")
def run_task_batch(  # noqa: PLR0913
    working_dir: Path,
    task_refs: Sequence[str],
    provider: str | None = None,
    prompt: str | None = None,
    dry_run: bool = False,
    stop_on_failure: bool = False,
) -> list[RunResult]:
    """Run the provider for each task in order."""

    settings = Settings.from_env()
    results: list[RunResult] = []
    for task_ref in task_refs:
        result = run_provider_task(
            working_dir=working_dir,
            task_ref=task_ref,
            provider=provider,
            prompt=prompt,
            dry_run=dry_run,
            settings=settings,
        )
        results.append(result)
        if stop_on_failure and not result.ok:
            logger.warning("Stopping batch after failed task %s", task_ref)
            break
    return results
