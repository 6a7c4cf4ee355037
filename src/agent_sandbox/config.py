"""Runtime configuration for provider runs."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class SandboxSettings:
    """Process and change-control settings."""

    artifacts_dirname: str = "artifacts"
    kill_grace_seconds: float = 2.0
    run_timeout_seconds: float = 600.0
    git_executable: str = "git"
    persist_prompt: bool = True


@dataclass(slots=True)
class ProviderSettings:
    """Provider selection defaults used when ``ai/config/providers.json`` is absent."""

    default_provider: str = "claude"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    sandbox: SandboxSettings = field(default_factory=SandboxSettings)
    providers: ProviderSettings = field(default_factory=ProviderSettings)
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            sandbox=SandboxSettings(
                artifacts_dirname=os.getenv("AGENT_SANDBOX_ARTIFACTS_DIRNAME", "artifacts"),
                kill_grace_seconds=_env_float("AGENT_SANDBOX_KILL_GRACE_SECONDS", 2.0),
                run_timeout_seconds=_env_float("AGENT_SANDBOX_RUN_TIMEOUT_SECONDS", 600.0),
                git_executable=os.getenv("AGENT_SANDBOX_GIT_EXECUTABLE", "git"),
                persist_prompt=_env_bool("AGENT_SANDBOX_PERSIST_PROMPT", default=True),
            ),
            providers=ProviderSettings(
                default_provider=os.getenv("AGENT_SANDBOX_DEFAULT_PROVIDER", "claude"),
            ),
            log_level=os.getenv("AGENT_SANDBOX_LOG_LEVEL", "WARNING").strip().upper(),
        )

    def validate(self) -> None:
        """Raise configuration error on values the sandbox cannot work with."""

        dirname = self.sandbox.artifacts_dirname.strip()
        if not dirname or "/" in dirname or "\\" in dirname or dirname in {".", ".."}:
            raise ValueError(
                "AGENT_SANDBOX_ARTIFACTS_DIRNAME must be a single directory name, "
                f"got {self.sandbox.artifacts_dirname!r}.",
            )
        if self.sandbox.kill_grace_seconds < 0:
            raise ValueError("AGENT_SANDBOX_KILL_GRACE_SECONDS must be >= 0.")
        if self.sandbox.run_timeout_seconds < 0:
            raise ValueError("AGENT_SANDBOX_RUN_TIMEOUT_SECONDS must be >= 0 (0 disables).")
        if not self.sandbox.git_executable.strip():
            raise ValueError("AGENT_SANDBOX_GIT_EXECUTABLE must not be empty.")
        if not self.providers.default_provider.strip():
            raise ValueError("AGENT_SANDBOX_DEFAULT_PROVIDER must not be empty.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"Invalid AGENT_SANDBOX_LOG_LEVEL {self.log_level!r}; "
                f"expected one of {', '.join(_LOG_LEVELS)}.",
            )

    @property
    def run_timeout(self) -> float | None:
        """Run timeout in seconds, ``None`` when disabled."""

        return self.sandbox.run_timeout_seconds or None

    def configure_logging(self) -> None:
        logging.basicConfig(
            level=self.log_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid numeric value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
