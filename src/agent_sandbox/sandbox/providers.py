"""Provider name to CLI command lookup."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "claude"


@dataclass(frozen=True, slots=True)
class ProviderEntry:
    """One configured agent CLI."""

    name: str
    cli: str | None = None
    model: str | None = None


@dataclass(frozen=True, slots=True)
class ResolvedProvider:
    """Provider selected for a run and the shell command that launches it."""

    name: str
    command: str


@dataclass(slots=True)
class ProviderRegistry:
    """Key to executable table with a designated default key."""

    default: str = DEFAULT_PROVIDER
    entries: dict[str, ProviderEntry] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any], *, fallback_default: str) -> ProviderRegistry:
        entries: dict[str, ProviderEntry] = {}
        raw_entries = payload.get("providers") or []
        if not isinstance(raw_entries, list):
            raise TypeError("'providers' must be a list")
        for raw in raw_entries:
            if not isinstance(raw, dict) or not str(raw.get("name", "")).strip():
                logger.warning("Skipping provider entry without a name: %r", raw)
                continue
            name = str(raw["name"]).strip()
            cli = raw.get("cli")
            model = raw.get("model")
            entries[name] = ProviderEntry(
                name=name,
                cli=str(cli).strip() if cli else None,
                model=str(model) if model else None,
            )
        default = str(payload.get("default") or fallback_default).strip() or fallback_default
        return cls(default=default, entries=entries)

    def resolve(self, name: str | None) -> ResolvedProvider:
        """Return the command for ``name``, or for the default key when empty.

        Unknown keys are used verbatim as the executable.
        """

        chosen = (name or "").strip() or self.default
        entry = self.entries.get(chosen)
        command = entry.cli if entry is not None and entry.cli else chosen
        return ResolvedProvider(name=chosen, command=command)


def providers_config_path(working_dir: Path) -> Path:
    return working_dir / "ai" / "config" / "providers.json"


def load_provider_registry(
    working_dir: Path,
    *,
    default_provider: str = DEFAULT_PROVIDER,
) -> ProviderRegistry:
    """Read ``ai/config/providers.json``; fall back to an empty table."""

    path = providers_config_path(working_dir)
    if not path.is_file():
        return ProviderRegistry(default=default_provider)
    try:
        payload = json.loads(path.read_text("utf-8"))
        if not isinstance(payload, dict):
            raise TypeError(f"Expected JSON object in {path}")
        return ProviderRegistry.from_payload(payload, fallback_default=default_provider)
    except (OSError, ValueError, TypeError) as error:
        logger.warning("Ignoring unreadable provider config %s: %s", path, error)
        return ProviderRegistry(default=default_provider)
