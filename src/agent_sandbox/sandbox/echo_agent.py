"""Local stand-in for an AI CLI, used by integration tests and demos.

Reads the prompt from stdin and echoes it with terminal colour codes. Lines of
the prompt are also read as directives:

- ``WRITE <path> [text]`` writes ``text`` (default ``edited``) to ``path``.
- ``DELETE <path>`` removes ``path``.
- ``STDERR <text>`` prints ``text`` to stderr.
- ``EXIT <code>`` sets the exit code.

With ``--interactive`` every stdin line is handled as soon as it arrives and
``QUIT`` stops the loop.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

_GREEN = "\x1b[32m"
_RESET = "\x1b[0m"


def _handle_line(line: str, state: dict[str, int]) -> None:
    command, _, rest = line.strip().partition(" ")
    if command == "WRITE" and rest:
        target, _, text = rest.partition(" ")
        path = Path(target)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text((text or "edited") + "\n", "utf-8")
    elif command == "DELETE" and rest:
        Path(rest).unlink(missing_ok=True)
    elif command == "STDERR":
        print(rest, file=sys.stderr, flush=True)
    elif command == "EXIT" and rest.strip().lstrip("-").isdigit():
        state["exit_code"] = int(rest)


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt and apply its directives."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--interactive", action="store_true")
    parser.add_argument("--no-color", action="store_true")
    args = parser.parse_args(argv)

    prefix, suffix = ("", "") if args.no_color else (_GREEN, _RESET)
    state = {"exit_code": 0}

    if args.interactive:
        for line in sys.stdin:
            if line.strip() == "QUIT":
                break
            print(f"{prefix}echo:{suffix} {line.rstrip()}", flush=True)
            _handle_line(line, state)
        return state["exit_code"]

    prompt = sys.stdin.read()
    print(f"{prefix}received:{suffix} {prompt.strip()}", flush=True)
    for line in prompt.splitlines():
        _handle_line(line, state)
    return state["exit_code"]


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
