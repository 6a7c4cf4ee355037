"""Terminal control sequence stripping for child process output."""

from __future__ import annotations

import codecs
import re

_MAX_PENDING_CHARS = 4_096

_PATTERNS: tuple[re.Pattern[str], ...] = (
    # OSC: ESC ] ... terminated by BEL or ST (ESC \)
    re.compile(r"\x1b\].*?(?:\x07|\x1b\\)", re.DOTALL),
    # DCS / SOS / PM / APC: ESC P|X|^|_ ... ST
    re.compile(r"\x1b[PX^_].*?\x1b\\", re.DOTALL),
    # CSI, 7-bit and 8-bit lead-in
    re.compile(r"(?:\x1b\[|\x9b)[0-?]*[ -/]*[@-~]"),
    # charset designation
    re.compile(r"\x1b[()*+][A-Za-z0-9]"),
    # keypad mode, cursor save/restore
    re.compile(r"\x1b[78=>]"),
    # bracket-style cursor codes emitted without the ESC byte
    re.compile(r"(?<!\x1b)\[\??[0-9;]{1,10}[A-Za-z]"),
)

_LINE_ENDINGS = re.compile(r"\r\n?")

# Lead-in bytes left over once every complete sequence is gone.
_STRAY_LEAD_IN = re.compile(r"[\x1b\x9b]")

# An escape sequence cut off at the end of the text.
_UNTERMINATED_ESCAPE = r"(?:\x1b(?:\[[0-?]*[ -/]*|\][^\x07]*|[PX^_].*|[()*+])?|\x9b[0-?]*[ -/]*)"
_ESCAPE_TAIL = re.compile(_UNTERMINATED_ESCAPE + r"\Z", re.DOTALL)

# Anything at the end of a chunk that may still become a sequence, ESC-less codes included.
_PARTIAL_TAIL = re.compile(
    rf"(?:{_UNTERMINATED_ESCAPE}|(?<!\x1b)\[\??[0-9;]{{0,10}})\Z",
    re.DOTALL,
)


def _strip_once(text: str) -> str:
    for pattern in _PATTERNS:
        text = pattern.sub("", text)
    return _LINE_ENDINGS.sub("\n", text)


def _strip_to_fixpoint(text: str, *, drop_stray: bool) -> str:
    while True:
        stripped = _strip_once(text)
        if drop_stray:
            stripped = _STRAY_LEAD_IN.sub("", stripped)
        if stripped == text:
            return stripped
        text = stripped


def sanitize(raw: bytes | str) -> str:
    """Strip terminal control sequences and normalize line endings to ``\\n``.

    Passes repeat until nothing changes, so removing one sequence can never
    leave a new one behind and ``sanitize(sanitize(x)) == sanitize(x)``.
    Unterminated sequences lose their lead-in byte.
    """

    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    if not text:
        return ""
    return _strip_to_fixpoint(text, drop_stray=True)


class StreamSanitizer:
    """Incremental ``sanitize`` for one output stream.

    Keeps multi-byte characters, escape sequences and ``\\r\\n`` pairs intact
    when the child splits them across reads. A sequence still open at
    ``flush()`` or longer than ``_MAX_PENDING_CHARS`` is dropped.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> str:
        text = self._pending + self._decoder.decode(chunk)
        self._pending = ""

        trailing_cr = ""
        if text.endswith("\r"):
            text, trailing_cr = text[:-1], "\r"

        clean = _strip_to_fixpoint(text, drop_stray=False)
        match = _PARTIAL_TAIL.search(clean)
        if match is not None:
            if len(clean) - match.start() <= _MAX_PENDING_CHARS:
                self._pending = clean[match.start() :]
            clean = clean[: match.start()]
        self._pending += trailing_cr
        return sanitize(clean)

    def flush(self) -> str:
        text = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        clean = _strip_to_fixpoint(text, drop_stray=False)
        return sanitize(_ESCAPE_TAIL.sub("", clean))
