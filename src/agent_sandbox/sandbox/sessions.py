"""Registry of live child processes with streamed, sanitized output."""

from __future__ import annotations

import logging
import os
import queue
import signal
import subprocess
import threading
import time
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import IO
from uuid import uuid4

from agent_sandbox.sandbox.models import (
    ExitEvent,
    OutputEvent,
    RunOnceResult,
    SessionStart,
    StreamType,
)
from agent_sandbox.sandbox.sanitization import StreamSanitizer

logger = logging.getLogger(__name__)

DEFAULT_KILL_GRACE_SECONDS = 2.0
TIMEOUT_EXIT_CODE = 124

_READ_CHUNK_BYTES = 4_096
_DRAIN_TIMEOUT_SECONDS = 5.0
_KILL_POLL_SECONDS = 0.05
_END = object()

OutputCallback = Callable[[OutputEvent], None]
ExitCallback = Callable[[ExitEvent], None]
StartedCallback = Callable[["SessionHandle"], None]


class SessionNotFound(KeyError):
    """Write, kill or wait on a session that is unknown or has already exited."""

    def __init__(self, session_id: str) -> None:
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self) -> str:
        return f"Session not found: {self.session_id}"


class SpawnError(RuntimeError):
    """The OS refused to start the shell for a command."""

    def __init__(self, message: str, *, command: str) -> None:
        super().__init__(message)
        self.command = command


class OutputSubscription:
    """Lazy per-session stream of ``OutputEvent``; ends when the process exits."""

    def __init__(self, session_id: str, on_close: Callable[[OutputSubscription], None]) -> None:
        self.session_id = session_id
        self._queue: queue.Queue[OutputEvent | object] = queue.Queue()
        self._on_close = on_close

    def __iter__(self) -> Iterator[OutputEvent]:
        while True:
            item = self._queue.get()
            if item is _END:
                return
            yield item  # type: ignore[misc]

    def __enter__(self) -> OutputSubscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Unsubscribe; a consumer blocked in iteration is released."""

        self._on_close(self)
        self._queue.put(_END)

    def _publish(self, event: OutputEvent) -> None:
        self._queue.put(event)

    def _finish(self) -> None:
        self._queue.put(_END)


class _Session:
    def __init__(
        self,
        *,
        session_id: str,
        command: str,
        process: subprocess.Popen[bytes],
        on_output: OutputCallback | None,
        on_exit: ExitCallback | None,
    ) -> None:
        self.session_id = session_id
        self.command = command
        self.process = process
        self.on_output = on_output
        self.on_exit = on_exit
        self.exit_code: int | None = None
        self.started = threading.Event()
        self.finished = threading.Event()
        self.readers: list[threading.Thread] = []
        self._stdin_lock = threading.Lock()
        # reentrant: output callbacks may subscribe to their own session
        self._dispatch_lock = threading.RLock()
        self._subscribers: list[OutputSubscription] = []
        self._streams_closed = False

    def write_stdin(self, text: str) -> None:
        stdin = self.process.stdin
        if stdin is None:
            raise BrokenPipeError("stdin is not available")
        with self._stdin_lock:
            stdin.write(text.encode("utf-8"))
            stdin.flush()

    def close_stdin(self) -> None:
        stdin = self.process.stdin
        if stdin is None:
            return
        with self._stdin_lock:
            try:
                stdin.close()
            except OSError:
                logger.debug("stdin of %s was already broken", self.session_id)

    def dispatch(self, stream: StreamType, data: str) -> None:
        event = OutputEvent(
            stream=stream,
            data=data,
            timestamp=datetime.now(tz=UTC),
            session_id=self.session_id,
        )
        with self._dispatch_lock:
            if self.on_output is not None:
                try:
                    self.on_output(event)
                except Exception:
                    logger.exception("Output callback failed for session %s", self.session_id)
            for subscriber in list(self._subscribers):
                subscriber._publish(event)  # noqa: SLF001

    def subscribe(self) -> OutputSubscription:
        subscription = OutputSubscription(self.session_id, self._unsubscribe)
        with self._dispatch_lock:
            if self._streams_closed:
                subscription._finish()  # noqa: SLF001
            else:
                self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: OutputSubscription) -> None:
        with self._dispatch_lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def close_streams(self) -> None:
        with self._dispatch_lock:
            self._streams_closed = True
            subscribers, self._subscribers = self._subscribers, []
        for subscriber in subscribers:
            subscriber._finish()  # noqa: SLF001


class SessionHandle:
    """Live process view handed to ``on_started`` hooks."""

    def __init__(self, session: _Session) -> None:
        self._session = session

    @property
    def session_id(self) -> str:
        return self._session.session_id

    @property
    def pid(self) -> int:
        return self._session.process.pid

    def write(self, text: str) -> None:
        self._session.write_stdin(text)

    def close_input(self) -> None:
        self._session.close_stdin()


class ProcessSessionRegistry:
    """Owns live child processes and the session id -> process mapping.

    Each session gets one reader thread per output stream and a watcher thread
    that unregisters it once the process has exited. Output of one session is
    delivered to its callback in order per stream and never concurrently.
    """

    def __init__(self, *, kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS) -> None:
        self.kill_grace_seconds = kill_grace_seconds
        self._sessions: dict[str, _Session] = {}
        self._lock = threading.Lock()

    def start(  # noqa: PLR0913
        self,
        command: str,
        cwd: Path,
        *,
        env: dict[str, str] | None = None,
        on_output: OutputCallback | None = None,
        on_exit: ExitCallback | None = None,
        on_started: StartedCallback | None = None,
    ) -> SessionStart:
        """Spawn ``command`` through the shell and register it.

        ``on_started`` runs before any ``write`` is accepted, so input it sends
        (an initial prompt) always precedes caller writes. Its failures are
        logged and returned in ``SessionStart.errors`` instead of raised.
        """

        session = self._spawn(command, cwd, env=env, on_output=on_output, on_exit=on_exit)
        errors: list[str] = []
        try:
            if on_started is not None:
                try:
                    on_started(SessionHandle(session))
                except Exception as error:  # noqa: BLE001
                    logger.warning(
                        "on_started hook failed for session %s: %s",
                        session.session_id,
                        error,
                    )
                    errors.append(f"{type(error).__name__}: {error}")
        finally:
            session.started.set()
        return SessionStart(session_id=session.session_id, pid=session.process.pid, errors=errors)

    def write(self, session_id: str, text: str) -> None:
        session = self._live_session(session_id)
        session.started.wait()
        try:
            session.write_stdin(text)
        except (OSError, ValueError) as error:
            raise SessionNotFound(session_id) from error

    def close_input(self, session_id: str) -> None:
        session = self._live_session(session_id)
        session.started.wait()
        session.close_stdin()

    def kill(self, session_id: str, *, grace_seconds: float | None = None) -> None:
        """Interrupt the session, force-kill it after the grace period.

        Killing an unknown or already finished session is a no-op.
        """

        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return
        grace = self.kill_grace_seconds if grace_seconds is None else grace_seconds
        logger.info("Killing session %s (pid=%s)", session_id, session.process.pid)
        _interrupt_then_kill(session.process, grace)

    def wait(self, session_id: str, timeout: float | None = None) -> int | None:
        """Block until the session exits; return its exit code or None on timeout."""

        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        session.finished.wait(timeout=timeout)
        return session.exit_code

    def subscribe(self, session_id: str) -> OutputSubscription:
        """Stream output produced from now on; iteration stops at process exit."""

        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session.subscribe()

    def list_sessions(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def run_once(  # noqa: PLR0913
        self,
        command: str,
        cwd: Path,
        *,
        input: str | None = None,  # noqa: A002
        env: dict[str, str] | None = None,
        on_output: OutputCallback | None = None,
        timeout_seconds: float | None = None,
    ) -> RunOnceResult:
        """Run ``command`` to completion, feeding ``input`` then closing stdin."""

        stdout_parts: list[str] = []
        stderr_parts: list[str] = []

        def _collect(event: OutputEvent) -> None:
            target = stdout_parts if event.stream is StreamType.STDOUT else stderr_parts
            target.append(event.data)
            if on_output is not None:
                on_output(event)

        try:
            session = self._spawn(command, cwd, env=env, on_output=_collect, on_exit=None)
        except SpawnError as error:
            return RunOnceResult(ok=False, stdout="", stderr=str(error), exit_code=-1)
        session.started.set()

        input_errors: list[str] = []

        def _feed() -> None:
            try:
                if input:
                    session.write_stdin(input)
            except (OSError, ValueError) as error:
                logger.warning("Failed to write input to %s: %s", session.session_id, error)
                input_errors.append(str(error))
            finally:
                session.close_stdin()

        threading.Thread(target=_feed, name=f"{session.session_id}-stdin", daemon=True).start()

        finished = session.finished.wait(timeout=timeout_seconds)
        if not finished and session.process.poll() is not None:
            # exited in time; the watcher is still draining output
            session.finished.wait()
            finished = True
        if not finished:
            logger.warning("Command timed out after %ss: %s", timeout_seconds, command)
            self.kill(session.session_id)
            session.finished.wait(timeout=_DRAIN_TIMEOUT_SECONDS)
            stderr_parts.append(f"\nProcess timed out after {timeout_seconds}s\n")
            return RunOnceResult(
                ok=False,
                stdout="".join(stdout_parts),
                stderr="".join(stderr_parts),
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
            )

        exit_code = session.exit_code if session.exit_code is not None else -1
        stderr = "".join(stderr_parts)
        if exit_code != 0 and input_errors:
            stderr += "".join(f"\n{message}" for message in input_errors)
        return RunOnceResult(
            ok=exit_code == 0,
            stdout="".join(stdout_parts),
            stderr=stderr,
            exit_code=exit_code,
        )

    def _spawn(
        self,
        command: str,
        cwd: Path,
        *,
        env: dict[str, str] | None,
        on_output: OutputCallback | None,
        on_exit: ExitCallback | None,
    ) -> _Session:
        merged_env = {**os.environ, **env} if env else None
        try:
            process = subprocess.Popen(  # noqa: S602
                command,
                shell=True,
                cwd=cwd,
                env=merged_env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                **_process_group_kwargs(),
            )
        except OSError as error:
            raise SpawnError(
                f"Failed to start {command!r} in {cwd}: {error}",
                command=command,
            ) from error

        session = _Session(
            session_id=f"p_{uuid4().hex[:16]}",
            command=command,
            process=process,
            on_output=on_output,
            on_exit=on_exit,
        )
        with self._lock:
            self._sessions[session.session_id] = session
        logger.info("Started session %s (pid=%s): %s", session.session_id, process.pid, command)

        for stream_type, pipe in (
            (StreamType.STDOUT, process.stdout),
            (StreamType.STDERR, process.stderr),
        ):
            if pipe is None:
                continue
            reader = threading.Thread(
                target=_pump,
                args=(session, stream_type, pipe),
                name=f"{session.session_id}-{stream_type.value}",
                daemon=True,
            )
            session.readers.append(reader)
            reader.start()

        threading.Thread(
            target=self._watch,
            args=(session,),
            name=f"{session.session_id}-watch",
            daemon=True,
        ).start()
        return session

    def _watch(self, session: _Session) -> None:
        exit_code = session.process.wait()
        for reader in session.readers:
            reader.join(timeout=_DRAIN_TIMEOUT_SECONDS)
        session.exit_code = exit_code
        with self._lock:
            if self._sessions.get(session.session_id) is session:
                del self._sessions[session.session_id]
        session.close_stdin()
        session.close_streams()
        logger.info("Session %s exited with code %s", session.session_id, exit_code)
        try:
            if session.on_exit is not None:
                session.on_exit(ExitEvent(session_id=session.session_id, exit_code=exit_code))
        except Exception:
            logger.exception("Exit callback failed for session %s", session.session_id)
        finally:
            session.finished.set()

    def _live_session(self, session_id: str) -> _Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None or session.process.poll() is not None:
            raise SessionNotFound(session_id)
        return session


def _pump(session: _Session, stream_type: StreamType, pipe: IO[bytes]) -> None:
    sanitizer = StreamSanitizer()
    try:
        while True:
            chunk = pipe.read1(_READ_CHUNK_BYTES)  # type: ignore[attr-defined]
            if not chunk:
                break
            text = sanitizer.feed(chunk)
            if text:
                session.dispatch(stream_type, text)
    except (OSError, ValueError) as error:
        logger.debug("Stopped reading %s of %s: %s", stream_type.value, session.session_id, error)
    finally:
        tail = sanitizer.flush()
        if tail:
            session.dispatch(stream_type, tail)
        pipe.close()


def _process_group_kwargs() -> dict[str, object]:
    if os.name == "nt":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def _interrupt_then_kill(process: subprocess.Popen[bytes], grace_seconds: float) -> None:
    if not _group_alive(process):
        return
    try:
        _send_interrupt(process)
    except OSError:
        return

    # The shell may exit on the interrupt while a child it spawned keeps running.
    deadline = time.monotonic() + grace_seconds
    while time.monotonic() < deadline:
        if not _group_alive(process):
            return
        time.sleep(_KILL_POLL_SECONDS)

    logger.warning("pid=%s ignored the interrupt, forcing termination", process.pid)
    try:
        _send_force_kill(process)
    except OSError:
        return
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        logger.error("pid=%s is still alive after a forced kill", process.pid)


def _group_alive(process: subprocess.Popen[bytes]) -> bool:
    if process.poll() is None:
        return True
    if os.name == "nt":
        return False
    try:
        os.killpg(process.pid, 0)
    except OSError:
        return False
    return True


def _send_interrupt(process: subprocess.Popen[bytes]) -> None:
    if os.name == "nt":
        process.send_signal(signal.CTRL_BREAK_EVENT)
        return
    os.killpg(process.pid, signal.SIGINT)


def _send_force_kill(process: subprocess.Popen[bytes]) -> None:
    if os.name == "nt":
        process.kill()
        return
    os.killpg(process.pid, signal.SIGKILL)
