from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path

logger = logging.getLogger(__name__)

_READ_SIZE = 4096
# Agents run in their own process group so an abort also reaches their children.
_POSIX = os.name == "posix"


class RunKind(StrEnum):
    EXECUTION = "execution"
    PLANNING = "planning"


class SupervisorError(RuntimeError):
    """Raised when the process supervisor cannot honour a request."""


class SessionAlreadyRunningError(SupervisorError):
    """Raised when a session of the same kind is already active."""


@dataclass(slots=True, frozen=True)
class OutputEvent:
    text: str
    stream: str


@dataclass(slots=True, frozen=True)
class ExitEvent:
    exit_code: int | None
    signal: str | None = None
    aborted: bool = False
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return (
            self.exit_code == 0
            and self.signal is None
            and not self.aborted
            and self.error is None
        )


SessionEvent = OutputEvent | ExitEvent


@dataclass(slots=True)
class TerminateResult:
    success: bool
    message: str
    escalated: bool = False


def _exit_event(return_code: int, *, aborted: bool) -> ExitEvent:
    if return_code >= 0:
        return ExitEvent(exit_code=return_code, aborted=aborted)
    try:
        signal_name = signal.Signals(-return_code).name
    except ValueError:
        signal_name = f"SIG{-return_code}"
    return ExitEvent(exit_code=None, signal=signal_name, aborted=aborted)


def _signal_group(process: asyncio.subprocess.Process, *, force: bool) -> None:
    """Signal the agent and everything it started. Raises ProcessLookupError when nothing is left."""
    if _POSIX:
        os.killpg(process.pid, signal.SIGKILL if force else signal.SIGTERM)
    elif force:
        process.kill()
    else:
        process.terminate()


class RunSession:
    """One spawned agent process and the ordered channel of its events."""

    def __init__(self, kind: RunKind, *, target_task_id: int | None = None) -> None:
        self.kind = kind
        self.target_task_id = target_task_id
        self.started_at = datetime.now(UTC)
        self.output_buffer = ""
        self.sentinels_fired: set[str] = set()
        self.process: asyncio.subprocess.Process | None = None
        self.aborted = False
        self.exit: ExitEvent | None = None
        self._queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._closed = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._kill_handle: asyncio.TimerHandle | None = None
        self._watcher: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    @property
    def closed(self) -> bool:
        return self._closed

    async def events(self) -> AsyncIterator[SessionEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if isinstance(event, ExitEvent):
                return

    def _push(self, event: OutputEvent) -> None:
        if self._closed:
            return
        if event.stream == "stdout":
            self.output_buffer += event.text
        self._queue.put_nowait(event)

    def _finish(self, event: ExitEvent) -> None:
        if self._closed:
            return
        self._closed = True
        self.exit = event
        self._queue.put_nowait(event)

    def _cancel_kill_timer(self) -> None:
        if self._kill_handle is not None:
            self._kill_handle.cancel()
            self._kill_handle = None

    def _force_kill(self) -> None:
        self._kill_handle = None
        process = self.process
        if process is None:
            return
        # Children may outlive the leader and still hold the output pipes.
        if process.returncode is not None and not _POSIX:
            return
        logger.warning("Agent process group %s ignored SIGTERM, killing it", process.pid)
        try:
            _signal_group(process, force=True)
        except ProcessLookupError:
            pass

    def terminate(self, grace_seconds: float) -> TerminateResult:
        self.aborted = True
        process = self.process
        if process is None:
            # Still starting; spawn kills the process once it exists.
            self._finish(ExitEvent(exit_code=None, aborted=True))
            return TerminateResult(success=True, message="Process aborted before start.")
        if process.returncode is not None:
            if _POSIX:
                try:
                    _signal_group(process, force=True)
                except ProcessLookupError:
                    pass
            self._finish(ExitEvent(exit_code=None, aborted=True))
            return TerminateResult(success=False, message="Process already terminated.")

        escalated = False
        try:
            _signal_group(process, force=False)
        except ProcessLookupError:
            self._finish(ExitEvent(exit_code=None, aborted=True))
            return TerminateResult(success=False, message="Process already terminated.")
        except OSError as exc:
            logger.warning("SIGTERM failed for agent process %s: %s", process.pid, exc)
            escalated = True
            try:
                _signal_group(process, force=True)
            except ProcessLookupError:
                pass
        else:
            if self._loop is not None:
                self._kill_handle = self._loop.call_later(grace_seconds, self._force_kill)

        self._finish(
            ExitEvent(
                exit_code=None,
                signal="SIGKILL" if escalated else "SIGTERM",
                aborted=True,
            )
        )
        return TerminateResult(
            success=True,
            message=f"{self.kind.value.capitalize()} process aborted.",
            escalated=escalated,
        )


class ProcessSupervisor:
    """Launches agent processes, one active session per kind."""

    def __init__(self, *, terminate_grace_seconds: float = 5.0) -> None:
        self.terminate_grace_seconds = terminate_grace_seconds
        self._active: dict[RunKind, RunSession] = {}
        self._watchers: set[asyncio.Task[None]] = set()

    def is_running(self, kind: RunKind) -> bool:
        return kind in self._active

    def active(self, kind: RunKind) -> RunSession | None:
        return self._active.get(kind)

    def _release(self, session: RunSession) -> None:
        if self._active.get(session.kind) is session:
            del self._active[session.kind]

    async def spawn(
        self,
        kind: RunKind,
        executable: str,
        args: Sequence[str],
        *,
        cwd: Path,
        env: dict[str, str] | None = None,
        stdin_text: str | None = None,
        target_task_id: int | None = None,
    ) -> RunSession:
        if kind in self._active:
            raise SessionAlreadyRunningError(f"A {kind.value} process is already running.")

        # The slot is claimed before the first await so concurrent callers cannot both pass.
        session = RunSession(kind, target_task_id=target_task_id)
        session._loop = asyncio.get_running_loop()
        self._active[kind] = session
        logger.info("Spawning %s process: %s (cwd=%s)", kind.value, executable, cwd)
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *args,
                cwd=str(cwd),
                env=env,
                stdin=asyncio.subprocess.PIPE if stdin_text is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=_POSIX,
            )
        except OSError as exc:
            logger.warning("Failed to spawn %s: %s", executable, exc)
            self._release(session)
            session._push(OutputEvent(f"Spawn error: {exc}\n", "stderr"))
            session._finish(ExitEvent(exit_code=1, error=str(exc)))
            return session

        session.process = process
        if session.aborted:
            # Terminated while the process was still starting.
            try:
                _signal_group(process, force=True)
            except ProcessLookupError:
                pass
        session._watcher = asyncio.create_task(self._watch(session, stdin_text))
        self._watchers.add(session._watcher)
        session._watcher.add_done_callback(self._watchers.discard)
        return session

    @staticmethod
    async def _feed_stdin(process: asyncio.subprocess.Process, stdin_text: str | None) -> None:
        if stdin_text is None or process.stdin is None:
            return
        try:
            process.stdin.write(stdin_text.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning("Agent process closed stdin early: %s", exc)
        finally:
            process.stdin.close()

    @staticmethod
    async def _pump(session: RunSession, stream: asyncio.StreamReader | None, name: str) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(_READ_SIZE)
            if not data:
                break
            text = decoder.decode(data)
            if text:
                session._push(OutputEvent(text, name))
        tail = decoder.decode(b"", final=True)
        if tail:
            session._push(OutputEvent(tail, name))

    async def _watch(self, session: RunSession, stdin_text: str | None) -> None:
        process = session.process
        assert process is not None
        await asyncio.gather(
            self._feed_stdin(process, stdin_text),
            self._pump(session, process.stdout, "stdout"),
            self._pump(session, process.stderr, "stderr"),
        )
        return_code = await process.wait()
        session._cancel_kill_timer()
        logger.info("%s process %s exited with %s", session.kind.value, process.pid, return_code)
        # The slot is free before consumers observe the exit.
        self._release(session)
        session._finish(_exit_event(return_code, aborted=session.aborted))

    def terminate(self, kind: RunKind) -> TerminateResult:
        session = self._active.pop(kind, None)
        if session is None:
            return TerminateResult(
                success=False,
                message=f"No {kind.value} process is currently running.",
            )
        logger.info("Terminating %s process %s", kind.value, session.pid)
        return session.terminate(self.terminate_grace_seconds)

    def terminate_all(self) -> list[TerminateResult]:
        return [self.terminate(kind) for kind in list(self._active)]

    async def drain(self) -> None:
        """Wait until every spawned process, aborted ones included, has been reaped."""
        if not self._watchers:
            return
        results = await asyncio.gather(*list(self._watchers), return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Process watcher failed: %s", result)
