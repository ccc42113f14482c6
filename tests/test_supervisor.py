import asyncio
import sys
from pathlib import Path

import pytest

from conveyor.supervisor import (
    ExitEvent,
    OutputEvent,
    ProcessSupervisor,
    RunKind,
    RunSession,
    SessionAlreadyRunningError,
    SessionEvent,
    _exit_event,
)

HANG = "import time\nprint('ready', flush=True)\ntime.sleep(30)\n"
IGNORE_SIGTERM = (
    "import signal, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "print('ready', flush=True)\n"
    "time.sleep(30)\n"
)


async def _collect(session: RunSession) -> list[SessionEvent]:
    return [event async for event in session.events()]


async def _wait_for_output(session: RunSession, text: str) -> None:
    async for event in session.events():
        if isinstance(event, OutputEvent) and text in event.text:
            return
        if isinstance(event, ExitEvent):
            raise AssertionError(f"process exited before printing {text!r}")


def test_streams_stdout_and_stderr_in_order(tmp_path: Path) -> None:
    script = "import sys\nprint('alpha', flush=True)\nprint('oops', file=sys.stderr, flush=True)\n"

    async def scenario() -> tuple[RunSession, list[SessionEvent]]:
        supervisor = ProcessSupervisor()
        session = await supervisor.spawn(
            RunKind.EXECUTION, sys.executable, ["-c", script], cwd=tmp_path
        )
        events = await _collect(session)
        assert not supervisor.is_running(RunKind.EXECUTION)
        return session, events

    session, events = asyncio.run(scenario())
    outputs = [event for event in events if isinstance(event, OutputEvent)]

    assert isinstance(events[-1], ExitEvent)
    assert events[-1].exit_code == 0
    assert events[-1].succeeded
    assert "alpha" in "".join(event.text for event in outputs if event.stream == "stdout")
    assert "oops" in "".join(event.text for event in outputs if event.stream == "stderr")
    assert session.output_buffer == "alpha\n"


def test_nonzero_exit_code_is_reported(tmp_path: Path) -> None:
    async def scenario() -> list[SessionEvent]:
        supervisor = ProcessSupervisor()
        session = await supervisor.spawn(
            RunKind.EXECUTION, sys.executable, ["-c", "raise SystemExit(4)"], cwd=tmp_path
        )
        return await _collect(session)

    exit_event = asyncio.run(scenario())[-1]

    assert isinstance(exit_event, ExitEvent)
    assert exit_event.exit_code == 4
    assert not exit_event.succeeded


def test_stdin_is_delivered_and_closed(tmp_path: Path) -> None:
    script = "import sys\nprint(sys.stdin.read().upper(), end='')\n"

    async def scenario() -> RunSession:
        supervisor = ProcessSupervisor()
        session = await supervisor.spawn(
            RunKind.PLANNING,
            sys.executable,
            ["-c", script],
            cwd=tmp_path,
            stdin_text="plan the backlog",
        )
        await _collect(session)
        return session

    assert asyncio.run(scenario()).output_buffer == "PLAN THE BACKLOG"


def test_multibyte_characters_split_across_reads(tmp_path: Path) -> None:
    script = (
        "import sys, time\n"
        "sys.stdout.buffer.write(b'caf\\xc3')\n"
        "sys.stdout.buffer.flush()\n"
        "time.sleep(0.1)\n"
        "sys.stdout.buffer.write(b'\\xa9\\n')\n"
        "sys.stdout.buffer.flush()\n"
    )

    async def scenario() -> RunSession:
        supervisor = ProcessSupervisor()
        session = await supervisor.spawn(
            RunKind.EXECUTION, sys.executable, ["-c", script], cwd=tmp_path
        )
        await _collect(session)
        return session

    assert asyncio.run(scenario()).output_buffer == "café\n"


def test_single_flight_per_kind(tmp_path: Path) -> None:
    async def scenario() -> None:
        supervisor = ProcessSupervisor(terminate_grace_seconds=0.5)
        first = await supervisor.spawn(RunKind.EXECUTION, sys.executable, ["-c", HANG], cwd=tmp_path)
        with pytest.raises(SessionAlreadyRunningError):
            await supervisor.spawn(RunKind.EXECUTION, sys.executable, ["-c", HANG], cwd=tmp_path)

        planning = await supervisor.spawn(
            RunKind.PLANNING, sys.executable, ["-c", "print('plan')"], cwd=tmp_path
        )
        planning_events = await _collect(planning)
        assert isinstance(planning_events[-1], ExitEvent)
        assert planning_events[-1].exit_code == 0
        assert supervisor.is_running(RunKind.EXECUTION)

        result = supervisor.terminate(RunKind.EXECUTION)
        assert result.success
        assert not supervisor.is_running(RunKind.EXECUTION)
        assert first.process is not None
        await asyncio.wait_for(first.process.wait(), timeout=10)

    asyncio.run(scenario())


def test_spawn_failure_is_reported_as_events(tmp_path: Path) -> None:
    async def scenario() -> tuple[ProcessSupervisor, list[SessionEvent]]:
        supervisor = ProcessSupervisor()
        session = await supervisor.spawn(
            RunKind.EXECUTION, str(tmp_path / "missing-agent"), [], cwd=tmp_path
        )
        return supervisor, await _collect(session)

    supervisor, events = asyncio.run(scenario())

    assert isinstance(events[0], OutputEvent)
    assert events[0].stream == "stderr"
    assert events[0].text.startswith("Spawn error:")
    assert isinstance(events[-1], ExitEvent)
    assert events[-1].exit_code == 1
    assert events[-1].error
    assert not supervisor.is_running(RunKind.EXECUTION)


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
def test_terminate_escalates_to_kill_after_grace(tmp_path: Path) -> None:
    async def scenario() -> tuple[list[SessionEvent], int]:
        supervisor = ProcessSupervisor(terminate_grace_seconds=0.2)
        session = await supervisor.spawn(
            RunKind.EXECUTION, sys.executable, ["-c", IGNORE_SIGTERM], cwd=tmp_path
        )
        await _wait_for_output(session, "ready")

        result = supervisor.terminate(RunKind.EXECUTION)
        assert result.success
        assert result.message == "Execution process aborted."
        remaining = await _collect(session)

        assert session.process is not None
        return_code = await asyncio.wait_for(session.process.wait(), timeout=10)
        return remaining, return_code

    remaining, return_code = asyncio.run(scenario())

    assert isinstance(remaining[-1], ExitEvent)
    assert remaining[-1].aborted
    assert remaining[-1].signal == "SIGTERM"
    assert return_code == -9


def test_terminate_without_session(tmp_path: Path) -> None:
    result = ProcessSupervisor().terminate(RunKind.PLANNING)

    assert result.success is False
    assert result.message == "No planning process is currently running."


def test_negative_return_code_maps_to_signal_name() -> None:
    event = _exit_event(-15, aborted=False)

    assert event.exit_code is None
    assert event.signal == "SIGTERM"
    assert not event.succeeded


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
def test_drain_waits_for_aborted_processes(tmp_path: Path) -> None:
    async def scenario() -> int | None:
        supervisor = ProcessSupervisor(terminate_grace_seconds=0.2)
        session = await supervisor.spawn(
            RunKind.EXECUTION, sys.executable, ["-c", IGNORE_SIGTERM], cwd=tmp_path
        )
        await _wait_for_output(session, "ready")
        supervisor.terminate(RunKind.EXECUTION)

        await asyncio.wait_for(supervisor.drain(), timeout=10)
        assert session.process is not None
        return session.process.returncode

    assert asyncio.run(scenario()) == -9


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")
def test_terminate_reaches_child_processes(tmp_path: Path) -> None:
    script = (
        "import subprocess, sys, time\n"
        "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'])\n"
        "print('ready', flush=True)\n"
        "time.sleep(30)\n"
    )

    async def scenario() -> float:
        loop = asyncio.get_running_loop()
        supervisor = ProcessSupervisor(terminate_grace_seconds=0.2)
        session = await supervisor.spawn(
            RunKind.EXECUTION, sys.executable, ["-c", script], cwd=tmp_path
        )
        await _wait_for_output(session, "ready")
        started = loop.time()
        assert supervisor.terminate(RunKind.EXECUTION).success
        await asyncio.wait_for(supervisor.drain(), timeout=5)
        return loop.time() - started

    assert asyncio.run(scenario()) < 3


def test_terminate_before_process_starts() -> None:
    async def scenario() -> RunSession:
        session = RunSession(RunKind.EXECUTION)
        result = session.terminate(0.1)
        assert result.success
        assert result.message == "Process aborted before start."
        return session

    session = asyncio.run(scenario())

    assert session.aborted
    assert session.exit is not None
    assert session.exit.aborted
