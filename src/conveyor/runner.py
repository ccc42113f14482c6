from __future__ import annotations

import logging
from pathlib import Path

from conveyor.backends.base import AgentBackend
from conveyor.environment import ShellEnvironment
from conveyor.events import EngineEvent, EventHook, Severity
from conveyor.state.backlog import BacklogStore
from conveyor.supervisor import OutputEvent, ProcessSupervisor, RunKind

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.SUCCESS: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


class AgentRunner:
    """Shared plumbing for runners that drive one agent session at a time."""

    run_kind: RunKind = RunKind.EXECUTION

    def __init__(
        self,
        project_dir: Path,
        backend: AgentBackend,
        *,
        supervisor: ProcessSupervisor,
        backlog: BacklogStore,
        environment: ShellEnvironment,
        model: str | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.project_dir = project_dir
        self.backend = backend
        self.supervisor = supervisor
        self.backlog = backlog
        self.environment = environment
        self.model = model or None
        self.event_hook = event_hook

    def _emit(
        self,
        kind: str,
        message: str,
        severity: Severity = Severity.INFO,
        *,
        stream: str = "engine",
        task_id: int | None = None,
    ) -> None:
        if stream == "engine":
            logger.log(_LOG_LEVELS[severity], "%s: %s", kind, message)
        if self.event_hook is not None:
            self.event_hook(
                EngineEvent(
                    kind=kind,
                    message=message,
                    severity=severity,
                    stream=stream,
                    task_id=task_id,
                    run_kind=self.run_kind.value,
                )
            )

    def _check_project_dir(self) -> str | None:
        if not self.project_dir.is_dir():
            return f"Project folder not found: {self.project_dir}"
        return None

    def _resolve_agent(self) -> tuple[str | None, str | None]:
        executable = self.environment.resolve_executable(self.backend.binary)
        if executable is None:
            return None, (
                f"Agent executable '{self.backend.binary}' not found on PATH. "
                "Install it or set [agent].binary in the configuration."
            )
        return executable, None

    def _forward_output(self, event: OutputEvent, task_id: int | None = None) -> None:
        self._emit("output", event.text, stream=event.stream, task_id=task_id)

