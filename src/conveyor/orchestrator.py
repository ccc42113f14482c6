from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from conveyor.backends.base import AgentBackend
from conveyor.environment import ShellEnvironment
from conveyor.events import EventHook, Severity
from conveyor.prompts import PROMPT_VERSION, PromptContractError, PromptOptions, build_prompt
from conveyor.runner import AgentRunner
from conveyor.sentinel import SentinelKind, SentinelScanner
from conveyor.state.backlog import BacklogStore, ConveyorStateError, TaskRecord
from conveyor.state.git import GitCommitter, commit_message
from conveyor.state.progress import ProgressLog
from conveyor.supervisor import (
    ExitEvent,
    ProcessSupervisor,
    RunKind,
    SessionAlreadyRunningError,
    TerminateResult,
)

logger = logging.getLogger(__name__)


class OrchestratorState(StrEnum):
    IDLE = "idle"
    SELECTING_TASK = "selecting_task"
    AWAITING_AGENT = "awaiting_agent"
    REACTING_TO_EVENTS = "reacting_to_events"
    ADVANCING = "advancing"
    ABORTING = "aborting"


class RunOutcome(StrEnum):
    COMPLETED = "completed"
    NOTHING_TO_DO = "nothing_to_do"
    FAILED = "failed"
    ABORTED = "aborted"
    CONFIGURATION_ERROR = "configuration_error"


@dataclass(slots=True)
class RunReport:
    outcome: RunOutcome
    completed_task_ids: list[int] = field(default_factory=list)
    failed_task_id: int | None = None
    exit_code: int | None = None
    signal: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome in {RunOutcome.COMPLETED, RunOutcome.NOTHING_TO_DO}


def _describe_exit(exit_event: ExitEvent) -> str:
    if exit_event.error:
        return exit_event.error
    if exit_event.signal:
        return f"signal {exit_event.signal}"
    return f"exit code {exit_event.exit_code}"


class TaskOrchestrator(AgentRunner):
    """Runs pending backlog tasks one agent process at a time.

    Each iteration re-reads the backlog, picks the first pending task, spawns
    the agent and reacts to the completion and summary markers in its output.
    Exit code 0 is authoritative for success. Any other exit stops the run,
    because later tasks may depend on the failed one.
    """

    run_kind = RunKind.EXECUTION

    def __init__(
        self,
        project_dir: Path,
        backend: AgentBackend,
        *,
        supervisor: ProcessSupervisor,
        backlog: BacklogStore,
        progress: ProgressLog,
        environment: ShellEnvironment,
        git: GitCommitter | None = None,
        model: str | None = None,
        prompt_version: int = PROMPT_VERSION,
        event_hook: EventHook | None = None,
    ) -> None:
        super().__init__(
            project_dir,
            backend,
            supervisor=supervisor,
            backlog=backlog,
            environment=environment,
            model=model,
            event_hook=event_hook,
        )
        self.progress = progress
        self.git = git
        self.prompt_version = prompt_version
        self._state = OrchestratorState.IDLE
        self._abort_requested = False

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is not OrchestratorState.IDLE

    def _set_state(self, state: OrchestratorState) -> None:
        if self._abort_requested and state not in {
            OrchestratorState.ABORTING,
            OrchestratorState.IDLE,
        }:
            return
        logger.debug("Orchestrator state %s -> %s", self._state.value, state.value)
        self._state = state

    def _configuration_error(
        self,
        message: str,
        completed: list[int],
        task_id: int | None = None,
    ) -> RunReport:
        self._emit("configuration_error", message, Severity.ERROR, task_id=task_id)
        return RunReport(
            outcome=RunOutcome.CONFIGURATION_ERROR,
            completed_task_ids=list(completed),
            error=message,
        )

    def abort(self) -> TerminateResult:
        if self._state is OrchestratorState.IDLE:
            return TerminateResult(success=False, message="No task is currently running.")
        self._abort_requested = True
        self._set_state(OrchestratorState.ABORTING)
        result = self.supervisor.terminate(RunKind.EXECUTION)
        if not result.success:
            # No live agent; the run loop checks the flag before the next spawn.
            result = TerminateResult(
                success=True, message="Task execution aborted; no agent process was running."
            )
        self._emit("abort_requested", "Task execution aborted by user.", Severity.WARNING)
        return result

    async def run(self, task_id: int | None = None) -> RunReport:
        """Run one task by id, or every pending task in backlog order."""
        if self.is_running or self.supervisor.is_running(RunKind.EXECUTION):
            return self._configuration_error("A task execution is already running.", [])

        self._abort_requested = False
        completed: list[int] = []
        try:
            report = await self._run_loop(task_id, completed)
        finally:
            self._abort_requested = False
            self._set_state(OrchestratorState.IDLE)

        if report.outcome is RunOutcome.COMPLETED:
            self._emit(
                "run_complete",
                f"Run finished: {len(report.completed_task_ids)} task(s) completed.",
                Severity.SUCCESS,
            )
        elif report.outcome is RunOutcome.FAILED:
            self._emit(
                "run_failed",
                f"Run stopped at task [{report.failed_task_id}]: {report.error}",
                Severity.ERROR,
                task_id=report.failed_task_id,
            )
        elif report.outcome is RunOutcome.ABORTED:
            self._emit("run_aborted", "Run aborted.", Severity.WARNING)
        return report

    async def _run_loop(self, pinned_task_id: int | None, completed: list[int]) -> RunReport:
        while True:
            if self._abort_requested:
                return RunReport(outcome=RunOutcome.ABORTED, completed_task_ids=list(completed))

            self._set_state(OrchestratorState.SELECTING_TASK)
            try:
                backlog = self.backlog.load()
            except ConveyorStateError as exc:
                return self._configuration_error(str(exc), completed)
            if not backlog.exists:
                return self._configuration_error(
                    f"No backlog found at {self.backlog.path}.", completed
                )

            if pinned_task_id is not None:
                task = backlog.get(pinned_task_id)
                if task is None:
                    return self._configuration_error(
                        f"Task not found: {pinned_task_id}", completed, pinned_task_id
                    )
            else:
                task = backlog.next_pending()

            if task is None:
                if completed:
                    return RunReport(outcome=RunOutcome.COMPLETED, completed_task_ids=list(completed))
                self._emit("nothing_to_do", "All tasks are already completed.")
                return RunReport(outcome=RunOutcome.NOTHING_TO_DO)

            failure = await self._execute_task(task, completed)
            if failure is not None:
                return failure
            completed.append(task.id)
            if pinned_task_id is not None:
                return RunReport(outcome=RunOutcome.COMPLETED, completed_task_ids=list(completed))
            self._set_state(OrchestratorState.ADVANCING)

    def _build_task_prompt(self, task: TaskRecord) -> str:
        try:
            progress_context = self.progress.read()
        except ConveyorStateError as exc:
            self._emit("warning", str(exc), Severity.WARNING, task_id=task.id)
            progress_context = ""
        return build_prompt(
            PromptOptions(
                id=task.id,
                title=task.title,
                description=task.description,
                plan=task.plan,
                progress_context=progress_context,
            ),
            version=self.prompt_version,
        )

    async def _execute_task(self, task: TaskRecord, completed: list[int]) -> RunReport | None:
        self._set_state(OrchestratorState.AWAITING_AGENT)
        problem = self._check_project_dir()
        if problem:
            return self._configuration_error(problem, completed, task.id)
        executable, problem = self._resolve_agent()
        if executable is None:
            return self._configuration_error(problem or "Agent not found.", completed, task.id)

        try:
            prompt = self._build_task_prompt(task)
        except PromptContractError as exc:
            return self._configuration_error(f"Task [{task.id}]: {exc}", completed, task.id)
        invocation = self.backend.build_command(prompt, model=self.model, kind=RunKind.EXECUTION)
        self._emit("task_started", f"Running task [{task.id}] {task.title}", task_id=task.id)
        if self._abort_requested:
            self._emit("task_aborted", f"Task [{task.id}] aborted.", Severity.WARNING, task_id=task.id)
            return RunReport(outcome=RunOutcome.ABORTED, completed_task_ids=list(completed))
        try:
            session = await self.supervisor.spawn(
                RunKind.EXECUTION,
                executable,
                invocation.args,
                cwd=self.project_dir,
                env=self.environment.environment(),
                stdin_text=invocation.stdin_text,
                target_task_id=task.id,
            )
        except SessionAlreadyRunningError as exc:
            return self._configuration_error(str(exc), completed, task.id)

        self._set_state(OrchestratorState.REACTING_TO_EVENTS)
        scanner = SentinelScanner()
        marked_done = False
        exit_event: ExitEvent | None = None
        async for event in session.events():
            if isinstance(event, ExitEvent):
                exit_event = event
                break
            self._forward_output(event, task.id)
            if event.stream != "stdout":
                continue
            for sentinel in scanner.feed(event.text):
                session.sentinels_fired.add(sentinel.kind.value)
                if sentinel.kind is SentinelKind.DONE:
                    if not self._abort_requested:
                        marked_done = await self._complete_task(task)
                elif sentinel.text is not None:
                    self._save_summary(task, sentinel.text)

        if exit_event is None or exit_event.aborted or self._abort_requested:
            self._emit("task_aborted", f"Task [{task.id}] aborted.", Severity.WARNING, task_id=task.id)
            return RunReport(outcome=RunOutcome.ABORTED, completed_task_ids=list(completed))

        if not exit_event.succeeded:
            description = _describe_exit(exit_event)
            self._emit(
                "task_failed",
                f"Task [{task.id}] failed with {description}.",
                Severity.ERROR,
                task_id=task.id,
            )
            return RunReport(
                outcome=RunOutcome.FAILED,
                completed_task_ids=list(completed),
                failed_task_id=task.id,
                exit_code=exit_event.exit_code,
                signal=exit_event.signal,
                error=f"Task {task.id} failed with {description}.",
            )

        if not marked_done:
            self._emit(
                "done_marker_missing",
                f"Task [{task.id}] exited cleanly without the completion marker.",
                Severity.WARNING,
                task_id=task.id,
            )
            if not await self._complete_task(task):
                return RunReport(
                    outcome=RunOutcome.FAILED,
                    completed_task_ids=list(completed),
                    failed_task_id=task.id,
                    exit_code=exit_event.exit_code,
                    error=f"Task {task.id} finished but could not be marked as done.",
                )
        self._emit(
            "task_succeeded",
            f"Task [{task.id}] completed successfully.",
            Severity.SUCCESS,
            task_id=task.id,
        )
        return None

    async def _complete_task(self, task: TaskRecord) -> bool:
        try:
            self.backlog.mark_done(task.id)
        except ConveyorStateError as exc:
            self._emit(
                "error",
                f"Could not mark task [{task.id}] as done: {exc}",
                Severity.ERROR,
                task_id=task.id,
            )
            return False
        task.is_done = True
        self._emit("task_done", f"Task [{task.id}] marked as done.", Severity.SUCCESS, task_id=task.id)
        await self._commit(task)
        return True

    async def _commit(self, task: TaskRecord) -> None:
        if self.git is None:
            return
        result = await asyncio.to_thread(self.git.commit_all, commit_message(task))
        if not result.success:
            self._emit("commit_failed", f"Git: {result.message}", Severity.WARNING, task_id=task.id)
            return
        self._emit(
            "commit",
            result.message,
            Severity.SUCCESS if result.committed else Severity.INFO,
            task_id=task.id,
        )

    def _save_summary(self, task: TaskRecord, summary: str) -> None:
        try:
            self.progress.append(f"[{task.id}] {task.title}\n{summary}")
        except ConveyorStateError as exc:
            self._emit(
                "error",
                f"Could not write progress log: {exc}",
                Severity.ERROR,
                task_id=task.id,
            )
            return
        self._emit(
            "summary_saved",
            f"Summary for task [{task.id}] saved to progress log.",
            Severity.SUCCESS,
            task_id=task.id,
        )
