from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from conveyor.events import Severity
from conveyor.prompts import PLAN_CLOSE, PLAN_OPEN, PromptContractError, build_plan_prompt
from conveyor.runner import AgentRunner
from conveyor.state.backlog import Backlog, ConveyorStateError
from conveyor.supervisor import ExitEvent, RunKind, SessionAlreadyRunningError, TerminateResult

logger = logging.getLogger(__name__)

FENCE_PATTERN = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```")
ARRAY_PATTERN = re.compile(r"\[[\s\S]*\]")
WRAPPER_PATTERN = re.compile(
    re.escape(PLAN_OPEN) + r"([\s\S]*?)" + re.escape(PLAN_CLOSE), re.IGNORECASE
)
_TRAILING_DIGITS = re.compile(r"(\d+)$")


def _coerce_id(raw: Any) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float) and raw.is_integer():
        return int(raw)
    if isinstance(raw, str):
        text = raw.strip()
        if re.fullmatch(r"-?\d+", text):
            return int(text)
        # Keys such as "prd_id_02" carry the id as a numeric suffix.
        match = _TRAILING_DIGITS.search(text)
        if match:
            return int(match.group(1))
    return None


def _coerce_plan(raw: Any) -> str | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        return raw
    if isinstance(raw, list):
        return "\n".join(str(item) for item in raw)
    return json.dumps(raw, ensure_ascii=False)


def normalize_plan_payload(payload: Any) -> dict[int, str]:
    """Turn `[{id, plan}, ...]` or `{id: plan}` into an id -> plan mapping."""
    plans: dict[int, str] = {}
    if isinstance(payload, dict) and "id" in payload and "plan" in payload:
        payload = [payload]
    if isinstance(payload, list):
        for item in payload:
            if not isinstance(item, dict):
                continue
            task_id = _coerce_id(item.get("id"))
            plan = _coerce_plan(item.get("plan"))
            if task_id is not None and plan is not None:
                plans[task_id] = plan
    elif isinstance(payload, dict):
        for key, value in payload.items():
            task_id = _coerce_id(key)
            plan = _coerce_plan(value)
            if task_id is not None and plan is not None:
                plans[task_id] = plan
    return plans


def _parse_candidate(candidate: str) -> dict[int, str] | None:
    try:
        payload = json.loads(candidate.strip())
    except json.JSONDecodeError:
        return None
    return normalize_plan_payload(payload) or None


def extract_plan(output: str) -> dict[int, str] | None:
    """Find the plan JSON in free-form agent output.

    Tries fenced code blocks, then a bare array, then the `<plan_json>`
    wrapper. The last wrapper wins, since an agent may quote the example from
    its instructions before giving the real answer.
    """
    for match in FENCE_PATTERN.finditer(output):
        plans = _parse_candidate(match.group(1))
        if plans:
            return plans

    array_match = ARRAY_PATTERN.search(output)
    if array_match:
        plans = _parse_candidate(array_match.group(0))
        if plans:
            return plans

    for match in reversed(list(WRAPPER_PATTERN.finditer(output))):
        plans = _parse_candidate(match.group(1))
        if plans:
            return plans
    return None


def merge_plans(backlog: Backlog, plans: dict[int, str]) -> int:
    updated = 0
    for task in backlog:
        if task.id in plans:
            task.plan = plans[task.id]
            updated += 1
    return updated


class PlanOutcome(StrEnum):
    MERGED = "merged"
    UNPARSED = "unparsed"
    FAILED = "failed"
    ABORTED = "aborted"
    CONFIGURATION_ERROR = "configuration_error"


@dataclass(slots=True)
class PlanReport:
    outcome: PlanOutcome
    updated: int = 0
    exit_code: int | None = None
    signal: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is PlanOutcome.MERGED


class PlanRunner(AgentRunner):
    """Runs a single read-only planning pass over the whole backlog."""

    run_kind = RunKind.PLANNING

    @property
    def is_running(self) -> bool:
        return self.supervisor.is_running(RunKind.PLANNING)

    def abort(self) -> TerminateResult:
        result = self.supervisor.terminate(RunKind.PLANNING)
        if result.success:
            self._emit("abort_requested", "Planning process aborted by user.", Severity.WARNING)
        return result

    def _configuration_error(self, message: str) -> PlanReport:
        self._emit("configuration_error", message, Severity.ERROR)
        return PlanReport(outcome=PlanOutcome.CONFIGURATION_ERROR, error=message)

    async def run(self) -> PlanReport:
        problem = self._check_project_dir()
        if problem:
            return self._configuration_error(problem)
        try:
            raw = self.backlog.read_text()
            backlog = self.backlog.load()
        except ConveyorStateError as exc:
            return self._configuration_error(f"Failed to read backlog: {exc}")
        if raw is None or not backlog.exists:
            return self._configuration_error(f"No backlog found at {self.backlog.path}.")
        if not len(backlog):
            return self._configuration_error("Backlog is empty, nothing to plan.")

        executable, problem = self._resolve_agent()
        if executable is None:
            return self._configuration_error(problem or "Agent not found.")

        try:
            prompt = build_plan_prompt(raw)
        except PromptContractError as exc:
            return self._configuration_error(str(exc))
        invocation = self.backend.build_command(prompt, model=self.model, kind=RunKind.PLANNING)
        self._emit("plan_started", f"Planning {len(backlog)} backlog item(s).")
        try:
            session = await self.supervisor.spawn(
                RunKind.PLANNING,
                executable,
                invocation.args,
                cwd=self.project_dir,
                env=self.environment.environment(),
                stdin_text=invocation.stdin_text,
            )
        except SessionAlreadyRunningError as exc:
            return self._configuration_error(str(exc))

        exit_event: ExitEvent | None = None
        async for event in session.events():
            if isinstance(event, ExitEvent):
                exit_event = event
                break
            self._forward_output(event)

        if exit_event is None or exit_event.aborted:
            self._emit("plan_aborted", "Planning aborted.", Severity.WARNING)
            return PlanReport(outcome=PlanOutcome.ABORTED)
        if not exit_event.succeeded:
            message = exit_event.error or (
                f"Planning process failed with signal {exit_event.signal}."
                if exit_event.signal
                else f"Planning process failed with exit code {exit_event.exit_code}."
            )
            self._emit("plan_failed", message, Severity.ERROR)
            return PlanReport(
                outcome=PlanOutcome.FAILED,
                exit_code=exit_event.exit_code,
                signal=exit_event.signal,
                error=message,
            )

        plans = extract_plan(session.output_buffer)
        if not plans:
            self._emit("plan_unparsed", "Could not parse plan JSON from output.", Severity.ERROR)
            return PlanReport(outcome=PlanOutcome.UNPARSED, exit_code=0)

        try:
            # Re-read so edits made while the agent was planning are kept.
            backlog = self.backlog.load()
            updated = merge_plans(backlog, plans)
            self.backlog.save(backlog)
        except ConveyorStateError as exc:
            message = f"Failed to save plans: {exc}"
            self._emit("plan_failed", message, Severity.ERROR)
            return PlanReport(outcome=PlanOutcome.FAILED, exit_code=0, error=message)

        ignored = len(plans) - updated
        if ignored:
            logger.info("Ignored %d plan entries with no matching task", ignored)
        self._emit(
            "plan_saved",
            f"Plans saved to backlog ({updated} items updated).",
            Severity.SUCCESS,
        )
        return PlanReport(outcome=PlanOutcome.MERGED, updated=updated, exit_code=0)
