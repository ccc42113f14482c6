from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class Severity(StrEnum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class EngineEvent:
    """A single notification on the engine output stream."""

    kind: str
    message: str
    severity: Severity = Severity.INFO
    stream: str = "engine"
    task_id: int | None = None
    run_kind: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.kind,
            "message": self.message,
            "severity": self.severity.value,
            "stream": self.stream,
            "task_id": self.task_id,
            "run_kind": self.run_kind,
        }


EventHook = Callable[[EngineEvent], None]
