from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_DESCRIPTION = "No description"
_KNOWN_KEYS = {"id", "title", "description", "isDone", "plan", "attachments"}


class ConveyorStateError(RuntimeError):
    """Raised when backlog, progress or git state operations fail."""


@dataclass(slots=True)
class Attachment:
    type: str
    relative_path: str
    display_name: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Attachment:
        relative_path = str(data.get("relativePath", ""))
        return cls(
            type=str(data.get("type", "file")),
            relative_path=relative_path,
            display_name=str(data.get("displayName") or Path(relative_path).name),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "relativePath": self.relative_path,
            "displayName": self.display_name,
        }


@dataclass(slots=True)
class TaskRecord:
    id: int
    title: str
    description: str = DEFAULT_DESCRIPTION
    is_done: bool = False
    plan: str | None = None
    attachments: list[Attachment] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> TaskRecord:
        if not isinstance(data, dict):
            raise ConveyorStateError(f"Backlog record must be an object, got {type(data).__name__}.")
        raw_id = data.get("id")
        if isinstance(raw_id, bool) or not isinstance(raw_id, int):
            raise ConveyorStateError(f"Backlog record has invalid id: {raw_id!r}")
        raw_attachments = data.get("attachments") or []
        if not isinstance(raw_attachments, list):
            raw_attachments = []
        plan = data.get("plan")
        return cls(
            id=raw_id,
            title=str(data.get("title", "")),
            description=str(data.get("description") or DEFAULT_DESCRIPTION),
            is_done=bool(data.get("isDone", False)),
            plan=plan if isinstance(plan, str) else None,
            attachments=[
                Attachment.from_dict(item) for item in raw_attachments if isinstance(item, dict)
            ],
            extra={key: value for key, value in data.items() if key not in _KNOWN_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "isDone": self.is_done,
        }
        if self.plan is not None:
            payload["plan"] = self.plan
        if self.attachments:
            payload["attachments"] = [item.to_dict() for item in self.attachments]
        payload.update(self.extra)
        return payload


@dataclass(slots=True)
class Backlog:
    tasks: list[TaskRecord] = field(default_factory=list)
    exists: bool = True

    def __len__(self) -> int:
        return len(self.tasks)

    def __iter__(self) -> Iterator[TaskRecord]:
        return iter(self.tasks)

    def next_pending(self) -> TaskRecord | None:
        for task in self.tasks:
            if not task.is_done:
                return task
        return None

    def get(self, task_id: int) -> TaskRecord | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def next_id(self) -> int:
        if not self.tasks:
            return 0
        return max(task.id for task in self.tasks) + 1

    def add(
        self,
        title: str,
        description: str = "",
        attachments: list[Attachment] | None = None,
    ) -> TaskRecord:
        if not title.strip():
            raise ConveyorStateError("Task title is required.")
        task = TaskRecord(
            id=self.next_id(),
            title=title.strip(),
            description=description.strip() or DEFAULT_DESCRIPTION,
            attachments=list(attachments or []),
        )
        self.tasks.append(task)
        return task

    def _require(self, task_id: int) -> TaskRecord:
        task = self.get(task_id)
        if task is None:
            raise ConveyorStateError(f"Task not found: {task_id}")
        return task

    def update(
        self,
        task_id: int,
        *,
        title: str | None = None,
        description: str | None = None,
        attachments: list[Attachment] | None = None,
    ) -> TaskRecord:
        task = self._require(task_id)
        if title is not None:
            if not title.strip():
                raise ConveyorStateError("Task title is required.")
            task.title = title.strip()
        if description is not None:
            task.description = description.strip() or DEFAULT_DESCRIPTION
        if attachments is not None:
            task.attachments = list(attachments)
        return task

    def mark_done(self, task_id: int, done: bool = True) -> TaskRecord:
        task = self._require(task_id)
        task.is_done = done
        return task

    def set_plan(self, task_id: int, plan: str) -> TaskRecord:
        task = self._require(task_id)
        task.plan = plan
        return task

    def to_list(self) -> list[dict[str, Any]]:
        return [task.to_dict() for task in self.tasks]


class BacklogStore:
    """JSON document holding the backlog, re-read on every access."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.is_file()

    def read_text(self) -> str | None:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise ConveyorStateError(f"Failed to read {self.path}: {exc}") from exc

    def load(self) -> Backlog:
        raw = self.read_text()
        if raw is None:
            return Backlog(exists=False)
        if not raw.strip():
            return Backlog()
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConveyorStateError(f"Backlog {self.path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, list):
            raise ConveyorStateError(f"Backlog {self.path} must contain a JSON array.")
        return Backlog(tasks=[TaskRecord.from_dict(item) for item in payload])

    def save(self, backlog: Backlog) -> None:
        serialized = json.dumps(backlog.to_list(), ensure_ascii=False, indent=2)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(serialized, encoding="utf-8")
        except OSError as exc:
            raise ConveyorStateError(f"Failed to write {self.path}: {exc}") from exc
        backlog.exists = True
        logger.debug("Saved %d backlog records to %s", len(backlog), self.path)

    def mark_done(self, task_id: int, done: bool = True) -> TaskRecord:
        backlog = self.load()
        task = backlog.mark_done(task_id, done)
        self.save(backlog)
        return task

    def set_plan(self, task_id: int, plan: str) -> TaskRecord:
        backlog = self.load()
        task = backlog.set_plan(task_id, plan)
        self.save(backlog)
        return task
