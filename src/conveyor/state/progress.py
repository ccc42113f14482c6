from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from conveyor.state.backlog import ConveyorStateError


class ProgressLog:
    """Append-only plain-text log of task summaries."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.is_file()

    def read(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except OSError as exc:
            raise ConveyorStateError(f"Failed to read {self.path}: {exc}") from exc

    def append(self, content: str) -> None:
        timestamp = datetime.now(UTC).replace(microsecond=0).isoformat()
        block = f"\n---\n[{timestamp}]\n{content}\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(block)
        except OSError as exc:
            raise ConveyorStateError(f"Failed to append to {self.path}: {exc}") from exc

    def clear(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text("", encoding="utf-8")
        except OSError as exc:
            raise ConveyorStateError(f"Failed to clear {self.path}: {exc}") from exc
