from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from conveyor.supervisor import RunKind


class UnknownBackendError(ValueError):
    """Raised when a configured agent backend name is not recognised."""


@dataclass(slots=True)
class AgentInvocation:
    args: list[str]
    stdin_text: str | None = None


class AgentBackend(ABC):
    name: str = "agent"
    default_binary: str = "agent"

    def __init__(self, binary: str | None = None, extra_args: list[str] | None = None) -> None:
        self.binary = binary or self.default_binary
        self.extra_args = list(extra_args or [])

    @abstractmethod
    def build_command(self, prompt: str, *, model: str | None, kind: RunKind) -> AgentInvocation:
        """Return the arguments (without the executable) for one agent run."""
