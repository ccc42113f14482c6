from conveyor.backends.base import AgentBackend, AgentInvocation, UnknownBackendError
from conveyor.backends.claude import ClaudeBackend
from conveyor.backends.codex import CodexBackend
from conveyor.backends.copilot import CopilotBackend

BACKENDS: dict[str, type[AgentBackend]] = {
    "copilot": CopilotBackend,
    "claude": ClaudeBackend,
    "codex": CodexBackend,
}


def build_backend(
    name: str,
    binary: str | None = None,
    extra_args: list[str] | None = None,
) -> AgentBackend:
    backend_cls = BACKENDS.get(name)
    if backend_cls is None:
        raise UnknownBackendError(
            f"Unknown agent backend '{name}'. Expected one of: {', '.join(sorted(BACKENDS))}."
        )
    return backend_cls(binary=binary or None, extra_args=extra_args)


__all__ = [
    "BACKENDS",
    "AgentBackend",
    "AgentInvocation",
    "ClaudeBackend",
    "CodexBackend",
    "CopilotBackend",
    "UnknownBackendError",
    "build_backend",
]
