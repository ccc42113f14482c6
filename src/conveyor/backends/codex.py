from __future__ import annotations

from conveyor.backends.base import AgentBackend, AgentInvocation
from conveyor.supervisor import RunKind


class CodexBackend(AgentBackend):
    name = "codex"
    default_binary = "codex"

    def build_command(self, prompt: str, *, model: str | None, kind: RunKind) -> AgentInvocation:
        if kind is RunKind.PLANNING:
            args = ["exec", "--sandbox", "read-only"]
        else:
            args = ["exec", "--full-auto"]
        if model:
            args.extend(["-m", model])
        args.extend(self.extra_args)
        if kind is RunKind.PLANNING:
            # "-" makes codex read the prompt from stdin.
            args.append("-")
            return AgentInvocation(args=args, stdin_text=prompt)
        args.append(prompt)
        return AgentInvocation(args=args)
