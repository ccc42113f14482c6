from __future__ import annotations

from conveyor.backends.base import AgentBackend, AgentInvocation
from conveyor.supervisor import RunKind


class ClaudeBackend(AgentBackend):
    name = "claude"
    default_binary = "claude"

    def build_command(self, prompt: str, *, model: str | None, kind: RunKind) -> AgentInvocation:
        if kind is RunKind.PLANNING:
            args = ["-p", "--permission-mode", "plan"]
        else:
            args = ["-p", prompt, "--dangerously-skip-permissions"]
        if model:
            args.extend(["--model", model])
        args.extend(self.extra_args)
        if kind is RunKind.PLANNING:
            return AgentInvocation(args=args, stdin_text=prompt)
        return AgentInvocation(args=args)
