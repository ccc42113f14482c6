from __future__ import annotations

from conveyor.backends.base import AgentBackend, AgentInvocation
from conveyor.supervisor import RunKind


class CopilotBackend(AgentBackend):
    name = "copilot"
    default_binary = "copilot"

    def build_command(self, prompt: str, *, model: str | None, kind: RunKind) -> AgentInvocation:
        args = ["--yolo"]
        if kind is RunKind.PLANNING:
            args.append("--no-auto-update")
        if model:
            args.extend(["--model", model])
        args.extend(self.extra_args)
        if kind is RunKind.PLANNING:
            return AgentInvocation(args=args, stdin_text=prompt)
        args.extend(["-p", prompt])
        return AgentInvocation(args=args)
