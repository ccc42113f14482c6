from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["copilot", "claude", "codex"]


@dataclass(slots=True)
class AgentConfig:
    backend: BackendName = "copilot"
    binary: str = ""
    model: str = "gpt-4.1"
    extra_args: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PathsConfig:
    state_dir: str = ".conveyor"
    backlog_file: str = "prd.json"
    progress_file: str = "progress.txt"


@dataclass(slots=True)
class GitConfig:
    enabled: bool = True
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class RunnerConfig:
    prompt_version: int = 2
    terminate_grace_seconds: float = 5.0
    resolve_login_shell: bool = True
    shell_timeout_seconds: float = 5.0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "WARNING"


@dataclass(slots=True)
class ConveyorConfig:
    agent: AgentConfig = field(default_factory=AgentConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    git: GitConfig = field(default_factory=GitConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> ConveyorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ConveyorConfig:
        return cls(
            agent=AgentConfig(**data.get("agent", {})),
            paths=PathsConfig(**data.get("paths", {})),
            git=GitConfig(**data.get("git", {})),
            runner=RunnerConfig(**data.get("runner", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "agent": {
                "backend": self.agent.backend,
                "binary": self.agent.binary,
                "model": self.agent.model,
                "extra_args": list(self.agent.extra_args),
            },
            "paths": {
                "state_dir": self.paths.state_dir,
                "backlog_file": self.paths.backlog_file,
                "progress_file": self.paths.progress_file,
            },
            "git": {
                "enabled": self.git.enabled,
                "timeout_seconds": self.git.timeout_seconds,
            },
            "runner": {
                "prompt_version": self.runner.prompt_version,
                "terminate_grace_seconds": self.runner.terminate_grace_seconds,
                "resolve_login_shell": self.runner.resolve_login_shell,
                "shell_timeout_seconds": self.runner.shell_timeout_seconds,
            },
            "logging": {
                "level": self.logging.level,
            },
        }

    def backlog_path(self, project_dir: Path) -> Path:
        return project_dir / self.paths.state_dir / self.paths.backlog_file

    def progress_path(self, project_dir: Path) -> Path:
        return project_dir / self.paths.state_dir / self.paths.progress_file


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        if rendered.endswith("."):
            rendered += "0"
        return rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConveyorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["agent", "paths", "git", "runner", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ConveyorConfig:
    if not path.exists():
        return ConveyorConfig.default()
    return ConveyorConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ConveyorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
