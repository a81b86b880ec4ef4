from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

HandlerKind = Literal["claude"]
StateBackendName = Literal["local", "memory"]
SeverityName = Literal["critical", "high", "medium", "low"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    artifact_root: str = "."


@dataclass(slots=True)
class StateConfig:
    backend: StateBackendName = "local"
    root: str = ".epicflow"
    lock_timeout_seconds: float = 3.0


@dataclass(slots=True)
class HandlerConfig:
    kind: HandlerKind = "claude"
    binary: str = "claude"
    timeout_seconds: float = 900.0
    human_commands: list[str] = field(default_factory=list)


@dataclass(slots=True)
class WorkflowConfig:
    review_threshold: SeverityName = "high"
    max_parallel_tasks: int = 1
    max_steps_per_run: int = 0
    pause_on: list[str] = field(default_factory=list)


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass(slots=True)
class EpicflowConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    state: StateConfig = field(default_factory=StateConfig)
    handlers: HandlerConfig = field(default_factory=HandlerConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> EpicflowConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> EpicflowConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            state=StateConfig(**data.get("state", {})),
            handlers=HandlerConfig(**data.get("handlers", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "artifact_root": self.project.artifact_root,
            },
            "state": {
                "backend": self.state.backend,
                "root": self.state.root,
                "lock_timeout_seconds": self.state.lock_timeout_seconds,
            },
            "handlers": {
                "kind": self.handlers.kind,
                "binary": self.handlers.binary,
                "timeout_seconds": self.handlers.timeout_seconds,
                "human_commands": list(self.handlers.human_commands),
            },
            "workflow": {
                "review_threshold": self.workflow.review_threshold,
                "max_parallel_tasks": self.workflow.max_parallel_tasks,
                "max_steps_per_run": self.workflow.max_steps_per_run,
                "pause_on": list(self.workflow.pause_on),
            },
            "logging": {
                "level": self.logging.level,
                "json": self.logging.json,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: EpicflowConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "state", "handlers", "workflow", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> EpicflowConfig:
    if not path.exists():
        return EpicflowConfig.default()
    return EpicflowConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: EpicflowConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
