from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

StateBackendName = Literal["local", "memory"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    description: str = ""


@dataclass(slots=True)
class SessionConfig:
    autosave_debounce_seconds: float = 0.8
    recent_events_limit: int = 100
    run_list_limit: int = 20
    history_messages: int = 4
    context_chars: int = 4000


@dataclass(slots=True)
class ModelsConfig:
    plan: str = "qwen2.5-coder-helpful:3b"
    build: str = "qwen2.5-coder:3b"
    review: str = "qwen2.5-coder-helpful:3b"
    deploy: str = "qwen2.5-coder:3b"

    def as_role_map(self) -> dict[str, str]:
        return {
            "PLAN": self.plan,
            "BUILD": self.build,
            "REVIEW": self.review,
            "DEPLOY": self.deploy,
        }


@dataclass(slots=True)
class TasksConfig:
    match_threshold: float = 0.95
    phase_scoped_ids: bool = True
    share_plan_tasks: bool = True


@dataclass(slots=True)
class StateConfig:
    backend: StateBackendName = "local"
    directory: str = ".conductor"


@dataclass(slots=True)
class ConductorConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)
    tasks: TasksConfig = field(default_factory=TasksConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> ConductorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ConductorConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            session=SessionConfig(**data.get("session", {})),
            models=ModelsConfig(**data.get("models", {})),
            tasks=TasksConfig(**data.get("tasks", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "description": self.project.description,
            },
            "session": {
                "autosave_debounce_seconds": self.session.autosave_debounce_seconds,
                "recent_events_limit": self.session.recent_events_limit,
                "run_list_limit": self.session.run_list_limit,
                "history_messages": self.session.history_messages,
                "context_chars": self.session.context_chars,
            },
            "models": {
                "plan": self.models.plan,
                "build": self.models.build,
                "review": self.models.review,
                "deploy": self.models.deploy,
            },
            "tasks": {
                "match_threshold": self.tasks.match_threshold,
                "phase_scoped_ids": self.tasks.phase_scoped_ids,
                "share_plan_tasks": self.tasks.share_plan_tasks,
            },
            "state": {
                "backend": self.state.backend,
                "directory": self.state.directory,
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


def dumps_toml(config: ConductorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "session", "models", "tasks", "state"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ConductorConfig:
    if not path.exists():
        return ConductorConfig.default()
    return ConductorConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ConductorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
