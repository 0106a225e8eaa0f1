from __future__ import annotations

import json
import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["claude", "openai"]

SECTION_ORDER = ["project", "backend", "agents", "execution", "pipeline", "logging"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    workspace_dir: str = ".specflow"


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "openai"
    max_retries: int = 2
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 900.0
    structured_retries: int = 2


@dataclass(slots=True)
class AgentsConfig:
    model: str = ""
    reviewer_model: str = ""


@dataclass(slots=True)
class ExecutionConfig:
    max_concurrency: int = 2
    review_max_iterations: int = 5
    auto_accept_requires_ack: bool = False


@dataclass(slots=True)
class PipelineConfig:
    max_clarification_rounds: int = 5
    max_draft_iterations: int = 10
    max_escalation_rounds: int = 2
    final_approval_max_iterations: int = 3


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    file: str = ""


@dataclass(slots=True)
class SpecflowConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> SpecflowConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> SpecflowConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            execution=ExecutionConfig(**data.get("execution", {})),
            pipeline=PipelineConfig(**data.get("pipeline", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "workspace_dir": self.project.workspace_dir,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
                "structured_retries": self.backend.structured_retries,
            },
            "agents": {
                "model": self.agents.model,
                "reviewer_model": self.agents.reviewer_model,
            },
            "execution": {
                "max_concurrency": self.execution.max_concurrency,
                "review_max_iterations": self.execution.review_max_iterations,
                "auto_accept_requires_ack": self.execution.auto_accept_requires_ack,
            },
            "pipeline": {
                "max_clarification_rounds": self.pipeline.max_clarification_rounds,
                "max_draft_iterations": self.pipeline.max_draft_iterations,
                "max_escalation_rounds": self.pipeline.max_escalation_rounds,
                "final_approval_max_iterations": self.pipeline.final_approval_max_iterations,
            },
            "logging": {
                "level": self.logging.level,
                "file": self.logging.file,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: SpecflowConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTION_ORDER:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> SpecflowConfig:
    if not path.exists():
        return SpecflowConfig.default()
    return SpecflowConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: SpecflowConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")


def configure_logging(config: SpecflowConfig) -> None:
    """Install root handlers for the CLI process.

    Library modules only create named loggers; handlers are attached here so
    that embedding applications keep control over output.
    """
    level = getattr(logging, config.logging.level.upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if config.logging.file:
        log_path = Path(config.logging.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )
