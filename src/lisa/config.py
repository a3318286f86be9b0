"""Configuration loader for lisa."""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any, Literal

import tomlkit
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from lisa.errors import ConfigError
from lisa.models import ModelSpec
from lisa.paths import write_text_atomic

type ProviderNameLiteral = Literal[
    "claude", "gemini", "opencode", "codex", "aider", "goose", "copilot", "cursor"
]
type WorkflowMode = Literal["worktree", "branch"]
type LifecycleMode = Literal["auto", "skip", "validate-only"]

CONFIG_DIR_NAME = ".lisa"
CONFIG_FILE_NAME = "config.toml"


class OverseerConfig(BaseModel):
    """Idle/stuck detection settings for a running provider."""

    enabled: bool = Field(default=True)
    check_interval: float = Field(default=30.0, gt=0, description="Seconds between snapshots")
    stuck_threshold: float = Field(
        default=300.0, description="Seconds without working-tree change before killing"
    )

    @model_validator(mode="after")
    def validate_threshold(self) -> OverseerConfig:
        if self.stuck_threshold < self.check_interval:
            raise ValueError("stuck_threshold must be >= check_interval")
        return self


class LoopConfig(BaseModel):
    """Scheduler loop settings."""

    cooldown: float = Field(default=10.0, ge=0, description="Seconds to sleep when idle")
    max_sessions: int = Field(default=0, ge=0, description="0 = unlimited")
    concurrency: int = Field(default=1, ge=1)


class SourceConfig(BaseModel):
    """Tracker query and status names used by the source."""

    team: str = ""
    project: str = ""
    label: str | list[str] = Field(default="ready")
    remove_label: str | None = None
    pick_from: str = "Todo"
    in_progress: str = "In Progress"
    done: str = "Done"

    @property
    def labels(self) -> list[str]:
        if isinstance(self.label, str):
            return [self.label] if self.label else []
        return list(self.label)


class ResourceConfig(BaseModel):
    """A local service a repository needs while an agent works on it."""

    name: str
    check_port: int = Field(gt=0, lt=65536)
    up: str
    down: str = "auto"
    startup_timeout: float = Field(default=30.0, gt=0)
    cwd: str | None = None


class LifecycleConfig(BaseModel):
    """Resources and setup commands run before the provider starts."""

    mode: LifecycleMode = "auto"
    resources: list[ResourceConfig] = Field(default_factory=list)
    setup: list[str] = Field(default_factory=list)


class RepoConfig(BaseModel):
    """A repository inside the workspace that issues can target."""

    name: str
    path: str = "."
    match: str = ""
    base_branch: str = "main"
    lifecycle: LifecycleConfig | None = None


class ProviderOptions(BaseModel):
    model: str | None = None
    models: list[str] = Field(default_factory=list)


class ModelSpecConfig(BaseModel):
    """An extra fallback candidate."""

    provider: ProviderNameLiteral
    model: str | None = None


class LisaConfig(BaseModel):
    """Root configuration model."""

    provider: ProviderNameLiteral = "claude"
    provider_options: dict[str, ProviderOptions] = Field(default_factory=dict)
    fallback: list[ModelSpecConfig] = Field(default_factory=list)
    source: str = "local"
    source_config: SourceConfig = Field(default_factory=SourceConfig)
    github: Literal["cli", "token"] = "cli"
    workflow: WorkflowMode = "worktree"
    workspace: str = "."
    base_branch: str = "main"
    repos: list[RepoConfig] = Field(default_factory=list)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    overseer: OverseerConfig = Field(default_factory=OverseerConfig)

    @field_validator("base_branch")
    @classmethod
    def validate_base_branch(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("base_branch must not be empty")
        return value

    @staticmethod
    def default_path(workspace: Path) -> Path:
        return Path(workspace) / CONFIG_DIR_NAME / CONFIG_FILE_NAME

    @classmethod
    def load(cls, config_path: Path) -> LisaConfig:
        """Load configuration from TOML file or use defaults."""
        if not config_path.exists():
            return cls()
        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
            return cls.model_validate(data)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {config_path}: {e}") from e
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration in {config_path}:\n{e}") from e

    def save(self, path: Path) -> None:
        """Serialize current config to a TOML file."""
        doc = tomlkit.document()
        data = {k: v for k, v in self.model_dump(exclude_none=True).items() if v not in ({}, [])}
        for key, value in _scalars_first(data).items():
            if _is_table(value) and isinstance(value, list):
                array = tomlkit.aot()
                for item in value:
                    array.append(tomlkit.item(item))
                doc[key] = array
            else:
                doc[key] = value
        write_text_atomic(path, tomlkit.dumps(doc))

    def workspace_path(self, base: Path | None = None) -> Path:
        root = Path(self.workspace)
        if not root.is_absolute() and base is not None:
            root = base / root
        return root.resolve()

    def model_candidates(self) -> list[ModelSpec]:
        """Ordered fallback candidates: primary provider models, then extra entries."""
        options = self.provider_options.get(self.provider)
        models: list[str] = []
        if options is not None:
            models = list(options.models) or ([options.model] if options.model else [])

        candidates = [ModelSpec(self.provider, model) for model in models]
        if not candidates:
            candidates.append(ModelSpec(self.provider, None))
        for entry in self.fallback:
            spec = ModelSpec(entry.provider, entry.model)
            if spec not in candidates:
                candidates.append(spec)
        return candidates


def _is_table(value: object) -> bool:
    if isinstance(value, dict):
        return True
    return isinstance(value, list) and bool(value) and all(isinstance(v, dict) for v in value)


def _scalars_first(data: dict[str, Any]) -> dict[str, Any]:
    """Reorder keys so no bare key follows a table header, at every depth."""
    ordered: dict[str, Any] = {}
    for key, value in sorted(data.items(), key=lambda kv: _is_table(kv[1])):
        if isinstance(value, dict):
            value = _scalars_first(value)
        elif _is_table(value):
            value = [_scalars_first(item) for item in value]
        ordered[key] = value
    return ordered
