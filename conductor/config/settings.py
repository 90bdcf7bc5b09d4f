"""
Configuration system using Pydantic for type-safe settings management.

Settings are grouped in sections (state, decisions, reasoning, worktrees,
scheduler). Every field has a default, so an empty configuration is valid.
Values can come from a YAML file (``ConductorSettings.from_yaml``) or from
environment variables prefixed with ``CONDUCTOR_`` using ``__`` as the
nesting delimiter, for example ``CONDUCTOR_SCHEDULER__MAX_PARALLEL=4``.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from conductor.exceptions import ConfigurationError


class StateConfig(BaseModel):
    """State store configuration."""

    directory: str = Field(default=".conductor/state", description="Directory holding persisted state")


class DecisionConfig(BaseModel):
    """Decision gate configuration."""

    confidence_threshold: float = Field(
        default=0.75, ge=0.0, le=1.0, description="Minimum confidence for an autonomous decision"
    )
    knowledge_base: str | None = Field(default=None, description="YAML file of authoritative answers")
    knowledge_confidence: float = Field(default=0.95, ge=0.0, le=1.0, description="Confidence of knowledge base hits")
    reasoning_timeout: float = Field(default=60.0, gt=0.0, description="Seconds allowed per reasoning call")
    reasoning_attempts: int = Field(default=3, ge=1, le=10, description="Reasoning attempts before degrading")
    retry_base_delay: float = Field(default=1.0, ge=0.0, description="First backoff delay between reasoning attempts")
    retry_max_delay: float = Field(default=10.0, ge=0.0, description="Upper bound of a reasoning backoff delay")


class ReasoningConfig(BaseModel):
    """OpenAI-compatible reasoning provider configuration."""

    enabled: bool = Field(default=False, description="Call the reasoning provider for unanswered questions")
    base_url: str = Field(default="http://localhost:8000/v1", description="API base URL")
    model: str = Field(default="default", description="Model identifier")
    api_key: SecretStr | None = Field(default=None, description="Bearer token, supports ${ENV} references")
    temperature: float = Field(default=0.3, ge=0.0, le=2.0, description="Sampling temperature")
    max_tokens: int = Field(default=1000, ge=1, description="Maximum tokens per answer")
    timeout: float = Field(default=60.0, gt=0.0, description="HTTP timeout in seconds")

    @model_validator(mode="after")
    def validate_base_url(self) -> ReasoningConfig:
        if not (self.base_url.startswith("http://") or self.base_url.startswith("https://")):
            raise ValueError(f"base_url must start with http:// or https://, got: {self.base_url}")
        return self


class WorktreeConfig(BaseModel):
    """Worktree coordinator configuration."""

    repo_root: str = Field(default=".", description="Repository the worktrees belong to")
    directory: str = Field(default="wt", description="Worktree directory, relative to repo_root")
    branch_prefix: str = Field(default="story/", description="Prefix of per-unit branches")
    base_branch: str = Field(default="main", description="Branch new worktrees start from")
    git_timeout: float = Field(default=120.0, gt=0.0, description="Seconds allowed per git command")
    lock_retry_attempts: int = Field(default=5, ge=1, le=20, description="Attempts when the repository is locked")
    lock_retry_base_delay: float = Field(default=0.5, ge=0.0, description="First backoff delay on lock contention")
    lock_retry_max_delay: float = Field(default=8.0, ge=0.0, description="Upper bound of a lock backoff delay")


class SchedulerConfig(BaseModel):
    """Scheduler configuration."""

    max_parallel: int = Field(default=3, ge=1, le=32, description="Maximum concurrent lanes")
    poll_interval: float = Field(default=5.0, gt=0.0, description="Seconds between escalation polls")
    bottleneck_threshold: int = Field(default=3, ge=1, description="Hard dependents that make a unit a bottleneck")


class ConductorSettings(BaseSettings):
    """Top-level conductor settings."""

    model_config = SettingsConfigDict(
        env_prefix="CONDUCTOR_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    state: StateConfig = Field(default_factory=StateConfig)
    decisions: DecisionConfig = Field(default_factory=DecisionConfig)
    reasoning: ReasoningConfig = Field(default_factory=ReasoningConfig)
    worktrees: WorktreeConfig = Field(default_factory=WorktreeConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)

    @property
    def state_dir(self) -> Path:
        return Path(self.state.directory)

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> ConductorSettings:
        """Load settings from a YAML file with environment variable interpolation.

        Supports ``${VAR}`` and ``${VAR:-default}`` placeholders outside of
        comment lines.

        Raises:
            ConfigurationError: If the file is missing, unreadable, not a YAML
                mapping, references an unset variable, or fails validation.
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Replace ``${VAR}`` and ``${VAR:-default}`` placeholders.

        Raises:
            ValueError: If a variable without default is not set.
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name, default_value = match.group(1), match.group(2)
            value = os.getenv(var_name)
            if value is not None:
                return value
            if default_value is not None:
                return default_value
            raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
