"""Application configuration loading.

Configuration is read from ``~/.skillrunner/config.yaml`` (or the path in
``SKILLRUNNER_CONFIG``). A missing file means defaults. Top-level
``providers`` entries are merged into ``routing.providers``; routing
entries win on conflicting keys.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from skillrunner.errors import ConfigurationError, InvalidProfileError
from skillrunner.observability.logging import get_logger
from skillrunner.routing.config import RoutingConfiguration
from skillrunner.skills.models import validate_profile
from skillrunner.workflow.executor import DEFAULT_MAX_PARALLEL
from skillrunner.workflow.planner import DEFAULT_OUTPUT_TOKEN_FRACTION, DEFAULT_OUTPUT_TOKENS

log = get_logger(__name__)

DEFAULT_HOME = Path.home() / ".skillrunner"
DEFAULT_CONFIG_PATH = DEFAULT_HOME / "config.yaml"


def _path(value: Any, default: Path) -> Path:
    return Path(str(value)).expanduser() if value else default


@dataclass
class SkillsConfig:
    directory: Path = field(default_factory=lambda: DEFAULT_HOME / "skills")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SkillsConfig:
        return cls(directory=_path(data.get("directory"), DEFAULT_HOME / "skills"))


@dataclass
class MemoryConfig:
    """Memory file settings.

    Attributes:
        enabled: Prepend MEMORY.md / CLAUDE.md content to phase prompts.
        max_tokens: Budget for the combined memory text.
    """

    enabled: bool = True
    max_tokens: int = 2000

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryConfig:
        return cls(
            enabled=bool(data.get("enabled", True)),
            max_tokens=int(data.get("max_tokens", 2000)),
        )


@dataclass
class CheckpointConfig:
    """Checkpoint store settings.

    Attributes:
        enabled: Checkpoint batch executions by default.
        backend: ``sqlite`` for a durable store, ``memory`` for a
            process-local one.
        db_path: SQLite database location.
    """

    enabled: bool = True
    backend: Literal["sqlite", "memory"] = "sqlite"
    db_path: Path = field(default_factory=lambda: DEFAULT_HOME / "checkpoints.db")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckpointConfig:
        backend = str(data.get("backend", "sqlite"))
        if backend not in ("sqlite", "memory"):
            raise ConfigurationError(f"unknown checkpoint backend: {backend}")
        return cls(
            enabled=bool(data.get("enabled", True)),
            backend=backend,  # type: ignore[arg-type]
            db_path=_path(data.get("db_path"), DEFAULT_HOME / "checkpoints.db"),
        )


@dataclass
class MetricsConfig:
    """Execution metrics settings.

    Attributes:
        enabled: Record every batch execution.
        db_path: SQLite database location.
    """

    enabled: bool = True
    db_path: Path = field(default_factory=lambda: DEFAULT_HOME / "metrics.db")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MetricsConfig:
        return cls(
            enabled=bool(data.get("enabled", True)),
            db_path=_path(data.get("db_path"), DEFAULT_HOME / "metrics.db"),
        )


@dataclass
class ExecutorConfig:
    """Executor and planner tuning.

    Attributes:
        max_parallel: Concurrent phases per batch.
        output_token_fraction: Share of a phase's max_tokens assumed to be
            generated when planning.
        default_output_tokens: Output estimate when the fraction yields 0.
        failure_policy: Policy for skills that do not set one.
    """

    max_parallel: int = DEFAULT_MAX_PARALLEL
    output_token_fraction: float = DEFAULT_OUTPUT_TOKEN_FRACTION
    default_output_tokens: int = DEFAULT_OUTPUT_TOKENS
    failure_policy: Literal["descendants", "abort"] = "descendants"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutorConfig:
        policy = str(data.get("failure_policy", "descendants"))
        if policy not in ("descendants", "abort"):
            raise ConfigurationError(f"unknown failure policy: {policy}")
        config = cls(
            max_parallel=int(data.get("max_parallel", DEFAULT_MAX_PARALLEL)),
            output_token_fraction=float(
                data.get("output_token_fraction", DEFAULT_OUTPUT_TOKEN_FRACTION)
            ),
            default_output_tokens=int(data.get("default_output_tokens", DEFAULT_OUTPUT_TOKENS)),
            failure_policy=policy,  # type: ignore[arg-type]
        )
        if config.max_parallel < 1:
            raise ConfigurationError("executor.max_parallel must be >= 1")
        if not 0 <= config.output_token_fraction <= 1:
            raise ConfigurationError("executor.output_token_fraction must be between 0 and 1")
        return config


@dataclass
class LoggingConfig:
    verbosity: int = 0
    file: bool = False
    log_dir: Path = field(default_factory=lambda: DEFAULT_HOME / "logs")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoggingConfig:
        return cls(
            verbosity=int(data.get("verbosity", 0)),
            file=bool(data.get("file", False)),
            log_dir=_path(data.get("log_dir"), DEFAULT_HOME / "logs"),
        )


@dataclass
class AppConfig:
    """Complete application configuration."""

    routing: RoutingConfiguration = field(default_factory=RoutingConfiguration)
    skills: SkillsConfig = field(default_factory=SkillsConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    checkpoints: CheckpointConfig = field(default_factory=CheckpointConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    default_profile: str | None = None
    machine_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AppConfig:
        """Create config from dictionary.

        Raises:
            ConfigurationError: If any section is invalid.
        """
        routing_data = dict(data.get("routing") or {})
        routing_data["providers"] = _merge_providers(
            dict(data.get("providers") or {}), dict(routing_data.get("providers") or {})
        )
        default_profile = data.get("default_profile")
        try:
            if default_profile is not None:
                validate_profile(str(default_profile))
            return cls(
                routing=RoutingConfiguration.from_dict(routing_data),
                skills=SkillsConfig.from_dict(dict(data.get("skills") or {})),
                memory=MemoryConfig.from_dict(dict(data.get("memory") or {})),
                checkpoints=CheckpointConfig.from_dict(dict(data.get("checkpoints") or {})),
                metrics=MetricsConfig.from_dict(dict(data.get("metrics") or {})),
                executor=ExecutorConfig.from_dict(dict(data.get("executor") or {})),
                logging=LoggingConfig.from_dict(dict(data.get("logging") or {})),
                default_profile=str(default_profile) if default_profile is not None else None,
                machine_id=data.get("machine_id"),
            )
        except InvalidProfileError as e:
            raise ConfigurationError(str(e)) from e
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"invalid configuration: {e}") from e

    def apply_env(self) -> None:
        """Apply ``SKILLRUNNER_*`` environment overrides in place.

        Raises:
            ConfigurationError: If ``SKILLRUNNER_PROFILE`` is not a known profile.
        """
        if skills_dir := os.getenv("SKILLRUNNER_SKILLS_DIR"):
            self.skills.directory = Path(skills_dir).expanduser()
        if profile := os.getenv("SKILLRUNNER_PROFILE"):
            try:
                self.default_profile = validate_profile(profile)
            except InvalidProfileError as e:
                raise ConfigurationError(f"SKILLRUNNER_PROFILE: {e}") from e
        if machine_id := os.getenv("SKILLRUNNER_MACHINE_ID"):
            self.machine_id = machine_id


def _merge_providers(
    top_level: dict[str, Any], routing: dict[str, Any]
) -> dict[str, dict[str, Any]]:
    merged: dict[str, dict[str, Any]] = {}
    for name in [*top_level, *(n for n in routing if n not in top_level)]:
        merged[str(name)] = {**dict(top_level.get(name) or {}), **dict(routing.get(name) or {})}
    return merged


def config_path(path: Path | None = None) -> Path:
    """Resolve the configuration file location."""
    if path is not None:
        return path.expanduser()
    if env_path := os.getenv("SKILLRUNNER_CONFIG"):
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration and apply environment overrides.

    Args:
        path: Explicit configuration file. Unlike the default location,
            an explicit path must exist.

    Returns:
        The loaded configuration, or defaults if no file exists.

    Raises:
        ConfigurationError: If the file cannot be read or is invalid.
    """
    explicit = path is not None or bool(os.getenv("SKILLRUNNER_CONFIG"))
    resolved = config_path(path)

    data: dict[str, Any] = {}
    if resolved.exists():
        yaml = YAML(typ="safe")
        try:
            with resolved.open("r", encoding="utf-8") as f:
                loaded = yaml.load(f)
        except (OSError, YAMLError) as e:
            raise ConfigurationError(f"cannot read config {resolved}: {e}") from e
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigurationError(f"config {resolved} must be a mapping")
        data = dict(loaded or {})
        log.debug("config_loaded", path=str(resolved))
    elif explicit:
        raise ConfigurationError(f"config file not found: {resolved}")

    config = AppConfig.from_dict(data)
    config.apply_env()
    return config
