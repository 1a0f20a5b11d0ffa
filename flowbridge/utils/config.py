"""Configuration loader and settings helpers for flowbridge."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, TypeVar

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..exceptions import ConfigurationError


logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def load_yaml_config(config_path: str | Path) -> dict[str, Any]:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Configuration dictionary

    Raises:
        ConfigurationError: If file not found or invalid YAML
    """
    try:
        with open(config_path) as f:
            config = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}")

    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigurationError(f"Configuration root in {config_path} must be a mapping")
    return config


def apply_env_overrides(config: dict[str, Any], prefix: str = "FLOWBRIDGE_") -> dict[str, Any]:
    """
    Override configuration values with environment variables.

    Environment variables should be prefixed (default: FLOWBRIDGE_) and use __ for nesting.
    Example: FLOWBRIDGE_POOL__MAX_CONNECTIONS overrides config['pool']['max_connections']

    Args:
        config: Base configuration dictionary
        prefix: Environment variable prefix

    Returns:
        Configuration with environment overrides applied
    """
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        config_key = key[len(prefix) :].lower()
        keys = config_key.split("__")

        current = config
        for k in keys[:-1]:
            if not isinstance(current.get(k), dict):
                current[k] = {}
            current = current[k]

        current[keys[-1]] = value

    return config


def validate_config(config: dict[str, Any], model: type[ModelT]) -> ModelT:
    """
    Validate configuration against Pydantic model.

    Raises:
        ConfigurationError: If validation fails
    """
    try:
        return model.model_validate(config)
    except PydanticValidationError as e:
        raise ConfigurationError(f"Configuration validation failed: {e}")


def _known_keys(model: type[BaseModel]) -> set[str]:
    keys: set[str] = set()
    for name, field in model.model_fields.items():
        keys.add(name)
        if field.alias:
            keys.add(field.alias)
    return keys


def build_component_config(
    model: type[ModelT],
    values: ModelT | dict[str, Any] | None = None,
    *,
    strict: bool = False,
) -> ModelT:
    """Validate a raw option mapping into a component configuration model.

    Unknown keys are rejected in strict mode and dropped (with a warning) otherwise.
    """

    if values is None:
        return model()
    if isinstance(values, model):
        return values
    if isinstance(values, BaseModel):
        values = values.model_dump()
    if not isinstance(values, dict):
        raise ConfigurationError(
            f"{model.__name__} options must be a mapping, got {type(values).__name__}"
        )

    known = _known_keys(model)
    unknown = sorted(key for key in values if key not in known)
    if unknown:
        if strict:
            raise ConfigurationError(
                f"Unknown {model.__name__} options: {', '.join(unknown)}"
            )
        logger.warning("Ignoring unknown %s options: %s", model.__name__, ", ".join(unknown))
        values = {key: value for key, value in values.items() if key in known}

    return validate_config(values, model)


class ComponentConfig(BaseModel):
    """Base for per-component options accepting snake_case or camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class ExecutionConfig(ComponentConfig):
    """Options recognized by the mapping execution engine (times in ms)."""

    timeout: int = Field(default=300_000, gt=0)
    retry_attempts: int = Field(default=3, ge=0)
    retry_delay: int = Field(default=1_000, ge=0)
    max_retry_delay: int = Field(default=30_000, ge=0)
    strict_mode: bool = False
    validate_input: bool = True
    validate_output: bool = False
    collect_metrics: bool = True
    enable_profiling: bool = False
    error_policy: Literal["stop", "skip", "retry"] = "retry"
    executor_type: Literal["auto", "sequential", "batch", "stream", "parallel"] = "auto"
    max_concurrency: int = Field(default=4, ge=1)


class PoolOptions(ComponentConfig):
    """Options for a named connection pool (times in ms)."""

    min_connections: int = Field(default=2, ge=0)
    max_connections: int = Field(default=10, ge=1)
    acquire_timeout: int = Field(default=10_000, gt=0)
    idle_timeout: int = Field(default=30_000, gt=0)
    create_timeout: int = Field(default=30_000, gt=0)
    reap_interval: int = Field(default=1_000, ge=0)
    health_check_interval: int = Field(default=60_000, ge=0)
    max_retries: int = Field(default=3, ge=1)
    drain_timeout: int = Field(default=30_000, ge=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> PoolOptions:
        if self.min_connections > self.max_connections:
            raise ValueError("min_connections cannot exceed max_connections")
        return self


class StreamOptions(ComponentConfig):
    """Options for the data stream optimizer."""

    high_water_mark: int = Field(default=16_384, ge=1)
    backpressure_threshold: int = Field(default=1_000, ge=1)
    max_concurrency: int = Field(default=10, ge=1)
    chunk_size: int = Field(default=100, ge=1)
    flush_timeout: int = Field(default=1_000, gt=0)
    enable_backpressure_control: bool = True
    enable_adaptive_buffering: bool = True
    enable_metrics: bool = True


class ValidationOptions(ComponentConfig):
    """Options for the validation framework."""

    cache_size: int = Field(default=1_000, ge=0)
    use_cache: bool = True
    strict_mode: bool = False
    coerce_types: bool = False
    stop_on_error: bool = False


class DatabasePoolSettings(BaseModel):
    """Connection pooling configuration for the state store engine."""

    model_config = ConfigDict(extra="forbid")

    pool_size: int = Field(default=5, ge=1)
    max_overflow: int = Field(default=10, ge=0)
    timeout: float = Field(default=30.0, gt=0)
    recycle_seconds: int = Field(default=1800, ge=0)
    pre_ping: bool = True


class EndpointDefinition(BaseModel):
    """A named adapter endpoint declared in a runtime configuration file."""

    model_config = ConfigDict(extra="forbid")

    adapter: str
    config: dict[str, Any] = Field(default_factory=dict)


class RuntimeConfiguration(BaseModel):
    """Validated runtime configuration loaded from YAML plus environment overrides."""

    model_config = ConfigDict(extra="forbid")

    version: int = Field(default=1, ge=1)
    environment: str = "development"
    engine: dict[str, Any] = Field(default_factory=dict)
    pool: dict[str, Any] = Field(default_factory=dict)
    stream: dict[str, Any] = Field(default_factory=dict)
    validation: dict[str, Any] = Field(default_factory=dict)
    endpoints: dict[str, EndpointDefinition] = Field(default_factory=dict)
    mappings: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("environment")
    @classmethod
    def _normalize_environment(cls, value: str) -> str:
        return value.lower()

    def execution_config(self, *, strict: bool = False) -> ExecutionConfig:
        """Return the engine section as a validated model."""

        return build_component_config(ExecutionConfig, self.engine, strict=strict)

    def pool_options(self, *, strict: bool = False) -> PoolOptions:
        """Return the pool section as a validated model."""

        return build_component_config(PoolOptions, self.pool, strict=strict)

    def stream_options(self, *, strict: bool = False) -> StreamOptions:
        """Return the stream section as a validated model."""

        return build_component_config(StreamOptions, self.stream, strict=strict)

    def validation_options(self, *, strict: bool = False) -> ValidationOptions:
        """Return the validation section as a validated model."""

        return build_component_config(ValidationOptions, self.validation, strict=strict)

    def find_mapping(self, mapping_id: str) -> dict[str, Any]:
        """Return the raw mapping definition with the given id."""

        for mapping in self.mappings:
            if mapping.get("id") == mapping_id:
                return mapping
        available = ", ".join(str(m.get("id")) for m in self.mappings) or "none"
        raise ConfigurationError(
            f"Mapping '{mapping_id}' is not defined. Available mappings: {available}."
        )


_OVERRIDABLE_SECTIONS = ("engine", "pool", "stream", "validation")


def _deep_merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries without mutating the inputs."""

    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge_dicts(result[key], value)
        else:
            result[key] = value
    return result


def load_runtime_configuration(
    config_path: str | Path,
    *,
    strict: bool = False,
) -> RuntimeConfiguration:
    """Load a YAML runtime configuration and apply environment overrides."""

    raw = load_yaml_config(config_path)
    overrides = apply_env_overrides({})
    for section in _OVERRIDABLE_SECTIONS:
        # Top-level FLOWBRIDGE_* variables belong to GlobalSettings.
        if isinstance(overrides.get(section), dict):
            base = raw.get(section) or {}
            raw[section] = _deep_merge_dicts(base, overrides[section])

    runtime = validate_config(raw, RuntimeConfiguration)
    runtime.execution_config(strict=strict)
    runtime.pool_options(strict=strict)
    runtime.stream_options(strict=strict)
    runtime.validation_options(strict=strict)
    return runtime


class GlobalSettings(BaseSettings):
    """Global application settings sourced from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FLOWBRIDGE_",
        env_nested_delimiter="__",
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = "development"
    log_level: str = "INFO"
    strict_config: bool = False
    state_store_url: str | None = None
    persist_contexts: bool = False
    schema_cache_ttl: int = Field(default=300, ge=0)
    database: DatabasePoolSettings = DatabasePoolSettings()
    engine: ExecutionConfig = ExecutionConfig()
    pool: PoolOptions = PoolOptions()
    stream: StreamOptions = StreamOptions()
    validation: ValidationOptions = ValidationOptions()

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        """Ensure log level values are uppercase for logging config."""

        return value.upper()

    @field_validator("environment")
    @classmethod
    def _normalize_environment(cls, value: str) -> str:
        return value.lower()

    @property
    def is_production(self) -> bool:
        """Return True when running with the production profile."""

        return self.environment == "production"


@lru_cache(maxsize=1)
def _get_settings_cached() -> GlobalSettings:
    return GlobalSettings()


def get_settings(*, reload: bool = False) -> GlobalSettings:
    """Return cached settings, optionally forcing a reload."""

    if reload:
        _get_settings_cached.cache_clear()
    return _get_settings_cached()
