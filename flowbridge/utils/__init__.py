"""Utilities package initialization."""
from .config import (
    ExecutionConfig,
    GlobalSettings,
    PoolOptions,
    RuntimeConfiguration,
    StreamOptions,
    ValidationOptions,
    apply_env_overrides,
    build_component_config,
    get_settings,
    load_runtime_configuration,
    load_yaml_config,
    validate_config,
)
from .logging import log_execution_outcome, setup_logger
from .retry import RetryPolicy, execute_with_retry

__all__ = [
    "ExecutionConfig",
    "GlobalSettings",
    "PoolOptions",
    "RetryPolicy",
    "RuntimeConfiguration",
    "StreamOptions",
    "ValidationOptions",
    "apply_env_overrides",
    "build_component_config",
    "execute_with_retry",
    "get_settings",
    "load_runtime_configuration",
    "load_yaml_config",
    "log_execution_outcome",
    "setup_logger",
    "validate_config",
]
