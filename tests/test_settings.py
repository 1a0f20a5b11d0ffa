"""Tests for global configuration settings and runtime configuration files."""

from pathlib import Path

import pytest
import yaml

from flowbridge.exceptions import ConfigurationError
from flowbridge.utils.config import (
    ExecutionConfig,
    PoolOptions,
    StreamOptions,
    apply_env_overrides,
    build_component_config,
    get_settings,
    load_runtime_configuration,
    load_yaml_config,
)


def _write_config(tmp_path: Path, payload: dict) -> Path:
    path = tmp_path / "flowbridge.yaml"
    path.write_text(yaml.safe_dump(payload), encoding="utf-8")
    return path


def test_global_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    """Default settings should reflect development-friendly values."""

    monkeypatch.delenv("FLOWBRIDGE_ENVIRONMENT", raising=False)
    monkeypatch.delenv("FLOWBRIDGE_LOG_LEVEL", raising=False)

    settings = get_settings(reload=True)

    assert settings.environment == "development"
    assert settings.log_level == "INFO"
    assert settings.persist_contexts is False
    assert settings.schema_cache_ttl == 300
    assert settings.engine.retry_attempts == 3
    assert settings.pool.max_connections == 10
    assert settings.is_production is False


def test_global_settings_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    """Environment variables should override default configuration values."""

    monkeypatch.setenv("FLOWBRIDGE_ENVIRONMENT", "Production")
    monkeypatch.setenv("FLOWBRIDGE_LOG_LEVEL", "debug")
    monkeypatch.setenv("FLOWBRIDGE_ENGINE__RETRY_ATTEMPTS", "5")
    monkeypatch.setenv("FLOWBRIDGE_POOL__MAX_CONNECTIONS", "25")

    settings = get_settings(reload=True)

    assert settings.environment == "production"
    assert settings.log_level == "DEBUG"
    assert settings.engine.retry_attempts == 5
    assert settings.pool.max_connections == 25
    assert settings.is_production is True


def test_settings_are_cached() -> None:
    """get_settings returns the same object until reloaded."""

    first = get_settings()

    assert get_settings() is first
    assert get_settings(reload=True) is not first


class TestComponentConfig:
    """Test suite for per-component option models."""

    def test_camel_case_keys(self):
        """camelCase and snake_case keys are both accepted."""
        options = build_component_config(StreamOptions, {"highWaterMark": 64, "chunk_size": 8})

        assert options.high_water_mark == 64
        assert options.chunk_size == 8

    def test_unknown_keys_dropped_when_lenient(self, caplog):
        """Unknown keys are ignored with a warning."""
        options = build_component_config(ExecutionConfig, {"timeout": 10, "colour": "blue"})

        assert options.timeout == 10
        assert "colour" in caplog.text

    def test_unknown_keys_rejected_when_strict(self):
        """Strict mode rejects unknown keys."""
        with pytest.raises(ConfigurationError, match="Unknown ExecutionConfig options: colour"):
            build_component_config(ExecutionConfig, {"colour": "blue"}, strict=True)

    def test_invalid_values(self):
        """Out-of-range values raise ConfigurationError."""
        with pytest.raises(ConfigurationError):
            build_component_config(PoolOptions, {"min_connections": 5, "max_connections": 2})

        with pytest.raises(ConfigurationError, match="must be a mapping"):
            build_component_config(PoolOptions, ["max_connections"])

    def test_model_instances_pass_through(self):
        """An existing model instance is returned unchanged."""
        options = PoolOptions(max_connections=3)

        assert build_component_config(PoolOptions, options) is options


class TestRuntimeConfiguration:
    """Test suite for YAML runtime configuration loading."""

    def test_load_runtime_configuration(self, tmp_path: Path):
        """Endpoints, mappings and sections are validated."""
        path = _write_config(
            tmp_path,
            {
                "environment": "Staging",
                "engine": {"retry_attempts": 1},
                "endpoints": {"crm": {"adapter": "postgresql", "config": {"database": "crm", "user": "etl"}}},
                "mappings": [
                    {"id": "orders", "source": {"endpoint": "crm", "schema": "orders"},
                     "target": {"endpoint": "crm", "schema": "orders_copy"}},
                ],
            },
        )

        runtime = load_runtime_configuration(path)

        assert runtime.environment == "staging"
        assert runtime.execution_config().retry_attempts == 1
        assert runtime.endpoints["crm"].adapter == "postgresql"
        assert runtime.find_mapping("orders")["id"] == "orders"

    def test_unknown_mapping(self, tmp_path: Path):
        """Looking up an undefined mapping lists the available ones."""
        runtime = load_runtime_configuration(_write_config(tmp_path, {"mappings": [{"id": "a"}]}))

        with pytest.raises(ConfigurationError, match="Available mappings: a"):
            runtime.find_mapping("b")

    def test_env_overrides_sections(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        """FLOWBRIDGE_<SECTION>__<KEY> variables override file values."""
        monkeypatch.setenv("FLOWBRIDGE_STREAM__CHUNK_SIZE", "42")
        path = _write_config(tmp_path, {"stream": {"chunk_size": 10, "max_concurrency": 2}})

        runtime = load_runtime_configuration(path)

        options = runtime.stream_options()
        assert options.chunk_size == 42
        assert options.max_concurrency == 2

    def test_strict_rejects_unknown_section_keys(self, tmp_path: Path):
        """Strict loading rejects unknown keys inside sections."""
        path = _write_config(tmp_path, {"pool": {"max_connection": 5}})

        with pytest.raises(ConfigurationError, match="max_connection"):
            load_runtime_configuration(path, strict=True)

    def test_unknown_top_level_key(self, tmp_path: Path):
        """Top-level keys are validated."""
        with pytest.raises(ConfigurationError, match="validation failed"):
            load_runtime_configuration(_write_config(tmp_path, {"pipelines": []}))

    def test_missing_and_invalid_files(self, tmp_path: Path):
        """File problems surface as ConfigurationError."""
        with pytest.raises(ConfigurationError, match="not found"):
            load_yaml_config(tmp_path / "missing.yaml")

        broken = tmp_path / "broken.yaml"
        broken.write_text("engine: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_yaml_config(broken)

        listing = tmp_path / "list.yaml"
        listing.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="must be a mapping"):
            load_yaml_config(listing)

        empty = tmp_path / "empty.yaml"
        empty.write_text("", encoding="utf-8")
        assert load_yaml_config(empty) == {}


def test_apply_env_overrides_nests_keys(monkeypatch: pytest.MonkeyPatch) -> None:
    """Double underscores create nested keys."""

    monkeypatch.setenv("FLOWBRIDGE_POOL__MAX_CONNECTIONS", "12")

    config = apply_env_overrides({"pool": {"min_connections": 1}})

    assert config["pool"] == {"min_connections": 1, "max_connections": "12"}
