"""Tests for the flowbridge command line interface."""

import json
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from flowbridge.adapters import register_adapter
from flowbridge.cli.main import cli
from tests.fakes import InMemoryAdapter

USERS = [{"id": 1, "name": "Ada"}, {"id": 2, "name": "Grace"}]


@pytest.fixture(autouse=True)
def memory_adapter():
    """Register the in-memory adapter and start from empty shared stores."""
    register_adapter("memory", InMemoryAdapter)
    InMemoryAdapter.stores.clear()
    yield
    InMemoryAdapter.stores.clear()


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def _config(tmp_path: Path, **overrides) -> Path:
    payload = {
        "engine": {"retry_delay": 10},
        "endpoints": {
            "crm": {"adapter": "memory", "config": {"tables": {"users": USERS}}},
            "warehouse": {"adapter": "memory", "config": {"store": "warehouse"}},
        },
        "mappings": [
            {
                "id": "users",
                "source": {"endpoint": "crm", "schema": "users"},
                "target": {"endpoint": "warehouse", "schema": "users"},
                "fields": {"id": "id", "display_name": {"path": "name", "transform": "upper"}},
            }
        ],
    }
    payload.update(overrides)
    path = tmp_path / "flowbridge.yaml"
    path.write_text(yaml.safe_dump(payload), encoding="utf-8")
    return path


class TestCheckConfig:
    """Test suite for the check-config command."""

    def test_valid_configuration(self, runner, tmp_path):
        """A consistent file reports its endpoint and mapping counts."""
        result = runner.invoke(cli, ["check-config", str(_config(tmp_path))])

        assert result.exit_code == 0
        assert "2 endpoint(s), 1 mapping(s)" in result.output

    def test_unknown_endpoint(self, runner, tmp_path):
        """Mappings referencing undeclared endpoints fail the check."""
        path = _config(
            tmp_path,
            mappings=[
                {"id": "orders", "source": {"endpoint": "crm", "schema": "orders"},
                 "target": {"endpoint": "lake", "schema": "orders"}},
            ],
        )

        result = runner.invoke(cli, ["check-config", str(path)])

        assert result.exit_code == 1
        assert "unknown endpoint 'lake'" in result.output

    def test_invalid_mapping(self, runner, tmp_path):
        """Invalid mapping definitions are listed."""
        path = _config(
            tmp_path,
            mappings=[
                {"id": "orders", "source": {"endpoint": "crm", "schema": "orders"},
                 "target": {"endpoint": "warehouse", "schema": "orders"}, "mode": "upsert"},
            ],
        )

        result = runner.invoke(cli, ["check-config", str(path)])

        assert result.exit_code == 1
        assert "mapping 'orders'" in result.output

    def test_strict_rejects_unknown_options(self, runner, tmp_path):
        """--strict turns unknown section keys into a configuration error."""
        path = _config(tmp_path, engine={"retry_delays": 10})

        result = runner.invoke(cli, ["check-config", "--strict", str(path)])

        assert result.exit_code == 2
        assert "Configuration error" in result.output


class TestRun:
    """Test suite for the run command."""

    def test_run_mapping(self, runner, tmp_path):
        """A run copies records and prints its summary as JSON."""
        result = runner.invoke(cli, ["run", str(_config(tmp_path)), "--mapping", "users", "--profile"])

        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert payload["summary"]["status"] == "completed"
        assert payload["metrics"]["records_written"] == 2
        assert "profiling" in payload
        assert InMemoryAdapter.stores["warehouse"]["public.users"] == [
            {"id": 1, "display_name": "ADA"},
            {"id": 2, "display_name": "GRACE"},
        ]

    def test_unknown_mapping(self, runner, tmp_path):
        """Unknown mapping ids exit with status 2."""
        result = runner.invoke(cli, ["run", str(_config(tmp_path)), "--mapping", "orders"])

        assert result.exit_code == 2
        assert "Available mappings: users" in result.output
