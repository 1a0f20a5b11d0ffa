"""Pytest configuration - no path manipulation, rely on proper package installation."""

from __future__ import annotations

import os

import pytest

from flowbridge.models.base import reset_engine
from flowbridge.pool.manager import reset_pool_manager
from flowbridge.utils.config import get_settings
from flowbridge.validation import reset_validation_framework


@pytest.fixture(autouse=True)
def _isolated_runtime(monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory):
    """Give every test a private state store and fresh process-wide singletons."""

    if os.getenv("FLOWBRIDGE_STATE_STORE_URL") is None:
        db_path = tmp_path_factory.mktemp("state-store") / "flowbridge.sqlite"
        monkeypatch.setenv("FLOWBRIDGE_STATE_STORE_URL", f"sqlite:///{db_path}")

    get_settings(reload=True)
    reset_pool_manager()
    reset_validation_framework()
    yield
    reset_engine()
    reset_pool_manager()
    reset_validation_framework()
    get_settings(reload=True)


@pytest.fixture
def customer_rows() -> list[dict]:
    """Three customer rows as read from a source table."""
    return [
        {"id": 1, "name": "Ada", "email": "ada@example.com"},
        {"id": 2, "name": "Grace", "email": "grace@example.com"},
        {"id": 3, "name": "Linus", "email": "linus@example.com"},
    ]
