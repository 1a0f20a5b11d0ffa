"""Alembic environment configuration for the flowbridge state store."""

from __future__ import annotations

import logging
from logging.config import fileConfig

from sqlalchemy import create_engine, pool

from alembic import context  # type: ignore[import-untyped]
from flowbridge.exceptions import ConfigurationError
from flowbridge.models import ExecutionRecord  # noqa: F401
from flowbridge.models.base import Base
from flowbridge.utils.config import get_settings

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)
logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata


def get_database_url() -> str:
    """Return the state store URL from settings or the alembic configuration."""

    database_url = get_settings().state_store_url or config.get_main_option("sqlalchemy.url")
    if not database_url:
        raise ConfigurationError(
            "FLOWBRIDGE_STATE_STORE_URL must be set to run state store migrations"
        )
    return database_url


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode configured with just a database URL."""

    url = get_database_url()
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        compare_server_default=True,
        transaction_per_migration=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode using an Engine connection."""

    url = get_database_url()
    logger.info("Running state store migrations")
    connectable = create_engine(url, poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            compare_server_default=True,
            transaction_per_migration=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
