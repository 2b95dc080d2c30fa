"""
Cronkeeper: Alembic Environment Configuration

This module configures Alembic for running database migrations against
either the historical or runtime databases, depending on the ALEMBIC_DB
environment variable. The coordination tables live in the runtime
database, which is the default.

Key responsibilities:
- Build SQLAlchemy engine from environment variables
- Configure Alembic context for offline and online modes

Author: Cronkeeper Team
Created: 2026-10-19
Last Modified: 2026-10-19
Status: Development
Version: v0.1.0
"""

from __future__ import annotations

import os
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import create_engine, pool
from dotenv import load_dotenv

config = context.config

# Use the same database credentials as the application code.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
ENV_FILE = PROJECT_ROOT / ".env"
if ENV_FILE.exists():
    load_dotenv(ENV_FILE)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Migrations are written with op.* calls; there are no declarative models.
target_metadata = None


def _get_database_url() -> str:
    """Construct database URL based on ALEMBIC_DB environment variable.

    ``ALEMBIC_DB=historical`` targets the data store; anything else targets
    the runtime (coordination) database.
    """

    db_selector = os.environ.get("ALEMBIC_DB", "runtime").lower()
    prefix = "HISTORICAL_DB" if db_selector == "historical" else "RUNTIME_DB"
    default_name = "cronkeeper_historical" if db_selector == "historical" else "cronkeeper_runtime"

    host = os.environ.get(f"{prefix}_HOST", "localhost")
    port = os.environ.get(f"{prefix}_PORT", "5432")
    name = os.environ.get(f"{prefix}_NAME", default_name)
    user = os.environ.get(f"{prefix}_USER", "cronkeeper")
    password = os.environ.get(f"{prefix}_PASSWORD", "")

    return f"postgresql://{user}:{password}@{host}:{port}/{name}"


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode (emit SQL without connecting)."""

    context.configure(
        url=_get_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode against a live connection."""

    connectable = create_engine(_get_database_url(), poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
