"""Alembic environment for the SQL resource store."""

import os
import sys
from logging.config import fileConfig

from alembic import context

sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from jira_sync_operator.config import get_settings
from jira_sync_operator.db.base import Base, create_db_engine, get_database_url
from jira_sync_operator.db.models import ApiEndpointModel, SyncResourceModel  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def store_url() -> str:
    """The SQL URL migrations run against; memory:// and kubernetes:// have no tables."""
    url = os.getenv("RESOURCE_STORE_URL") or get_settings().resource_store_url
    if not url.startswith(("sqlite", "postgresql")):
        raise RuntimeError(f"RESOURCE_STORE_URL must be a SQL database to migrate, got {url!r}")
    return get_database_url(url)


def run_migrations_offline() -> None:
    """Emit SQL for the sync tables without connecting."""
    context.configure(
        url=store_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_db_engine(store_url())
    try:
        with engine.connect() as connection:
            context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
