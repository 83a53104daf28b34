"""Alembic environment for the ledger schema.

The database URL comes from DATABASE_URL via app.core.config, the same
source the service uses, so migrations and the running ledger never
disagree about which database they talk to.  Alembic migrates
synchronously, hence the asyncpg → psycopg2 URL rewrite.
"""

from __future__ import annotations

from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool

from alembic import context
from app.core.config import SETTINGS
from app.db.tables import Base

config = context.config

if SETTINGS.database_url:
    config.set_main_option(
        "sqlalchemy.url", SETTINGS.database_url.replace("postgresql+asyncpg", "postgresql")
    )

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _include_name(name, type_, parent_names) -> bool:
    # Only ledger tables are ours; ignore anything else sharing the schema.
    if type_ == "table":
        return name in target_metadata.tables
    return True


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        include_name=_include_name,
        compare_type=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit the ledger DDL as SQL without a live database."""
    _configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
