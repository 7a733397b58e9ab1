"""Alembic environment for the StratusFlags sticky bucketing schema.

The application talks to Postgres through psycopg (psycopg 3) using
``DATABASE_URL``. SQLAlchemy needs the driver spelled out, so the URL is
rewritten to ``postgresql+psycopg://`` before Alembic connects.
"""
from logging.config import fileConfig

from sqlalchemy import engine_from_config
from sqlalchemy import pool

from alembic import context

from stratus.repositories.db import get_database_url

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Raw SQL migrations only, no autogenerate.
target_metadata = None


def _sqlalchemy_url() -> str:
    """Translate ``DATABASE_URL`` into a SQLAlchemy URL for psycopg 3."""
    raw_db_url = get_database_url()
    if not raw_db_url:
        raise RuntimeError("DATABASE_URL is not set. Export it before running Alembic.")

    for prefix in ("postgresql://", "postgres://"):
        if raw_db_url.startswith(prefix):
            return raw_db_url.replace(prefix, "postgresql+psycopg://", 1)
    # Already carries a driver or is custom.
    return raw_db_url


config.set_main_option("sqlalchemy.url", _sqlalchemy_url())


def run_migrations_offline() -> None:
    """Emit the migration SQL to the script output without a database."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations against a live connection."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
