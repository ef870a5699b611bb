# alembic/env.py
from logging.config import fileConfig
import sys
from pathlib import Path

from alembic import context
from sqlalchemy import engine_from_config, pool

# --- Make the studio package importable BEFORE importing studio.* ---
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.append(str(PROJECT_ROOT))

from studio.database import Base  # declarative base shared with the app
from studio import models  # noqa: F401  registers every table on Base.metadata
from studio.settings.config import settings

config = context.config


def sync_url(raw: str) -> str:
    """Alembic runs on a sync driver; the app URL is usually asyncpg."""
    if raw.startswith("postgresql+asyncpg"):
        return raw.replace("postgresql+asyncpg", "postgresql+psycopg2")
    if raw.startswith("sqlite+aiosqlite"):
        return raw.replace("sqlite+aiosqlite", "sqlite")
    return raw


db_url = sync_url(settings.DATABASE_URL)
config.set_main_option("sqlalchemy.url", db_url)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=db_url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            transaction_per_migration=True,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
