"""
Alembic environment for the paywall schema.

The database URL comes from the shared settings unless the caller already put
one on the alembic config (tests point it at a throwaway SQLite file).
"""
import asyncio
from logging.config import fileConfig
import os
from dotenv import load_dotenv

# Load .env file from project root
project_root = os.path.join(os.path.dirname(__file__), '../../..')
load_dotenv(os.path.join(project_root, '.env'))

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from shared.models.base import Base
from shared.config.settings import settings

# Registers users, payments, payment_methods, channel_requests and audit_log on the metadata
import shared.models  # noqa: F401

config = context.config
if not config.get_main_option("sqlalchemy.url"):
    config.set_main_option("sqlalchemy.url", settings.database_url)

if config.config_file_name is not None:
    # keep the application's loggers alive when migrating from inside a process
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = Base.metadata


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        **kwargs
    )


def run_migrations_offline() -> None:
    url = config.get_main_option("sqlalchemy.url")
    _configure(
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=url.startswith("sqlite"),
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    # SQLite cannot ALTER most columns in place; batch mode rebuilds the table
    _configure(connection=connection, render_as_batch=connection.dialect.name == "sqlite")

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


def run_migrations_online() -> None:
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
