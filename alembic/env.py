"""Alembic environment for the arena schema.

Migrations cover agents, epochs, per-epoch agent stats and reward
transfers (``supermolt_arena.storage.models``). They run on the same
async engine factory as the service, so ``DATABASE_URL`` means the same
thing to ``alembic upgrade head`` as to ``supermolt-arena run``. SQLite
databases migrate in batch mode since SQLite cannot alter constraints
in place.
"""

from __future__ import annotations

import asyncio
import os
from logging.config import fileConfig

from alembic import context
from dotenv import load_dotenv
from sqlalchemy import pool
from sqlalchemy.engine import Connection

from supermolt_arena.storage.database import create_async_db_engine
from supermolt_arena.storage.models import Base

config = context.config

if config.config_file_name is not None:
    # keep the service's loggers when migrations run in-process
    fileConfig(config.config_file_name, disable_existing_loggers=False)

load_dotenv(override=False)

target_metadata = Base.metadata


def _database_url() -> str:
    url = os.environ.get("DATABASE_URL") or config.get_main_option("sqlalchemy.url")
    if not url:
        raise RuntimeError("set DATABASE_URL or sqlalchemy.url in alembic.ini")
    return os.path.expandvars(url)


def _configure(**kwargs: object) -> None:
    url = _database_url()
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        render_as_batch=url.startswith("sqlite"),
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit the migration SQL without connecting."""
    _configure(url=_database_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def _run_on_connection(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def _run_migrations_online() -> None:
    engine = create_async_db_engine(_database_url(), poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_run_on_connection)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(_run_migrations_online())
