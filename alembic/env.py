"""Alembic environment for the extraction tables.

The database URL comes from the application settings (``DATABASE_URL`` or
``.env``) unless ``sqlalchemy.url`` is set on the Alembic config, and the
engine is built with :func:`extraction_orchestrator.core.database.build_engine`
so migrations connect exactly like the application does.

Typical use::

    alembic upgrade head
    alembic -x url=sqlite+aiosqlite:///./dev.db upgrade head
"""

from __future__ import annotations

import asyncio

from alembic import context
from sqlalchemy.engine import Connection
from sqlalchemy.pool import NullPool

from extraction_orchestrator.core.database import build_engine
from extraction_orchestrator.core.models import Base

config = context.config
target_metadata = Base.metadata


def _database_url() -> str:
    override = context.get_x_argument(as_dictionary=True).get("url")
    if override:
        return override
    configured = config.get_main_option("sqlalchemy.url")
    if configured:
        return configured
    from extraction_orchestrator.config.settings import get_settings  # noqa: PLC0415

    return get_settings().database_url


def _configure(**kwargs: object) -> None:
    url = _database_url()
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        # SQLite cannot ALTER constraints in place.
        render_as_batch=url.startswith("sqlite"),
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit the migration SQL without connecting."""
    _configure(url=_database_url(), literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def _run_with_connection(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = build_engine(_database_url(), poolclass=NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_run_with_connection)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
