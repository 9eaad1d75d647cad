"""Shared pytest fixtures for Extraction Orchestrator tests.

Fixture summary
---------------
settings          Settings tuned for fast tests (zero backoff, short polls).
engine            Async SQLite engine on a per-test database file.
store             ExtractionStore bound to ``engine``.
fetcher           ScriptedFetcher (see ``tests/factories/fetchers.py``).
make_controller   Factory building a SessionController over ``store``.

Orchestrator tests run against SQLite through aiosqlite, so no external
infrastructure is needed.  Each test gets its own database file and
connections are not pooled, so concurrent workers see committed state only.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.pool import NullPool

# ---------------------------------------------------------------------------
# Test environment bootstrap
# ---------------------------------------------------------------------------
# Set required env vars before any application modules are imported so that
# Settings() does not raise a ValidationError during collection.

_TEST_ENV_DEFAULTS: dict[str, str] = {
    "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
    "CELERY_BROKER_URL": "memory://",
    "CELERY_RESULT_BACKEND": "cache+memory://",
}

for _key, _default in _TEST_ENV_DEFAULTS.items():
    os.environ.setdefault(_key, _default)

# ---------------------------------------------------------------------------
# Application imports (after env bootstrap)
# ---------------------------------------------------------------------------

from extraction_orchestrator.config.settings import Settings, get_settings  # noqa: E402
from extraction_orchestrator.core.database import (  # noqa: E402
    Base,
    build_engine,
    build_session_factory,
)
from extraction_orchestrator.orchestrator.backoff import BackoffPolicy  # noqa: E402
from extraction_orchestrator.orchestrator.controller import SessionController  # noqa: E402
from extraction_orchestrator.orchestrator.store import ExtractionStore  # noqa: E402
from tests.factories.fetchers import ScriptedFetcher  # noqa: E402

# Clear the lru_cache so Settings() re-reads from the patched environment.
get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    """Settings for fast, deterministic orchestrator runs."""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        default_chunk_size=10,
        max_chunk_size=25,
        default_max_retries=3,
        max_urls_per_batch=25,
        worker_concurrency=5,
        attempt_timeout_seconds=5.0,
        backoff_base_seconds=0.0,
        cancel_poll_interval_seconds=0.05,
    )


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a fresh SQLite database with all tables for one test."""
    test_engine = build_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'extractions.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def store(engine: AsyncEngine) -> ExtractionStore:
    return ExtractionStore(build_session_factory(engine))


@pytest.fixture
def fetcher() -> ScriptedFetcher:
    return ScriptedFetcher()


@pytest_asyncio.fixture
async def make_controller(
    store: ExtractionStore,
    fetcher: ScriptedFetcher,
    settings: Settings,
) -> AsyncGenerator[Callable[..., SessionController], None]:
    """Yield a factory for controllers; all of them are closed on teardown.

    Keyword arguments override fields of the ``settings`` fixture.
    """
    created: list[SessionController] = []

    def _factory(**overrides: Any) -> SessionController:
        effective = settings.model_copy(update=overrides) if overrides else settings
        controller = SessionController(
            store, fetcher, effective, backoff=BackoffPolicy(base=0.0)
        )
        created.append(controller)
        return controller

    yield _factory

    for controller in created:
        await controller.aclose()
