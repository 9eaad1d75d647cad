"""Celery application factory for the Extraction Orchestrator.

Configures the broker, result backend, serialization, task routing, and
timezone.  All configuration values are sourced from ``Settings`` so that
no secrets or environment-specific values are hard-coded here.

Usage (starting a worker)::

    celery -A extraction_orchestrator.workers.celery_app worker -Q extraction --loglevel=info

Usage (starting the Beat scheduler for stale-session recovery)::

    celery -A extraction_orchestrator.workers.celery_app beat --loglevel=info

Usage (within application code)::

    from extraction_orchestrator.workers.celery_app import celery_app

    celery_app.send_task(
        "extraction_orchestrator.orchestrator.tasks.run_extraction_session_task",
        kwargs={"session_id": str(session_id)},
    )
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_postrun, worker_process_init
from dotenv import load_dotenv

_logger = logging.getLogger(__name__)

# Workers are started outside uvicorn, so .env values are loaded explicitly.
load_dotenv()

from extraction_orchestrator.config.settings import get_settings  # noqa: E402
from extraction_orchestrator.core.logging_config import configure_logging  # noqa: E402

settings = get_settings()
configure_logging(settings.log_level)

#: The global Celery application instance.
celery_app = Celery(
    "extraction_orchestrator",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["extraction_orchestrator.orchestrator.tasks"],
)

# ---------------------------------------------------------------------------
# Core configuration
# ---------------------------------------------------------------------------

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # A session interrupted by a worker crash is redelivered and resumed.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    result_expires=86_400,
    task_soft_time_limit=3_600,
    task_time_limit=7_200,
    task_routes={"extraction_orchestrator.orchestrator.tasks.*": {"queue": "extraction"}},
    beat_schedule_filename="celerybeat-schedule",
)

from extraction_orchestrator.workers.beat_schedule import beat_schedule  # noqa: E402

celery_app.conf.beat_schedule = beat_schedule


def _reset_engine_pool() -> None:
    """Drop pooled connections without closing them.

    A forked child inherits its parent's sockets, and each task runs in its
    own ``asyncio.run()`` loop, so pooled asyncpg connections never outlive
    the loop that opened them.
    """
    from extraction_orchestrator.core import database  # noqa: PLC0415

    database.async_engine.sync_engine.dispose(close=False)


@worker_process_init.connect
def _on_worker_process_init(**kwargs: object) -> None:  # noqa: ARG001
    _reset_engine_pool()


@task_postrun.connect
def _on_task_postrun(task_id: str | None = None, **kwargs: object) -> None:  # noqa: ARG001
    try:
        _reset_engine_pool()
    except Exception as exc:  # noqa: BLE001
        _logger.warning("celery: engine pool reset after task %s failed: %s", task_id, exc)
