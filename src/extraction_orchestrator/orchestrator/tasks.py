"""Celery tasks for the extraction orchestrator.

Four tasks are provided:

``run_extraction_session_task``
    Runs a freshly created (or reopened) session's worker pool until it
    drains or is cancelled.

``resume_extraction_session_task``
    Closes attempts interrupted by a dead worker, then runs the session.

``cancel_extraction_session_task``
    Cancels a session.  The worker pool running it, possibly in another
    process, stops on its next status poll.

``resume_interrupted_sessions_task``
    Beat target: finds in-progress sessions with no recent activity and
    dispatches a resume for each.

Task naming convention::

    extraction_orchestrator.orchestrator.tasks.<action>

Retry policy:
    Session runs are stateful, so ``max_retries=0``.  Per-URL retries are
    handled inside the worker pool.

Database access:
    Every task drives the async store with ``asyncio.run()``.  The worker
    disposes the engine's connection pool after each task (see
    ``workers/celery_app.py``).
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from extraction_orchestrator.config.settings import Settings, get_settings
from extraction_orchestrator.core.exceptions import (
    InvalidSessionStateError,
    SessionNotFoundError,
)
from extraction_orchestrator.orchestrator.backoff import BackoffPolicy
from extraction_orchestrator.orchestrator.controller import SessionController
from extraction_orchestrator.orchestrator.fetcher import PageFetcher
from extraction_orchestrator.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_fetcher(settings: Settings) -> PageFetcher:
    """Return the page fetcher selected by configuration.

    A configured ``gateway_base_url`` delegates fetching to the remote
    gateway; otherwise pages are fetched directly over HTTP.
    """
    if settings.gateway_base_url:
        from extraction_orchestrator.orchestrator.gateway_client import (  # noqa: PLC0415
            GatewayClient,
            GatewayPageFetcher,
        )

        client = GatewayClient(
            settings.gateway_base_url,
            api_key=settings.gateway_api_key,
            timeout=settings.gateway_timeout_seconds,
            max_retries=settings.gateway_max_retries,
            backoff=BackoffPolicy(base=settings.backoff_base_seconds),
        )
        return GatewayPageFetcher(client)

    from extraction_orchestrator.orchestrator.http_fetcher import HttpPageFetcher  # noqa: PLC0415

    return HttpPageFetcher(
        timeout=settings.attempt_timeout_seconds,
        respect_robots=settings.fetch_respect_robots_txt,
        browser_fallback=settings.fetch_use_browser_fallback,
    )


def build_controller(settings: Settings | None = None) -> SessionController:
    """Return a controller over the application store and configured fetcher."""
    from extraction_orchestrator.core.database import build_store  # noqa: PLC0415

    settings = settings or get_settings()
    return SessionController(build_store(), build_fetcher(settings), settings)


# ---------------------------------------------------------------------------
# Async bodies
# ---------------------------------------------------------------------------


async def _drive_session(session_id: str, *, resume: bool) -> dict[str, Any]:
    sid = uuid.UUID(session_id)
    controller = build_controller()
    try:
        if resume:
            report = await controller.resume(sid)
        else:
            report = await controller.run_session(sid)
        progress = await controller.get_progress(sid)
    finally:
        await controller.aclose()
    return {
        "session_id": session_id,
        "status": progress.status,
        "attempts": report.dispatched,
        "successful_urls": progress.successful_urls,
        "failed_urls": progress.failed_urls,
        "cancelled": report.cancelled,
    }


async def _cancel_session(session_id: str) -> None:
    controller = build_controller()
    try:
        await controller.cancel(uuid.UUID(session_id))
    finally:
        await controller.aclose()


async def _find_stale_sessions(idle_seconds: int) -> list[uuid.UUID]:
    from extraction_orchestrator.core.database import build_store  # noqa: PLC0415

    idle_since = datetime.now(tz=timezone.utc) - timedelta(seconds=idle_seconds)
    return await build_store().stale_session_ids(idle_since)


# ---------------------------------------------------------------------------
# Celery tasks
# ---------------------------------------------------------------------------


@celery_app.task(
    name="extraction_orchestrator.orchestrator.tasks.run_extraction_session_task",
    bind=True,
    acks_late=True,
    max_retries=0,
)
def run_extraction_session_task(self: Any, session_id: str) -> dict[str, Any]:
    """Run an in-progress session until it drains or is cancelled.

    A session that was cancelled or deleted before a worker picked the task
    up is skipped rather than failed.

    Args:
        session_id: UUID string of the ExtractionSession.

    Returns:
        Dict with ``session_id``, final ``status`` and counters.
    """
    logger.info(
        "orchestrator: run_extraction_session_task started for session=%s (task=%s)",
        session_id,
        self.request.id,
    )
    try:
        return asyncio.run(_drive_session(session_id, resume=False))
    except (SessionNotFoundError, InvalidSessionStateError) as exc:
        logger.warning("orchestrator: session %s not runnable: %s", session_id, exc)
        return {"session_id": session_id, "status": "skipped", "reason": str(exc)}
    except Exception as exc:  # noqa: BLE001
        logger.error("orchestrator: run_extraction_session_task failed for %s: %s", session_id, exc)
        raise


@celery_app.task(
    name="extraction_orchestrator.orchestrator.tasks.resume_extraction_session_task",
    bind=True,
    acks_late=True,
    max_retries=0,
)
def resume_extraction_session_task(self: Any, session_id: str) -> dict[str, Any]:  # noqa: ARG001
    """Recover interrupted attempts of a session and run it again.

    Args:
        session_id: UUID string of the ExtractionSession.

    Returns:
        Dict with ``session_id``, final ``status`` and counters.
    """
    logger.info("orchestrator: resume_extraction_session_task started for session=%s", session_id)
    try:
        return asyncio.run(_drive_session(session_id, resume=True))
    except (SessionNotFoundError, InvalidSessionStateError) as exc:
        logger.warning("orchestrator: session %s not resumable: %s", session_id, exc)
        return {"session_id": session_id, "status": "skipped", "reason": str(exc)}


@celery_app.task(
    name="extraction_orchestrator.orchestrator.tasks.cancel_extraction_session_task",
    bind=False,
    acks_late=True,
)
def cancel_extraction_session_task(session_id: str) -> dict[str, Any]:
    """Cancel an in-progress session.

    Args:
        session_id: UUID string of the ExtractionSession to cancel.

    Returns:
        Dict with ``session_id`` and final ``status``.
    """
    try:
        asyncio.run(_cancel_session(session_id))
    except (SessionNotFoundError, InvalidSessionStateError) as exc:
        logger.warning("orchestrator: cancel of session %s refused: %s", session_id, exc)
        return {"session_id": session_id, "status": "unchanged", "reason": str(exc)}
    logger.info("orchestrator: session %s cancelled", session_id)
    return {"session_id": session_id, "status": "cancelled"}


@celery_app.task(
    name="extraction_orchestrator.orchestrator.tasks.resume_interrupted_sessions_task",
    bind=False,
    acks_late=True,
)
def resume_interrupted_sessions_task() -> dict[str, Any]:
    """Dispatch a resume for every in-progress session that has gone quiet.

    A session counts as quiet when none of its extractions changed within
    ``stale_session_seconds``.

    Returns:
        Dict with the list of ``resumed`` session ids.
    """
    settings = get_settings()
    stale = asyncio.run(_find_stale_sessions(settings.stale_session_seconds))
    for session_id in stale:
        resume_extraction_session_task.delay(str(session_id))
    if stale:
        logger.info("orchestrator: dispatched resume for %d stale sessions", len(stale))
    return {"resumed": [str(session_id) for session_id in stale]}
