"""FastAPI router for extraction sessions.

Creating a session or retrying one persists the rows and dispatches a
Celery task to run them; the API process itself never runs a session.  The
only page it fetches is the seed page passed to ``/discover``.

Routes:
    POST   /extraction-sessions/                       create + enqueue session
    GET    /extraction-sessions/                       list a user's sessions
    GET    /extraction-sessions/history/check          has a URL been extracted?
    GET    /extraction-sessions/analytics              per-user totals
    GET    /extraction-sessions/retryable              retry-eligible failures of a user
    GET    /extraction-sessions/discover               links on a seed page
    GET    /extraction-sessions/{session_id}           detail + statistics
    GET    /extraction-sessions/{session_id}/progress  committed counters
    POST   /extraction-sessions/{session_id}/cancel    cancel an in-progress session
    POST   /extraction-sessions/{session_id}/retry     retry failed extractions
    DELETE /extraction-sessions/{session_id}           delete a finished session
    GET    /extraction-sessions/{session_id}/stream    SSE progress stream
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Annotated, AsyncGenerator, NoReturn, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from extraction_orchestrator.api.dependencies import (
    PaginationParams,
    get_controller,
    get_pagination,
)
from extraction_orchestrator.core.exceptions import (
    ExtractionOrchestratorError,
    FetchError,
    InvalidSessionStateError,
    SessionNotFoundError,
    StoreError,
    ValidationError,
)
from extraction_orchestrator.core.models.extraction import TERMINAL_SESSION_STATUSES
from extraction_orchestrator.core.schemas.extraction import (
    DiscoveredLinkRead,
    ExtractionSessionCreate,
    ExtractionSessionDetail,
    ExtractionSessionRead,
    LinkDiscoveryRead,
    RetryableExtractionRead,
    RetryRequest,
    SessionProgressRead,
    SessionStatisticsRead,
    UrlExtractionRead,
    UrlExtractionWithRetries,
    UrlHistoryRead,
    UserAnalyticsRead,
)
from extraction_orchestrator.orchestrator.content_extractor import (
    LINK_EXTERNAL,
    LINK_FILE,
    LINK_INTERNAL,
)
from extraction_orchestrator.orchestrator.controller import SessionController

logger = structlog.get_logger(__name__)

router = APIRouter()

_STREAM_POLL_SECONDS = 2.0

Controller = Annotated[SessionController, Depends(get_controller)]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _raise_http(exc: ExtractionOrchestratorError) -> NoReturn:
    """Translate an orchestrator exception into the matching HTTP error."""
    if isinstance(exc, SessionNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, InvalidSessionStateError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, ValidationError):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(exc), "field": exc.field},
        ) from exc
    if isinstance(exc, StoreError):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Extraction store unavailable.",
        ) from exc
    if isinstance(exc, FetchError):
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc


def _dispatch_run(session_id: uuid.UUID) -> None:
    from extraction_orchestrator.orchestrator.tasks import (  # noqa: PLC0415
        run_extraction_session_task,
    )

    run_extraction_session_task.apply_async(
        kwargs={"session_id": str(session_id)},
        queue="extraction",
    )


async def _read_session(controller: SessionController, session_id: uuid.UUID) -> ExtractionSessionRead:
    try:
        session = await controller.store.get_session(session_id)
    except ExtractionOrchestratorError as exc:
        _raise_http(exc)
    return ExtractionSessionRead.model_validate(session)


# ---------------------------------------------------------------------------
# Create / list
# ---------------------------------------------------------------------------


@router.post("/", response_model=ExtractionSessionRead, status_code=status.HTTP_201_CREATED)
async def create_extraction_session(
    payload: ExtractionSessionCreate,
    controller: Controller,
) -> ExtractionSessionRead:
    """Validate and persist a batch, then enqueue its run.

    Raises:
        HTTPException 422: If the batch is rejected (too many URLs, bad
            chunk size, malformed URL ...).  Nothing is written.
    """
    try:
        session_id = await controller.start_batch(
            user_id=payload.user_id,
            source_url=payload.source_url,
            urls=payload.urls,
            chunk_size=payload.chunk_size,
            max_retries=payload.max_retries,
            session_name=payload.session_name,
            metadata=payload.metadata,
            run=False,
        )
    except ExtractionOrchestratorError as exc:
        _raise_http(exc)

    _dispatch_run(session_id)
    return await _read_session(controller, session_id)


@router.get("/", response_model=list[ExtractionSessionRead])
async def list_extraction_sessions(
    controller: Controller,
    pagination: Annotated[PaginationParams, Depends(get_pagination)],
    user_id: str = Query(..., min_length=1),
    status_filter: Optional[str] = None,
) -> list[ExtractionSessionRead]:
    """List a user's sessions, newest first.

    Pass the last ``session_id`` of a page as ``cursor`` to get the next one.
    """
    cursor: uuid.UUID | None = None
    if pagination.cursor:
        try:
            cursor = uuid.UUID(pagination.cursor)
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="cursor must be a valid UUID.",
            ) from exc
    try:
        sessions = await controller.list_sessions(
            user_id, status=status_filter, cursor=cursor, limit=pagination.page_size
        )
    except ExtractionOrchestratorError as exc:
        _raise_http(exc)
    return [ExtractionSessionRead.model_validate(s) for s in sessions]


# ---------------------------------------------------------------------------
# Cross-session queries (declared before /{session_id})
# ---------------------------------------------------------------------------


@router.get("/history/check", response_model=UrlHistoryRead)
async def check_url_history(
    controller: Controller,
    url: str = Query(..., min_length=1),
) -> UrlHistoryRead:
    """Report whether ``url`` was extracted before, and its latest outcome."""
    try:
        history = await controller.check_url_history(url)
    except ExtractionOrchestratorError as exc:
        _raise_http(exc)
    return UrlHistoryRead(
        url=history.url,
        url_hash=history.url_hash,
        previously_extracted=history.previously_extracted,
        extraction_count=history.extraction_count,
        latest=UrlExtractionRead.model_validate(history.latest) if history.latest else None,
    )


@router.get("/analytics", response_model=UserAnalyticsRead)
async def user_analytics(
    controller: Controller,
    user_id: str = Query(..., min_length=1),
) -> UserAnalyticsRead:
    """Totals, success rate and error breakdown across a user's sessions."""
    try:
        analytics = await controller.user_analytics(user_id)
    except ExtractionOrchestratorError as exc:
        _raise_http(exc)
    return UserAnalyticsRead.model_validate(analytics)


@router.get("/retryable", response_model=list[RetryableExtractionRead])
async def list_retryable_extractions(
    controller: Controller,
    user_id: str = Query(..., min_length=1),
    session_id: Optional[uuid.UUID] = Query(default=None),
    error_type: Optional[str] = Query(default=None),
    min_retry_interval_seconds: float = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=200),
) -> list[RetryableExtractionRead]:
    """Failed extractions across a user's sessions that still have attempt budget."""
    try:
        rows = await controller.retryable_extractions(
            user_id,
            session_id=session_id,
            error_type=error_type,
            min_retry_interval_seconds=min_retry_interval_seconds,
            limit=limit,
        )
    except ExtractionOrchestratorError as exc:
        _raise_http(exc)
    return [RetryableExtractionRead.model_validate(row) for row in rows]


@router.get("/discover", response_model=LinkDiscoveryRead)
async def discover_links(
    controller: Controller,
    url: str = Query(..., min_length=1),
) -> LinkDiscoveryRead:
    """Fetch a seed page and list its links, to pick a batch from.

    Raises:
        HTTPException 422: If ``url`` is not an http(s) URL.
        HTTPException 502: If the page could not be fetched.
    """
    try:
        discovery = await controller.discover(url)
    except ExtractionOrchestratorError as exc:
        _raise_http(exc)
    return LinkDiscoveryRead(
        source_url=discovery.source_url,
        final_url=discovery.final_url,
        title=discovery.title,
        total_links=len(discovery.links),
        internal_links=discovery.count(LINK_INTERNAL),
        external_links=discovery.count(LINK_EXTERNAL),
        file_links=discovery.count(LINK_FILE),
        links=[DiscoveredLinkRead.model_validate(link) for link in discovery.links],
    )


# ---------------------------------------------------------------------------
# Single session
# ---------------------------------------------------------------------------


@router.get("/{session_id}", response_model=ExtractionSessionDetail)
async def get_extraction_session(
    session_id: uuid.UUID,
    controller: Controller,
    include_urls: bool = False,
    include_retries: bool = False,
) -> ExtractionSessionDetail:
    """Return a session with derived statistics.

    ``include_urls`` adds the per-URL rows; ``include_retries`` adds them
    together with each row's retry log.
    """
    try:
        details = await controller.get_details(
            session_id, include_urls=include_urls, include_retries=include_retries
        )
    except ExtractionOrchestratorError as exc:
        _raise_http(exc)

    extractions = None
    if details.extractions is not None:
        row_schema = UrlExtractionWithRetries if include_retries else UrlExtractionRead
        extractions = [row_schema.model_validate(row) for row in details.extractions]
    return ExtractionSessionDetail(
        session=ExtractionSessionRead.model_validate(details.session),
        statistics=SessionStatisticsRead.model_validate(details.statistics),
        extractions=extractions,
    )


@router.get("/{session_id}/progress", response_model=SessionProgressRead)
async def get_extraction_progress(
    session_id: uuid.UUID,
    controller: Controller,
) -> SessionProgressRead:
    """Return the committed progress counters of a session."""
    try:
        progress = await controller.get_progress(session_id)
    except ExtractionOrchestratorError as exc:
        _raise_http(exc)
    return SessionProgressRead.model_validate(progress)


@router.post("/{session_id}/cancel", response_model=ExtractionSessionRead)
async def cancel_extraction_session(
    session_id: uuid.UUID,
    controller: Controller,
) -> ExtractionSessionRead:
    """Cancel an in-progress session.

    The worker running it stops dispatching on its next status poll;
    attempts already in flight finish and are recorded.

    Raises:
        HTTPException 404: If the session does not exist.
        HTTPException 409: If the session is not in progress.
    """
    try:
        await controller.cancel(session_id)
    except ExtractionOrchestratorError as exc:
        _raise_http(exc)
    logger.info("extraction_session_cancel_requested", session_id=str(session_id))
    return await _read_session(controller, session_id)


@router.post("/{session_id}/retry", response_model=ExtractionSessionRead)
async def retry_extraction_session(
    session_id: uuid.UUID,
    controller: Controller,
    payload: Optional[RetryRequest] = None,
) -> ExtractionSessionRead:
    """Retry the retry-eligible failed extractions of a session that is not running.

    Returns the session that will run the retries: a new derived session by
    default, or the same session when ``reopen`` is set.

    Raises:
        HTTPException 404: If the session does not exist.
        HTTPException 409: If the session is in progress, or a cancelled session
            is asked to reopen.
        HTTPException 422: If nothing is eligible for retry.
    """
    reopen = payload.reopen if payload is not None else False
    try:
        target_id = await controller.retry_failed(session_id, reopen=reopen, run=False)
    except ExtractionOrchestratorError as exc:
        _raise_http(exc)
    _dispatch_run(target_id)
    return await _read_session(controller, target_id)


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
async def delete_extraction_session(
    session_id: uuid.UUID,
    controller: Controller,
) -> None:
    """Delete a session with its extractions and retry logs.

    Raises:
        HTTPException 404: If the session does not exist.
        HTTPException 409: If the session is still in progress.
    """
    try:
        await controller.delete(session_id)
    except ExtractionOrchestratorError as exc:
        _raise_http(exc)


# ---------------------------------------------------------------------------
# SSE progress stream
# ---------------------------------------------------------------------------


@router.get("/{session_id}/stream")
async def stream_extraction_session(
    session_id: uuid.UUID,
    request: Request,
    controller: Controller,
) -> StreamingResponse:
    """Stream session progress via Server-Sent Events.

    Polls the committed counters every two seconds and emits ``progress``
    events until the session leaves ``in_progress`` (then a final
    ``session_complete`` event) or the client disconnects::

        event: progress
        data: {"status":"in_progress","total_urls":3,"successful_urls":1,...}

    Raises:
        HTTPException 404: If the session does not exist.
    """
    try:
        first = await controller.get_progress(session_id)
    except ExtractionOrchestratorError as exc:
        _raise_http(exc)

    def _frame(event: str, progress: SessionProgressRead) -> str:
        return f"event: {event}\ndata: {json.dumps(progress.model_dump(mode='json'))}\n\n"

    async def event_generator() -> AsyncGenerator[str, None]:
        progress = SessionProgressRead.model_validate(first)
        while True:
            yield _frame("progress", progress)
            if progress.status in TERMINAL_SESSION_STATUSES:
                yield _frame("session_complete", progress)
                return
            if await request.is_disconnected():
                return
            await asyncio.sleep(_STREAM_POLL_SECONDS)
            try:
                current = await controller.get_progress(session_id)
            except SessionNotFoundError:
                return
            progress = SessionProgressRead.model_validate(current)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )
