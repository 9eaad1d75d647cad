"""Session controller: the public entry point of the orchestrator.

The controller validates and plans new batches, runs worker pools, and
implements the session-level state machine::

    in_progress ──► completed   (no pending/processing/retrying rows left)
        │      ──► failed      (fetcher unavailable before any dispatch)
        └────────► cancelled   (explicit cancel)

    completed / failed ──► in_progress   (explicit retry with reopen=True)

Completion is computed from the rows, never asserted: a session whose
extractions all finished is ``completed`` even when some of them failed.

The controller owns the registry of sessions running in this process (their
background tasks and cancellation events).  There is no module-level mutable
state; create one controller per process or per request.
"""

from __future__ import annotations

import asyncio
import urllib.parse
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from extraction_orchestrator.config.settings import Settings, get_settings
from extraction_orchestrator.core.exceptions import (
    InvalidSessionStateError,
    RetryableFetchError,
    TerminalFetchError,
    ValidationError,
)
from extraction_orchestrator.core.models.extraction import (
    SESSION_CANCELLED,
    SESSION_COMPLETED,
    SESSION_FAILED,
    SESSION_IN_PROGRESS,
    ExtractionSession,
    UrlExtraction,
    hash_url,
    new_extraction,
    new_session,
)
from extraction_orchestrator.orchestrator.backoff import BackoffPolicy
from extraction_orchestrator.orchestrator.chunking import plan_chunks
from extraction_orchestrator.orchestrator.classifier import (
    Classification,
    classify,
    error_type_for,
)
from extraction_orchestrator.orchestrator.config import ERROR_TIMEOUT
from extraction_orchestrator.orchestrator.content_extractor import DiscoveredLink, discover_links
from extraction_orchestrator.orchestrator.executor import TaskExecutor
from extraction_orchestrator.orchestrator.fetcher import PageFetcher
from extraction_orchestrator.orchestrator.pool import PoolReport, WorkerPool
from extraction_orchestrator.orchestrator.statistics import (
    SessionStatistics,
    UserAnalytics,
    progress_percent,
)
from extraction_orchestrator.orchestrator.store import ExtractionStore

logger = structlog.get_logger(__name__)

#: Session statuses a session may be reopened from.
_REOPENABLE_FROM: frozenset[str] = frozenset({SESSION_COMPLETED, SESSION_FAILED})

#: Session statuses whose failed extractions may be copied into a derived session.
_DERIVABLE_FROM: frozenset[str] = _REOPENABLE_FROM | {SESSION_CANCELLED}

_MAX_PAGE_SIZE = 200


def _clean_url(raw: str | None, field: str) -> str:
    url = (raw or "").strip()
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"Invalid URL: {raw!r}", field=field)
    return url


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


@dataclass
class SessionProgress:
    session_id: uuid.UUID
    status: str
    total_urls: int
    successful_urls: int
    failed_urls: int
    processed_urls: int
    progress_percent: float


@dataclass
class SessionDetails:
    session: ExtractionSession
    statistics: SessionStatistics
    extractions: list[UrlExtraction] | None = None


@dataclass
class UrlHistory:
    url: str
    url_hash: str
    extraction_count: int
    latest: UrlExtraction | None

    @property
    def previously_extracted(self) -> bool:
        return self.latest is not None


@dataclass
class LinkDiscovery:
    source_url: str
    final_url: str
    title: str | None
    links: list[DiscoveredLink]

    def count(self, category: str) -> int:
        return sum(link.category == category for link in self.links)


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class SessionController:
    """Start, observe, cancel, retry and delete extraction sessions.

    Args:
        store: Data store.
        fetcher: Page fetcher used by the sessions this controller runs.
        settings: Application settings; defaults to :func:`get_settings`.
        backoff: Backoff policy override (tests pass a zero-delay policy).
    """

    def __init__(
        self,
        store: ExtractionStore,
        fetcher: PageFetcher,
        settings: Settings | None = None,
        *,
        backoff: BackoffPolicy | None = None,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.settings = settings or get_settings()
        self.backoff = backoff or BackoffPolicy(
            base=self.settings.backoff_base_seconds,
            cap=self.settings.backoff_max_seconds,
        )
        self._tasks: dict[uuid.UUID, asyncio.Task[PoolReport]] = {}
        self._cancel_events: dict[uuid.UUID, asyncio.Event] = {}

    # ------------------------------------------------------------------
    # Starting
    # ------------------------------------------------------------------

    def _validate_batch(
        self,
        source_url: str,
        urls: list[str],
        chunk_size: int,
        max_retries: int,
    ) -> list[str]:
        if not source_url or not source_url.strip():
            raise ValidationError("source_url must not be empty", field="source_url")
        if not urls:
            raise ValidationError("At least one URL is required", field="urls")
        limit = self.settings.max_urls_per_batch
        if len(urls) > limit:
            raise ValidationError(
                f"At most {limit} URLs are accepted per batch (got {len(urls)})",
                field="urls",
            )
        if not 0 < chunk_size <= self.settings.max_chunk_size:
            raise ValidationError(
                f"chunk_size must be between 1 and {self.settings.max_chunk_size}",
                field="chunk_size",
            )
        if not 0 <= max_retries <= self.settings.max_retries_limit:
            raise ValidationError(
                f"max_retries must be between 0 and {self.settings.max_retries_limit}",
                field="max_retries",
            )

        return [_clean_url(raw, "urls") for raw in urls]

    async def start_batch(
        self,
        user_id: str,
        source_url: str,
        urls: list[str],
        chunk_size: int | None = None,
        max_retries: int | None = None,
        session_name: str | None = None,
        metadata: dict[str, Any] | None = None,
        run: bool = True,
    ) -> uuid.UUID:
        """Validate, plan and persist a new session.

        Args:
            user_id: Owner of the session.
            source_url: Page the URL list came from.
            urls: URLs to extract, in order.
            chunk_size: URLs per chunk; defaults to ``default_chunk_size``.
            max_retries: Attempt budget per URL; defaults to
                ``default_max_retries``.
            session_name: Optional label.
            metadata: Optional caller metadata stored on the session.
            run: Start a worker pool in the background right away.  Pass
                ``False`` when the run is dispatched elsewhere (Celery).

        Returns:
            The new session's id.

        Raises:
            ValidationError: If the request is rejected; nothing is written.
            StoreError: If the session could not be persisted.
        """
        chunk_size = self.settings.default_chunk_size if chunk_size is None else chunk_size
        max_retries = self.settings.default_max_retries if max_retries is None else max_retries
        cleaned = self._validate_batch(source_url, urls, chunk_size, max_retries)

        plan = plan_chunks(cleaned, chunk_size)
        session = new_session(
            user_id=user_id,
            source_url=source_url.strip(),
            total_urls=len(plan),
            chunk_size=chunk_size,
            max_retries=max_retries,
            session_name=session_name,
            metadata=metadata,
        )
        extractions = [
            new_extraction(
                session_id=session.session_id,
                url=item.url,
                chunk_number=item.chunk_number,
                position_in_chunk=item.position_in_chunk,
                max_retries=max_retries,
            )
            for item in plan
        ]
        await self.store.create_session(session, extractions)
        logger.info(
            "extraction_session_created",
            session_id=str(session.session_id),
            user_id=user_id,
            total_urls=len(plan),
            chunk_size=chunk_size,
            max_retries=max_retries,
        )
        if run:
            self._launch(session.session_id)
        return session.session_id

    def _launch(self, session_id: uuid.UUID) -> asyncio.Task[PoolReport]:
        task = asyncio.create_task(
            self.run_session(session_id), name=f"extraction-session-{session_id}"
        )
        self._tasks[session_id] = task
        return task

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def is_running(self, session_id: uuid.UUID) -> bool:
        """Whether a worker pool for ``session_id`` is active in this process."""
        return session_id in self._cancel_events

    async def run_session(self, session_id: uuid.UUID) -> PoolReport:
        """Drive an in-progress session until it drains or is cancelled.

        Checks the fetcher's readiness first; if that fails the session is
        marked ``failed`` without dispatching anything.  After the pool
        returns, the session is marked ``completed`` when no open rows
        remain.

        Raises:
            SessionNotFoundError: If the session does not exist.
            InvalidSessionStateError: If it is not in progress or already
                running in this process.
            StoreError: If a state transition could not be persisted.
        """
        session = await self.store.get_session(session_id)
        if session.status != SESSION_IN_PROGRESS:
            raise InvalidSessionStateError(session_id, session.status, "run")
        if self.is_running(session_id):
            raise InvalidSessionStateError(session_id, "running", "run")

        cancel_event = asyncio.Event()
        self._cancel_events[session_id] = cancel_event
        log = logger.bind(session_id=str(session_id))
        try:
            try:
                await self.fetcher.ready()
            except Exception as exc:  # noqa: BLE001
                message = f"Page fetcher unavailable: {exc}"
                await self.store.mark_session_failed(session_id, message)
                log.warning("extraction_session_failed", error=message)
                return PoolReport(session_id=session_id)

            log.info("extraction_session_running", fetcher=self.fetcher.name)
            pool = WorkerPool(
                session_id,
                self.store,
                TaskExecutor(
                    self.store,
                    self.fetcher,
                    attempt_timeout=self.settings.attempt_timeout_seconds,
                ),
                concurrency=self.settings.worker_concurrency,
                backoff=self.backoff,
                cancel_event=cancel_event,
                poll_interval=self.settings.cancel_poll_interval_seconds,
            )
            report = await pool.run()
            status = await self.store.finalize_session(session_id)
            log.info(
                "extraction_session_pool_finished",
                status=status,
                attempts=report.dispatched,
                succeeded=report.succeeded,
                failed=report.failed,
                retries=report.retries_scheduled,
                peak_active=report.peak_active,
                cancelled=report.cancelled,
            )
            return report
        finally:
            self._cancel_events.pop(session_id, None)

    async def resume(self, session_id: uuid.UUID) -> PoolReport:
        """Recover a session interrupted by a crash and run it again.

        Attempts left ``processing`` by the dead process are closed as
        interrupted (see :meth:`ExtractionStore.recover_interrupted`), then
        the remaining pending/retrying rows are run.
        """
        session = await self.store.get_session(session_id)
        if session.status != SESSION_IN_PROGRESS:
            raise InvalidSessionStateError(session_id, session.status, "resume")
        if self.is_running(session_id):
            raise InvalidSessionStateError(session_id, "running", "resume")
        recovered = await self.store.recover_interrupted(session_id)
        logger.info(
            "extraction_session_resumed",
            session_id=str(session_id),
            recovered_attempts=recovered,
        )
        return await self.run_session(session_id)

    async def wait(self, session_id: uuid.UUID) -> PoolReport | None:
        """Await a background run started by this controller.

        Returns ``None`` when no background run is known; re-raises the
        run's exception if it failed.
        """
        task = self._tasks.get(session_id)
        if task is None:
            return None
        try:
            return await task
        finally:
            self._tasks.pop(session_id, None)

    async def aclose(self) -> None:
        """Cancel every session running in this process and close the fetcher."""
        for event in self._cancel_events.values():
            event.set()
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
            self._tasks.clear()
        await self.fetcher.aclose()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_progress(self, session_id: uuid.UUID) -> SessionProgress:
        """Return committed progress counters for a session."""
        session = await self.store.get_session(session_id)
        processed = session.successful_urls + session.failed_urls
        return SessionProgress(
            session_id=session.session_id,
            status=session.status,
            total_urls=session.total_urls,
            successful_urls=session.successful_urls,
            failed_urls=session.failed_urls,
            processed_urls=processed,
            progress_percent=progress_percent(
                session.successful_urls, session.failed_urls, session.total_urls
            ),
        )

    async def get_details(
        self,
        session_id: uuid.UUID,
        include_urls: bool = False,
        include_retries: bool = False,
    ) -> SessionDetails:
        """Return the session, its statistics and optionally its extractions."""
        session = await self.store.get_session(session_id)
        stats = await self.store.compute_statistics(session)
        extractions = None
        if include_urls or include_retries:
            extractions = await self.store.list_extractions(
                session_id, include_retries=include_retries
            )
        return SessionDetails(session=session, statistics=stats, extractions=extractions)

    async def list_sessions(
        self,
        user_id: str,
        status: str | None = None,
        cursor: uuid.UUID | None = None,
        limit: int = 50,
    ) -> list[ExtractionSession]:
        """Return a page of a user's sessions, newest first."""
        limit = max(1, min(limit, _MAX_PAGE_SIZE))
        return await self.store.list_sessions(user_id, status=status, cursor=cursor, limit=limit)

    async def check_url_history(self, url: str) -> UrlHistory:
        """Report whether and how often ``url`` has been extracted before."""
        url = url.strip()
        if not url:
            raise ValidationError("url must not be empty", field="url")
        latest, count = await self.store.url_history(url)
        return UrlHistory(url=url, url_hash=hash_url(url), extraction_count=count, latest=latest)

    async def user_analytics(self, user_id: str) -> UserAnalytics:
        """Return cross-session totals and error breakdown for a user."""
        return await self.store.user_analytics(user_id)

    async def retryable_extractions(
        self,
        user_id: str,
        session_id: uuid.UUID | None = None,
        error_type: str | None = None,
        min_retry_interval_seconds: float = 0,
        limit: int = 100,
    ) -> list[UrlExtraction]:
        """List a user's failed, retry-eligible extractions across sessions.

        Rows that failed less than ``min_retry_interval_seconds`` ago are
        left out.
        """
        if min_retry_interval_seconds < 0:
            raise ValidationError(
                "min_retry_interval_seconds must not be negative",
                field="min_retry_interval_seconds",
            )
        failed_before = None
        if min_retry_interval_seconds:
            failed_before = datetime.now(tz=timezone.utc) - timedelta(
                seconds=min_retry_interval_seconds
            )
        return await self.store.retryable_extractions(
            user_id,
            session_id=session_id,
            error_type=error_type,
            failed_before=failed_before,
            limit=max(1, min(limit, _MAX_PAGE_SIZE)),
        )

    async def discover(self, source_url: str) -> LinkDiscovery:
        """Fetch a seed page and list the links a batch could be built from.

        Uses the controller's page fetcher, which must return the page HTML
        (the direct HTTP fetcher does; the gateway fetcher does not).

        Raises:
            ValidationError: If ``source_url`` is not an http(s) URL.
            RetryableFetchError: If the page could not be fetched for a
                transient reason (timeout, 429, 5xx).
            TerminalFetchError: For any other fetch failure, or when the
                fetcher returned no HTML.
        """
        url = _clean_url(source_url, "url")
        try:
            outcome = await asyncio.wait_for(
                self.fetcher.fetch(url), timeout=self.settings.attempt_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise RetryableFetchError(
                f"Fetching {url} timed out", error_type=ERROR_TIMEOUT
            ) from exc

        verdict = classify(outcome)
        if verdict is not Classification.SUCCESS:
            error_cls = (
                RetryableFetchError if verdict is Classification.RETRYABLE else TerminalFetchError
            )
            raise error_cls(
                f"Fetching {url} failed: {outcome.error_message or error_type_for(outcome)}",
                status_code=outcome.status_code,
                error_type=error_type_for(outcome),
            )
        if outcome.html is None:
            raise TerminalFetchError(
                f"Page fetcher '{self.fetcher.name}' returned no HTML for {url}",
                status_code=outcome.status_code,
                error_type="no_html",
            )

        final_url = outcome.final_url or url
        links = await asyncio.to_thread(discover_links, outcome.html, final_url)
        logger.info("source_links_discovered", source_url=url, links=len(links))
        return LinkDiscovery(
            source_url=url,
            final_url=final_url,
            title=outcome.metadata.get("title"),
            links=links,
        )

    # ------------------------------------------------------------------
    # Lifecycle actions
    # ------------------------------------------------------------------

    async def cancel(self, session_id: uuid.UUID) -> None:
        """Cancel an in-progress session.

        Pending rows stay pending and completed rows are kept.  A pool
        running in this process stops at once; pools in other processes
        notice on their next status poll.

        Raises:
            SessionNotFoundError: If the session does not exist.
            InvalidSessionStateError: If the session is not in progress.
        """
        session = await self.store.get_session(session_id)
        if session.status != SESSION_IN_PROGRESS:
            raise InvalidSessionStateError(session_id, session.status, "cancel")
        if not await self.store.cancel_session(session_id):
            current = await self.store.get_session(session_id)
            raise InvalidSessionStateError(session_id, current.status, "cancel")
        event = self._cancel_events.get(session_id)
        if event is not None:
            event.set()
        logger.info("extraction_session_cancelled", session_id=str(session_id))

    async def retry_failed(
        self,
        session_id: uuid.UUID,
        reopen: bool = False,
        run: bool = True,
    ) -> uuid.UUID:
        """Retry the failed, retry-eligible extractions of a session that is not running.

        Eligible rows are failed rows with ``attempt_count < max_retries``.

        By default a derived session is created holding one new extraction
        per eligible row, keeping its chunk number and position; each new
        row's budget is what the original had left.  With ``reopen=True`` the
        session itself is reopened: eligible rows go back to ``retrying`` and
        their attempt numbering continues.

        Returns:
            The id of the session that will run the retries.

        Raises:
            InvalidSessionStateError: If the session is still in progress, or
                ``reopen`` is asked of a cancelled session.
            ValidationError: If there is nothing to retry.
        """
        session = await self.store.get_session(session_id)
        allowed = _REOPENABLE_FROM if reopen else _DERIVABLE_FROM
        if session.status not in allowed:
            raise InvalidSessionStateError(session_id, session.status, "retry")
        candidates = await self.store.retry_candidates(session_id)

        if reopen:
            if not candidates and not await self.store.has_pending(session_id):
                raise ValidationError(
                    f"Extraction session '{session_id}' has nothing to retry",
                    field="session_id",
                )
            reopened = await self.store.reopen_session(session_id, _REOPENABLE_FROM)
            if reopened is None:
                current = await self.store.get_session(session_id)
                raise InvalidSessionStateError(session_id, current.status, "retry")
            logger.info(
                "extraction_session_reopened",
                session_id=str(session_id),
                reopened_extractions=reopened,
            )
            if run:
                self._launch(session_id)
            return session_id

        if not candidates:
            raise ValidationError(
                f"Extraction session '{session_id}' has no retry-eligible failed extractions",
                field="session_id",
            )
        derived = new_session(
            user_id=session.user_id,
            source_url=session.source_url,
            total_urls=len(candidates),
            chunk_size=session.chunk_size,
            max_retries=session.max_retries,
            session_name=f"Retry of {session.session_name or session.session_id}",
            metadata={"retry_of": str(session_id)},
            parent_session_id=session_id,
        )
        rows = [
            new_extraction(
                session_id=derived.session_id,
                url=row.url,
                chunk_number=row.chunk_number,
                position_in_chunk=row.position_in_chunk,
                max_retries=row.remaining_retries,
                metadata={"retry_of_extraction": str(row.extraction_id)},
            )
            for row in candidates
        ]
        await self.store.create_session(derived, rows)
        logger.info(
            "extraction_session_retry_created",
            session_id=str(derived.session_id),
            parent_session_id=str(session_id),
            total_urls=len(rows),
        )
        if run:
            self._launch(derived.session_id)
        return derived.session_id

    async def delete(self, session_id: uuid.UUID) -> None:
        """Delete a session and, by cascade, its extractions and retry logs.

        Raises:
            SessionNotFoundError: If the session does not exist.
            InvalidSessionStateError: If the session is still in progress.
        """
        session = await self.store.get_session(session_id)
        if session.status == SESSION_IN_PROGRESS or self.is_running(session_id):
            raise InvalidSessionStateError(session_id, session.status, "delete")
        if not await self.store.delete_session(session_id):
            current = await self.store.get_session(session_id)
            raise InvalidSessionStateError(session_id, current.status, "delete")
        self._tasks.pop(session_id, None)
        logger.info("extraction_session_deleted", session_id=str(session_id))
