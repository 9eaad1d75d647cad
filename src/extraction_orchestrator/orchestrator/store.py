"""Transactional data store for sessions, extractions and retry logs.

Every public method runs in its own short transaction opened from the
injected ``async_sessionmaker``; nothing is cached between calls, so every
read reflects committed state.

Counter and attempt updates are single conditional ``UPDATE`` statements
(``SET attempt_count = attempt_count + 1`` and so on) rather than
read-modify-write cycles in Python, because several workers update the
same session row concurrently.

SQLAlchemy failures are wrapped in
:class:`~extraction_orchestrator.core.exceptions.StoreError` and always
propagate to the caller.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from extraction_orchestrator.core.exceptions import SessionNotFoundError, StoreError
from extraction_orchestrator.core.models.extraction import (
    ATTEMPT_INTERRUPTED,
    DISPATCHABLE_URL_STATUSES,
    OPEN_URL_STATUSES,
    SESSION_CANCELLED,
    SESSION_COMPLETED,
    SESSION_FAILED,
    SESSION_IN_PROGRESS,
    URL_FAILED,
    URL_PENDING,
    URL_PROCESSING,
    URL_RETRYING,
    URL_SUCCESS,
    ExtractionRetry,
    ExtractionSession,
    UrlExtraction,
    hash_url,
)
from extraction_orchestrator.orchestrator import statistics
from extraction_orchestrator.orchestrator.config import (
    ERROR_INTERRUPTED,
    RETRY_STRATEGY,
)

logger = logging.getLogger(__name__)

_NO_SYNC = {"synchronize_session": False}


@dataclass(frozen=True)
class AttemptTicket:
    """Claim on one attempt, returned by :meth:`ExtractionStore.begin_attempt`.

    Attributes:
        extraction_id: The claimed extraction.
        session_id: Its owning session.
        url: URL to fetch.
        attempt_number: 1-based number of this attempt (equals the
            extraction's ``attempt_count`` after the claim).
        max_retries: The extraction's attempt budget.
        retry_id: Id of the retry-log row opened for this attempt.
    """

    extraction_id: uuid.UUID
    session_id: uuid.UUID
    url: str
    attempt_number: int
    max_retries: int
    retry_id: uuid.UUID

    @property
    def budget_left(self) -> bool:
        """Whether a retryable failure of this attempt may be retried."""
        return self.attempt_number < self.max_retries


class ExtractionStore:
    """Persistence operations used by the orchestrator.

    Args:
        session_factory: Factory producing ``AsyncSession`` objects.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _transaction(
        self, action: str, session_id: uuid.UUID | None = None
    ) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    yield db
        except SQLAlchemyError as exc:
            logger.error("orchestrator: store %s failed for session %s: %s", action, session_id, exc)
            raise StoreError(f"Failed to {action}: {exc}", session_id=session_id) from exc

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_session(
        self,
        session: ExtractionSession,
        extractions: Sequence[UrlExtraction],
    ) -> None:
        """Insert a session and its extractions in one transaction."""
        async with self._transaction("create session", session.session_id) as db:
            db.add(session)
            await db.flush()
            db.add_all(list(extractions))

    # ------------------------------------------------------------------
    # Session reads
    # ------------------------------------------------------------------

    async def get_session(self, session_id: uuid.UUID) -> ExtractionSession:
        """Return the session row.

        Raises:
            SessionNotFoundError: If no such session exists.
        """
        async with self._transaction("load session", session_id) as db:
            row = await db.get(ExtractionSession, session_id)
        if row is None:
            raise SessionNotFoundError(session_id)
        return row

    async def session_status(self, session_id: uuid.UUID) -> str | None:
        """Return the committed status of a session, or ``None`` if it is gone."""
        async with self._transaction("read session status", session_id) as db:
            return await db.scalar(
                sa.select(ExtractionSession.status).where(
                    ExtractionSession.session_id == session_id
                )
            )

    async def list_extractions(
        self,
        session_id: uuid.UUID,
        *,
        include_retries: bool = False,
    ) -> list[UrlExtraction]:
        """Return a session's extractions ordered by chunk and position."""
        stmt = (
            sa.select(UrlExtraction)
            .where(UrlExtraction.session_id == session_id)
            .order_by(UrlExtraction.chunk_number, UrlExtraction.position_in_chunk)
        )
        if include_retries:
            stmt = stmt.options(selectinload(UrlExtraction.retries))
        async with self._transaction("list extractions", session_id) as db:
            return list((await db.scalars(stmt)).all())

    async def list_retries(self, extraction_id: uuid.UUID) -> list[ExtractionRetry]:
        """Return the retry log of one extraction in attempt order."""
        async with self._transaction("list retries") as db:
            result = await db.scalars(
                sa.select(ExtractionRetry)
                .where(ExtractionRetry.extraction_id == extraction_id)
                .order_by(ExtractionRetry.attempt_number)
            )
            return list(result.all())

    async def dispatchable_ids(self, session_id: uuid.UUID) -> list[uuid.UUID]:
        """Return pending/retrying extraction ids in (chunk, position) order."""
        async with self._transaction("list dispatchable extractions", session_id) as db:
            result = await db.scalars(
                sa.select(UrlExtraction.extraction_id)
                .where(
                    UrlExtraction.session_id == session_id,
                    UrlExtraction.status.in_(DISPATCHABLE_URL_STATUSES),
                )
                .order_by(UrlExtraction.chunk_number, UrlExtraction.position_in_chunk)
            )
            return list(result.all())

    async def compute_statistics(self, session: ExtractionSession) -> statistics.SessionStatistics:
        """Compute statistics for ``session`` from its persisted rows."""
        async with self._transaction("compute statistics", session.session_id) as db:
            return await statistics.compute_session_statistics(db, session)

    async def list_sessions(
        self,
        user_id: str,
        *,
        status: str | None = None,
        cursor: uuid.UUID | None = None,
        limit: int = 50,
    ) -> list[ExtractionSession]:
        """Return a user's sessions, newest first, keyset-paginated.

        Args:
            user_id: Owner of the sessions.
            status: Optional status filter.
            cursor: ``session_id`` of the last session of the previous page.
            limit: Maximum number of sessions to return.
        """
        stmt = sa.select(ExtractionSession).where(ExtractionSession.user_id == user_id)
        if status is not None:
            stmt = stmt.where(ExtractionSession.status == status)
        async with self._transaction("list sessions") as db:
            if cursor is not None:
                anchor = await db.get(ExtractionSession, cursor)
                if anchor is None:
                    raise SessionNotFoundError(cursor)
                stmt = stmt.where(
                    sa.or_(
                        ExtractionSession.started_at < anchor.started_at,
                        sa.and_(
                            ExtractionSession.started_at == anchor.started_at,
                            ExtractionSession.session_id < anchor.session_id,
                        ),
                    )
                )
            stmt = stmt.order_by(
                ExtractionSession.started_at.desc(),
                ExtractionSession.session_id.desc(),
            ).limit(limit)
            return list((await db.scalars(stmt)).all())

    async def url_history(self, url: str) -> tuple[UrlExtraction | None, int]:
        """Return the most recent extraction of ``url`` and how often it was extracted."""
        url_hash = hash_url(url)
        async with self._transaction("check url history") as db:
            count = await db.scalar(
                sa.select(sa.func.count()).where(UrlExtraction.url_hash == url_hash)
            )
            latest = await db.scalar(
                sa.select(UrlExtraction)
                .where(UrlExtraction.url_hash == url_hash)
                .order_by(UrlExtraction.created_at.desc())
                .limit(1)
            )
        return latest, int(count or 0)

    async def retryable_extractions(
        self,
        user_id: str,
        *,
        session_id: uuid.UUID | None = None,
        error_type: str | None = None,
        failed_before: datetime | None = None,
        limit: int = 100,
    ) -> list[UrlExtraction]:
        """Return a user's failed extractions that still have attempt budget.

        Rows come from every session the user owns, most recent failure
        first.  ``failed_before`` leaves out rows whose last failure is newer.
        """
        stmt = (
            sa.select(UrlExtraction)
            .join(ExtractionSession, ExtractionSession.session_id == UrlExtraction.session_id)
            .where(
                ExtractionSession.user_id == user_id,
                UrlExtraction.status == URL_FAILED,
                UrlExtraction.attempt_count < UrlExtraction.max_retries,
            )
        )
        if session_id is not None:
            stmt = stmt.where(UrlExtraction.session_id == session_id)
        if error_type is not None:
            stmt = stmt.where(UrlExtraction.error_type == error_type)
        if failed_before is not None:
            stmt = stmt.where(
                sa.or_(
                    UrlExtraction.last_error_at.is_(None),
                    UrlExtraction.last_error_at < failed_before,
                )
            )
        stmt = stmt.order_by(
            UrlExtraction.last_error_at.desc(), UrlExtraction.extraction_id
        ).limit(limit)
        async with self._transaction("list retryable extractions") as db:
            result = await db.scalars(stmt)
            return list(result.all())

    async def user_analytics(self, user_id: str) -> statistics.UserAnalytics:
        """Aggregate totals and error breakdown over all of a user's sessions."""
        async with self._transaction("compute user analytics") as db:
            return await statistics.compute_user_analytics(db, user_id)

    async def stale_session_ids(self, idle_since: datetime) -> list[uuid.UUID]:
        """Return in-progress sessions with open rows and no activity since ``idle_since``."""
        last_activity = (
            sa.select(
                UrlExtraction.session_id,
                sa.func.max(UrlExtraction.updated_at).label("last_activity"),
            )
            .group_by(UrlExtraction.session_id)
            .subquery()
        )
        has_open_rows = (
            sa.exists()
            .where(
                UrlExtraction.session_id == ExtractionSession.session_id,
                UrlExtraction.status.in_(OPEN_URL_STATUSES),
            )
        )
        stmt = (
            sa.select(ExtractionSession.session_id)
            .join(last_activity, last_activity.c.session_id == ExtractionSession.session_id)
            .where(
                ExtractionSession.status == SESSION_IN_PROGRESS,
                has_open_rows,
                last_activity.c.last_activity < idle_since,
            )
        )
        async with self._transaction("find stale sessions") as db:
            return list((await db.scalars(stmt)).all())

    # ------------------------------------------------------------------
    # Attempt lifecycle
    # ------------------------------------------------------------------

    async def begin_attempt(self, extraction_id: uuid.UUID) -> AttemptTicket | None:
        """Claim the next attempt at an extraction.

        In a single transaction: flips a pending/retrying row to processing,
        increments ``attempt_count`` in SQL, and opens the retry-log row for
        this attempt.  The claim is refused when the row is not dispatchable
        or its session is no longer in progress.

        Returns:
            An :class:`AttemptTicket`, or ``None`` if the claim was refused.
        """
        session_running = sa.select(ExtractionSession.session_id).where(
            ExtractionSession.status == SESSION_IN_PROGRESS
        )
        claim = (
            sa.update(UrlExtraction)
            .where(
                UrlExtraction.extraction_id == extraction_id,
                UrlExtraction.status.in_(DISPATCHABLE_URL_STATUSES),
                UrlExtraction.session_id.in_(session_running),
            )
            .values(
                status=URL_PROCESSING,
                attempt_count=UrlExtraction.attempt_count + 1,
            )
            .returning(
                UrlExtraction.session_id,
                UrlExtraction.url,
                UrlExtraction.attempt_count,
                UrlExtraction.max_retries,
            )
            .execution_options(**_NO_SYNC)
        )
        async with self._transaction("begin attempt") as db:
            row = (await db.execute(claim)).one_or_none()
            if row is None:
                return None
            retry_id = uuid.uuid4()
            db.add(
                ExtractionRetry(
                    retry_id=retry_id,
                    extraction_id=extraction_id,
                    attempt_number=row.attempt_count,
                    status=URL_PROCESSING,
                    retry_strategy=RETRY_STRATEGY,
                )
            )
        return AttemptTicket(
            extraction_id=extraction_id,
            session_id=row.session_id,
            url=row.url,
            attempt_number=row.attempt_count,
            max_retries=row.max_retries,
            retry_id=retry_id,
        )

    async def record_success(
        self,
        ticket: AttemptTicket,
        *,
        http_status: int | None,
        processing_time_ms: int,
        content_bytes: int | None = None,
        links_found: int | None = None,
        final_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record a successful attempt and count it on the session."""
        async with self._transaction("record success", ticket.session_id) as db:
            current_meta = await db.scalar(
                sa.select(UrlExtraction.meta).where(
                    UrlExtraction.extraction_id == ticket.extraction_id
                )
            )
            await self._close_attempt(
                db,
                ticket,
                {
                    "status": URL_SUCCESS,
                    "http_status": http_status,
                    "processing_time_ms": processing_time_ms,
                    "content_bytes": content_bytes,
                    "links_found": links_found,
                    "final_url": final_url,
                    "meta": {**(current_meta or {}), **(metadata or {})},
                },
                {
                    "status": URL_SUCCESS,
                    "http_status": http_status,
                    "processing_time_ms": processing_time_ms,
                },
            )
            await db.execute(
                sa.update(ExtractionSession)
                .where(ExtractionSession.session_id == ticket.session_id)
                .values(successful_urls=ExtractionSession.successful_urls + 1)
                .execution_options(**_NO_SYNC)
            )

    async def record_failure(
        self,
        ticket: AttemptTicket,
        *,
        terminal: bool,
        error_type: str,
        error_message: str | None,
        http_status: int | None,
        processing_time_ms: int,
    ) -> None:
        """Record a failed attempt.

        Args:
            ticket: The attempt being closed.
            terminal: ``True`` marks the extraction failed and counts it on
                the session; ``False`` leaves it retrying.
            error_type: Short error label.
            error_message: Human-readable error description.
            http_status: HTTP status of the failed response, if any.
            processing_time_ms: Wall-clock duration of the attempt.
        """
        status = URL_FAILED if terminal else URL_RETRYING
        async with self._transaction("record failure", ticket.session_id) as db:
            await self._close_attempt(
                db,
                ticket,
                {
                    "status": status,
                    "http_status": http_status,
                    "processing_time_ms": processing_time_ms,
                    "error_type": error_type,
                    "error_message": error_message,
                    "last_error_at": datetime.now(tz=timezone.utc),
                },
                {
                    "status": status,
                    "http_status": http_status,
                    "processing_time_ms": processing_time_ms,
                    "error_type": error_type,
                    "error_message": error_message,
                },
            )
            if terminal:
                await db.execute(
                    sa.update(ExtractionSession)
                    .where(ExtractionSession.session_id == ticket.session_id)
                    .values(failed_urls=ExtractionSession.failed_urls + 1)
                    .execution_options(**_NO_SYNC)
                )

    async def _close_attempt(
        self,
        db: AsyncSession,
        ticket: AttemptTicket,
        extraction_values: dict[str, Any],
        retry_values: dict[str, Any],
    ) -> None:
        result = await db.execute(
            sa.update(UrlExtraction)
            .where(
                UrlExtraction.extraction_id == ticket.extraction_id,
                UrlExtraction.status == URL_PROCESSING,
                UrlExtraction.attempt_count == ticket.attempt_number,
            )
            .values(**extraction_values)
            .execution_options(**_NO_SYNC)
        )
        if result.rowcount != 1:
            raise StoreError(
                f"Extraction {ticket.extraction_id} is no longer processing "
                f"attempt {ticket.attempt_number}",
                session_id=ticket.session_id,
            )
        await db.execute(
            sa.update(ExtractionRetry)
            .where(
                ExtractionRetry.retry_id == ticket.retry_id,
                ExtractionRetry.status == URL_PROCESSING,
            )
            .values(**retry_values)
            .execution_options(**_NO_SYNC)
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def finalize_session(self, session_id: uuid.UUID) -> str | None:
        """Mark an in-progress session completed once no open rows remain.

        Returns:
            The session's status after the check.
        """
        open_rows = sa.exists().where(
            UrlExtraction.session_id == session_id,
            UrlExtraction.status.in_(OPEN_URL_STATUSES),
        )
        async with self._transaction("finalize session", session_id) as db:
            await db.execute(
                sa.update(ExtractionSession)
                .where(
                    ExtractionSession.session_id == session_id,
                    ExtractionSession.status == SESSION_IN_PROGRESS,
                    ~open_rows,
                )
                .values(status=SESSION_COMPLETED, completed_at=datetime.now(tz=timezone.utc))
                .execution_options(**_NO_SYNC)
            )
            return await db.scalar(
                sa.select(ExtractionSession.status).where(
                    ExtractionSession.session_id == session_id
                )
            )

    async def mark_session_failed(self, session_id: uuid.UUID, error_message: str) -> bool:
        """Move an in-progress session to ``failed``.  Returns ``False`` if it was not running."""
        async with self._transaction("mark session failed", session_id) as db:
            result = await db.execute(
                sa.update(ExtractionSession)
                .where(
                    ExtractionSession.session_id == session_id,
                    ExtractionSession.status == SESSION_IN_PROGRESS,
                )
                .values(
                    status=SESSION_FAILED,
                    error_message=error_message,
                    completed_at=datetime.now(tz=timezone.utc),
                )
                .execution_options(**_NO_SYNC)
            )
        return result.rowcount == 1

    async def cancel_session(self, session_id: uuid.UUID) -> bool:
        """Move an in-progress session to ``cancelled``.

        Extraction rows are not touched: pending rows stay pending.

        Returns:
            ``True`` if the session was in progress and is now cancelled.
        """
        async with self._transaction("cancel session", session_id) as db:
            result = await db.execute(
                sa.update(ExtractionSession)
                .where(
                    ExtractionSession.session_id == session_id,
                    ExtractionSession.status == SESSION_IN_PROGRESS,
                )
                .values(status=SESSION_CANCELLED, completed_at=datetime.now(tz=timezone.utc))
                .execution_options(**_NO_SYNC)
            )
        return result.rowcount == 1

    async def retry_candidates(self, session_id: uuid.UUID) -> list[UrlExtraction]:
        """Return failed extractions that still have attempt budget."""
        async with self._transaction("list retry candidates", session_id) as db:
            result = await db.scalars(
                sa.select(UrlExtraction)
                .where(
                    UrlExtraction.session_id == session_id,
                    UrlExtraction.status == URL_FAILED,
                    UrlExtraction.attempt_count < UrlExtraction.max_retries,
                )
                .order_by(UrlExtraction.chunk_number, UrlExtraction.position_in_chunk)
            )
            return list(result.all())

    async def reopen_session(
        self,
        session_id: uuid.UUID,
        from_statuses: frozenset[str],
    ) -> int | None:
        """Reopen a finished session in place for another round of attempts.

        Retry-eligible failed rows go back to ``retrying`` and ``failed_urls``
        is decremented by their number in the same transaction; the session
        returns to ``in_progress``.  Attempt counters are kept, so retry-log
        numbering continues without gaps.

        Args:
            session_id: Session to reopen.
            from_statuses: Session statuses a reopen is allowed from.

        Returns:
            Number of rows moved back to retrying, or ``None`` if the session
            was not in one of ``from_statuses``.
        """
        async with self._transaction("reopen session", session_id) as db:
            current = await db.scalar(
                sa.select(ExtractionSession.status)
                .where(ExtractionSession.session_id == session_id)
                .with_for_update()
            )
            if current not in from_statuses:
                return None
            reopened = await db.execute(
                sa.update(UrlExtraction)
                .where(
                    UrlExtraction.session_id == session_id,
                    UrlExtraction.status == URL_FAILED,
                    UrlExtraction.attempt_count < UrlExtraction.max_retries,
                )
                .values(status=URL_RETRYING)
                .execution_options(**_NO_SYNC)
            )
            count = reopened.rowcount
            await db.execute(
                sa.update(ExtractionSession)
                .where(ExtractionSession.session_id == session_id)
                .values(
                    status=SESSION_IN_PROGRESS,
                    failed_urls=ExtractionSession.failed_urls - count,
                    completed_at=None,
                    error_message=None,
                )
                .execution_options(**_NO_SYNC)
            )
        return count

    async def recover_interrupted(self, session_id: uuid.UUID) -> int:
        """Close attempts left ``processing`` by a process that died.

        Each open retry-log row is closed as ``interrupted``.  The extraction
        goes back to ``retrying`` when it has budget left, otherwise it is
        failed and counted in ``failed_urls``.

        Returns:
            Number of extractions recovered.
        """
        async with self._transaction("recover interrupted attempts", session_id) as db:
            stuck = (
                await db.scalars(
                    sa.select(UrlExtraction).where(
                        UrlExtraction.session_id == session_id,
                        UrlExtraction.status == URL_PROCESSING,
                    )
                )
            ).all()
            exhausted = 0
            for row in stuck:
                await db.execute(
                    sa.update(ExtractionRetry)
                    .where(
                        ExtractionRetry.extraction_id == row.extraction_id,
                        ExtractionRetry.status == URL_PROCESSING,
                    )
                    .values(
                        status=ATTEMPT_INTERRUPTED,
                        error_type=ERROR_INTERRUPTED,
                        error_message="attempt interrupted before completion",
                    )
                    .execution_options(**_NO_SYNC)
                )
                terminal = row.attempt_count >= row.max_retries
                exhausted += int(terminal)
                await db.execute(
                    sa.update(UrlExtraction)
                    .where(
                        UrlExtraction.extraction_id == row.extraction_id,
                        UrlExtraction.status == URL_PROCESSING,
                    )
                    .values(
                        status=URL_FAILED if terminal else URL_RETRYING,
                        error_type=ERROR_INTERRUPTED,
                        error_message="attempt interrupted before completion",
                        last_error_at=datetime.now(tz=timezone.utc),
                    )
                    .execution_options(**_NO_SYNC)
                )
            if exhausted:
                await db.execute(
                    sa.update(ExtractionSession)
                    .where(ExtractionSession.session_id == session_id)
                    .values(failed_urls=ExtractionSession.failed_urls + exhausted)
                    .execution_options(**_NO_SYNC)
                )
        if stuck:
            logger.warning(
                "orchestrator: recovered %d interrupted attempts in session %s",
                len(stuck),
                session_id,
            )
        return len(stuck)

    async def delete_session(self, session_id: uuid.UUID) -> bool:
        """Delete a session that is not in progress; cascades to its rows.

        Returns:
            ``True`` if a row was deleted.
        """
        async with self._transaction("delete session", session_id) as db:
            result = await db.execute(
                sa.delete(ExtractionSession)
                .where(
                    ExtractionSession.session_id == session_id,
                    ExtractionSession.status != SESSION_IN_PROGRESS,
                )
                .execution_options(**_NO_SYNC)
            )
        return result.rowcount == 1

    async def has_pending(self, session_id: uuid.UUID) -> bool:
        """Whether any extraction of the session is still pending."""
        async with self._transaction("check pending rows", session_id) as db:
            found = await db.scalar(
                sa.select(UrlExtraction.extraction_id)
                .where(
                    UrlExtraction.session_id == session_id,
                    UrlExtraction.status == URL_PENDING,
                )
                .limit(1)
            )
        return found is not None
