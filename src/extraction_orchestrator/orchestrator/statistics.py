"""Statistics computed on read from persisted extraction rows.

Nothing here is cached or stored back: every figure is derived from the
committed ``url_extractions`` and ``extraction_retries`` rows at the time of
the call, so statistics cannot drift from the data they describe.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from extraction_orchestrator.core.models.extraction import (
    URL_FAILED,
    URL_PENDING,
    ExtractionRetry,
    ExtractionSession,
    UrlExtraction,
)
from extraction_orchestrator.orchestrator.chunking import chunk_count


@dataclass
class SessionStatistics:
    """Aggregates over one session's extractions.

    Attributes:
        total_chunks: Number of chunks the URL list was split into.
        chunks_processed: Distinct chunks with at least one non-pending row.
        total_retries: Retry-log rows across all extractions (one per attempt).
        average_processing_time_ms: Mean processing time over rows that have
            one, or ``None`` when no row has been processed.
        error_breakdown: Failed extractions counted by ``error_type``.
        success_rate: ``successful_urls / total_urls * 100``.
        duration_seconds: Seconds from start to completion (or to now while
            the session is still running).
        status_counts: Extractions counted by status.
    """

    total_chunks: int
    chunks_processed: int
    total_retries: int
    average_processing_time_ms: float | None
    error_breakdown: dict[str, int] = field(default_factory=dict)
    success_rate: float = 0.0
    duration_seconds: float | None = None
    status_counts: dict[str, int] = field(default_factory=dict)


@dataclass
class UserAnalytics:
    """Cross-session aggregates for one user."""

    user_id: str
    total_sessions: int
    sessions_by_status: dict[str, int]
    total_urls: int
    successful_urls: int
    failed_urls: int
    success_rate: float
    total_retries: int
    average_processing_time_ms: float | None
    error_breakdown: dict[str, int] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def success_rate(successful_urls: int, total_urls: int) -> float:
    """Percentage of URLs extracted successfully; 0 for an empty session."""
    if total_urls <= 0:
        return 0.0
    return round(successful_urls / total_urls * 100, 2)


def progress_percent(successful_urls: int, failed_urls: int, total_urls: int) -> float:
    """Percentage of URLs that reached a terminal outcome."""
    if total_urls <= 0:
        return 0.0
    return round((successful_urls + failed_urls) / total_urls * 100, 2)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; they are stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def duration_seconds(
    started_at: datetime | None,
    completed_at: datetime | None,
    now: datetime | None = None,
) -> float | None:
    """Seconds between start and completion, or start and ``now`` if unfinished."""
    if started_at is None:
        return None
    end = completed_at or now or datetime.now(tz=timezone.utc)
    return round((_as_utc(end) - _as_utc(started_at)).total_seconds(), 3)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def _error_breakdown(db: AsyncSession, *criteria: sa.ColumnElement[bool]) -> dict[str, int]:
    rows = await db.execute(
        sa.select(UrlExtraction.error_type, sa.func.count())
        .where(UrlExtraction.status == URL_FAILED, *criteria)
        .group_by(UrlExtraction.error_type)
    )
    return {error_type or "unclassified": count for error_type, count in rows.all()}


async def compute_session_statistics(
    db: AsyncSession,
    session: ExtractionSession,
) -> SessionStatistics:
    """Compute :class:`SessionStatistics` for ``session``.

    Args:
        db: Open async session; only SELECTs are issued.
        session: The session row whose extractions are aggregated.
    """
    in_session = UrlExtraction.session_id == session.session_id

    chunks_processed = await db.scalar(
        sa.select(sa.func.count(sa.distinct(UrlExtraction.chunk_number))).where(
            in_session, UrlExtraction.status != URL_PENDING
        )
    )
    total_retries = await db.scalar(
        sa.select(sa.func.count(ExtractionRetry.retry_id))
        .join(UrlExtraction, UrlExtraction.extraction_id == ExtractionRetry.extraction_id)
        .where(in_session)
    )
    average = await db.scalar(
        sa.select(sa.func.avg(UrlExtraction.processing_time_ms)).where(
            in_session, UrlExtraction.processing_time_ms.is_not(None)
        )
    )
    status_rows = await db.execute(
        sa.select(UrlExtraction.status, sa.func.count())
        .where(in_session)
        .group_by(UrlExtraction.status)
    )

    return SessionStatistics(
        total_chunks=chunk_count(session.total_urls, session.chunk_size),
        chunks_processed=int(chunks_processed or 0),
        total_retries=int(total_retries or 0),
        average_processing_time_ms=round(float(average), 2) if average is not None else None,
        error_breakdown=await _error_breakdown(db, in_session),
        success_rate=success_rate(session.successful_urls, session.total_urls),
        duration_seconds=duration_seconds(session.started_at, session.completed_at),
        status_counts={status: count for status, count in status_rows.all()},
    )


async def compute_user_analytics(db: AsyncSession, user_id: str) -> UserAnalytics:
    """Compute :class:`UserAnalytics` over every session owned by ``user_id``."""
    totals = (
        await db.execute(
            sa.select(
                sa.func.count(ExtractionSession.session_id),
                sa.func.coalesce(sa.func.sum(ExtractionSession.total_urls), 0),
                sa.func.coalesce(sa.func.sum(ExtractionSession.successful_urls), 0),
                sa.func.coalesce(sa.func.sum(ExtractionSession.failed_urls), 0),
            ).where(ExtractionSession.user_id == user_id)
        )
    ).one()
    session_count, total_urls, successful_urls, failed_urls = (int(v) for v in totals)

    by_status = await db.execute(
        sa.select(ExtractionSession.status, sa.func.count())
        .where(ExtractionSession.user_id == user_id)
        .group_by(ExtractionSession.status)
    )

    owned = UrlExtraction.session_id.in_(
        sa.select(ExtractionSession.session_id).where(ExtractionSession.user_id == user_id)
    )
    total_retries = await db.scalar(
        sa.select(sa.func.count(ExtractionRetry.retry_id))
        .join(UrlExtraction, UrlExtraction.extraction_id == ExtractionRetry.extraction_id)
        .where(owned)
    )
    average = await db.scalar(
        sa.select(sa.func.avg(UrlExtraction.processing_time_ms)).where(
            owned, UrlExtraction.processing_time_ms.is_not(None)
        )
    )

    return UserAnalytics(
        user_id=user_id,
        total_sessions=session_count,
        sessions_by_status={status: count for status, count in by_status.all()},
        total_urls=total_urls,
        successful_urls=successful_urls,
        failed_urls=failed_urls,
        success_rate=success_rate(successful_urls, total_urls),
        total_retries=int(total_retries or 0),
        average_processing_time_ms=round(float(average), 2) if average is not None else None,
        error_breakdown=await _error_breakdown(db, owned),
    )
