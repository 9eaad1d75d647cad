"""SQLAlchemy ORM models for extraction sessions, URL extractions and retries.

Three tables form a strict ownership chain, deleted by ``ON DELETE CASCADE``:

- ``extraction_sessions``: one row per campaign, with progress counters.
- ``url_extractions``: one row per submitted URL, with its chunk placement,
  attempt counter and the outcome of its latest attempt.
- ``extraction_retries``: an append-only log with one row per attempt.

Rows are built by the :func:`new_session` and :func:`new_extraction`
factories, which return fully-initialised objects (ids generated, hash
computed, counters zero) before anything touches the database.
"""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from extraction_orchestrator.core.models.base import Base, JSONMap, TimestampMixin

# ---------------------------------------------------------------------------
# Status vocabularies
# ---------------------------------------------------------------------------

SESSION_IN_PROGRESS = "in_progress"
SESSION_COMPLETED = "completed"
SESSION_FAILED = "failed"
SESSION_CANCELLED = "cancelled"

SESSION_STATUSES: frozenset[str] = frozenset({
    SESSION_IN_PROGRESS,
    SESSION_COMPLETED,
    SESSION_FAILED,
    SESSION_CANCELLED,
})
TERMINAL_SESSION_STATUSES: frozenset[str] = SESSION_STATUSES - {SESSION_IN_PROGRESS}

URL_PENDING = "pending"
URL_PROCESSING = "processing"
URL_SUCCESS = "success"
URL_FAILED = "failed"
URL_RETRYING = "retrying"
URL_SKIPPED = "skipped"

URL_STATUSES: frozenset[str] = frozenset({
    URL_PENDING,
    URL_PROCESSING,
    URL_SUCCESS,
    URL_FAILED,
    URL_RETRYING,
    URL_SKIPPED,
})
#: Rows that still keep a session from completing.
OPEN_URL_STATUSES: frozenset[str] = frozenset({URL_PENDING, URL_PROCESSING, URL_RETRYING})
#: Rows a worker may claim for a new attempt.
DISPATCHABLE_URL_STATUSES: frozenset[str] = frozenset({URL_PENDING, URL_RETRYING})

#: Retry-log status for an attempt whose process died before it finished.
ATTEMPT_INTERRUPTED = "interrupted"
RETRY_LOG_STATUSES: frozenset[str] = URL_STATUSES | {ATTEMPT_INTERRUPTED}


def _in_list(column: str, values: frozenset[str]) -> str:
    quoted = ", ".join(f"'{v}'" for v in sorted(values))
    return f"{column} IN ({quoted})"


def hash_url(url: str) -> str:
    """Return the SHA-256 hex digest used to look up a URL across sessions."""
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class ExtractionSession(Base, TimestampMixin):
    """One extraction campaign over a list of URLs.

    Attributes:
        session_id: UUID primary key, generated by :func:`new_session`.
        user_id: Opaque identifier of the requesting user.
        session_name: Optional human-readable label.
        source_url: The page the URL list was harvested from.
        total_urls: Number of extractions created for this session.
        successful_urls: Extractions that reached ``success``.
        failed_urls: Extractions that reached ``failed``.
        status: ``in_progress``, ``completed``, ``failed`` or ``cancelled``.
        chunk_size: Chunk size the URL list was planned with.
        max_retries: Attempt budget copied onto every extraction.
        error_message: Reason the session itself failed, if it did.
        parent_session_id: Session this one was derived from by a retry.
        started_at: When the session was created.
        completed_at: When the session reached a terminal status.
        meta: Free-form caller metadata (column ``metadata``).
    """

    __tablename__ = "extraction_sessions"

    session_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    session_name: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)
    source_url: Mapped[str] = mapped_column(sa.Text, nullable=False)

    # Progress counters
    total_urls: Mapped[int] = mapped_column(
        sa.Integer, nullable=False, server_default=sa.text("0")
    )
    successful_urls: Mapped[int] = mapped_column(
        sa.Integer, nullable=False, server_default=sa.text("0")
    )
    failed_urls: Mapped[int] = mapped_column(
        sa.Integer, nullable=False, server_default=sa.text("0")
    )

    # Lifecycle
    status: Mapped[str] = mapped_column(
        sa.String(20),
        nullable=False,
        server_default=sa.text(f"'{SESSION_IN_PROGRESS}'"),
    )
    chunk_size: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    max_retries: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    parent_session_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        sa.Uuid(as_uuid=True),
        sa.ForeignKey("extraction_sessions.session_id", ondelete="SET NULL"),
        nullable=True,
    )

    # Timing
    started_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=True,
    )

    meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONMap,
        nullable=False,
        default=dict,
    )

    extractions: Mapped[list[UrlExtraction]] = relationship(
        "UrlExtraction",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by=lambda: [UrlExtraction.chunk_number, UrlExtraction.position_in_chunk],
    )

    __table_args__ = (
        sa.CheckConstraint(
            _in_list("status", SESSION_STATUSES), name="chk_session_status"
        ),
        sa.CheckConstraint(
            "successful_urls + failed_urls <= total_urls", name="chk_session_counters"
        ),
        sa.CheckConstraint("chunk_size > 0", name="chk_session_chunk_size"),
        sa.CheckConstraint("max_retries >= 0", name="chk_session_max_retries"),
        sa.Index("idx_extraction_sessions_user_id", "user_id"),
        sa.Index("idx_extraction_sessions_status", "status"),
        sa.Index("idx_extraction_sessions_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ExtractionSession id={self.session_id} status={self.status!r} "
            f"{self.successful_urls}+{self.failed_urls}/{self.total_urls}>"
        )


class UrlExtraction(Base, TimestampMixin):
    """The extraction of a single URL within a session.

    ``attempt_count`` only ever grows, by one per attempt, and is incremented
    in SQL by the store.  The success columns describe the attempt that
    succeeded; the error columns describe the most recent failed attempt.
    """

    __tablename__ = "url_extractions"

    extraction_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    session_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid(as_uuid=True),
        sa.ForeignKey("extraction_sessions.session_id", ondelete="CASCADE"),
        nullable=False,
    )
    url: Mapped[str] = mapped_column(sa.Text, nullable=False)
    url_hash: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    chunk_number: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    position_in_chunk: Mapped[int] = mapped_column(sa.Integer, nullable=False)

    status: Mapped[str] = mapped_column(
        sa.String(20),
        nullable=False,
        server_default=sa.text(f"'{URL_PENDING}'"),
    )
    attempt_count: Mapped[int] = mapped_column(
        sa.Integer, nullable=False, server_default=sa.text("0")
    )
    max_retries: Mapped[int] = mapped_column(
        sa.Integer, nullable=False, server_default=sa.text("3")
    )

    # Success data
    http_status: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    processing_time_ms: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    content_bytes: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    links_found: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    final_url: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    # Error data
    error_type: Mapped[Optional[str]] = mapped_column(sa.String(100), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    last_error_at: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )

    meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONMap,
        nullable=False,
        default=dict,
    )

    session: Mapped[ExtractionSession] = relationship(
        "ExtractionSession", back_populates="extractions"
    )
    retries: Mapped[list[ExtractionRetry]] = relationship(
        "ExtractionRetry",
        back_populates="extraction",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ExtractionRetry.attempt_number",
    )

    __table_args__ = (
        sa.CheckConstraint(_in_list("status", URL_STATUSES), name="chk_url_status"),
        sa.CheckConstraint("chunk_number > 0", name="chk_chunk_number"),
        sa.CheckConstraint("position_in_chunk >= 0", name="chk_position_in_chunk"),
        sa.CheckConstraint("attempt_count >= 0", name="chk_attempt_count"),
        sa.CheckConstraint(
            "attempt_count <= max_retries + 1", name="chk_attempt_budget"
        ),
        sa.Index("idx_url_extractions_session_id", "session_id"),
        sa.Index("idx_url_extractions_url_hash", "url_hash"),
        sa.Index("idx_url_extractions_status", "status"),
        sa.Index("idx_url_extractions_chunk", "session_id", "chunk_number"),
    )

    @property
    def remaining_retries(self) -> int:
        """Attempts still available before the budget is exhausted."""
        return max(self.max_retries - self.attempt_count, 0)

    def __repr__(self) -> str:
        return (
            f"<UrlExtraction id={self.extraction_id} chunk={self.chunk_number}"
            f"/{self.position_in_chunk} status={self.status!r} "
            f"attempts={self.attempt_count}/{self.max_retries}>"
        )


class ExtractionRetry(Base):
    """Log row for one attempt at a URL extraction.

    Inserted with status ``processing`` when the attempt starts.  Its outcome
    columns are written once, together with the extraction's outcome, and the
    row is immutable afterwards.
    """

    __tablename__ = "extraction_retries"

    retry_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    extraction_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid(as_uuid=True),
        sa.ForeignKey("url_extractions.extraction_id", ondelete="CASCADE"),
        nullable=False,
    )
    attempt_number: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    status: Mapped[str] = mapped_column(sa.String(20), nullable=False)
    error_type: Mapped[Optional[str]] = mapped_column(sa.String(100), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    processing_time_ms: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    http_status: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    retry_strategy: Mapped[Optional[str]] = mapped_column(sa.String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )

    extraction: Mapped[UrlExtraction] = relationship(
        "UrlExtraction", back_populates="retries"
    )

    __table_args__ = (
        sa.CheckConstraint("attempt_number > 0", name="chk_attempt_number"),
        sa.CheckConstraint(
            _in_list("status", RETRY_LOG_STATUSES), name="chk_retry_status"
        ),
        sa.UniqueConstraint(
            "extraction_id", "attempt_number", name="uq_extraction_retries_attempt"
        ),
        sa.Index("idx_extraction_retries_extraction_id", "extraction_id"),
    )


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def new_session(
    *,
    user_id: str,
    source_url: str,
    total_urls: int,
    chunk_size: int,
    max_retries: int,
    session_name: str | None = None,
    metadata: dict[str, Any] | None = None,
    parent_session_id: uuid.UUID | None = None,
) -> ExtractionSession:
    """Build an unsaved, in-progress :class:`ExtractionSession`."""
    return ExtractionSession(
        session_id=uuid.uuid4(),
        user_id=user_id,
        session_name=session_name,
        source_url=source_url,
        total_urls=total_urls,
        successful_urls=0,
        failed_urls=0,
        status=SESSION_IN_PROGRESS,
        chunk_size=chunk_size,
        max_retries=max_retries,
        parent_session_id=parent_session_id,
        started_at=datetime.now(tz=timezone.utc),
        completed_at=None,
        meta=dict(metadata or {}),
    )


def new_extraction(
    *,
    session_id: uuid.UUID,
    url: str,
    chunk_number: int,
    position_in_chunk: int,
    max_retries: int,
    metadata: dict[str, Any] | None = None,
) -> UrlExtraction:
    """Build an unsaved, pending :class:`UrlExtraction` with its URL hash set."""
    return UrlExtraction(
        extraction_id=uuid.uuid4(),
        session_id=session_id,
        url=url,
        url_hash=hash_url(url),
        chunk_number=chunk_number,
        position_in_chunk=position_in_chunk,
        status=URL_PENDING,
        attempt_count=0,
        max_retries=max_retries,
        meta=dict(metadata or {}),
    )
