"""Pydantic request/response schemas for extraction sessions.

Used by the extraction session API routes for validation, serialisation,
and OpenAPI documentation generation.  Batch limits (URL count, chunk size
ceiling) depend on settings and are enforced by the session controller.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ExtractionSessionCreate(BaseModel):
    """Payload for starting a new batch.

    Attributes:
        user_id: Owner of the session.
        source_url: Page the URL list was gathered from.
        urls: URLs to extract, in order.
        chunk_size: URLs per chunk.  Server default when omitted.
        max_retries: Per-URL attempt budget.  Server default when omitted.
        session_name: Optional label.
        metadata: Optional caller metadata stored on the session.
    """

    user_id: str = Field(min_length=1, max_length=255)
    source_url: str = Field(min_length=1)
    urls: List[str] = Field(min_length=1)
    chunk_size: Optional[int] = Field(default=None, ge=1)
    max_retries: Optional[int] = Field(default=None, ge=0)
    session_name: Optional[str] = Field(default=None, max_length=255)
    metadata: Optional[dict[str, Any]] = None


class ExtractionSessionRead(BaseModel):
    """Full representation of a persisted extraction session."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    session_id: uuid.UUID
    user_id: str
    session_name: Optional[str]
    source_url: str
    total_urls: int
    successful_urls: int
    failed_urls: int
    status: str
    chunk_size: int
    max_retries: int
    error_message: Optional[str]
    parent_session_id: Optional[uuid.UUID]
    started_at: datetime
    completed_at: Optional[datetime]
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="meta")


class ExtractionRetryRead(BaseModel):
    """One attempt from an extraction's retry log."""

    model_config = ConfigDict(from_attributes=True)

    retry_id: uuid.UUID
    attempt_number: int
    status: str
    error_type: Optional[str]
    error_message: Optional[str]
    processing_time_ms: Optional[int]
    http_status: Optional[int]
    retry_strategy: Optional[str]
    created_at: datetime


class UrlExtractionRead(BaseModel):
    """Per-URL state within a session."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    extraction_id: uuid.UUID
    url: str
    url_hash: str
    chunk_number: int
    position_in_chunk: int
    status: str
    attempt_count: int
    max_retries: int
    http_status: Optional[int]
    processing_time_ms: Optional[int]
    content_bytes: Optional[int]
    links_found: Optional[int]
    final_url: Optional[str]
    error_type: Optional[str]
    error_message: Optional[str]
    last_error_at: Optional[datetime]
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="meta")


class UrlExtractionWithRetries(UrlExtractionRead):
    """Per-URL state including the full retry log."""

    retries: List[ExtractionRetryRead] = []


class SessionStatisticsRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_chunks: int
    chunks_processed: int
    total_retries: int
    average_processing_time_ms: Optional[float]
    error_breakdown: dict[str, int]
    success_rate: float
    duration_seconds: Optional[float]
    status_counts: dict[str, int]


class ExtractionSessionDetail(BaseModel):
    """Session, derived statistics and (optionally) per-URL rows."""

    session: ExtractionSessionRead
    statistics: SessionStatisticsRead
    extractions: Optional[List[UrlExtractionRead | UrlExtractionWithRetries]] = None


class SessionProgressRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    session_id: uuid.UUID
    status: str
    total_urls: int
    successful_urls: int
    failed_urls: int
    processed_urls: int
    progress_percent: float


class RetryRequest(BaseModel):
    """Options for retrying a session's failed extractions.

    Attributes:
        reopen: Reopen the session in place instead of creating a derived
            retry session.
    """

    reopen: bool = False


class UrlHistoryRead(BaseModel):
    url: str
    url_hash: str
    previously_extracted: bool
    extraction_count: int
    latest: Optional[UrlExtractionRead] = None


class UserAnalyticsRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    total_sessions: int
    sessions_by_status: dict[str, int]
    total_urls: int
    successful_urls: int
    failed_urls: int
    success_rate: float
    total_retries: int
    average_processing_time_ms: Optional[float]
    error_breakdown: dict[str, int]


class RetryableExtractionRead(UrlExtractionRead):
    """A failed extraction that can still be retried, with its owning session."""

    session_id: uuid.UUID


class DiscoveredLinkRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    url: str
    title: Optional[str]
    category: str


class LinkDiscoveryRead(BaseModel):
    """Links found on a seed page, plus per-category counts."""

    source_url: str
    final_url: str
    title: Optional[str]
    total_links: int
    internal_links: int
    external_links: int
    file_links: int
    links: List[DiscoveredLinkRead]
