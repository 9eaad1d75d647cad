"""Page Fetcher contract shared by every fetch backend.

A page fetcher turns one URL into a :class:`FetchOutcome`: either content
metrics for a successful fetch, or an HTTP status and/or an error kind for a
failed one.  Fetchers report failures as data and do not raise for them; the
Retry Classifier decides what an outcome means.

Backends:

- :class:`~extraction_orchestrator.orchestrator.http_fetcher.HttpPageFetcher`
  fetches directly with httpx (optional Playwright fallback).
- :class:`~extraction_orchestrator.orchestrator.gateway_client.GatewayPageFetcher`
  delegates conversion to a remote extraction gateway.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class FetchOutcome:
    """Result of a single fetch attempt.

    Attributes:
        status_code: HTTP status code, or ``None`` when no response arrived.
        error_kind: Machine-readable failure label (see
            :mod:`extraction_orchestrator.orchestrator.config`), or ``None``.
        error_message: Human-readable failure description, or ``None``.
        final_url: URL after following redirects.
        content_bytes: Size of the fetched body in bytes.
        links_found: Number of hyperlinks found in the page.
        html: Raw body, kept in memory only and never persisted.
        metadata: Extra facts about the page (title, language ...) merged into
            the extraction's metadata map on success.
    """

    status_code: int | None = None
    error_kind: str | None = None
    error_message: str | None = None
    final_url: str | None = None
    content_bytes: int | None = None
    links_found: int | None = None
    html: str | None = field(default=None, repr=False)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """``True`` for an error-free 2xx response."""
        return (
            self.error_kind is None
            and self.status_code is not None
            and 200 <= self.status_code < 300
        )


class PageFetcher(ABC):
    """Abstract base class for page fetch backends.

    Subclasses implement :meth:`fetch`.  :meth:`ready` lets a backend refuse
    to start a batch (the session is then marked ``failed`` before any URL is
    dispatched); :meth:`aclose` releases pooled connections.
    """

    name: str = "fetcher"

    @abstractmethod
    async def fetch(self, url: str) -> FetchOutcome:
        """Fetch ``url`` and describe the outcome.  Must not raise for HTTP errors."""

    async def ready(self) -> None:
        """Raise if the backend cannot serve requests.  No-op by default."""

    async def aclose(self) -> None:
        """Release any resources held by the fetcher.  No-op by default."""
