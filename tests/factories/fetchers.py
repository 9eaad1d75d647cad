"""Fetch outcomes and a scripted page fetcher for orchestrator tests.

Usage::

    from tests.factories.fetchers import ScriptedFetcher, http_error, ok

    fetcher = ScriptedFetcher()
    fetcher.script("https://example.com/a", http_error(429), ok())
"""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque

from extraction_orchestrator.orchestrator.fetcher import FetchOutcome, PageFetcher


def ok(url: str = "https://example.com/", *, links: int = 3, size: int = 1024) -> FetchOutcome:
    """A successful 200 outcome."""
    return FetchOutcome(
        status_code=200,
        final_url=url,
        content_bytes=size,
        links_found=links,
        metadata={"title": "Example"},
    )


def http_error(status_code: int) -> FetchOutcome:
    """A failed outcome carrying only an HTTP status."""
    return FetchOutcome(status_code=status_code, error_message=f"HTTP {status_code}")


def transport_error(kind: str) -> FetchOutcome:
    """A failed outcome with no response, e.g. ``timeout``."""
    return FetchOutcome(error_kind=kind, error_message=kind)


class ScriptedFetcher(PageFetcher):
    """Page fetcher that replays queued outcomes per URL.

    URLs without a script (or whose script ran out) succeed.  ``delay`` holds
    every fetch for that many seconds; ``gate`` blocks every fetch until the
    event is set.  Calls and peak concurrency are recorded.
    """

    name = "scripted"

    def __init__(self) -> None:
        self.scripts: dict[str, deque[FetchOutcome | BaseException]] = defaultdict(deque)
        self.calls: list[str] = []
        self.active = 0
        self.peak_active = 0
        self.delay = 0.0
        self.gate: asyncio.Event | None = None
        self.ready_error: BaseException | None = None
        self.closed = False

    def script(self, url: str, *outcomes: FetchOutcome | BaseException) -> None:
        self.scripts[url].extend(outcomes)

    def calls_for(self, url: str) -> int:
        return self.calls.count(url)

    async def ready(self) -> None:
        if self.ready_error is not None:
            raise self.ready_error

    async def aclose(self) -> None:
        self.closed = True

    async def fetch(self, url: str) -> FetchOutcome:
        self.calls.append(url)
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            queue = self.scripts.get(url)
            if queue:
                step = queue.popleft()
                if isinstance(step, BaseException):
                    raise step
                return step
            return ok(url)
        finally:
            self.active -= 1
