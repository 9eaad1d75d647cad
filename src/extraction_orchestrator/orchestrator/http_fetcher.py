"""Async HTTP page fetcher with robots.txt support and JS-shell detection.

Uses ``httpx`` for all HTTP requests.  Failures are reported as
:class:`~extraction_orchestrator.orchestrator.fetcher.FetchOutcome` values
rather than raised, with an error kind the Retry Classifier understands:

- transport timeouts -> ``timeout``
- dropped connections / protocol errors -> ``connection_reset``
- other connection failures -> ``connection_error``
- robots.txt disallow -> ``robots_blocked``
- binary Content-Type -> ``binary_content``

A JavaScript-only page shell (near-empty body) is refetched with headless
Chromium when the browser fallback is enabled (see
:mod:`extraction_orchestrator.orchestrator.browser_fetcher`).
"""

from __future__ import annotations

import asyncio
import importlib.util
import logging
import urllib.parse
import urllib.robotparser

import httpx

from extraction_orchestrator.orchestrator.config import (
    BINARY_CONTENT_TYPES,
    ERROR_BINARY_CONTENT,
    ERROR_CONNECTION,
    ERROR_CONNECTION_RESET,
    ERROR_DECODE,
    ERROR_ROBOTS_BLOCKED,
    ERROR_TIMEOUT,
    ERROR_TOO_MANY_REDIRECTS,
    JS_SHELL_BODY_THRESHOLD,
    ROBOTS_USER_AGENT,
    ROBOTS_USER_AGENT_FALLBACK,
    USER_AGENT,
)
from extraction_orchestrator.orchestrator.content_extractor import summarize_html
from extraction_orchestrator.orchestrator.fetcher import FetchOutcome, PageFetcher

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Content checks
# ---------------------------------------------------------------------------


def _is_binary_content_type(content_type: str) -> bool:
    """Return ``True`` if the Content-Type indicates a non-text binary resource."""
    ct = content_type.lower().split(";")[0].strip()
    return any(ct.startswith(prefix) for prefix in BINARY_CONTENT_TYPES)


def _is_js_shell(html: str) -> bool:
    """Return ``True`` if the page body is too short to contain real content.

    A very short body after stripping whitespace is a strong signal that the
    page requires JavaScript execution to populate its content.
    """
    return len(html.strip()) < JS_SHELL_BODY_THRESHOLD


async def build_success_outcome(
    url: str,
    *,
    status_code: int | None,
    final_url: str,
    html: str,
    content_bytes: int,
) -> FetchOutcome:
    """Summarise a fetched page into a successful :class:`FetchOutcome`.

    HTML parsing runs in a worker thread so a large page does not stall the
    event loop.
    """
    summary = await asyncio.to_thread(summarize_html, html, final_url or url)
    return FetchOutcome(
        status_code=status_code,
        final_url=final_url,
        content_bytes=content_bytes,
        links_found=summary.links_found,
        html=html,
        metadata=summary.as_metadata(),
    )


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------


class HttpPageFetcher(PageFetcher):
    """Fetch pages directly over HTTP.

    Args:
        client: Shared :class:`httpx.AsyncClient`.  When omitted the fetcher
            creates and owns one, closed by :meth:`aclose`.
        timeout: Request timeout in seconds.
        respect_robots: Whether to honour robots.txt disallow rules.
        browser_fallback: Refetch JS-only shells with headless Chromium.
    """

    name = "http"

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        timeout: float = 30.0,
        respect_robots: bool = True,
        browser_fallback: bool = False,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )
        self._timeout = timeout
        self._respect_robots = respect_robots
        self._browser_fallback = browser_fallback
        self._robots: dict[str, urllib.robotparser.RobotFileParser | None] = {}

    async def ready(self) -> None:
        """Fail fast when the browser fallback is enabled but Playwright is missing."""
        if self._browser_fallback and importlib.util.find_spec("playwright") is None:
            raise RuntimeError(
                "Browser fallback is enabled but Playwright is not installed. "
                "Install it with: pip install playwright && playwright install chromium"
            )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # robots.txt
    # ------------------------------------------------------------------

    async def _load_robots(self, origin: str) -> urllib.robotparser.RobotFileParser | None:
        """Fetch and parse ``origin``'s robots.txt.  ``None`` means allow everything."""
        try:
            response = await self._client.get(
                f"{origin}/robots.txt",
                timeout=self._timeout,
                headers={"User-Agent": USER_AGENT},
            )
        except httpx.HTTPError as exc:
            logger.debug("orchestrator: robots.txt fetch failed for %s: %s; allowing", origin, exc)
            return None
        if response.status_code >= 400:
            return None
        parser = urllib.robotparser.RobotFileParser()
        parser.parse(response.text.splitlines())
        return parser

    async def _is_allowed_by_robots(self, url: str) -> bool:
        """Return ``True`` if the URL is allowed by the site's robots.txt.

        Parsed files are cached per origin for the fetcher's lifetime.  Any
        network or HTTP error when fetching robots.txt allows the URL.
        """
        parsed = urllib.parse.urlparse(url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        if origin not in self._robots:
            self._robots[origin] = await self._load_robots(origin)
        parser = self._robots[origin]
        if parser is None:
            return True
        return parser.can_fetch(ROBOTS_USER_AGENT, url) and parser.can_fetch(
            ROBOTS_USER_AGENT_FALLBACK, url
        )

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    async def fetch(self, url: str) -> FetchOutcome:
        """Fetch a single URL.

        Performs the following steps in order:

        1. **robots.txt**: when enabled, a disallowed URL is not requested.
        2. **HTTP GET** with the orchestrator's user agent, following redirects.
        3. **Status check**: any status >= 400 is returned as-is.
        4. **Binary content-type**: PDFs, images and the like are rejected.
        5. **JS-shell detection**: optional headless-browser refetch.
        6. **Summary**: byte size, link count, title, language, word count.
        """
        if self._respect_robots and not await self._is_allowed_by_robots(url):
            logger.info("orchestrator: robots.txt disallows %s", url)
            return FetchOutcome(
                error_kind=ERROR_ROBOTS_BLOCKED,
                error_message="robots.txt disallowed",
                final_url=url,
            )

        try:
            response = await self._client.get(
                url,
                timeout=self._timeout,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
            )
        except httpx.TimeoutException:
            logger.warning("orchestrator: timeout fetching %s", url)
            return FetchOutcome(error_kind=ERROR_TIMEOUT, error_message="timeout", final_url=url)
        except httpx.TooManyRedirects:
            logger.warning("orchestrator: too many redirects for %s", url)
            return FetchOutcome(
                error_kind=ERROR_TOO_MANY_REDIRECTS,
                error_message="too many redirects",
                final_url=url,
            )
        except (httpx.RemoteProtocolError, httpx.ReadError) as exc:
            logger.warning("orchestrator: connection reset for %s: %s", url, exc)
            return FetchOutcome(
                error_kind=ERROR_CONNECTION_RESET,
                error_message=f"connection reset: {exc}",
                final_url=url,
            )
        except httpx.RequestError as exc:
            logger.warning("orchestrator: request error for %s: %s", url, exc)
            return FetchOutcome(
                error_kind=ERROR_CONNECTION,
                error_message=f"request error: {exc}",
                final_url=url,
            )

        final_url = str(response.url)

        if response.status_code >= 400:
            logger.info("orchestrator: HTTP %d for %s", response.status_code, url)
            return FetchOutcome(
                status_code=response.status_code,
                error_message=f"HTTP {response.status_code}",
                final_url=final_url,
            )

        content_type = response.headers.get("content-type", "")
        if _is_binary_content_type(content_type):
            logger.info("orchestrator: binary content-type '%s' for %s", content_type, url)
            return FetchOutcome(
                status_code=response.status_code,
                error_kind=ERROR_BINARY_CONTENT,
                error_message=f"binary content-type: {content_type}",
                final_url=final_url,
            )

        try:
            html = response.text
        except (UnicodeDecodeError, LookupError) as exc:
            logger.warning("orchestrator: decode error for %s: %s", url, exc)
            return FetchOutcome(
                status_code=response.status_code,
                error_kind=ERROR_DECODE,
                error_message=f"decode error: {exc}",
                final_url=final_url,
            )

        if self._browser_fallback and _is_js_shell(html):
            logger.info(
                "orchestrator: JS-only shell detected for %s (body_len=%d); using browser",
                url,
                len(html.strip()),
            )
            from extraction_orchestrator.orchestrator.browser_fetcher import (  # noqa: PLC0415
                fetch_with_browser,
            )

            rendered = await fetch_with_browser(url, timeout=self._timeout)
            if rendered.ok:
                return rendered
            logger.info(
                "orchestrator: browser fallback failed for %s (%s); keeping HTTP body",
                url,
                rendered.error_message,
            )

        return await build_success_outcome(
            url,
            status_code=response.status_code,
            final_url=final_url,
            html=html,
            content_bytes=len(response.content),
        )
