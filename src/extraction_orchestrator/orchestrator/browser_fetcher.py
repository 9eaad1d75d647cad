"""Playwright-based headless browser fetcher for JavaScript-heavy pages.

Playwright is an optional dependency, imported only when a page actually
needs rendering.  Install it together with the Chromium binary::

    pip install "extraction-orchestrator[browser]"
    playwright install chromium
"""

from __future__ import annotations

import logging

from extraction_orchestrator.orchestrator.config import ERROR_TIMEOUT, ERROR_UNCLASSIFIED
from extraction_orchestrator.orchestrator.fetcher import FetchOutcome

logger = logging.getLogger(__name__)

_BROWSER_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)


async def fetch_with_browser(url: str, *, timeout: float) -> FetchOutcome:
    """Fetch a URL using a headless Chromium browser via Playwright.

    Navigates to ``url``, waits for the network to become idle, and
    summarises the rendered page.  The browser is always closed.

    Args:
        url: Target URL.
        timeout: Navigation timeout in seconds.

    Returns:
        A :class:`~extraction_orchestrator.orchestrator.fetcher.FetchOutcome`.

    Raises:
        ImportError: If ``playwright`` is not installed.
    """
    from playwright.async_api import TimeoutError as PlaywrightTimeoutError  # noqa: PLC0415
    from playwright.async_api import async_playwright  # noqa: PLC0415

    from extraction_orchestrator.orchestrator.http_fetcher import (  # noqa: PLC0415
        build_success_outcome,
    )

    try:
        async with async_playwright() as p:
            browser = await p.chromium.launch(headless=True)
            try:
                context = await browser.new_context(user_agent=_BROWSER_USER_AGENT)
                page = await context.new_page()
                try:
                    response = await page.goto(
                        url,
                        timeout=timeout * 1000,
                        wait_until="networkidle",
                    )
                    status_code = response.status if response else None
                    final_url = page.url
                    html = await page.content()
                finally:
                    await page.close()
                    await context.close()
            finally:
                await browser.close()
    except PlaywrightTimeoutError:
        logger.warning("orchestrator: browser navigation timed out for %s", url)
        return FetchOutcome(error_kind=ERROR_TIMEOUT, error_message="browser timeout", final_url=url)
    except Exception as exc:  # noqa: BLE001
        logger.warning("orchestrator: browser fetch failed for %s: %s", url, exc)
        return FetchOutcome(
            error_kind=ERROR_UNCLASSIFIED,
            error_message=f"browser error: {exc}",
            final_url=url,
        )

    if status_code is not None and status_code >= 400:
        return FetchOutcome(
            status_code=status_code,
            error_message=f"HTTP {status_code}",
            final_url=final_url,
        )
    return await build_success_outcome(
        url,
        status_code=status_code or 200,
        final_url=final_url,
        html=html,
        content_bytes=len(html.encode("utf-8")),
    )
