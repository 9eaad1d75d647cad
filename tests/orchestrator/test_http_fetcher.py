"""Unit tests for the direct HTTP page fetcher.

Tests robots.txt blocking, binary content-type rejection, JS-shell
detection, HTTP and transport error mapping, and successful fetches using
mocked httpx responses.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest
import respx

from extraction_orchestrator.orchestrator.config import (
    ERROR_BINARY_CONTENT,
    ERROR_CONNECTION,
    ERROR_CONNECTION_RESET,
    ERROR_ROBOTS_BLOCKED,
    ERROR_TIMEOUT,
    ERROR_UNCLASSIFIED,
)
from extraction_orchestrator.orchestrator.fetcher import FetchOutcome
from extraction_orchestrator.orchestrator.http_fetcher import (
    HttpPageFetcher,
    _is_binary_content_type,
    _is_js_shell,
)

_ARTICLE_HTML = (
    "<html><head><title>Port strike ends</title></head><body><article>"
    + "<p>" + ("Dock workers returned to work on Monday after the agreement. " * 20) + "</p>"
    + '<a href="/a">a</a> <a href="/b">b</a> <a href="https://other.example/c">c</a>'
    + "</article></body></html>"
)
_HTML_HEADERS = {"content-type": "text/html; charset=utf-8"}


# ---------------------------------------------------------------------------
# Unit tests for helper functions
# ---------------------------------------------------------------------------


class TestIsBinaryContentType:
    def test_pdf_is_binary(self) -> None:
        assert _is_binary_content_type("application/pdf") is True

    def test_image_is_binary(self) -> None:
        assert _is_binary_content_type("image/png") is True

    def test_vnd_is_binary(self) -> None:
        assert _is_binary_content_type("application/vnd.ms-excel") is True

    def test_html_not_binary(self) -> None:
        assert _is_binary_content_type("text/html; charset=utf-8") is False

    def test_missing_content_type_not_binary(self) -> None:
        assert _is_binary_content_type("") is False


class TestIsJsShell:
    def test_empty_is_js_shell(self) -> None:
        assert _is_js_shell("") is True

    def test_short_body_is_js_shell(self) -> None:
        assert _is_js_shell('<html><body><div id="root"></div></body></html>') is True

    def test_real_article_not_js_shell(self) -> None:
        assert _is_js_shell(_ARTICLE_HTML) is False


# ---------------------------------------------------------------------------
# Fetch tests using respx (mock httpx)
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestFetch:
    async def test_successful_fetch(self) -> None:
        with respx.mock(base_url="https://example.com") as mock:
            mock.get("/robots.txt").mock(return_value=httpx.Response(404))
            mock.get("/article").mock(
                return_value=httpx.Response(200, text=_ARTICLE_HTML, headers=_HTML_HEADERS)
            )
            fetcher = HttpPageFetcher()
            outcome = await fetcher.fetch("https://example.com/article")
            await fetcher.aclose()

        assert outcome.ok is True
        assert outcome.status_code == 200
        assert outcome.final_url == "https://example.com/article"
        assert outcome.content_bytes == len(_ARTICLE_HTML.encode("utf-8"))
        assert outcome.links_found == 3
        assert outcome.metadata.get("title") == "Port strike ends"

    async def test_robots_disallow_blocks_without_request(self) -> None:
        with respx.mock(base_url="https://example.com", assert_all_called=False) as mock:
            mock.get("/robots.txt").mock(
                return_value=httpx.Response(200, text="User-agent: *\nDisallow: /private/\n")
            )
            page = mock.get("/private/report").mock(return_value=httpx.Response(200))
            fetcher = HttpPageFetcher()
            outcome = await fetcher.fetch("https://example.com/private/report")
            await fetcher.aclose()

        assert outcome.error_kind == ERROR_ROBOTS_BLOCKED
        assert outcome.status_code is None
        assert page.called is False

    async def test_robots_parsed_once_per_origin(self) -> None:
        with respx.mock(base_url="https://example.com") as mock:
            robots = mock.get("/robots.txt").mock(
                return_value=httpx.Response(200, text="User-agent: *\nAllow: /\n")
            )
            for path in ("/page-1", "/page-2"):
                mock.get(path).mock(
                    return_value=httpx.Response(200, text=_ARTICLE_HTML, headers=_HTML_HEADERS)
                )
            fetcher = HttpPageFetcher()
            await fetcher.fetch("https://example.com/page-1")
            await fetcher.fetch("https://example.com/page-2")
            await fetcher.aclose()

        assert robots.call_count == 1

    async def test_robots_unreachable_allows_fetch(self) -> None:
        with respx.mock(base_url="https://example.com") as mock:
            mock.get("/robots.txt").mock(side_effect=httpx.ConnectError("refused"))
            mock.get("/article").mock(
                return_value=httpx.Response(200, text=_ARTICLE_HTML, headers=_HTML_HEADERS)
            )
            fetcher = HttpPageFetcher()
            outcome = await fetcher.fetch("https://example.com/article")
            await fetcher.aclose()

        assert outcome.ok is True

    async def test_robots_ignored_when_disabled(self) -> None:
        with respx.mock(base_url="https://example.com") as mock:
            mock.get("/article").mock(
                return_value=httpx.Response(200, text=_ARTICLE_HTML, headers=_HTML_HEADERS)
            )
            fetcher = HttpPageFetcher(respect_robots=False)
            outcome = await fetcher.fetch("https://example.com/article")
            await fetcher.aclose()

        assert outcome.ok is True

    @pytest.mark.parametrize("status", [404, 429, 503])
    async def test_http_error_status_reported(self, status: int) -> None:
        with respx.mock(base_url="https://example.com") as mock:
            mock.get("/article").mock(return_value=httpx.Response(status))
            fetcher = HttpPageFetcher(respect_robots=False)
            outcome = await fetcher.fetch("https://example.com/article")
            await fetcher.aclose()

        assert outcome.status_code == status
        assert outcome.error_kind is None
        assert outcome.ok is False

    async def test_binary_content_rejected(self) -> None:
        with respx.mock(base_url="https://example.com") as mock:
            mock.get("/report.pdf").mock(
                return_value=httpx.Response(
                    200, content=b"%PDF-1.4", headers={"content-type": "application/pdf"}
                )
            )
            fetcher = HttpPageFetcher(respect_robots=False)
            outcome = await fetcher.fetch("https://example.com/report.pdf")
            await fetcher.aclose()

        assert outcome.status_code == 200
        assert outcome.error_kind == ERROR_BINARY_CONTENT

    @pytest.mark.parametrize(
        ("error", "kind"),
        [
            (httpx.ReadTimeout("slow"), ERROR_TIMEOUT),
            (httpx.ConnectTimeout("slow"), ERROR_TIMEOUT),
            (httpx.RemoteProtocolError("peer closed"), ERROR_CONNECTION_RESET),
            (httpx.ReadError("reset"), ERROR_CONNECTION_RESET),
            (httpx.ConnectError("refused"), ERROR_CONNECTION),
        ],
    )
    async def test_transport_errors_mapped(self, error: Exception, kind: str) -> None:
        with respx.mock(base_url="https://example.com") as mock:
            mock.get("/article").mock(side_effect=error)
            fetcher = HttpPageFetcher(respect_robots=False)
            outcome = await fetcher.fetch("https://example.com/article")
            await fetcher.aclose()

        assert outcome.error_kind == kind
        assert outcome.status_code is None

    async def test_redirect_reports_final_url(self) -> None:
        with respx.mock(base_url="https://example.com") as mock:
            mock.get("/old").mock(
                return_value=httpx.Response(301, headers={"location": "https://example.com/new"})
            )
            mock.get("/new").mock(
                return_value=httpx.Response(200, text=_ARTICLE_HTML, headers=_HTML_HEADERS)
            )
            fetcher = HttpPageFetcher(respect_robots=False)
            outcome = await fetcher.fetch("https://example.com/old")
            await fetcher.aclose()

        assert outcome.ok is True
        assert outcome.final_url == "https://example.com/new"


@pytest.mark.asyncio
class TestBrowserFallback:
    async def test_js_shell_uses_browser_result(self) -> None:
        rendered = FetchOutcome(status_code=200, final_url="https://example.com/app", links_found=9)
        with respx.mock(base_url="https://example.com") as mock:
            mock.get("/app").mock(
                return_value=httpx.Response(200, text="<div id=root></div>", headers=_HTML_HEADERS)
            )
            with patch(
                "extraction_orchestrator.orchestrator.browser_fetcher.fetch_with_browser",
                new=AsyncMock(return_value=rendered),
            ) as browser:
                fetcher = HttpPageFetcher(respect_robots=False, browser_fallback=True)
                outcome = await fetcher.fetch("https://example.com/app")
                await fetcher.aclose()

        browser.assert_awaited_once()
        assert outcome is rendered

    async def test_failed_browser_keeps_http_body(self) -> None:
        failed = FetchOutcome(error_kind=ERROR_UNCLASSIFIED, error_message="no chromium")
        with respx.mock(base_url="https://example.com") as mock:
            mock.get("/app").mock(
                return_value=httpx.Response(200, text="<div id=root></div>", headers=_HTML_HEADERS)
            )
            with patch(
                "extraction_orchestrator.orchestrator.browser_fetcher.fetch_with_browser",
                new=AsyncMock(return_value=failed),
            ):
                fetcher = HttpPageFetcher(respect_robots=False, browser_fallback=True)
                outcome = await fetcher.fetch("https://example.com/app")
                await fetcher.aclose()

        assert outcome.ok is True
        assert outcome.links_found == 0

    async def test_js_shell_without_fallback_is_plain_success(self) -> None:
        with respx.mock(base_url="https://example.com") as mock:
            mock.get("/app").mock(
                return_value=httpx.Response(200, text="<div id=root></div>", headers=_HTML_HEADERS)
            )
            with patch(
                "extraction_orchestrator.orchestrator.browser_fetcher.fetch_with_browser",
                new=AsyncMock(),
            ) as browser:
                fetcher = HttpPageFetcher(respect_robots=False)
                outcome = await fetcher.fetch("https://example.com/app")
                await fetcher.aclose()

        browser.assert_not_awaited()
        assert outcome.ok is True

    async def test_ready_requires_playwright_when_fallback_enabled(self) -> None:
        fetcher = HttpPageFetcher(browser_fallback=True)
        with patch(
            "extraction_orchestrator.orchestrator.http_fetcher.importlib.util.find_spec",
            return_value=None,
        ):
            with pytest.raises(RuntimeError, match="Playwright"):
                await fetcher.ready()
        await fetcher.aclose()

    async def test_ready_without_fallback(self) -> None:
        fetcher = HttpPageFetcher()
        await fetcher.ready()
        await fetcher.aclose()


@pytest.mark.asyncio
class TestClientOwnership:
    async def test_injected_client_left_open(self) -> None:
        async with httpx.AsyncClient() as client:
            fetcher = HttpPageFetcher(client)
            await fetcher.aclose()
            assert client.is_closed is False
