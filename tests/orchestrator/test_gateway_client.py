"""Tests for the remote extraction gateway client and its page fetcher adapter.

All HTTP traffic is mocked with respx; backoff uses a zero delay.
"""

from __future__ import annotations

import json

import httpx
import pytest
import respx

from extraction_orchestrator.core.exceptions import RetryableFetchError, TerminalFetchError
from extraction_orchestrator.orchestrator.backoff import BackoffPolicy
from extraction_orchestrator.orchestrator.classifier import Classification, classify
from extraction_orchestrator.orchestrator.config import ERROR_DECODE, ERROR_TIMEOUT
from extraction_orchestrator.orchestrator.gateway_client import (
    GatewayClient,
    GatewayPageFetcher,
)

_BASE = "http://gateway.test"
_CONVERTED = {
    "success": True,
    "data": {
        "url": "https://news.example.com/story",
        "title": "Harbour expansion approved",
        "markdown": "# Harbour expansion approved\n\nThe council voted ...",
        "metrics": {"linkCount": 14, "wordCount": 512, "characterCount": 3100},
    },
}


def _client(**kwargs: object) -> GatewayClient:
    return GatewayClient(_BASE, backoff=BackoffPolicy(base=0.0), **kwargs)  # type: ignore[arg-type]


@pytest.mark.asyncio
class TestGatewayClientRetries:
    async def test_convert_success(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            route = mock.post("/api/convert").mock(return_value=httpx.Response(200, json=_CONVERTED))
            async with _client() as client:
                body = await client.convert("https://news.example.com/story")

        assert body == _CONVERTED
        assert json.loads(route.calls.last.request.content) == {
            "url": "https://news.example.com/story"
        }

    async def test_bearer_token_sent(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            route = mock.get("/health").mock(return_value=httpx.Response(200, json={"ok": True}))
            async with _client(api_key="secret-token") as client:
                await client.health_check()

        assert route.calls.last.request.headers["Authorization"] == "Bearer secret-token"

    async def test_service_unavailable_retried_until_success(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            route = mock.post("/api/convert").mock(
                side_effect=[
                    httpx.Response(503, json={"error": {"message": "busy"}}),
                    httpx.Response(429),
                    httpx.Response(200, json=_CONVERTED),
                ]
            )
            async with _client(max_retries=3) as client:
                body = await client.convert("https://news.example.com/story")

        assert body["success"] is True
        assert route.call_count == 3

    async def test_client_error_fails_immediately(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            route = mock.post("/api/convert").mock(
                return_value=httpx.Response(400, json={"error": "url is required"})
            )
            async with _client(max_retries=3) as client:
                with pytest.raises(TerminalFetchError) as exc_info:
                    await client.convert("")

        assert route.call_count == 1
        assert exc_info.value.status_code == 400
        assert "url is required" in str(exc_info.value)

    async def test_exhausted_retries_raise_terminal(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            route = mock.post("/api/convert").mock(return_value=httpx.Response(502))
            async with _client(max_retries=2) as client:
                with pytest.raises(TerminalFetchError) as exc_info:
                    await client.convert("https://news.example.com/story")

        assert route.call_count == 3
        assert exc_info.value.status_code == 502
        assert exc_info.value.error_type == "http_502"
        assert isinstance(exc_info.value.__cause__, RetryableFetchError)

    async def test_zero_retry_budget_makes_one_request(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            route = mock.post("/api/convert").mock(return_value=httpx.Response(503))
            async with _client(max_retries=0) as client:
                with pytest.raises(TerminalFetchError) as exc_info:
                    await client.convert("https://news.example.com/story")

        assert route.call_count == 1
        assert "after 0 retries" in str(exc_info.value)

    async def test_timeouts_are_retried(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            route = mock.post("/api/convert").mock(
                side_effect=[httpx.ReadTimeout("slow"), httpx.Response(200, json=_CONVERTED)]
            )
            async with _client(max_retries=1) as client:
                await client.convert("https://news.example.com/story")

        assert route.call_count == 2

    async def test_no_retry_mode_raises_retryable(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            route = mock.post("/api/convert").mock(return_value=httpx.Response(503))
            async with _client(max_retries=3) as client:
                with pytest.raises(RetryableFetchError):
                    await client.convert("https://news.example.com/story", retry=False)

        assert route.call_count == 1

    async def test_non_json_body_is_decode_error(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            mock.get("/health").mock(return_value=httpx.Response(200, text="<html>oops</html>"))
            async with _client() as client:
                with pytest.raises(TerminalFetchError) as exc_info:
                    await client.health_check()

        assert exc_info.value.error_type == ERROR_DECODE

    async def test_negative_retry_budget_rejected(self) -> None:
        with pytest.raises(ValueError):
            GatewayClient(_BASE, max_retries=-1)


@pytest.mark.asyncio
class TestGatewayBatchEndpoints:
    async def test_start_batch_payload(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            route = mock.post("/api/convert/batch").mock(
                return_value=httpx.Response(202, json={"session_id": "s-1"})
            )
            async with _client() as client:
                await client.start_batch(
                    "s-1",
                    ["https://a.example/", "https://b.example/"],
                    chunk_size=10,
                    max_retries=2,
                    concurrent_jobs=4,
                )

        assert json.loads(route.calls.last.request.content) == {
            "session_id": "s-1",
            "urls": ["https://a.example/", "https://b.example/"],
            "options": {"chunk_size": 10, "max_retries": 2, "concurrent_jobs": 4},
        }

    async def test_progress_cancel_and_retry_paths(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            progress = mock.get("/api/extraction-history/s-1/progress").mock(
                return_value=httpx.Response(200, json={"processed": 3})
            )
            cancel = mock.post("/api/extraction-history/s-1/cancel").mock(
                return_value=httpx.Response(204)
            )
            retry = mock.post("/api/extraction-history/s-1/retry").mock(
                return_value=httpx.Response(200, json=[{"url": "https://a.example/"}])
            )
            async with _client() as client:
                assert await client.get_progress("s-1") == {"processed": 3}
                assert await client.cancel("s-1") is None
                assert await client.retry_failed("s-1") == {"data": [{"url": "https://a.example/"}]}

        assert progress.called and cancel.called and retry.called


@pytest.mark.asyncio
class TestGatewayPageFetcher:
    async def test_success_maps_metrics(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            mock.post("/api/convert").mock(return_value=httpx.Response(200, json=_CONVERTED))
            fetcher = GatewayPageFetcher(_client())
            outcome = await fetcher.fetch("https://news.example.com/story")
            await fetcher.aclose()

        assert outcome.ok is True
        assert outcome.links_found == 14
        assert outcome.content_bytes == len(_CONVERTED["data"]["markdown"].encode("utf-8"))  # type: ignore[index]
        assert outcome.metadata == {
            "fetcher": "gateway",
            "title": "Harbour expansion approved",
            "word_count": 512,
            "character_count": 3100,
        }

    async def test_single_request_per_attempt(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            route = mock.post("/api/convert").mock(return_value=httpx.Response(503))
            fetcher = GatewayPageFetcher(_client(max_retries=3))
            outcome = await fetcher.fetch("https://news.example.com/story")
            await fetcher.aclose()

        assert route.call_count == 1
        assert outcome.status_code == 503
        assert classify(outcome) is Classification.RETRYABLE

    async def test_not_found_is_terminal(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            mock.post("/api/convert").mock(return_value=httpx.Response(404))
            fetcher = GatewayPageFetcher(_client())
            outcome = await fetcher.fetch("https://news.example.com/missing")
            await fetcher.aclose()

        assert (outcome.status_code, outcome.error_kind) == (404, None)
        assert classify(outcome) is Classification.TERMINAL

    async def test_transport_timeout_maps_to_timeout_kind(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            mock.post("/api/convert").mock(side_effect=httpx.ConnectTimeout("slow"))
            fetcher = GatewayPageFetcher(_client())
            outcome = await fetcher.fetch("https://news.example.com/story")
            await fetcher.aclose()

        assert outcome.error_kind == ERROR_TIMEOUT
        assert classify(outcome) is Classification.RETRYABLE

    async def test_unsuccessful_envelope_is_terminal(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            mock.post("/api/convert").mock(
                return_value=httpx.Response(200, json={"success": False, "error": "parse failed"})
            )
            fetcher = GatewayPageFetcher(_client())
            outcome = await fetcher.fetch("https://news.example.com/story")
            await fetcher.aclose()

        assert outcome.ok is False
        assert outcome.error_message == "parse failed"
        assert classify(outcome) is Classification.TERMINAL

    async def test_garbled_success_body_is_not_a_success(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            mock.post("/api/convert").mock(return_value=httpx.Response(200, text="not json"))
            fetcher = GatewayPageFetcher(_client())
            outcome = await fetcher.fetch("https://news.example.com/story")
            await fetcher.aclose()

        assert outcome.error_kind == ERROR_DECODE
        assert classify(outcome) is Classification.TERMINAL

    async def test_ready_checks_health(self) -> None:
        with respx.mock(base_url=_BASE) as mock:
            mock.get("/health").mock(return_value=httpx.Response(500))
            fetcher = GatewayPageFetcher(_client(max_retries=0))
            with pytest.raises(TerminalFetchError):
                await fetcher.ready()
            await fetcher.aclose()
