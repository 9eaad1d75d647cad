"""Client for a remote extraction gateway.

The gateway exposes single-URL conversion plus batch session endpoints::

    POST /api/convert                                  {"url": ...}
    GET  /health
    POST /api/convert/batch                            {"session_id", "urls", "options"}
    GET  /api/extraction-history/{session_id}/progress
    POST /api/extraction-history/{session_id}/cancel
    POST /api/extraction-history/{session_id}/retry

Every request is retried with exponential backoff (1s, 2s, 4s ...) on
transport errors, HTTP 429 and 5xx responses, up to ``max_retries`` extra
attempts.  Other 4xx responses fail immediately.  Once the budget is spent
the last retryable error is re-raised as a
:class:`~extraction_orchestrator.core.exceptions.TerminalFetchError`.

:class:`GatewayPageFetcher` adapts the client to the Page Fetcher contract.
It issues a single conversion request per attempt, since per-URL retries are
owned by the orchestrator's worker pool.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from extraction_orchestrator.core.exceptions import (
    FetchError,
    RetryableFetchError,
    TerminalFetchError,
)
from extraction_orchestrator.orchestrator.backoff import BackoffPolicy
from extraction_orchestrator.orchestrator.classifier import Classification, classify_status
from extraction_orchestrator.orchestrator.config import (
    ERROR_CONNECTION,
    ERROR_DECODE,
    ERROR_TIMEOUT,
    ERROR_UNCLASSIFIED,
    GATEWAY_BATCH_PATH,
    GATEWAY_CANCEL_PATH,
    GATEWAY_CONVERT_PATH,
    GATEWAY_HEALTH_PATH,
    GATEWAY_PROGRESS_PATH,
    GATEWAY_RETRY_PATH,
)
from extraction_orchestrator.orchestrator.fetcher import FetchOutcome, PageFetcher

logger = logging.getLogger(__name__)

_ERROR_BODY_LIMIT = 200


def _error_detail(response: httpx.Response) -> str:
    """Best-effort human-readable error from a gateway response body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:_ERROR_BODY_LIMIT]
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return response.text[:_ERROR_BODY_LIMIT]


class GatewayClient:
    """Async client for the remote extraction gateway.

    Args:
        base_url: Gateway root URL, e.g. ``http://gateway:3002``.
        api_key: Optional bearer token.
        timeout: Per-request timeout in seconds.
        max_retries: Extra attempts for retryable failures.
        backoff: Delay schedule between attempts.
        client: Optional pre-configured :class:`httpx.AsyncClient`.  When
            omitted the gateway client creates and owns one.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff: BackoffPolicy | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        self.base_url = base_url.rstrip("/")
        self._max_retries = max_retries
        self._backoff = backoff or BackoffPolicy()
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = headers
        self._timeout = timeout

    async def __aenter__(self) -> GatewayClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _send_once(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None,
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                headers=self._headers,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise RetryableFetchError(
                f"gateway request timed out: {exc}", error_type=ERROR_TIMEOUT
            ) from exc
        except httpx.RequestError as exc:
            raise RetryableFetchError(
                f"gateway request failed: {exc}", error_type=ERROR_CONNECTION
            ) from exc

        verdict = classify_status(response.status_code)
        if verdict is Classification.RETRYABLE:
            raise RetryableFetchError(
                f"gateway returned {response.status_code}: {_error_detail(response)}",
                status_code=response.status_code,
                error_type=f"http_{response.status_code}",
            )
        if verdict is Classification.TERMINAL:
            raise TerminalFetchError(
                f"gateway returned {response.status_code}: {_error_detail(response)}",
                status_code=response.status_code,
                error_type=f"http_{response.status_code}",
            )

        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as exc:
            raise TerminalFetchError(
                "gateway returned a non-JSON body",
                status_code=response.status_code,
                error_type=ERROR_DECODE,
            ) from exc
        return body if isinstance(body, dict) else {"data": body}

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        *,
        retry: bool = True,
    ) -> dict[str, Any]:
        """Send a request, retrying transient failures.

        Raises:
            RetryableFetchError: Transient failure with ``retry=False``.
            TerminalFetchError: Non-retryable failure, or retries exhausted.
        """
        budget = self._max_retries if retry else 0
        attempt = 0
        while True:
            try:
                return await self._send_once(method, path, payload)
            except RetryableFetchError as exc:
                if not retry:
                    raise
                logger.warning(
                    "orchestrator: gateway %s %s attempt %d/%d failed: %s",
                    method,
                    path,
                    attempt + 1,
                    budget + 1,
                    exc,
                )
                if attempt >= budget:
                    raise TerminalFetchError(
                        f"gateway request failed after {budget} retries: {exc}",
                        status_code=exc.status_code,
                        error_type=exc.error_type,
                    ) from exc
            attempt += 1
            await self._backoff.wait(attempt)

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def convert(self, url: str, *, retry: bool = True) -> dict[str, Any]:
        """Convert a single URL.  Returns the full response envelope."""
        return await self._request("POST", GATEWAY_CONVERT_PATH, {"url": url}, retry=retry)

    async def health_check(self) -> dict[str, Any]:
        """Raise a :class:`FetchError` subclass if the gateway is not healthy."""
        return await self._request("GET", GATEWAY_HEALTH_PATH)

    async def start_batch(
        self,
        session_id: str,
        urls: list[str],
        *,
        chunk_size: int,
        max_retries: int,
        timeout_ms: int | None = None,
        concurrent_jobs: int | None = None,
    ) -> dict[str, Any]:
        """Ask the gateway to run a whole batch on its side."""
        options: dict[str, Any] = {"chunk_size": chunk_size, "max_retries": max_retries}
        if timeout_ms is not None:
            options["timeout_ms"] = timeout_ms
        if concurrent_jobs is not None:
            options["concurrent_jobs"] = concurrent_jobs
        return await self._request(
            "POST",
            GATEWAY_BATCH_PATH,
            {"session_id": session_id, "urls": urls, "options": options},
        )

    async def get_progress(self, session_id: str) -> dict[str, Any]:
        return await self._request("GET", GATEWAY_PROGRESS_PATH.format(session_id=session_id))

    async def cancel(self, session_id: str) -> None:
        await self._request("POST", GATEWAY_CANCEL_PATH.format(session_id=session_id))

    async def retry_failed(self, session_id: str) -> dict[str, Any]:
        return await self._request("POST", GATEWAY_RETRY_PATH.format(session_id=session_id))


class GatewayPageFetcher(PageFetcher):
    """Page fetcher that delegates each URL to the remote gateway."""

    name = "gateway"

    def __init__(self, client: GatewayClient) -> None:
        self._client = client

    async def ready(self) -> None:
        await self._client.health_check()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch(self, url: str) -> FetchOutcome:
        try:
            envelope = await self._client.convert(url, retry=False)
        except FetchError as exc:
            # HTTP failures are classified by status; anything else needs a kind.
            error_kind = None
            if exc.status_code is None or 200 <= exc.status_code < 300:
                error_kind = exc.error_type or ERROR_UNCLASSIFIED
            return FetchOutcome(
                status_code=exc.status_code,
                error_kind=error_kind,
                error_message=str(exc),
                final_url=url,
            )

        if not envelope.get("success", True):
            return FetchOutcome(
                error_kind=ERROR_UNCLASSIFIED,
                error_message=str(envelope.get("error") or "conversion failed"),
                final_url=url,
            )

        data = envelope.get("data") or {}
        metrics = data.get("metrics") or {}
        markdown = data.get("markdown") or ""
        metadata: dict[str, Any] = {"fetcher": self.name}
        for key in ("title", "language"):
            if data.get(key):
                metadata[key] = data[key]
        if metrics.get("wordCount") is not None:
            metadata["word_count"] = metrics["wordCount"]
        if metrics.get("characterCount") is not None:
            metadata["character_count"] = metrics["characterCount"]

        return FetchOutcome(
            status_code=200,
            final_url=data.get("url") or url,
            content_bytes=len(markdown.encode("utf-8")),
            links_found=metrics.get("linkCount"),
            metadata=metadata,
        )
