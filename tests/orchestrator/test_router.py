"""Tests for the extraction session HTTP routes.

The app is built with ``create_app()``; ``get_controller`` is overridden with
a controller over the per-test SQLite store and Celery dispatch is patched
out, so runs are driven explicitly through the controller where needed.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable, Iterator
from unittest.mock import MagicMock, patch

import httpx
import pytest
import pytest_asyncio

from extraction_orchestrator.api.dependencies import get_controller
from extraction_orchestrator.api.main import create_app
from extraction_orchestrator.orchestrator.controller import SessionController
from extraction_orchestrator.orchestrator.fetcher import FetchOutcome
from tests.factories.batches import BatchRequestFactory, url_list
from tests.factories.fetchers import ScriptedFetcher, http_error

_PREFIX = "/extraction-sessions"


@pytest.fixture
def controller(make_controller: Callable[..., SessionController]) -> SessionController:
    return make_controller()


@pytest.fixture
def dispatch() -> Iterator[MagicMock]:
    with patch("extraction_orchestrator.orchestrator.router._dispatch_run") as mocked:
        yield mocked


@pytest_asyncio.fixture
async def client(
    controller: SessionController, dispatch: MagicMock
) -> AsyncGenerator[httpx.AsyncClient, None]:
    app = create_app()
    app.dependency_overrides[get_controller] = lambda: controller
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


async def _finished_session(
    controller: SessionController, fetcher: ScriptedFetcher, *, fail_last: bool = False
) -> uuid.UUID:
    urls = url_list(3)
    if fail_last:
        fetcher.script(urls[-1], http_error(404))
    session_id = await controller.start_batch(**BatchRequestFactory.build(urls=urls))
    await controller.wait(session_id)
    return session_id


# ---------------------------------------------------------------------------
# Create / list
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestCreateSession:
    async def test_create_persists_and_dispatches(
        self, client: httpx.AsyncClient, dispatch: MagicMock
    ) -> None:
        payload = BatchRequestFactory.build()

        response = await client.post(f"{_PREFIX}/", json=payload)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "in_progress"
        assert (body["total_urls"], body["chunk_size"], body["max_retries"]) == (3, 2, 3)
        assert body["metadata"] == {}
        dispatch.assert_called_once_with(uuid.UUID(body["session_id"]))
        assert "X-Request-ID" in response.headers

    async def test_batch_limit_violation_is_422(
        self, client: httpx.AsyncClient, dispatch: MagicMock
    ) -> None:
        payload = BatchRequestFactory.build(urls=url_list(26))

        response = await client.post(f"{_PREFIX}/", json=payload)

        assert response.status_code == 422
        assert response.json()["detail"]["field"] == "urls"
        dispatch.assert_not_called()

    async def test_schema_violation_is_422(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            f"{_PREFIX}/", json={"user_id": "u", "source_url": "https://x.example/", "urls": []}
        )
        assert response.status_code == 422


@pytest.mark.asyncio
class TestListSessions:
    async def test_list_with_cursor(self, client: httpx.AsyncClient) -> None:
        for _ in range(3):
            await client.post(f"{_PREFIX}/", json=BatchRequestFactory.build())

        first = await client.get(f"{_PREFIX}/", params={"user_id": "researcher-1", "page_size": 2})
        assert first.status_code == 200
        assert len(first.json()) == 2
        cursor = first.json()[-1]["session_id"]
        second = await client.get(
            f"{_PREFIX}/",
            params={"user_id": "researcher-1", "page_size": 2, "cursor": cursor},
        )
        assert len(second.json()) == 1

    async def test_status_filter(self, client: httpx.AsyncClient) -> None:
        await client.post(f"{_PREFIX}/", json=BatchRequestFactory.build())
        response = await client.get(
            f"{_PREFIX}/", params={"user_id": "researcher-1", "status_filter": "completed"}
        )
        assert response.json() == []

    async def test_user_id_required(self, client: httpx.AsyncClient) -> None:
        assert (await client.get(f"{_PREFIX}/")).status_code == 422

    async def test_bad_cursor_and_page_size(self, client: httpx.AsyncClient) -> None:
        bad_cursor = await client.get(
            f"{_PREFIX}/", params={"user_id": "researcher-1", "cursor": "nope"}
        )
        assert bad_cursor.status_code == 422
        bad_size = await client.get(
            f"{_PREFIX}/", params={"user_id": "researcher-1", "page_size": 0}
        )
        assert bad_size.status_code == 422

    async def test_unknown_cursor_is_404(self, client: httpx.AsyncClient) -> None:
        response = await client.get(
            f"{_PREFIX}/", params={"user_id": "researcher-1", "cursor": str(uuid.uuid4())}
        )
        assert response.status_code == 404


# ---------------------------------------------------------------------------
# Single session
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestSessionDetail:
    async def test_detail_with_statistics(
        self, client: httpx.AsyncClient, controller: SessionController, fetcher: ScriptedFetcher
    ) -> None:
        session_id = await _finished_session(controller, fetcher, fail_last=True)

        response = await client.get(f"{_PREFIX}/{session_id}")

        assert response.status_code == 200
        body = response.json()
        assert body["session"]["status"] == "completed"
        assert body["statistics"]["total_chunks"] == 2
        assert body["statistics"]["error_breakdown"] == {"http_404": 1}
        assert body["extractions"] is None

    async def test_detail_with_urls_and_retries(
        self, client: httpx.AsyncClient, controller: SessionController, fetcher: ScriptedFetcher
    ) -> None:
        session_id = await _finished_session(controller, fetcher)

        urls_only = (await client.get(f"{_PREFIX}/{session_id}", params={"include_urls": True})).json()
        with_retries = (
            await client.get(f"{_PREFIX}/{session_id}", params={"include_retries": True})
        ).json()

        assert len(urls_only["extractions"]) == 3
        assert "retries" not in urls_only["extractions"][0]
        assert [len(row["retries"]) for row in with_retries["extractions"]] == [1, 1, 1]
        assert with_retries["extractions"][0]["retries"][0]["status"] == "success"

    async def test_unknown_session_is_404(self, client: httpx.AsyncClient) -> None:
        response = await client.get(f"{_PREFIX}/{uuid.uuid4()}")
        assert response.status_code == 404

    async def test_progress(
        self, client: httpx.AsyncClient, controller: SessionController, fetcher: ScriptedFetcher
    ) -> None:
        session_id = await _finished_session(controller, fetcher, fail_last=True)

        body = (await client.get(f"{_PREFIX}/{session_id}/progress")).json()

        assert (body["successful_urls"], body["failed_urls"], body["processed_urls"]) == (2, 1, 3)
        assert body["progress_percent"] == 100.0


# ---------------------------------------------------------------------------
# Lifecycle actions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestLifecycleRoutes:
    async def test_cancel_then_conflict(self, client: httpx.AsyncClient) -> None:
        created = (await client.post(f"{_PREFIX}/", json=BatchRequestFactory.build())).json()
        session_id = created["session_id"]

        first = await client.post(f"{_PREFIX}/{session_id}/cancel")
        second = await client.post(f"{_PREFIX}/{session_id}/cancel")

        assert first.status_code == 200
        assert first.json()["status"] == "cancelled"
        assert second.status_code == 409

    async def test_delete(self, client: httpx.AsyncClient) -> None:
        created = (await client.post(f"{_PREFIX}/", json=BatchRequestFactory.build())).json()
        session_id = created["session_id"]

        assert (await client.delete(f"{_PREFIX}/{session_id}")).status_code == 409
        await client.post(f"{_PREFIX}/{session_id}/cancel")
        assert (await client.delete(f"{_PREFIX}/{session_id}")).status_code == 204
        assert (await client.get(f"{_PREFIX}/{session_id}")).status_code == 404

    async def test_retry_creates_derived_session(
        self,
        client: httpx.AsyncClient,
        controller: SessionController,
        fetcher: ScriptedFetcher,
        dispatch: MagicMock,
    ) -> None:
        session_id = await _finished_session(controller, fetcher, fail_last=True)

        response = await client.post(f"{_PREFIX}/{session_id}/retry")

        assert response.status_code == 200
        body = response.json()
        assert body["parent_session_id"] == str(session_id)
        assert body["total_urls"] == 1
        dispatch.assert_called_once_with(uuid.UUID(body["session_id"]))

    async def test_retry_reopen_in_place(
        self,
        client: httpx.AsyncClient,
        controller: SessionController,
        fetcher: ScriptedFetcher,
        dispatch: MagicMock,
    ) -> None:
        session_id = await _finished_session(controller, fetcher, fail_last=True)

        response = await client.post(f"{_PREFIX}/{session_id}/retry", json={"reopen": True})

        assert response.status_code == 200
        assert response.json()["session_id"] == str(session_id)
        assert response.json()["status"] == "in_progress"
        dispatch.assert_called_once_with(session_id)

    async def test_retry_errors(
        self, client: httpx.AsyncClient, controller: SessionController, fetcher: ScriptedFetcher
    ) -> None:
        running = (await client.post(f"{_PREFIX}/", json=BatchRequestFactory.build())).json()
        assert (await client.post(f"{_PREFIX}/{running['session_id']}/retry")).status_code == 409

        clean = await _finished_session(controller, fetcher)
        assert (await client.post(f"{_PREFIX}/{clean}/retry")).status_code == 422


# ---------------------------------------------------------------------------
# Cross-session queries
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestCrossSessionRoutes:
    async def test_history_check(
        self, client: httpx.AsyncClient, controller: SessionController, fetcher: ScriptedFetcher
    ) -> None:
        await _finished_session(controller, fetcher)
        url = url_list(3)[0]

        seen = (await client.get(f"{_PREFIX}/history/check", params={"url": url})).json()
        unseen = (
            await client.get(f"{_PREFIX}/history/check", params={"url": "https://x.example/new"})
        ).json()

        assert seen["previously_extracted"] is True
        assert seen["latest"]["status"] == "success"
        assert unseen == {
            "url": "https://x.example/new",
            "url_hash": unseen["url_hash"],
            "previously_extracted": False,
            "extraction_count": 0,
            "latest": None,
        }

    async def test_analytics(
        self, client: httpx.AsyncClient, controller: SessionController, fetcher: ScriptedFetcher
    ) -> None:
        await _finished_session(controller, fetcher, fail_last=True)

        body = (await client.get(f"{_PREFIX}/analytics", params={"user_id": "researcher-1"})).json()

        assert body["total_sessions"] == 1
        assert (body["successful_urls"], body["failed_urls"]) == (2, 1)
        assert body["error_breakdown"] == {"http_404": 1}

    async def test_retryable_lists_failed_rows_with_budget(
        self, client: httpx.AsyncClient, controller: SessionController, fetcher: ScriptedFetcher
    ) -> None:
        session_id = await _finished_session(controller, fetcher, fail_last=True)

        mine = await client.get(f"{_PREFIX}/retryable", params={"user_id": "researcher-1"})
        other = await client.get(f"{_PREFIX}/retryable", params={"user_id": "someone-else"})

        assert mine.status_code == 200
        (row,) = mine.json()
        assert (row["url"], row["session_id"], row["error_type"]) == (
            url_list(3)[-1],
            str(session_id),
            "http_404",
        )
        assert other.json() == []

    async def test_discover_lists_links_by_category(
        self, client: httpx.AsyncClient, fetcher: ScriptedFetcher
    ) -> None:
        seed = "https://news.example.com/"
        html = (
            '<a href="/politics/budget">Budget vote</a>'
            '<a href="https://wire.example.org/story">Wire</a>'
            '<a href="/files/report.pdf">Report</a>'
        )
        fetcher.script(
            seed,
            FetchOutcome(status_code=200, final_url=seed, html=html, metadata={"title": "Front"}),
        )

        response = await client.get(f"{_PREFIX}/discover", params={"url": seed})

        assert response.status_code == 200
        body = response.json()
        assert (body["title"], body["total_links"]) == ("Front", 3)
        assert (body["internal_links"], body["external_links"], body["file_links"]) == (1, 1, 1)
        assert body["links"][0] == {
            "url": "https://news.example.com/politics/budget",
            "title": "Budget vote",
            "category": "internal",
        }

    async def test_discover_errors(
        self, client: httpx.AsyncClient, fetcher: ScriptedFetcher
    ) -> None:
        gone_url = "https://news.example.com/gone"
        fetcher.script(gone_url, http_error(404))

        gone = await client.get(f"{_PREFIX}/discover", params={"url": gone_url})
        bad = await client.get(f"{_PREFIX}/discover", params={"url": "ftp://files.example/"})

        assert gone.status_code == 502
        assert bad.status_code == 422
        assert bad.json()["detail"]["field"] == "url"


# ---------------------------------------------------------------------------
# SSE stream and health
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestStreamAndHealth:
    async def test_stream_of_finished_session(
        self, client: httpx.AsyncClient, controller: SessionController, fetcher: ScriptedFetcher
    ) -> None:
        session_id = await _finished_session(controller, fetcher)

        response = await client.get(f"{_PREFIX}/{session_id}/stream")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = [line for line in response.text.splitlines() if line.startswith("event:")]
        assert events == ["event: progress", "event: session_complete"]

    async def test_stream_of_unknown_session(self, client: httpx.AsyncClient) -> None:
        assert (await client.get(f"{_PREFIX}/{uuid.uuid4()}/stream")).status_code == 404

    async def test_health(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health")
        assert response.json() == {"status": "ok"}
