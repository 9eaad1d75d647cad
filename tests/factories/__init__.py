"""Test data factories for the extraction orchestrator.

Available factories
-------------------
BatchRequestFactory   start_batch keyword arguments (3 URLs, chunks of 2)
url_list              list of distinct article URLs
ScriptedFetcher       page fetcher replaying queued outcomes per URL
ok / http_error / transport_error   FetchOutcome builders
"""

from __future__ import annotations

from tests.factories.batches import BatchRequestFactory, url_list
from tests.factories.fetchers import ScriptedFetcher, http_error, ok, transport_error

__all__ = [
    "BatchRequestFactory",
    "ScriptedFetcher",
    "http_error",
    "ok",
    "transport_error",
    "url_list",
]
