"""Batch extraction orchestrator.

Turns a list of URLs into a persisted extraction session and drives every
URL to a terminal state with bounded concurrency, classified retries and
exponential backoff.

Modules:

- :mod:`.chunking`: splits a URL list into numbered chunks.
- :mod:`.classifier`: maps fetch outcomes to success / retryable / terminal.
- :mod:`.backoff`: exponential delay schedule with cancellable waits.
- :mod:`.fetcher`: the Page Fetcher contract; backends in :mod:`.http_fetcher`,
  :mod:`.browser_fetcher` and :mod:`.gateway_client`.
- :mod:`.store`: transactional persistence of sessions, extractions and retry logs.
- :mod:`.executor`: runs one attempt at one URL.
- :mod:`.pool`: bounded-concurrency worker pool for a session.
- :mod:`.controller`: session lifecycle (start, cancel, retry, delete, resume).
- :mod:`.statistics`: derived per-session and per-user figures.
- :mod:`.tasks` / :mod:`.router`: Celery and HTTP entry points.
"""
