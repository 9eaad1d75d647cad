"""Task executor: run one attempt at one URL extraction.

An attempt is claimed, fetched, classified and recorded:

1. :meth:`ExtractionStore.begin_attempt` marks the row processing, bumps
   ``attempt_count`` and opens the retry-log row, all in one transaction.
2. The page fetcher runs under the per-attempt timeout; wall-clock time is
   measured around it.  A timeout becomes a ``timeout`` outcome and any
   unexpected fetcher exception an ``unclassified`` one.
3. The outcome is classified and recorded in one transaction together with
   the retry-log row and, for final outcomes, the session counter.

A retryable failure with budget left leaves the row ``retrying``; the worker
pool owns the backoff and the next attempt.  Store errors propagate.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass

from extraction_orchestrator.core.models.extraction import (
    URL_FAILED,
    URL_RETRYING,
    URL_SUCCESS,
)
from extraction_orchestrator.orchestrator.classifier import (
    Classification,
    classify,
    error_type_for,
)
from extraction_orchestrator.orchestrator.config import ERROR_TIMEOUT, ERROR_UNCLASSIFIED
from extraction_orchestrator.orchestrator.fetcher import FetchOutcome, PageFetcher
from extraction_orchestrator.orchestrator.store import AttemptTicket, ExtractionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttemptResult:
    """What happened to one dispatched extraction id.

    ``claimed`` is ``False`` when the store refused the claim (row no longer
    dispatchable, or session no longer in progress); all other fields are
    then unset.
    """

    extraction_id: uuid.UUID
    claimed: bool
    attempt_number: int = 0
    classification: Classification | None = None
    status: str | None = None
    error_type: str | None = None
    processing_time_ms: int | None = None

    @property
    def retry_scheduled(self) -> bool:
        return self.status == URL_RETRYING


class TaskExecutor:
    """Drives single attempts through fetch, classification and persistence.

    Args:
        store: Data store used for claims and outcomes.
        fetcher: Page fetcher backend.
        attempt_timeout: Seconds allowed for one fetch.
    """

    def __init__(
        self,
        store: ExtractionStore,
        fetcher: PageFetcher,
        *,
        attempt_timeout: float = 30.0,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._attempt_timeout = attempt_timeout

    async def execute(self, extraction_id: uuid.UUID) -> AttemptResult:
        """Run one attempt at ``extraction_id``."""
        ticket = await self._store.begin_attempt(extraction_id)
        if ticket is None:
            logger.debug("orchestrator: claim refused for extraction %s", extraction_id)
            return AttemptResult(extraction_id=extraction_id, claimed=False)

        started = time.monotonic()
        outcome = await self._fetch(ticket)
        elapsed_ms = int((time.monotonic() - started) * 1000)

        classification = classify(outcome)
        if classification is Classification.SUCCESS:
            await self._store.record_success(
                ticket,
                http_status=outcome.status_code,
                processing_time_ms=elapsed_ms,
                content_bytes=outcome.content_bytes,
                links_found=outcome.links_found,
                final_url=outcome.final_url,
                metadata=outcome.metadata,
            )
            logger.debug(
                "orchestrator: %s succeeded on attempt %d (%d ms)",
                ticket.url,
                ticket.attempt_number,
                elapsed_ms,
            )
            return AttemptResult(
                extraction_id=extraction_id,
                claimed=True,
                attempt_number=ticket.attempt_number,
                classification=classification,
                status=URL_SUCCESS,
                processing_time_ms=elapsed_ms,
            )

        error_type = error_type_for(outcome)
        retry = classification is Classification.RETRYABLE and ticket.budget_left
        await self._store.record_failure(
            ticket,
            terminal=not retry,
            error_type=error_type,
            error_message=outcome.error_message,
            http_status=outcome.status_code,
            processing_time_ms=elapsed_ms,
        )
        if retry:
            logger.info(
                "orchestrator: %s attempt %d/%d failed (%s); will retry",
                ticket.url,
                ticket.attempt_number,
                ticket.max_retries,
                error_type,
            )
        else:
            logger.info(
                "orchestrator: %s failed after %d attempt(s) (%s, %s)",
                ticket.url,
                ticket.attempt_number,
                error_type,
                classification.value,
            )
        return AttemptResult(
            extraction_id=extraction_id,
            claimed=True,
            attempt_number=ticket.attempt_number,
            classification=classification,
            status=URL_RETRYING if retry else URL_FAILED,
            error_type=error_type,
            processing_time_ms=elapsed_ms,
        )

    async def _fetch(self, ticket: AttemptTicket) -> FetchOutcome:
        try:
            return await asyncio.wait_for(
                self._fetcher.fetch(ticket.url), timeout=self._attempt_timeout
            )
        except asyncio.TimeoutError:
            return FetchOutcome(
                error_kind=ERROR_TIMEOUT,
                error_message=f"attempt exceeded {self._attempt_timeout:g}s",
                final_url=ticket.url,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "orchestrator: fetcher raised for %s: %s", ticket.url, exc, exc_info=True
            )
            return FetchOutcome(
                error_kind=ERROR_UNCLASSIFIED,
                error_message=f"{type(exc).__name__}: {exc}",
                final_url=ticket.url,
            )
