"""Bounded-concurrency worker pool driving one extraction session.

``N`` long-lived asyncio workers pull extraction ids from a shared queue and
hand each to the :class:`~extraction_orchestrator.orchestrator.executor.TaskExecutor`.
At most ``N`` attempts are in flight at once, and a given extraction id is
never in the queue or in flight twice, so attempts at one URL are strictly
sequential.

The queue is seeded with the session's pending/retrying rows in
(chunk, position) order.  A retryable failure is handed to a timer task that
waits out the backoff delay and puts the id back on the queue.

Cancellation is observed before pulling work, before starting an attempt
(the store also refuses claims for a session that is not in progress) and
during backoff waits.  In-flight fetches are allowed to finish.  A watcher
re-reads the session status periodically so that a cancel committed by
another process stops this pool too.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass

from extraction_orchestrator.core.logging_config import session_id_var
from extraction_orchestrator.core.models.extraction import (
    SESSION_IN_PROGRESS,
    URL_FAILED,
    URL_SUCCESS,
)
from extraction_orchestrator.orchestrator.backoff import BackoffPolicy
from extraction_orchestrator.orchestrator.executor import AttemptResult, TaskExecutor
from extraction_orchestrator.orchestrator.store import ExtractionStore

logger = logging.getLogger(__name__)


@dataclass
class PoolReport:
    """Summary of one pool run.

    Attributes:
        session_id: The session the pool drove.
        dispatched: Attempts actually started.
        refused: Dispatches whose claim the store refused.
        succeeded: Extractions that reached ``success``.
        failed: Extractions that reached ``failed``.
        retries_scheduled: Retryable failures sent back through backoff.
        peak_active: Highest number of simultaneously running attempts.
        cancelled: Whether the run stopped because of cancellation.
    """

    session_id: uuid.UUID
    dispatched: int = 0
    refused: int = 0
    succeeded: int = 0
    failed: int = 0
    retries_scheduled: int = 0
    peak_active: int = 0
    cancelled: bool = False


class WorkerPool:
    """Run a session's outstanding extractions with bounded concurrency.

    Args:
        session_id: Session to drive.
        store: Data store.
        executor: Executor running single attempts.
        concurrency: Number of workers, i.e. the cap on concurrent attempts.
        backoff: Backoff policy between attempts at the same URL.
        cancel_event: Event that requests cancellation.  A private one is
            created when omitted.
        poll_interval: Seconds between session status checks.  ``None``
            disables the watcher.
    """

    def __init__(
        self,
        session_id: uuid.UUID,
        store: ExtractionStore,
        executor: TaskExecutor,
        *,
        concurrency: int,
        backoff: BackoffPolicy,
        cancel_event: asyncio.Event | None = None,
        poll_interval: float | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.session_id = session_id
        self._store = store
        self._executor = executor
        self._concurrency = concurrency
        self._backoff = backoff
        self._cancel_event = cancel_event or asyncio.Event()
        self._poll_interval = poll_interval

        self._queue: asyncio.Queue[uuid.UUID | None] = asyncio.Queue()
        self._outstanding = 0
        self._drained = asyncio.Event()
        self._stop = asyncio.Event()
        self._error: BaseException | None = None
        self._timers: set[asyncio.Task[None]] = set()
        self._active = 0
        self._report = PoolReport(session_id=session_id)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def active(self) -> int:
        """Number of attempts currently in flight."""
        return self._active

    async def run(self) -> PoolReport:
        """Process every outstanding extraction, or stop on cancellation.

        Returns:
            A :class:`PoolReport`.

        Raises:
            StoreError: If persisting a transition failed; the pool stops
                dispatching and re-raises once in-flight work has settled.
        """
        token = session_id_var.set(str(self.session_id))
        try:
            for extraction_id in await self._store.dispatchable_ids(self.session_id):
                self._submit(extraction_id)
            if self._outstanding == 0:
                logger.info("orchestrator: session %s has nothing to dispatch", self.session_id)
                return self._report

            logger.info(
                "orchestrator: session %s dispatching %d extractions with %d workers",
                self.session_id,
                self._outstanding,
                self._concurrency,
            )
            workers = [
                asyncio.create_task(self._worker(), name=f"extraction-worker-{i}")
                for i in range(self._concurrency)
            ]
            watcher = (
                asyncio.create_task(self._watch_status(self._poll_interval))
                if self._poll_interval is not None
                else None
            )
            await self._wait_for_end()
            await self._shutdown(workers, watcher)
        finally:
            session_id_var.reset(token)

        self._report.cancelled = self._cancel_event.is_set()
        if self._error is not None:
            raise self._error
        logger.info(
            "orchestrator: session %s pool finished: %d attempts, %d ok, %d failed, "
            "%d retries, peak %d%s",
            self.session_id,
            self._report.dispatched,
            self._report.succeeded,
            self._report.failed,
            self._report.retries_scheduled,
            self._report.peak_active,
            " (cancelled)" if self._report.cancelled else "",
        )
        return self._report

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _halted(self) -> bool:
        return self._cancel_event.is_set() or self._stop.is_set()

    def _submit(self, extraction_id: uuid.UUID) -> None:
        self._outstanding += 1
        self._drained.clear()
        self._queue.put_nowait(extraction_id)

    def _settle(self) -> None:
        self._outstanding -= 1
        if self._outstanding == 0:
            self._drained.set()

    def _fail(self, exc: BaseException) -> None:
        if self._error is None:
            self._error = exc
        self._stop.set()

    def _tally(self, result: AttemptResult) -> None:
        if not result.claimed:
            self._report.refused += 1
            return
        self._report.dispatched += 1
        if result.status == URL_SUCCESS:
            self._report.succeeded += 1
        elif result.status == URL_FAILED:
            self._report.failed += 1
        elif result.retry_scheduled:
            self._report.retries_scheduled += 1

    async def _wait_for_end(self) -> None:
        waiters = {
            asyncio.create_task(self._drained.wait()),
            asyncio.create_task(self._cancel_event.wait()),
            asyncio.create_task(self._stop.wait()),
        }
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

    async def _shutdown(
        self,
        workers: list[asyncio.Task[None]],
        watcher: asyncio.Task[None] | None,
    ) -> None:
        for _ in workers:
            self._queue.put_nowait(None)
        # Workers drain the queue, skipping ids once halted, and finish any
        # attempt already in flight before exiting.
        await asyncio.gather(*workers)
        for timer in list(self._timers):
            timer.cancel()
        await asyncio.gather(*self._timers, return_exceptions=True)
        if watcher is not None:
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def _worker(self) -> None:
        while True:
            extraction_id = await self._queue.get()
            if extraction_id is None:
                return
            handed_off = False
            try:
                if self._halted():
                    continue
                self._active += 1
                self._report.peak_active = max(self._report.peak_active, self._active)
                try:
                    result = await self._executor.execute(extraction_id)
                finally:
                    self._active -= 1
                self._tally(result)
                if result.retry_scheduled:
                    self._schedule_retry(extraction_id, result.attempt_number)
                    handed_off = True
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "orchestrator: session %s worker stopped on %s: %s",
                    self.session_id,
                    extraction_id,
                    exc,
                )
                self._fail(exc)
            finally:
                if not handed_off:
                    self._settle()

    def _schedule_retry(self, extraction_id: uuid.UUID, attempts_made: int) -> None:
        timer = asyncio.create_task(self._requeue_after_backoff(extraction_id, attempts_made))
        self._timers.add(timer)
        timer.add_done_callback(self._timers.discard)

    async def _requeue_after_backoff(self, extraction_id: uuid.UUID, attempts_made: int) -> None:
        elapsed = await self._backoff.wait(attempts_made, self._cancel_event)
        if elapsed and not self._halted():
            self._queue.put_nowait(extraction_id)
        else:
            self._settle()

    async def _watch_status(self, interval: float) -> None:
        while not self._halted():
            try:
                await asyncio.wait_for(self._cancel_event.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            try:
                status = await self._store.session_status(self.session_id)
            except Exception as exc:  # noqa: BLE001
                self._fail(exc)
                return
            if status != SESSION_IN_PROGRESS:
                logger.info(
                    "orchestrator: session %s is now %s; stopping dispatch",
                    self.session_id,
                    status,
                )
                self._cancel_event.set()
                return
