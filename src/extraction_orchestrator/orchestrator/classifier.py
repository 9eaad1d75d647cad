"""Retry classification of fetch outcomes.

Maps a :class:`~extraction_orchestrator.orchestrator.fetcher.FetchOutcome`
onto one of three classes, applying these rules in order:

1. A 2xx response without an error kind is ``SUCCESS``.
2. Transport failures (timeout, connection reset, connection error), HTTP
   429, and every 5xx status are ``RETRYABLE``.
3. Any other 4xx status is ``TERMINAL``.
4. Everything else (robots.txt blocks, binary content, unclassified errors,
   unexpected statuses) is ``TERMINAL``.

Whether a retryable outcome actually gets another attempt depends on the
extraction's remaining budget; that decision belongs to the Task Executor.
"""

from __future__ import annotations

from enum import Enum

from extraction_orchestrator.orchestrator.config import (
    RETRYABLE_STATUS_CODES,
    TRANSIENT_ERROR_KINDS,
)
from extraction_orchestrator.orchestrator.fetcher import FetchOutcome


class Classification(str, Enum):
    """What the orchestrator should do with an attempt's outcome.

    Attributes:
        SUCCESS: Record the content metrics; the extraction is done.
        RETRYABLE: Transient failure; retry while budget remains.
        TERMINAL: Permanent failure; never retried.
    """

    SUCCESS = "success"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


def classify_status(status_code: int | None) -> Classification:
    """Classify a bare HTTP status code.

    Used by the gateway client, which sees status codes but no error kinds.
    ``None`` (no response at all) is treated as a transport failure.
    """
    if status_code is None:
        return Classification.RETRYABLE
    if 200 <= status_code < 300:
        return Classification.SUCCESS
    if status_code in RETRYABLE_STATUS_CODES or 500 <= status_code < 600:
        return Classification.RETRYABLE
    return Classification.TERMINAL


def classify(outcome: FetchOutcome) -> Classification:
    """Classify a fetch outcome.

    Args:
        outcome: The outcome reported by a page fetcher.

    Returns:
        The :class:`Classification` for the outcome.
    """
    if outcome.ok:
        return Classification.SUCCESS
    if outcome.error_kind in TRANSIENT_ERROR_KINDS:
        return Classification.RETRYABLE

    status = outcome.status_code
    if status is not None and (status in RETRYABLE_STATUS_CODES or 500 <= status < 600):
        return Classification.RETRYABLE
    return Classification.TERMINAL


def error_type_for(outcome: FetchOutcome) -> str:
    """Return the ``error_type`` label persisted for a failed outcome.

    The fetcher's error kind wins; otherwise the HTTP status becomes
    ``http_<code>``, and an outcome with neither is ``unclassified``.
    """
    if outcome.error_kind:
        return outcome.error_kind
    if outcome.status_code is not None:
        return f"http_{outcome.status_code}"
    return "unclassified"
