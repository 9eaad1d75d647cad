"""Application-wide exception hierarchy for the Extraction Orchestrator.

All custom exceptions subclass ``ExtractionOrchestratorError``, enabling
consistent error handling and structured logging across the application.

Hierarchy::

    ExtractionOrchestratorError
    ├── ValidationError
    ├── FetchError
    │   ├── RetryableFetchError     (status_code: int | None)
    │   └── TerminalFetchError      (status_code: int | None)
    ├── StoreError
    ├── SessionNotFoundError
    └── InvalidSessionStateError
"""

from __future__ import annotations

import uuid


class ExtractionOrchestratorError(Exception):
    """Base class for all Extraction Orchestrator exceptions.

    All application-specific exceptions inherit from this class so that
    callers can catch the entire hierarchy with a single ``except`` clause
    when needed.
    """


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


class ValidationError(ExtractionOrchestratorError):
    """Raised when a batch request is rejected before any row is written.

    Covers an empty or oversized URL list, malformed URLs, and out-of-range
    chunk size or retry budget.  Never retried.

    Args:
        message: Human-readable description of the problem.
        field: Name of the offending request field, if any.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


# ---------------------------------------------------------------------------
# Fetch exceptions
# ---------------------------------------------------------------------------


class FetchError(ExtractionOrchestratorError):
    """Base class for failures talking to a page fetcher or remote gateway.

    Args:
        message: Human-readable description of the failure.
        status_code: HTTP status returned by the remote side, or ``None`` for
            transport-level failures.
        error_type: Short machine-readable error label (``"timeout"``,
            ``"http_503"`` ...).
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_type: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type


class RetryableFetchError(FetchError):
    """Raised for transient failures (timeouts, 429, 5xx) that may succeed later."""


class TerminalFetchError(FetchError):
    """Raised for failures that must not be retried.

    Client errors other than 429, unclassified errors, and retryable errors
    whose retry budget has been exhausted all end up here.
    """


# ---------------------------------------------------------------------------
# Persistence exceptions
# ---------------------------------------------------------------------------


class StoreError(ExtractionOrchestratorError):
    """Raised when the persistent store fails to apply a state transition.

    Never swallowed: silently losing a transition would break the counter
    invariants on the session row.

    Args:
        message: Description of the failed operation.
        session_id: UUID of the affected session, if known.
    """

    def __init__(
        self,
        message: str,
        session_id: uuid.UUID | None = None,
    ) -> None:
        super().__init__(message)
        self.session_id = session_id


# ---------------------------------------------------------------------------
# Session lifecycle exceptions
# ---------------------------------------------------------------------------


class SessionNotFoundError(ExtractionOrchestratorError):
    """Raised when an operation targets a session id that does not exist."""

    def __init__(self, session_id: uuid.UUID) -> None:
        super().__init__(f"Extraction session '{session_id}' not found")
        self.session_id = session_id


class InvalidSessionStateError(ExtractionOrchestratorError):
    """Raised when a lifecycle action is not valid from the session's current status.

    Args:
        session_id: UUID of the session.
        status: The session's current status.
        action: The rejected action (``"cancel"``, ``"delete"`` ...).
    """

    def __init__(self, session_id: uuid.UUID, status: str, action: str) -> None:
        super().__init__(
            f"Cannot {action} extraction session '{session_id}' with status '{status}'"
        )
        self.session_id = session_id
        self.status = status
        self.action = action
