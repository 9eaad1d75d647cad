"""Constants and tuning parameters for the extraction orchestrator."""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Retry bookkeeping
# ---------------------------------------------------------------------------

#: Label written to ``extraction_retries.retry_strategy`` for every attempt.
RETRY_STRATEGY: str = "exponential_backoff"

#: Exponential growth factor between consecutive backoff delays.
BACKOFF_FACTOR: float = 2.0

# ---------------------------------------------------------------------------
# Error kinds reported by page fetchers
# ---------------------------------------------------------------------------

ERROR_TIMEOUT: str = "timeout"
ERROR_CONNECTION_RESET: str = "connection_reset"
ERROR_CONNECTION: str = "connection_error"
ERROR_TOO_MANY_REDIRECTS: str = "too_many_redirects"
ERROR_ROBOTS_BLOCKED: str = "robots_blocked"
ERROR_BINARY_CONTENT: str = "binary_content"
ERROR_DECODE: str = "decode_error"
ERROR_UNCLASSIFIED: str = "unclassified"
ERROR_INTERRUPTED: str = "interrupted"

#: Transport-level error kinds that are worth another attempt.
TRANSIENT_ERROR_KINDS: frozenset[str] = frozenset(
    {ERROR_TIMEOUT, ERROR_CONNECTION_RESET, ERROR_CONNECTION}
)

#: HTTP status codes retried explicitly; any other 5xx is retried as well.
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({429, 502, 503, 504})

# ---------------------------------------------------------------------------
# Content guards
# ---------------------------------------------------------------------------

#: Body length threshold (stripped characters) below which a page is
#: considered a JS-only shell worth a headless-browser retry.
JS_SHELL_BODY_THRESHOLD: int = 500

#: Maximum HTML size (bytes) handed to trafilatura when summarising a page.
MAX_CONTENT_BYTES: int = 900 * 1024  # 900 KB

# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

#: User-agent string sent with every direct HTTP request.
USER_AGENT: str = (
    "ExtractionOrchestrator/0.1 (+https://example.org/extraction-orchestrator; "
    "batch link extractor)"
)

#: Content-Type prefixes that indicate binary/non-text resources.
BINARY_CONTENT_TYPES: frozenset[str] = frozenset(
    {
        "application/pdf",
        "application/zip",
        "application/octet-stream",
        "application/x-executable",
        "application/vnd.",
        "image/",
        "video/",
        "audio/",
        "font/",
    }
)

#: robots.txt user-agent token to check against.
ROBOTS_USER_AGENT: str = "ExtractionOrchestrator"

#: Fallback user-agent token if a site has no entry for ``ROBOTS_USER_AGENT``.
ROBOTS_USER_AGENT_FALLBACK: str = "*"

# ---------------------------------------------------------------------------
# Remote gateway
# ---------------------------------------------------------------------------

#: Paths of the remote extraction gateway's REST API.
GATEWAY_CONVERT_PATH: str = "/api/convert"
GATEWAY_HEALTH_PATH: str = "/health"
GATEWAY_BATCH_PATH: str = "/api/convert/batch"
GATEWAY_PROGRESS_PATH: str = "/api/extraction-history/{session_id}/progress"
GATEWAY_CANCEL_PATH: str = "/api/extraction-history/{session_id}/cancel"
GATEWAY_RETRY_PATH: str = "/api/extraction-history/{session_id}/retry"
