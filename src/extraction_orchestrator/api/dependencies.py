"""Shared FastAPI dependencies for the extraction session routes.

Usage in a route::

    from extraction_orchestrator.api.dependencies import get_controller

    @router.get("/{session_id}/progress")
    async def progress(
        session_id: uuid.UUID,
        controller: Annotated[SessionController, Depends(get_controller)],
    ) -> ...:
        ...
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request, status

from extraction_orchestrator.orchestrator.controller import SessionController


def get_controller(request: Request) -> SessionController:
    """Return the process-wide :class:`SessionController`.

    The controller is created on first use and kept on ``app.state``; the
    application's shutdown hook closes it.  API requests never run worker
    pools themselves, they dispatch Celery tasks.
    """
    controller: SessionController | None = getattr(request.app.state, "controller", None)
    if controller is None:
        from extraction_orchestrator.orchestrator.tasks import build_controller  # noqa: PLC0415

        controller = build_controller()
        request.app.state.controller = controller
    return controller


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------


@dataclass
class PaginationParams:
    """Cursor-pagination parameters shared across list endpoints.

    Attributes:
        cursor: ``session_id`` of the last record of the previous page.
        page_size: Number of records to return per page (1-200).
    """

    cursor: Optional[str]
    page_size: int


def get_pagination(
    cursor: Optional[str] = None,
    page_size: int = 50,
) -> PaginationParams:
    """Parse and validate cursor-pagination query parameters.

    Raises:
        HTTPException 422: If ``page_size`` is outside the range 1-200.
    """
    if not 1 <= page_size <= 200:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="page_size must be between 1 and 200.",
        )
    return PaginationParams(cursor=cursor, page_size=page_size)
