"""SQLAlchemy ORM models for the Extraction Orchestrator.

All models are imported here so that:
1. Alembic autogenerate can discover them via Base.metadata.
2. Application code can do
   ``from extraction_orchestrator.core.models import ExtractionSession``
   without knowing which sub-module a model lives in.
3. SQLAlchemy's relationship resolution finds all mapper targets at
   import time.
"""

from __future__ import annotations

from extraction_orchestrator.core.models.base import Base, JSONMap, TimestampMixin
from extraction_orchestrator.core.models.extraction import (
    ExtractionRetry,
    ExtractionSession,
    UrlExtraction,
    new_extraction,
    new_session,
)

__all__ = [
    "Base",
    "JSONMap",
    "TimestampMixin",
    "ExtractionSession",
    "UrlExtraction",
    "ExtractionRetry",
    "new_session",
    "new_extraction",
]
