"""SQLAlchemy declarative base and shared mixins for all ORM models.

Provides:
- Base: the DeclarativeBase subclass all models inherit from
- TimestampMixin: created_at / updated_at columns with server-side defaults
- JSONMap: JSON column type, stored as JSONB on PostgreSQL

Column types are dialect-portable (``sa.Uuid``, ``sa.JSON`` with a JSONB
variant, ``CURRENT_TIMESTAMP`` defaults) so the same models run against
PostgreSQL in production and SQLite in the test suite.
"""

from __future__ import annotations

import uuid
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONMap = sa.JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Shared declarative base for all Extraction Orchestrator models."""

    type_annotation_map = {
        uuid.UUID: sa.Uuid(as_uuid=True),
    }


class TimestampMixin:
    """Adds created_at and updated_at columns with database-side defaults.

    The server default only fires on INSERT.  The onupdate kwarg covers the
    ORM-level and Core UPDATE paths used by the extraction store.
    """

    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        onupdate=sa.func.now(),
    )
