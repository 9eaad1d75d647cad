"""Create extraction_sessions, url_extractions and extraction_retries.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_SESSION_STATUSES = "'cancelled', 'completed', 'failed', 'in_progress'"
_URL_STATUSES = "'failed', 'pending', 'processing', 'retrying', 'skipped', 'success'"
_RETRY_STATUSES = (
    "'failed', 'interrupted', 'pending', 'processing', 'retrying', 'skipped', 'success'"
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
    ]


def upgrade() -> None:
    """Create the three extraction tables with their checks and indexes."""
    op.create_table(
        "extraction_sessions",
        sa.Column(
            "session_id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("session_name", sa.String(255), nullable=True),
        sa.Column("source_url", sa.Text(), nullable=False),
        sa.Column("total_urls", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("successful_urls", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("failed_urls", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "status",
            sa.String(20),
            nullable=False,
            server_default=sa.text("'in_progress'"),
        ),
        sa.Column("chunk_size", sa.Integer(), nullable=False),
        sa.Column("max_retries", sa.Integer(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "parent_session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("extraction_sessions.session_id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "started_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "metadata",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        *_timestamps(),
        sa.CheckConstraint(f"status IN ({_SESSION_STATUSES})", name="chk_session_status"),
        sa.CheckConstraint(
            "successful_urls + failed_urls <= total_urls", name="chk_session_counters"
        ),
        sa.CheckConstraint("chunk_size > 0", name="chk_session_chunk_size"),
        sa.CheckConstraint("max_retries >= 0", name="chk_session_max_retries"),
    )
    op.create_index("idx_extraction_sessions_user_id", "extraction_sessions", ["user_id"])
    op.create_index("idx_extraction_sessions_status", "extraction_sessions", ["status"])
    op.create_index("idx_extraction_sessions_created_at", "extraction_sessions", ["created_at"])

    op.create_table(
        "url_extractions",
        sa.Column(
            "extraction_id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("extraction_sessions.session_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("url_hash", sa.String(64), nullable=False),
        sa.Column("chunk_number", sa.Integer(), nullable=False),
        sa.Column("position_in_chunk", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            sa.String(20),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("http_status", sa.Integer(), nullable=True),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("content_bytes", sa.Integer(), nullable=True),
        sa.Column("links_found", sa.Integer(), nullable=True),
        sa.Column("final_url", sa.Text(), nullable=True),
        sa.Column("error_type", sa.String(100), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("last_error_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "metadata",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        *_timestamps(),
        sa.CheckConstraint(f"status IN ({_URL_STATUSES})", name="chk_url_status"),
        sa.CheckConstraint("chunk_number > 0", name="chk_chunk_number"),
        sa.CheckConstraint("position_in_chunk >= 0", name="chk_position_in_chunk"),
        sa.CheckConstraint("attempt_count >= 0", name="chk_attempt_count"),
        sa.CheckConstraint("attempt_count <= max_retries + 1", name="chk_attempt_budget"),
    )
    op.create_index("idx_url_extractions_session_id", "url_extractions", ["session_id"])
    op.create_index("idx_url_extractions_url_hash", "url_extractions", ["url_hash"])
    op.create_index("idx_url_extractions_status", "url_extractions", ["status"])
    op.create_index(
        "idx_url_extractions_chunk", "url_extractions", ["session_id", "chunk_number"]
    )

    op.create_table(
        "extraction_retries",
        sa.Column(
            "retry_id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "extraction_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("url_extractions.extraction_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("error_type", sa.String(100), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("http_status", sa.Integer(), nullable=True),
        sa.Column("retry_strategy", sa.String(50), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.CheckConstraint("attempt_number > 0", name="chk_attempt_number"),
        sa.CheckConstraint(f"status IN ({_RETRY_STATUSES})", name="chk_retry_status"),
        sa.UniqueConstraint(
            "extraction_id", "attempt_number", name="uq_extraction_retries_attempt"
        ),
    )
    op.create_index(
        "idx_extraction_retries_extraction_id", "extraction_retries", ["extraction_id"]
    )


def downgrade() -> None:
    """Drop the extraction tables."""
    op.drop_table("extraction_retries")
    op.drop_table("url_extractions")
    op.drop_table("extraction_sessions")
