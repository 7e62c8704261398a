"""session store schema

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 09:30:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_000001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "session_records",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("content_digest", sa.String(length=64), nullable=False),
        sa.Column("file_name", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("track", sa.Text(), nullable=False),
        sa.Column("date_start", sa.String(length=64), nullable=False),
        sa.Column("date_end", sa.String(length=64), nullable=True),
        sa.Column("car", sa.Text(), nullable=True),
        sa.Column("driver", sa.Text(), nullable=True),
        sa.Column("session_type", sa.String(length=32), nullable=False),
        sa.Column("session_category", sa.String(length=32), nullable=False),
        sa.Column("session_type_code", sa.Integer(), nullable=True),
        sa.Column("lap_count", sa.Integer(), nullable=False),
        sa.Column("laps_valid", sa.Integer(), nullable=False),
        sa.Column("best_lap_ms", sa.Integer(), nullable=True),
        sa.Column("avg_clean_lap_ms", sa.Integer(), nullable=True),
        sa.Column("total_time_ms", sa.Integer(), nullable=False),
        sa.Column("stint_count", sa.Integer(), nullable=False),
        sa.Column("chunk_count", sa.Integer(), nullable=False),
        sa.Column("chunk_size", sa.Integer(), nullable=False),
        sa.Column("total_size_bytes", sa.Integer(), nullable=False),
        sa.Column("payload_encoding", sa.String(length=32), nullable=False),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("committed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_session_records_owner_uploaded", "session_records", ["owner_id", "uploaded_at"], unique=False
    )
    op.create_index(
        "idx_session_records_status_created", "session_records", ["status", "created_at"], unique=False
    )

    op.create_table(
        "session_chunks",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("session_id", sa.String(length=64), nullable=False),
        sa.Column("chunk_index", sa.Integer(), nullable=False),
        sa.Column("size_bytes", sa.Integer(), nullable=False),
        sa.Column("checksum_sha256", sa.String(length=64), nullable=False),
        sa.Column("storage_key", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["session_id"], ["session_records.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("session_id", "chunk_index", name="uq_session_chunk_index"),
    )

    op.create_table(
        "content_digests",
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("content_digest", sa.String(length=64), nullable=False),
        sa.Column("session_id", sa.String(length=64), nullable=False),
        sa.Column("file_name", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("owner_id", "content_digest"),
    )
    op.create_index("ix_content_digests_session_id", "content_digests", ["session_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_content_digests_session_id", table_name="content_digests")
    op.drop_table("content_digests")
    op.drop_table("session_chunks")
    op.drop_index("idx_session_records_status_created", table_name="session_records")
    op.drop_index("idx_session_records_owner_uploaded", table_name="session_records")
    op.drop_table("session_records")
