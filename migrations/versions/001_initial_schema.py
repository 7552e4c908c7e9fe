"""initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

Publish ledger: auction_files (one row per asset variant) and publish_jobs
(the work queue and audit trail of publish attempts).
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the ledger tables."""
    op.create_table(
        "auction_files",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("item_id", sa.String(64), nullable=True),
        sa.Column("asset_group_id", sa.String(64), nullable=False),
        sa.Column("variant", sa.String(20), nullable=False),
        sa.Column("source_key", sa.String(1024), nullable=True),
        sa.Column("storage_key", sa.String(1024), nullable=True),
        sa.Column("cdn_url", sa.String(2048), nullable=True),
        sa.Column("original_name", sa.String(255), nullable=False, server_default=""),
        sa.Column("mime_type", sa.String(100), nullable=True),
        sa.Column("bytes", sa.BigInteger, nullable=True),
        sa.Column("width", sa.Integer, nullable=True),
        sa.Column("height", sa.Integer, nullable=True),
        sa.Column("duration_seconds", sa.Float, nullable=True),
        sa.Column("published_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("detached_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "variant IN ('source', 'thumb', 'display', 'video')",
            name="ck_auction_files_variant",
        ),
        sa.CheckConstraint(
            "published_status IN ('pending', 'processing', 'published', 'failed', 'deleted')",
            name="ck_auction_files_published_status",
        ),
        sa.UniqueConstraint("asset_group_id", "variant", name="uq_auction_files_asset_group_variant"),
    )
    op.create_index("ix_auction_files_asset_group_id", "auction_files", ["asset_group_id"])
    op.create_index("ix_auction_files_detached_at", "auction_files", ["detached_at"])
    op.create_index("ix_auction_files_item_id", "auction_files", ["item_id"])

    op.create_table(
        "publish_jobs",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "file_id",
            sa.Integer,
            sa.ForeignKey("auction_files.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer, nullable=False, server_default="5"),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="5"),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_publish_jobs_status",
        ),
        sa.CheckConstraint("retry_count >= 0", name="ck_publish_jobs_retry_count_non_negative"),
    )
    op.create_index("ix_publish_jobs_status_run_after", "publish_jobs", ["status", "run_after"])
    op.create_index("ix_publish_jobs_file_id", "publish_jobs", ["file_id"])


def downgrade() -> None:
    """Drop the ledger tables."""
    op.drop_index("ix_publish_jobs_file_id", table_name="publish_jobs")
    op.drop_index("ix_publish_jobs_status_run_after", table_name="publish_jobs")
    op.drop_table("publish_jobs")
    op.drop_index("ix_auction_files_item_id", table_name="auction_files")
    op.drop_index("ix_auction_files_detached_at", table_name="auction_files")
    op.drop_index("ix_auction_files_asset_group_id", table_name="auction_files")
    op.drop_table("auction_files")
