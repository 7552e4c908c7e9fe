from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL, DB_POOL_SIZE, DEFAULT_JOB_PRIORITY, MAX_RETRIES


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_database(url: str = DATABASE_URL) -> Database:
    """
    Build a Database for the given URL.

    PostgreSQL gets a bounded connection pool. SQLite takes no pool options.
    """
    if url.startswith("postgresql"):
        return Database(url, min_size=1, max_size=DB_POOL_SIZE)
    return Database(url)


def is_postgresql(db: Database) -> bool:
    """True when the database backend supports row-level locking (FOR UPDATE SKIP LOCKED)."""
    return str(db.url).startswith("postgresql")


# Shared database instance - works with PostgreSQL or SQLite
database = create_database()
metadata = sa.MetaData()


# One row per media variant of an uploaded asset.
#
# - The 'source' row is created by the attach endpoint and points at the origin
#   server through source_key.
# - thumb/display/video rows are upserted by the publishing worker and point at
#   the CDN through storage_key/cdn_url.
# - detached_at is the soft-delete marker set by the detach endpoint; rows are
#   hard-deleted only by the cleanup sweep after their storage is gone.
auction_files = sa.Table(
    "auction_files",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("item_id", sa.String(64), nullable=True),  # lot / inventory item, NULL = unassigned
    sa.Column("asset_group_id", sa.String(64), nullable=False),
    sa.Column(
        "variant",
        sa.String(20),
        sa.CheckConstraint(
            "variant IN ('source', 'thumb', 'display', 'video')",
            name="ck_auction_files_variant",
        ),
        nullable=False,
    ),
    sa.Column("source_key", sa.String(1024), nullable=True),  # origin location (source only)
    sa.Column("storage_key", sa.String(1024), nullable=True),  # bucket key (published variants)
    sa.Column("cdn_url", sa.String(2048), nullable=True),
    sa.Column("original_name", sa.String(255), nullable=False, default=""),
    sa.Column("mime_type", sa.String(100), nullable=True),
    sa.Column("bytes", sa.BigInteger, nullable=True),
    sa.Column("width", sa.Integer, nullable=True),
    sa.Column("height", sa.Integer, nullable=True),
    sa.Column("duration_seconds", sa.Float, nullable=True),
    sa.Column(
        "published_status",
        sa.String(20),
        sa.CheckConstraint(
            "published_status IN ('pending', 'processing', 'published', 'failed', 'deleted')",
            name="ck_auction_files_published_status",
        ),
        nullable=False,
        default="pending",
    ),
    sa.Column("detached_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.UniqueConstraint("asset_group_id", "variant", name="uq_auction_files_asset_group_variant"),
    sa.Index("ix_auction_files_asset_group_id", "asset_group_id"),
    sa.Index("ix_auction_files_detached_at", "detached_at"),
    sa.Index("ix_auction_files_item_id", "item_id"),
)

# Publish jobs (one per source file attach)
#
# STATE SEMANTICS:
# ----------------
# - pending:    eligible once run_after <= NOW() and retry_count < max_retries
# - processing: claimed by exactly one worker slot (started_at set)
# - completed:  variants uploaded and recorded (completed_at set)
# - failed:     retry budget exhausted (terminal, completed_at set)
#
# STATE TRANSITIONS:
# ------------------
# 1. Attach:   external endpoint inserts a pending job
# 2. Claim:    pending/failed -> processing (FOR UPDATE SKIP LOCKED)
# 3. Complete: processing -> completed
# 4. Retry:    processing -> pending, retry_count + 1, run_after = NOW() + 2^retry_count minutes
# 5. Exhaust:  processing -> failed once retry_count reaches max_retries
# 6. Stale:    processing past the stale timeout is recorded as a failed attempt (4 or 5)
# 7. Permanent precondition failure: processing -> failed, retry_count pinned to max_retries
#
# Jobs are never deleted; they are the audit trail for a file's publish attempts.
publish_jobs = sa.Table(
    "publish_jobs",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column(
        "file_id",
        sa.Integer,
        sa.ForeignKey("auction_files.id", ondelete="SET NULL"),
        nullable=True,
    ),
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_publish_jobs_status",
        ),
        nullable=False,
        default="pending",
    ),
    sa.Column("priority", sa.Integer, nullable=False, default=DEFAULT_JOB_PRIORITY),
    sa.Column("retry_count", sa.Integer, nullable=False, default=0),
    sa.Column("max_retries", sa.Integer, nullable=False, default=MAX_RETRIES),
    sa.Column("error_message", sa.Text, nullable=True),
    sa.Column("run_after", sa.DateTime(timezone=True), nullable=False, default=_utcnow),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, default=_utcnow),
    sa.CheckConstraint("retry_count >= 0", name="ck_publish_jobs_retry_count_non_negative"),
    sa.Index("ix_publish_jobs_status_run_after", "status", "run_after"),
    sa.Index("ix_publish_jobs_file_id", "file_id"),
)
