"""
Publish ledger: the relational record of publish jobs and file variants.

Every function here is one short logical operation against the shared
`database` instance. Multi-statement operations run inside a single
transaction so callers never observe a half-updated job/file pair, and no
transaction is ever held open across a network call: the job processor
fetches, transcodes and uploads between ledger calls.

Claiming is exclusive across worker slots and worker processes:
- PostgreSQL: the eligible-job subquery takes FOR UPDATE SKIP LOCKED, so
  concurrent claimers skip rows another transaction already holds.
- SQLite: the claim is a single UPDATE statement, which holds the database
  write lock for its whole duration (FOR UPDATE is not rendered).

Every transition out of 'processing' is a conditional UPDATE on
status = 'processing' and the retry_count seen at claim time. retry_count
changes on every failed or recovered attempt, so it identifies one claim: a
late result from an attempt the stale sweep already recovered matches no row
and is dropped.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite

from api.common import row_to_dict
from api.database import _utcnow, auction_files, database, is_postgresql, publish_jobs
from api.db_retry import execute_with_retry
from api.enums import FileVariant, JobStatus, PublishedStatus
from api.errors import truncate_error
from config import (
    CLEANUP_BATCH_SIZE,
    CLEANUP_RETENTION_DAYS,
    DEFAULT_JOB_PRIORITY,
    ERROR_DETAIL_MAX_LENGTH,
    MAX_RETRIES,
    STALE_JOB_TIMEOUT,
)

logger = logging.getLogger(__name__)

# Optional columns accepted by upsert_variant's metadata mapping
VARIANT_METADATA_FIELDS = frozenset(
    ["storage_key", "width", "height", "duration_seconds", "mime_type", "bytes", "item_id", "original_name"]
)

# Columns always overwritten on conflict (the latest publish wins, even when NULL)
_VARIANT_OVERWRITE_FIELDS = ("storage_key", "width", "height", "duration_seconds")

STALE_JOB_ERROR = "Job abandoned while processing (worker stopped before recording a result)"


@dataclass
class FailureOutcome:
    """Result of recording a failed publish attempt."""

    will_retry: bool
    retry_count: int
    max_retries: int
    run_after: Optional[datetime] = None

    @property
    def backoff_seconds(self) -> int:
        return int(backoff_delay(self.retry_count).total_seconds()) if self.will_retry else 0


def backoff_delay(retry_count: int) -> timedelta:
    """Delay before a job that has failed `retry_count` times becomes claimable again: 2^n minutes."""
    return timedelta(minutes=2**retry_count)


# =============================================================================
# Job queue
# =============================================================================


async def claim_next_job() -> Optional[dict]:
    """
    Atomically claim the next eligible publish job.

    Eligible: status pending/failed, retry_count < max_retries, run_after <= now.
    Order: priority DESC, run_after ASC, created_at ASC.

    Returns:
        The claimed job (now 'processing' with started_at set), or None.
    """
    now = _utcnow()

    eligible = (
        sa.select(publish_jobs.c.id)
        .where(publish_jobs.c.status.in_([JobStatus.PENDING.value, JobStatus.FAILED.value]))
        .where(publish_jobs.c.retry_count < publish_jobs.c.max_retries)
        .where(publish_jobs.c.run_after <= now)
        .order_by(
            publish_jobs.c.priority.desc(),
            publish_jobs.c.run_after.asc(),
            publish_jobs.c.created_at.asc(),
            publish_jobs.c.id.asc(),
        )
        .limit(1)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )
    claim = (
        publish_jobs.update()
        .where(publish_jobs.c.id == eligible)
        .values(status=JobStatus.PROCESSING.value, started_at=now, updated_at=now)
        .returning(*publish_jobs.c)
    )

    async def do_claim():
        async with database.transaction():
            return await database.fetch_one(claim)

    job = row_to_dict(await execute_with_retry(do_claim))
    if job:
        logger.info(
            f"Claimed publish job {job['id']} (file={job['file_id']}, priority={job['priority']}, "
            f"attempt={job['retry_count'] + 1}/{job['max_retries']})"
        )
    return job


def _owned_attempt(job_id: int, claimed_retry_count: Optional[int]):
    """WHERE clause matching the job only while the given claim still holds it."""
    clause = sa.and_(publish_jobs.c.id == job_id, publish_jobs.c.status == JobStatus.PROCESSING.value)
    if claimed_retry_count is not None:
        clause = sa.and_(clause, publish_jobs.c.retry_count == claimed_retry_count)
    return clause


async def mark_job_completed(
    job_id: int,
    file_id: Optional[int],
    variant_urls: Optional[Mapping[str, str]] = None,
    claimed_retry_count: Optional[int] = None,
) -> bool:
    """
    Mark a job completed and its source file published, in one transaction.

    Returns:
        False if the job is no longer held by this attempt (result ignored)
    """
    now = _utcnow()

    async def do_complete() -> bool:
        async with database.transaction():
            updated = await database.fetch_one(
                publish_jobs.update()
                .where(_owned_attempt(job_id, claimed_retry_count))
                .values(status=JobStatus.COMPLETED.value, completed_at=now, error_message=None, updated_at=now)
                .returning(publish_jobs.c.id)
            )
            if updated is None:
                return False
            if file_id is not None:
                await database.execute(
                    auction_files.update()
                    .where(auction_files.c.id == file_id)
                    .where(auction_files.c.variant == FileVariant.SOURCE.value)
                    .values(published_status=PublishedStatus.PUBLISHED.value, updated_at=now)
                )
            return True

    if not await execute_with_retry(do_complete):
        logger.warning(f"Publish job {job_id} is no longer held by this attempt, ignoring its completion")
        return False
    logger.info(f"Publish job {job_id} completed (file={file_id}, variants={dict(variant_urls or {})})")
    return True


async def mark_job_failed(
    job_id: int,
    file_id: Optional[int],
    error_message: str,
    permanent: bool = False,
    claimed_retry_count: Optional[int] = None,
    stale_before: Optional[datetime] = None,
) -> Optional[FailureOutcome]:
    """
    Record a failed attempt, in one transaction.

    The retry count is incremented. While it stays below max_retries the job
    goes back to 'pending' with run_after pushed out by backoff_delay();
    otherwise the job is terminally 'failed'. The source file mirrors the
    outcome ('pending' or 'failed').

    permanent=True skips the remaining retries: the job fails terminally and
    retry_count is pinned to max_retries so the job can never be claimed again.

    Only a job still 'processing' (and, when given, still at claimed_retry_count
    and started before stale_before) is updated; otherwise nothing changes and
    None is returned.

    Raises:
        LookupError: if the job does not exist
    """
    now = _utcnow()
    message = truncate_error(error_message, ERROR_DETAIL_MAX_LENGTH)

    async def do_fail() -> Optional[FailureOutcome]:
        async with database.transaction():
            job = await database.fetch_one(
                sa.select(publish_jobs.c.retry_count, publish_jobs.c.max_retries)
                .where(publish_jobs.c.id == job_id)
                .with_for_update()
            )
            if job is None:
                raise LookupError(f"Publish job {job_id} not found")

            owned = _owned_attempt(job_id, claimed_retry_count)
            if claimed_retry_count is None:
                owned = sa.and_(owned, publish_jobs.c.retry_count == job["retry_count"])
            if stale_before is not None:
                owned = sa.and_(owned, publish_jobs.c.started_at < stale_before)

            max_retries = job["max_retries"]
            new_retry_count = job["retry_count"] + 1
            will_retry = not permanent and new_retry_count < max_retries

            if will_retry:
                run_after = now + backoff_delay(new_retry_count)
                values = {
                    "status": JobStatus.PENDING.value,
                    "retry_count": new_retry_count,
                    "run_after": run_after,
                }
                file_status = PublishedStatus.PENDING.value
            else:
                run_after = None
                values = {
                    "status": JobStatus.FAILED.value,
                    "retry_count": max(new_retry_count, max_retries) if permanent else new_retry_count,
                    "completed_at": now,
                }
                file_status = PublishedStatus.FAILED.value

            updated = await database.fetch_one(
                publish_jobs.update()
                .where(owned)
                .values(error_message=message, updated_at=now, **values)
                .returning(publish_jobs.c.id)
            )
            if updated is None:
                return None
            if file_id is not None:
                await database.execute(
                    auction_files.update()
                    .where(auction_files.c.id == file_id)
                    .where(auction_files.c.variant == FileVariant.SOURCE.value)
                    .values(published_status=file_status, updated_at=now)
                )

            return FailureOutcome(
                will_retry=will_retry,
                retry_count=values["retry_count"],
                max_retries=max_retries,
                run_after=run_after,
            )

    outcome = await execute_with_retry(do_fail)
    if outcome is None:
        logger.warning(f"Publish job {job_id} is no longer held by this attempt, ignoring its failure: {message}")
    elif outcome.will_retry:
        logger.warning(
            f"Publish job {job_id} failed (attempt {outcome.retry_count}/{outcome.max_retries}), "
            f"retrying in {outcome.backoff_seconds}s: {message}"
        )
    else:
        logger.error(f"Publish job {job_id} failed permanently after {outcome.retry_count} attempt(s): {message}")
    return outcome


async def reset_stale_jobs(timeout_seconds: int = STALE_JOB_TIMEOUT) -> int:
    """
    Recover jobs stuck in 'processing' (worker killed mid-job).

    Each stale job is recorded as a failed attempt, so it is retried with
    backoff, or failed terminally once its budget is spent. The transition is
    conditional on the job still being in the attempt that was found stale, so
    concurrent sweeps count one crash once and a job that finished meanwhile
    keeps its result.

    Returns:
        Number of jobs this sweep recovered
    """
    threshold = _utcnow() - timedelta(seconds=timeout_seconds)
    stale = await database.fetch_all(
        sa.select(publish_jobs.c.id, publish_jobs.c.file_id, publish_jobs.c.retry_count)
        .where(publish_jobs.c.status == JobStatus.PROCESSING.value)
        .where(publish_jobs.c.started_at < threshold)
    )
    recovered = 0
    for job in stale:
        outcome = await mark_job_failed(
            job["id"],
            job["file_id"],
            STALE_JOB_ERROR,
            claimed_retry_count=job["retry_count"],
            stale_before=threshold,
        )
        if outcome is not None:
            logger.warning(f"Publish job {job['id']} was processing for over {timeout_seconds}s, recovered")
            recovered += 1
    return recovered


async def enqueue_publish_job(
    file_id: int,
    priority: int = DEFAULT_JOB_PRIORITY,
    max_retries: int = MAX_RETRIES,
    run_after: Optional[datetime] = None,
) -> int:
    """Insert a pending publish job (what the attach endpoint does)."""
    now = _utcnow()
    return await database.execute(
        publish_jobs.insert().values(
            file_id=file_id,
            status=JobStatus.PENDING.value,
            priority=priority,
            retry_count=0,
            max_retries=max_retries,
            run_after=run_after or now,
            created_at=now,
            updated_at=now,
        )
    )


async def list_jobs(status: Optional[str] = None, limit: int = 50) -> List[dict]:
    query = publish_jobs.select().order_by(publish_jobs.c.created_at.desc(), publish_jobs.c.id.desc()).limit(limit)
    if status:
        query = query.where(publish_jobs.c.status == status)
    return [row_to_dict(row) for row in await database.fetch_all(query)]


# =============================================================================
# Files and variants
# =============================================================================


async def get_file_by_id(file_id: Optional[int]) -> Optional[dict]:
    if file_id is None:
        return None
    return row_to_dict(await database.fetch_one(auction_files.select().where(auction_files.c.id == file_id)))


async def create_source_file(
    asset_group_id: str,
    source_key: str,
    mime_type: str,
    original_name: str = "",
    item_id: Optional[str] = None,
    size_bytes: Optional[int] = None,
) -> int:
    """Insert a 'source' file row pointing at the origin server."""
    now = _utcnow()
    return await database.execute(
        auction_files.insert().values(
            item_id=item_id,
            asset_group_id=asset_group_id,
            variant=FileVariant.SOURCE.value,
            source_key=source_key,
            original_name=original_name,
            mime_type=mime_type,
            bytes=size_bytes,
            published_status=PublishedStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
    )


def _insert_for_dialect():
    return postgresql.insert if is_postgresql(database) else sqlite.insert


async def upsert_variant(
    asset_group_id: str,
    variant: str,
    cdn_url: str,
    metadata: Optional[Mapping[str, Any]] = None,
) -> int:
    """
    Insert or update the (asset_group_id, variant) row and mark it published.

    Uniqueness is enforced by the database (INSERT ... ON CONFLICT DO UPDATE),
    so concurrent publishes of the same group never create duplicates.

    Args:
        metadata: optional columns (see VARIANT_METADATA_FIELDS)

    Returns:
        The row id
    """
    metadata = dict(metadata or {})
    unknown = set(metadata) - VARIANT_METADATA_FIELDS
    if unknown:
        raise ValueError(f"Unknown variant metadata field(s): {', '.join(sorted(unknown))}")

    variant_value = FileVariant(variant).value
    now = _utcnow()

    values: Dict[str, Any] = {field: None for field in _VARIANT_OVERWRITE_FIELDS}
    values.update(metadata)
    values.setdefault("original_name", "")
    values.update(
        asset_group_id=asset_group_id,
        variant=variant_value,
        cdn_url=cdn_url,
        published_status=PublishedStatus.PUBLISHED.value,
        created_at=now,
        updated_at=now,
    )

    insert = _insert_for_dialect()(auction_files).values(**values)
    update_fields = set(_VARIANT_OVERWRITE_FIELDS) | set(metadata) | {"cdn_url", "published_status", "updated_at"}
    upsert = insert.on_conflict_do_update(
        index_elements=[auction_files.c.asset_group_id, auction_files.c.variant],
        set_={field: insert.excluded[field] for field in sorted(update_fields)},
    ).returning(auction_files.c.id)

    row = await execute_with_retry(database.fetch_one, upsert)
    logger.debug(f"Upserted {variant_value} variant for asset group {asset_group_id} -> {cdn_url}")
    return row["id"]


async def get_publish_status(file_ids: Iterable[int]) -> List[dict]:
    """
    Publish status for each file, with its most recent job attached.

    Files that do not exist are omitted.
    """
    ids = list(dict.fromkeys(file_ids))
    if not ids:
        return []

    files = await database.fetch_all(
        auction_files.select().where(auction_files.c.id.in_(ids)).order_by(auction_files.c.id)
    )
    jobs = await database.fetch_all(
        publish_jobs.select()
        .where(publish_jobs.c.file_id.in_(ids))
        .order_by(publish_jobs.c.created_at.desc(), publish_jobs.c.id.desc())
    )

    latest_job: Dict[int, dict] = {}
    for job in jobs:
        latest_job.setdefault(job["file_id"], row_to_dict(job))

    statuses = []
    for file in files:
        entry = row_to_dict(file)
        job = latest_job.get(entry["id"])
        entry["job"] = (
            {
                "id": job["id"],
                "status": job["status"],
                "retry_count": job["retry_count"],
                "max_retries": job["max_retries"],
                "error_message": job["error_message"],
                "run_after": job["run_after"],
                "started_at": job["started_at"],
                "completed_at": job["completed_at"],
            }
            if job
            else None
        )
        statuses.append(entry)
    return statuses


# =============================================================================
# Cleanup
# =============================================================================


async def get_files_for_cleanup(
    limit: int = CLEANUP_BATCH_SIZE,
    retention_days: int = CLEANUP_RETENTION_DAYS,
) -> List[dict]:
    """Detached rows past the retention window, oldest first, at most `limit`."""
    cutoff = _utcnow() - timedelta(days=retention_days)
    rows = await database.fetch_all(
        auction_files.select()
        .where(auction_files.c.detached_at.isnot(None))
        .where(auction_files.c.detached_at < cutoff)
        .order_by(auction_files.c.detached_at.asc(), auction_files.c.id.asc())
        .limit(limit)
    )
    return [row_to_dict(row) for row in rows]


async def has_active_references(asset_group_id: str) -> bool:
    """True if any row of the asset group is still attached."""
    count = await database.fetch_val(
        sa.select(sa.func.count())
        .select_from(auction_files)
        .where(auction_files.c.asset_group_id == asset_group_id)
        .where(auction_files.c.detached_at.is_(None))
    )
    return (count or 0) > 0


async def delete_files(file_ids: Iterable[int]) -> int:
    """Hard-delete file rows. Only the cleanup sweep calls this, after storage is gone."""
    ids = list(file_ids)
    if not ids:
        return 0
    await execute_with_retry(database.execute, auction_files.delete().where(auction_files.c.id.in_(ids)))
    logger.info(f"Deleted {len(ids)} file row(s) from the ledger")
    return len(ids)
