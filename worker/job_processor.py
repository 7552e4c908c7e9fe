"""
Publish job processing: claim one job, publish its source file, record the result.

State machine for a claimed job:
    processing -> completed                 (variants uploaded and recorded)
    processing -> pending (run_after later) (failed, retries left)
    processing -> failed                    (retries exhausted, or a precondition failure)

A result reported after the stale-job sweep recovered the claim is dropped.

No ledger transaction is held while fetching, transcoding or uploading.
"""

import logging
from typing import Dict

from api import ledger
from api.enums import FileVariant, MediaKind
from api.errors import MissingSourceError, PreconditionError, describe_exception
from config import FAIL_FAST_PRECONDITIONS
from worker.media import WEBP_CONTENT_TYPE, classify_mime, transcode_image
from worker.origin_client import OriginClient
from worker.storage import StorageClient

logger = logging.getLogger(__name__)


class JobProcessor:
    """Runs one publish job per process_job() call."""

    def __init__(
        self,
        origin: OriginClient,
        storage: StorageClient,
        fail_fast_preconditions: bool = FAIL_FAST_PRECONDITIONS,
    ):
        self.origin = origin
        self.storage = storage
        self.fail_fast_preconditions = fail_fast_preconditions

    async def process_job(self) -> bool:
        """
        Claim and process the next eligible job.

        Returns:
            True if a job was claimed (whatever its outcome), False if the queue was empty
        """
        job = await ledger.claim_next_job()
        if job is None:
            return False

        job_id = job["id"]
        file_id = job["file_id"]

        try:
            variant_urls = await self.publish(job)
            await ledger.mark_job_completed(job_id, file_id, variant_urls, claimed_retry_count=job["retry_count"])
        except Exception as e:
            await self._record_failure(job, e)

        return True

    async def publish(self, job: dict) -> Dict[str, str]:
        """
        Publish the job's source file and upsert its variant rows.

        Returns:
            Variant name -> CDN URL
        """
        file = await ledger.get_file_by_id(job["file_id"])
        if file is None:
            raise MissingSourceError(f"File {job['file_id']} not found for publish job {job['id']}")
        if not file["source_key"]:
            raise MissingSourceError(f"File {file['id']} has no source_key")

        kind = classify_mime(file["mime_type"])
        asset_group_id = file["asset_group_id"]

        logger.info(f"Publishing file {file['id']} ({kind.value}, group={asset_group_id}) for job {job['id']}")
        data = await self.origin.fetch_source(file["source_key"])

        if kind == MediaKind.IMAGE:
            return await self._publish_image(file, data)
        return await self._publish_video(file, data)

    async def _publish_image(self, file: dict, data: bytes) -> Dict[str, str]:
        asset_group_id = file["asset_group_id"]
        variants = await transcode_image(data)
        uploaded = await self.storage.upload_variants(asset_group_id, variants.thumb, variants.display)

        await ledger.upsert_variant(
            asset_group_id,
            FileVariant.THUMB.value,
            uploaded.thumb_url,
            {
                "storage_key": uploaded.thumb_key,
                "width": variants.thumb.width,
                "height": variants.thumb.height,
                "mime_type": WEBP_CONTENT_TYPE,
                "bytes": len(variants.thumb.data),
                "item_id": file["item_id"],
            },
        )
        await ledger.upsert_variant(
            asset_group_id,
            FileVariant.DISPLAY.value,
            uploaded.display_url,
            {
                "storage_key": uploaded.display_key,
                "width": variants.display.width,
                "height": variants.display.height,
                "mime_type": WEBP_CONTENT_TYPE,
                "bytes": len(variants.display.data),
                "item_id": file["item_id"],
            },
        )
        return {FileVariant.THUMB.value: uploaded.thumb_url, FileVariant.DISPLAY.value: uploaded.display_url}

    async def _publish_video(self, file: dict, data: bytes) -> Dict[str, str]:
        asset_group_id = file["asset_group_id"]
        uploaded = await self.storage.upload_video(asset_group_id, data, file["mime_type"])

        await ledger.upsert_variant(
            asset_group_id,
            FileVariant.VIDEO.value,
            uploaded.video_url,
            {
                "storage_key": uploaded.video_key,
                "mime_type": file["mime_type"],
                "bytes": len(data),
                "item_id": file["item_id"],
            },
        )
        return {FileVariant.VIDEO.value: uploaded.video_url}

    async def _record_failure(self, job: dict, error: Exception) -> None:
        job_id = job["id"]
        message = describe_exception(error)
        permanent = self.fail_fast_preconditions and isinstance(error, PreconditionError)

        if isinstance(error, PreconditionError):
            logger.error(f"Publish job {job_id} cannot succeed: {message}")
        else:
            logger.exception(f"Publish job {job_id} failed: {message}")

        try:
            await ledger.mark_job_failed(
                job_id, job["file_id"], message, permanent=permanent, claimed_retry_count=job["retry_count"]
            )
        except Exception:
            # The job stays 'processing' until the stale-job sweep recovers it
            logger.exception(f"Could not record failure for publish job {job_id}")
