"""
Cleanup sweep for detached assets.

Rows detached longer than the retention window have their storage objects
deleted first and are hard-deleted from the ledger only after that succeeds.
A storage failure leaves the row for the next sweep; a ledger failure after
a successful storage delete leaves an orphaned row, which is accepted.
"""

import logging

from api import ledger
from api.errors import CleanupError, describe_exception
from config import CLEANUP_BATCH_SIZE
from worker.storage import StorageClient

logger = logging.getLogger(__name__)


class CleanupProcessor:
    def __init__(self, storage: StorageClient, batch_size: int = CLEANUP_BATCH_SIZE):
        self.storage = storage
        self.batch_size = batch_size

    async def process_cleanup(self) -> int:
        """
        Run one sweep over a bounded batch of detached rows.

        Returns:
            Number of rows fully cleaned (storage gone and row deleted)
        """
        candidates = await ledger.get_files_for_cleanup(limit=self.batch_size)
        if not candidates:
            logger.info("Cleanup: no detached files past retention")
            return 0

        logger.info(f"Cleanup: {len(candidates)} detached file(s) past retention")
        cleaned = 0
        failed = 0

        for file in candidates:
            try:
                await self._clean_file(file)
                cleaned += 1
            except Exception as e:
                failed += 1
                logger.error(f"Cleanup of file {file['id']} (group={file['asset_group_id']}) failed: {e}")

        logger.info(f"Cleanup complete: {cleaned} cleaned, {failed} failed")
        return cleaned

    async def _clean_file(self, file: dict) -> None:
        asset_group_id = file["asset_group_id"]

        if await ledger.has_active_references(asset_group_id):
            # Objects are shared by the group and still in use; drop only this row
            logger.info(f"Asset group {asset_group_id} still has attached files, keeping its storage")
        else:
            try:
                await self.storage.delete_asset_group(asset_group_id)
            except Exception as e:
                raise CleanupError(f"Storage delete failed, row kept for next sweep: {describe_exception(e)}") from e

        await ledger.delete_files([file["id"]])
