"""
HTTP surface of the publishing worker.

- GET  /health                   liveness plus worker counters
- POST /api/upload-and-process   direct image upload, transcoded and published inline
- GET  /api/files/status         publish status of files with their latest job

The worker serves this app from its own event loop (see worker.publisher);
it can also run standalone with `uvicorn api.upload_api:app`.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, List, Optional

from databases import Database
from fastapi import FastAPI, File, Form, HTTPException, Query, Request, UploadFile

from api import ledger
from api.enums import FileVariant
from api.errors import PreconditionError, describe_exception, sanitize_error_message
from api.schemas import (
    MAX_STATUS_FILE_IDS,
    FileStatusListResponse,
    HealthResponse,
    UploadedFileResponse,
    UploadResponse,
)
from config import MAX_UPLOAD_SIZE
from worker.media import WEBP_CONTENT_TYPE, transcode_image
from worker.storage import StorageClient

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_SIZE = 1024 * 1024  # 1 MB


def _too_large(max_size: int) -> HTTPException:
    max_size_mb = max_size / (1024 * 1024)
    return HTTPException(status_code=413, detail=f"File too large. Maximum upload size is {max_size_mb:.0f} MB")


def validate_content_length(request: Request, max_size: int = MAX_UPLOAD_SIZE) -> None:
    """
    Reject oversized uploads from the Content-Length header before reading the body.

    Raises:
        HTTPException: 413 if Content-Length exceeds max_size
    """
    content_length = request.headers.get("content-length")
    if content_length:
        try:
            too_large = int(content_length) > max_size
        except ValueError:
            return  # Invalid header, the streaming check still applies
        if too_large:
            raise _too_large(max_size)


async def read_upload_with_size_limit(file: UploadFile, max_size: int = MAX_UPLOAD_SIZE) -> bytes:
    """
    Read an upload into memory, enforcing max_size.

    Raises:
        HTTPException: 413 if the file exceeds max_size
    """
    buffer = bytearray()
    while chunk := await file.read(UPLOAD_CHUNK_SIZE):
        buffer.extend(chunk)
        if len(buffer) > max_size:
            raise _too_large(max_size)
    return bytes(buffer)


def parse_file_ids(raw: str) -> List[int]:
    """Parse a comma-separated list of file ids."""
    try:
        ids = [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise HTTPException(status_code=400, detail="file_ids must be a comma-separated list of integers")
    if not ids:
        raise HTTPException(status_code=400, detail="file_ids is required")
    if len(ids) > MAX_STATUS_FILE_IDS:
        raise HTTPException(status_code=400, detail=f"At most {MAX_STATUS_FILE_IDS} file ids per request")
    return ids


def create_app(
    storage: Optional[StorageClient] = None,
    state: Optional[Any] = None,
    db: Optional[Database] = None,
    max_upload_size: int = MAX_UPLOAD_SIZE,
) -> FastAPI:
    """
    Build the HTTP app.

    Args:
        storage: Shared storage client (a new one is created if omitted)
        state: Worker state exposing active_jobs/jobs_processed/last_cleanup, if any
        db: Database the app connects on startup; None when the caller owns the connection
        max_upload_size: Upload limit in bytes
    """
    storage = storage or StorageClient()
    started_at = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application startup and shutdown."""
        if db is not None:
            await db.connect()
        yield
        if db is not None:
            await db.disconnect()

    app = FastAPI(title="Media Publisher", description="Auction media publishing worker", lifespan=lifespan)

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Liveness check with worker counters."""
        return HealthResponse(
            status="ok",
            uptime_seconds=round(time.monotonic() - started_at, 3),
            active_jobs=getattr(state, "active_jobs", 0),
            jobs_processed=getattr(state, "jobs_processed", 0),
            last_cleanup=getattr(state, "last_cleanup", None),
        )

    @app.post("/api/upload-and-process", response_model=UploadResponse)
    async def upload_and_process(
        request: Request,
        file: Optional[UploadFile] = File(None),
        item_id: Optional[str] = Form(None),
    ):
        """Transcode an uploaded image and publish thumb and display variants under a new asset group."""
        validate_content_length(request, max_upload_size)

        if file is None or not file.filename:
            raise HTTPException(status_code=400, detail="No file provided")
        if not item_id or not item_id.strip():
            raise HTTPException(status_code=400, detail="item_id is required")
        item_id = item_id.strip()

        content_type = (file.content_type or "").split(";", 1)[0].strip().lower()
        if not content_type.startswith("image/"):
            raise HTTPException(
                status_code=415,
                detail=f"Unsupported file type '{content_type or 'unknown'}'. Upload an image.",
            )

        data = await read_upload_with_size_limit(file, max_upload_size)
        if not data:
            raise HTTPException(status_code=400, detail="No file provided")

        asset_group_id = str(uuid.uuid4())
        logger.info(f"Processing direct upload '{file.filename}' ({len(data)} bytes) for item {item_id}")

        try:
            variants = await transcode_image(data)
            uploaded = await storage.upload_variants(asset_group_id, variants.thumb, variants.display)

            files = []
            for variant, rendered, key, url in (
                (FileVariant.THUMB, variants.thumb, uploaded.thumb_key, uploaded.thumb_url),
                (FileVariant.DISPLAY, variants.display, uploaded.display_key, uploaded.display_url),
            ):
                variant_id = await ledger.upsert_variant(
                    asset_group_id,
                    variant.value,
                    url,
                    {
                        "storage_key": key,
                        "width": rendered.width,
                        "height": rendered.height,
                        "mime_type": WEBP_CONTENT_TYPE,
                        "bytes": len(rendered.data),
                        "item_id": item_id,
                        "original_name": file.filename[:255],
                    },
                )
                files.append(
                    UploadedFileResponse(
                        variant=variant.value,
                        storage_key=key,
                        cdn_url=url,
                        id=variant_id,
                        width=rendered.width,
                        height=rendered.height,
                    )
                )
        except PreconditionError as e:
            detail = sanitize_error_message(describe_exception(e), context=f"upload for item {item_id}")
            raise HTTPException(status_code=500, detail=detail)
        except Exception as e:
            logger.exception(f"Direct upload for item {item_id} failed")
            detail = sanitize_error_message(describe_exception(e), log_original=False)
            raise HTTPException(status_code=500, detail=detail)

        logger.info(f"Direct upload for item {item_id} published as asset group {asset_group_id}")
        return UploadResponse(asset_group_id=asset_group_id, files=files)

    @app.get("/api/files/status", response_model=FileStatusListResponse)
    async def files_status(file_ids: str = Query(..., description="Comma-separated file ids")):
        """Publish status per file with its latest job."""
        ids = parse_file_ids(file_ids)
        return FileStatusListResponse(files=await ledger.get_publish_status(ids))

    return app


app = create_app(db=ledger.database)
