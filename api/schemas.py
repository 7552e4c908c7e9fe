from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

# Maximum number of file ids accepted by the status endpoint
MAX_STATUS_FILE_IDS = 100


class UploadedFileResponse(BaseModel):
    """One published variant created by a direct upload."""

    variant: str
    storage_key: str
    cdn_url: str
    id: int
    width: int
    height: int


class UploadResponse(BaseModel):
    success: bool = True
    asset_group_id: str
    files: List[UploadedFileResponse]


class HealthResponse(BaseModel):
    status: str
    uptime_seconds: float
    active_jobs: int = 0
    jobs_processed: int = 0
    last_cleanup: Optional[datetime] = None


class PublishJobInfo(BaseModel):
    id: int
    status: str
    retry_count: int
    max_retries: int
    error_message: Optional[str] = None
    run_after: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class FileStatusResponse(BaseModel):
    id: int
    item_id: Optional[str] = None
    asset_group_id: str
    variant: str
    published_status: str
    cdn_url: Optional[str] = None
    original_name: str = ""
    detached_at: Optional[datetime] = None
    job: Optional[PublishJobInfo] = None

    @field_validator("original_name", mode="before")
    @classmethod
    def default_original_name(cls, v):
        return v if v is not None else ""


class FileStatusListResponse(BaseModel):
    files: List[FileStatusResponse] = Field(default_factory=list)
