"""
S3-compatible object storage for published variants.

Keys are laid out per asset group:
    assets/{asset_group_id}/thumb.webp
    assets/{asset_group_id}/display.webp
    assets/{asset_group_id}/video{ext}

Every object is written with a one-year immutable Cache-Control header and
served through the CDN at {cdn_base_url}/{key}. boto3 is blocking, so every
call runs in a worker thread.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from api.enums import PUBLISHED_VARIANTS, FileVariant
from api.errors import StorageError
from config import (
    ASSET_KEY_PREFIX,
    CACHE_CONTROL,
    CDN_BASE_URL,
    S3_APP_KEY,
    S3_BUCKET,
    S3_ENDPOINT,
    S3_KEY_ID,
    S3_REGION,
)
from worker.media import VIDEO_EXTENSIONS, ImageVariant, video_extension

logger = logging.getLogger(__name__)

IMAGE_EXTENSION = ".webp"
DEFAULT_GROUP_VARIANTS = tuple(variant.value for variant in PUBLISHED_VARIANTS)


@dataclass(frozen=True)
class UploadedVariants:
    thumb_url: str
    thumb_key: str
    display_url: str
    display_key: str


@dataclass(frozen=True)
class UploadedVideo:
    video_url: str
    video_key: str


def build_s3_client():
    """Create the boto3 S3 client from PUBLISHER_S3_* settings."""
    return boto3.client(
        "s3",
        endpoint_url=S3_ENDPOINT or None,
        region_name=S3_REGION or None,
        aws_access_key_id=S3_KEY_ID,
        aws_secret_access_key=S3_APP_KEY,
        config=Config(signature_version="s3v4", retries={"max_attempts": 3, "mode": "standard"}),
    )


class StorageClient:
    """Uploads and deletes published objects. Stateless apart from the shared boto3 client."""

    def __init__(
        self,
        bucket: str = S3_BUCKET,
        cdn_base_url: str = CDN_BASE_URL,
        client: Optional[Any] = None,
        prefix: str = ASSET_KEY_PREFIX,
    ):
        self.bucket = bucket
        self.cdn_base_url = cdn_base_url.rstrip("/")
        self.prefix = prefix.strip("/")
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = build_s3_client()
        return self._client

    # -------------------------------------------------------------------------
    # Key and URL helpers
    # -------------------------------------------------------------------------

    def key_prefix(self, asset_group_id: str) -> str:
        return f"{self.prefix}/{asset_group_id}"

    def variant_key(self, asset_group_id: str, variant: str, extension: str = IMAGE_EXTENSION) -> str:
        return f"{self.key_prefix(asset_group_id)}/{FileVariant(variant).value}{extension}"

    def cdn_url(self, key: str) -> str:
        return f"{self.cdn_base_url}/{key}"

    # -------------------------------------------------------------------------
    # Uploads
    # -------------------------------------------------------------------------

    async def upload_file(self, key: str, data: bytes, content_type: str) -> str:
        """
        PUT one object with the immutable Cache-Control header.

        Returns:
            The CDN URL of the object

        Raises:
            StorageError: on any S3 failure
        """
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl=CACHE_CONTROL,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to upload {key}: {e}") from e

        logger.debug(f"Uploaded {key} ({len(data)} bytes, {content_type})")
        return self.cdn_url(key)

    async def upload_variants(
        self,
        asset_group_id: str,
        thumb: ImageVariant,
        display: ImageVariant,
    ) -> UploadedVariants:
        """Upload thumb and display in parallel."""
        thumb_key = self.variant_key(asset_group_id, FileVariant.THUMB.value)
        display_key = self.variant_key(asset_group_id, FileVariant.DISPLAY.value)

        thumb_url, display_url = await asyncio.gather(
            self.upload_file(thumb_key, thumb.data, thumb.content_type),
            self.upload_file(display_key, display.data, display.content_type),
        )
        return UploadedVariants(
            thumb_url=thumb_url,
            thumb_key=thumb_key,
            display_url=display_url,
            display_key=display_key,
        )

    async def upload_video(self, asset_group_id: str, data: bytes, mime_type: str) -> UploadedVideo:
        """Upload a video unchanged as video{ext}."""
        key = self.variant_key(asset_group_id, FileVariant.VIDEO.value, video_extension(mime_type))
        url = await self.upload_file(key, data, mime_type)
        return UploadedVideo(video_url=url, video_key=key)

    # -------------------------------------------------------------------------
    # Deletes
    # -------------------------------------------------------------------------

    async def delete_file(self, key: str) -> None:
        """Delete one object. Deleting a missing key is not an error."""
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to delete {key}: {e}") from e
        logger.debug(f"Deleted {key}")

    def group_keys(self, asset_group_id: str, variants: Iterable[str] = DEFAULT_GROUP_VARIANTS) -> List[str]:
        """All keys an asset group may occupy (a video may have any known extension)."""
        keys = []
        for variant in variants:
            if FileVariant(variant) == FileVariant.VIDEO:
                for extension in dict.fromkeys(VIDEO_EXTENSIONS.values()):
                    keys.append(self.variant_key(asset_group_id, variant, extension))
            else:
                keys.append(self.variant_key(asset_group_id, variant))
        return keys

    async def delete_asset_group(
        self,
        asset_group_id: str,
        variants: Iterable[str] = DEFAULT_GROUP_VARIANTS,
    ) -> List[str]:
        """
        Delete every object of an asset group in one batch request.

        Keys that do not exist are ignored by S3. Per-key errors reported in
        the batch response raise StorageError.

        Returns:
            The keys that were requested for deletion
        """
        keys = self.group_keys(asset_group_id, variants)
        try:
            response = await asyncio.to_thread(
                self.client.delete_objects,
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": key} for key in keys], "Quiet": True},
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to delete asset group {asset_group_id}: {e}") from e

        errors = (response or {}).get("Errors") or []
        if errors:
            details = ", ".join(f"{err.get('Key')}: {err.get('Code')}" for err in errors)
            raise StorageError(f"Failed to delete {len(errors)} object(s) of asset group {asset_group_id}: {details}")

        logger.info(f"Deleted storage for asset group {asset_group_id} ({len(keys)} keys requested)")
        return keys
