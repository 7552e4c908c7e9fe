"""
Image and video handling for published variants.

Images are decoded once, EXIF-oriented, and rendered into two WebP variants:
- thumb: fits inside 400x400
- display: fits inside 1600x1600

Neither variant is ever enlarged; aspect ratio is preserved. Videos are not
transcoded, only classified and given a file extension for their storage key.
"""

import asyncio
import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from api.enums import MediaKind
from api.errors import MediaDecodeError, UnsupportedMediaError
from config import DISPLAY_MAX_EDGE, DISPLAY_QUALITY, THUMB_MAX_EDGE, THUMB_QUALITY

logger = logging.getLogger(__name__)

WEBP_CONTENT_TYPE = "image/webp"

VIDEO_EXTENSIONS = {
    "video/mp4": ".mp4",
    "video/quicktime": ".mov",
    "video/webm": ".webm",
    "video/x-msvideo": ".avi",
    "video/x-matroska": ".mkv",
}
DEFAULT_VIDEO_EXTENSION = ".mp4"


@dataclass(frozen=True)
class ImageVariant:
    data: bytes
    width: int
    height: int
    content_type: str = WEBP_CONTENT_TYPE


@dataclass(frozen=True)
class ImageVariants:
    thumb: ImageVariant
    display: ImageVariant


def _normalize_mime(mime_type: str) -> str:
    return (mime_type or "").split(";", 1)[0].strip().lower()


def classify_mime(mime_type: str) -> MediaKind:
    """
    Decide how a source file is published.

    Raises:
        UnsupportedMediaError: if the type is neither image/* nor video/*
    """
    mime = _normalize_mime(mime_type)
    if mime.startswith("image/"):
        return MediaKind.IMAGE
    if mime.startswith("video/"):
        return MediaKind.VIDEO
    raise UnsupportedMediaError(f"Unsupported file type: {mime_type or 'unknown'}")


def video_extension(mime_type: str) -> str:
    """File extension for a video's storage key (.mp4 for unknown video types)."""
    return VIDEO_EXTENSIONS.get(_normalize_mime(mime_type), DEFAULT_VIDEO_EXTENSION)


def _open_image(data: bytes) -> Image.Image:
    try:
        img = Image.open(BytesIO(data))
        img.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise MediaDecodeError(f"Could not decode image: {e}") from e

    # Apply EXIF orientation before any resizing
    img = ImageOps.exif_transpose(img)

    # WebP only takes RGB/RGBA
    has_alpha = img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info)
    target_mode = "RGBA" if has_alpha else "RGB"
    if img.mode != target_mode:
        img = img.convert(target_mode)
    return img


def _render(img: Image.Image, max_edge: int, quality: int) -> ImageVariant:
    out = img.copy()
    # thumbnail() only ever shrinks and keeps the aspect ratio
    out.thumbnail((max_edge, max_edge), Image.Resampling.LANCZOS)
    buffer = BytesIO()
    out.save(buffer, format="WEBP", quality=quality, method=4)
    width, height = out.size
    return ImageVariant(data=buffer.getvalue(), width=width, height=height)


def render_image_variants(data: bytes) -> ImageVariants:
    """Blocking transcode of source bytes into thumb and display variants."""
    img = _open_image(data)
    source_size: Tuple[int, int] = img.size
    try:
        thumb = _render(img, THUMB_MAX_EDGE, THUMB_QUALITY)
        display = _render(img, DISPLAY_MAX_EDGE, DISPLAY_QUALITY)
    finally:
        img.close()

    logger.debug(
        f"Transcoded {source_size[0]}x{source_size[1]} image -> "
        f"thumb {thumb.width}x{thumb.height} ({len(thumb.data)} bytes), "
        f"display {display.width}x{display.height} ({len(display.data)} bytes)"
    )
    return ImageVariants(thumb=thumb, display=display)


async def transcode_image(data: bytes) -> ImageVariants:
    """
    Transcode an image into its published variants.

    Runs in a worker thread so other job slots keep running.

    Raises:
        MediaDecodeError: if the bytes are not a decodable image
    """
    return await asyncio.to_thread(render_image_variants, data)
