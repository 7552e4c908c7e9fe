"""
Centralized enums for status values used throughout the application.
Using str-based enums for database compatibility.
"""

from enum import Enum


class JobStatus(str, Enum):
    """Status values for publish jobs."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PublishedStatus(str, Enum):
    """Publish state of an auction file row."""

    PENDING = "pending"
    PROCESSING = "processing"
    PUBLISHED = "published"
    FAILED = "failed"
    # Written only by the external detach endpoint
    DELETED = "deleted"


class FileVariant(str, Enum):
    """Renditions of one uploaded asset."""

    SOURCE = "source"
    THUMB = "thumb"
    DISPLAY = "display"
    VIDEO = "video"


class MediaKind(str, Enum):
    """Media classes the worker knows how to publish."""

    IMAGE = "image"
    VIDEO = "video"


# Variants stored in the destination bucket (the source lives on the origin server)
PUBLISHED_VARIANTS = (FileVariant.THUMB, FileVariant.DISPLAY, FileVariant.VIDEO)
