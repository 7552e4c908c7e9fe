"""
Error taxonomy for the publishing pipeline, plus helpers for storing and
exposing error messages.

Transient infrastructure errors and precondition errors both end up in
publish_jobs.error_message; the distinction decides whether a failed job is
worth another attempt.
"""
import logging
import re
from typing import Optional

from config import ERROR_DETAIL_MAX_LENGTH

logger = logging.getLogger(__name__)


class PublisherError(Exception):
    """Base class for publishing pipeline errors."""

    pass


class TransientInfraError(PublisherError):
    """Network, storage or database hiccup. Retried through the job's backoff schedule."""

    pass


class OriginFetchError(TransientInfraError):
    """Source bytes could not be downloaded from the origin server."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class StorageError(TransientInfraError):
    """An object store PUT/DELETE failed."""

    pass


class PreconditionError(PublisherError):
    """The job can never succeed as-is (bad row, unsupported media)."""

    pass


class MissingSourceError(PreconditionError):
    """The job's file row is gone or has no source_key."""

    pass


class UnsupportedMediaError(PreconditionError):
    """MIME type is neither image/* nor video/*."""

    pass


class MediaDecodeError(PreconditionError):
    """Source bytes claim to be an image but cannot be decoded."""

    pass


class CleanupError(PublisherError):
    """Storage deletion failed during a cleanup sweep; the row is kept for the next sweep."""

    pass


def truncate_string(text: Optional[str], max_length: int) -> Optional[str]:
    """Truncate text to max_length, ending with '...' when shortened."""
    if text is None:
        return None
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def truncate_error(error: Optional[str], max_length: int = ERROR_DETAIL_MAX_LENGTH) -> Optional[str]:
    """Truncate an error message for storage in the ledger."""
    return truncate_string(error, max_length)


def describe_exception(exc: BaseException) -> str:
    """Error message recorded for a failed job (falls back to the exception type)."""
    message = str(exc).strip()
    return message or exc.__class__.__name__


# Patterns that indicate internal details
INTERNAL_PATTERNS = [
    r"/home/\w+/",
    r"/tmp/\w+",
    r"/var/\w+/",
    r'File "[^"]+\.py"',
    r"line \d+",
    r"UNIQUE constraint failed",
    r"sqlite3?\.",
    r"asyncpg\.",
    r"botocore\.",
]

ERROR_MESSAGES = {
    "decode": "Could not read image. The file may be corrupted or in an unsupported format.",
    "unsupported": "Unsupported file type. Upload an image.",
    "storage": "Could not store the processed image. Please try again.",
    "database": "A database error occurred. Please try again.",
    "general": "An error occurred while processing your upload. Please try again.",
}


def sanitize_error_message(error: Optional[str], log_original: bool = True, context: str = "") -> Optional[str]:
    """
    Sanitize an error message for safe display to API clients.

    The original message is logged so operators still see the details.
    """
    if error is None:
        return None

    if log_original and error:
        suffix = f" ({context})" if context else ""
        logger.warning(f"Original error{suffix}: {error}")

    error_lower = error.lower()

    if "cannot identify image" in error_lower or "decode" in error_lower:
        return ERROR_MESSAGES["decode"]
    if "unsupported" in error_lower:
        return ERROR_MESSAGES["unsupported"]
    if "bucket" in error_lower or "s3" in error_lower or "storage" in error_lower:
        return ERROR_MESSAGES["storage"]
    if "sqlite" in error_lower or "database" in error_lower or "constraint" in error_lower:
        return ERROR_MESSAGES["database"]

    for pattern in INTERNAL_PATTERNS:
        if re.search(pattern, error, re.IGNORECASE):
            return ERROR_MESSAGES["general"]

    if len(error) < 100 and "/" not in error and "\\" not in error:
        return error

    return ERROR_MESSAGES["general"]
