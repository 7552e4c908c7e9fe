"""Shared helpers for ledger rows and timestamps."""

from datetime import datetime, timezone
from typing import Any, Mapping, Optional

# Timestamp columns normalized to aware UTC when rows are converted to dicts
_DATETIME_COLUMNS = ("run_after", "started_at", "completed_at", "created_at", "updated_at", "detached_at")


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure datetime is timezone-aware UTC.

    SQLite doesn't store timezone info, so datetimes retrieved from the database
    may be timezone-naive even though they were stored as UTC.

    Returns:
        - None if input is None
        - UTC datetime if input was timezone-aware (converted to UTC if needed)
        - UTC datetime if input was timezone-naive (assumed to be UTC)
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def row_to_dict(row: Optional[Mapping[str, Any]]) -> Optional[dict]:
    """Convert a database record to a plain dict with UTC-aware timestamps."""
    if row is None:
        return None
    data = dict(row._mapping) if hasattr(row, "_mapping") else dict(row)
    for column in _DATETIME_COLUMNS:
        if isinstance(data.get(column), datetime):
            data[column] = ensure_utc(data[column])
    return data
