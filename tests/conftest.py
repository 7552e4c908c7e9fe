"""
Pytest fixtures for media publisher tests.
Provides a fresh ledger database per test, seeding helpers and sample images.

Uses a file-backed SQLite database by default. Set PUBLISHER_TEST_DATABASE_URL
to a PostgreSQL URL to run the same tests against PostgreSQL.
"""

import os
from datetime import datetime, timezone
from typing import AsyncGenerator, Optional

import pytest
import sqlalchemy as sa
from databases import Database

from api import ledger
from api.database import auction_files, create_database, metadata, publish_jobs
from fixtures.sample_images import make_image_bytes

TEST_DATABASE_URL = os.environ.get("PUBLISHER_TEST_DATABASE_URL")


def _create_tables(db_url: str) -> None:
    """Create all ledger tables (dropping leftovers on a shared PostgreSQL database)."""
    engine = sa.create_engine(db_url)
    metadata.drop_all(engine)
    metadata.create_all(engine)
    engine.dispose()


def _drop_tables(db_url: str) -> None:
    engine = sa.create_engine(db_url)
    metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_db_url(tmp_path) -> str:
    """Create the ledger schema and return its URL. Cleans up after the test."""
    db_url = TEST_DATABASE_URL or f"sqlite:///{tmp_path / 'publisher_test.db'}"
    _create_tables(db_url)
    yield db_url
    _drop_tables(db_url)


@pytest.fixture(scope="function")
async def test_database(test_db_url: str, monkeypatch) -> AsyncGenerator[Database, None]:
    """Connect a fresh database and install it as the ledger's database."""
    database = create_database(test_db_url)
    await database.connect()
    monkeypatch.setattr(ledger, "database", database)

    yield database

    await database.disconnect()


@pytest.fixture(scope="function")
def make_file(test_database: Database):
    """Factory inserting an auction_files row. Returns the row id."""

    async def _make_file(
        asset_group_id: str = "group-1",
        variant: str = "source",
        source_key: Optional[str] = "uploads/photo.jpg",
        mime_type: Optional[str] = "image/jpeg",
        item_id: Optional[str] = "item-1",
        published_status: str = "pending",
        detached_at: Optional[datetime] = None,
    ) -> int:
        now = datetime.now(timezone.utc)
        return await test_database.execute(
            auction_files.insert().values(
                item_id=item_id,
                asset_group_id=asset_group_id,
                variant=variant,
                source_key=source_key,
                original_name="photo.jpg",
                mime_type=mime_type,
                published_status=published_status,
                detached_at=detached_at,
                created_at=now,
                updated_at=now,
            )
        )

    return _make_file


@pytest.fixture(scope="function")
def make_job(test_database: Database):
    """Factory inserting a publish_jobs row. Returns the row id."""

    async def _make_job(
        file_id: Optional[int],
        priority: int = 5,
        status: str = "pending",
        retry_count: int = 0,
        max_retries: int = 5,
        run_after: Optional[datetime] = None,
        started_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
    ) -> int:
        now = datetime.now(timezone.utc)
        return await test_database.execute(
            publish_jobs.insert().values(
                file_id=file_id,
                status=status,
                priority=priority,
                retry_count=retry_count,
                max_retries=max_retries,
                run_after=run_after or now,
                started_at=started_at,
                created_at=created_at or now,
                updated_at=now,
            )
        )

    return _make_job


@pytest.fixture
def large_jpeg() -> bytes:
    """A 4000x3000 JPEG."""
    return make_image_bytes(4000, 3000)


@pytest.fixture
def small_png() -> bytes:
    """A 200x100 PNG (smaller than both variant bounds)."""
    return make_image_bytes(200, 100, fmt="PNG")
