"""Tests for database retry functionality."""

import sqlite3
from unittest.mock import AsyncMock, patch

import pytest

from api.db_retry import (
    DatabaseRetryableError,
    execute_with_retry,
    is_retryable_database_error,
)
from api.errors import TransientInfraError


class FakeAsyncpgError(Exception):
    def __init__(self, message, sqlstate):
        super().__init__(message)
        self.sqlstate = sqlstate


class TestIsRetryableDatabaseError:
    """Tests for is_retryable_database_error function."""

    @pytest.mark.parametrize(
        "message",
        [
            "database is locked",
            "database table is locked",
            "SQLITE_BUSY: some other text",
            "Error: SQLITE_LOCKED",
            "DATABASE IS LOCKED",
            "deadlock detected",
            "could not serialize access due to concurrent update",
            "server closed the connection unexpectedly",
        ],
    )
    def test_transient_messages(self, message):
        assert is_retryable_database_error(Exception(message)) is True

    def test_sqlstate_deadlock(self):
        assert is_retryable_database_error(FakeAsyncpgError("boom", "40P01")) is True

    def test_sqlstate_serialization_failure(self):
        assert is_retryable_database_error(FakeAsyncpgError("boom", "40001")) is True

    def test_wrapped_cause(self):
        try:
            try:
                raise sqlite3.OperationalError("database is locked")
            except sqlite3.OperationalError as inner:
                raise RuntimeError("query failed") from inner
        except RuntimeError as outer:
            assert is_retryable_database_error(outer) is True

    def test_non_transient_error(self):
        assert is_retryable_database_error(sqlite3.OperationalError("no such table: publish_jobs")) is False

    def test_integrity_error(self):
        assert is_retryable_database_error(sqlite3.IntegrityError("UNIQUE constraint failed")) is False


class TestExecuteWithRetry:
    """Tests for execute_with_retry function."""

    @pytest.mark.asyncio
    async def test_success_on_first_try(self):
        mock_func = AsyncMock(return_value="ok")

        result = await execute_with_retry(mock_func)

        assert result == "ok"
        assert mock_func.call_count == 1

    @pytest.mark.asyncio
    async def test_retry_on_locked_then_succeed(self):
        mock_func = AsyncMock(
            side_effect=[
                sqlite3.OperationalError("database is locked"),
                sqlite3.OperationalError("database is locked"),
                "ok",
            ]
        )

        with patch("api.db_retry.asyncio.sleep", new_callable=AsyncMock):
            result = await execute_with_retry(mock_func)

        assert result == "ok"
        assert mock_func.call_count == 3

    @pytest.mark.asyncio
    async def test_exhaust_retries(self):
        mock_func = AsyncMock(side_effect=sqlite3.OperationalError("database is locked"))

        with patch("api.db_retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(DatabaseRetryableError) as exc_info:
                await execute_with_retry(mock_func, max_retries=3)

        assert mock_func.call_count == 4
        assert "4 attempts" in str(exc_info.value)
        # Exhausted retries count as a transient failure for the job
        assert isinstance(exc_info.value, TransientInfraError)

    @pytest.mark.asyncio
    async def test_non_retryable_error_raised_immediately(self):
        mock_func = AsyncMock(side_effect=ValueError("bad input"))

        with pytest.raises(ValueError, match="bad input"):
            await execute_with_retry(mock_func)

        assert mock_func.call_count == 1

    @pytest.mark.asyncio
    async def test_exponential_backoff(self):
        mock_func = AsyncMock(side_effect=[sqlite3.OperationalError("database is locked")] * 3 + ["ok"])
        sleep_mock = AsyncMock()

        with patch("api.db_retry.asyncio.sleep", sleep_mock):
            with patch("random.random", return_value=0.5):
                await execute_with_retry(mock_func, base_delay=0.1, max_delay=10.0)

        delays = [call.args[0] for call in sleep_mock.call_args_list]
        assert delays == pytest.approx([0.1, 0.2, 0.4])

    @pytest.mark.asyncio
    async def test_max_delay_cap(self):
        mock_func = AsyncMock(side_effect=[sqlite3.OperationalError("database is locked")] * 5 + ["ok"])
        sleep_mock = AsyncMock()

        with patch("api.db_retry.asyncio.sleep", sleep_mock):
            with patch("random.random", return_value=0.5):
                await execute_with_retry(mock_func, base_delay=1.0, max_delay=2.0)

        assert max(call.args[0] for call in sleep_mock.call_args_list) == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_passes_args_and_kwargs(self):
        mock_func = AsyncMock(return_value="ok")

        await execute_with_retry(mock_func, "a", key="value")

        mock_func.assert_called_once_with("a", key="value")
