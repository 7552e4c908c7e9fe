"""
Tests for the origin fetcher (worker/origin_client.py).
"""

import httpx
import pytest

from api.errors import OriginFetchError, TransientInfraError
from worker.origin_client import OriginClient


def _client(handler) -> OriginClient:
    return OriginClient("https://origin.test/files/", "s3cret", timeout=5, transport=httpx.MockTransport(handler))


class TestFetchSource:
    @pytest.mark.asyncio
    async def test_returns_body_and_sends_secret(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, content=b"image-bytes")

        client = _client(handler)
        try:
            assert await client.fetch_source("uploads/a.jpg") == b"image-bytes"
        finally:
            await client.close()

        assert str(seen[0].url) == "https://origin.test/files/uploads/a.jpg"
        assert seen[0].headers["X-Auction-Publisher"] == "s3cret"

    def test_source_url_quotes_key(self):
        client = OriginClient("https://origin.test", "s")
        assert client.source_url("/uploads/lot 7/ä.jpg") == "https://origin.test/uploads/lot%207/%C3%A4.jpg"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [403, 404, 500, 503])
    async def test_non_2xx_raises(self, status_code):
        client = _client(lambda request: httpx.Response(status_code))

        with pytest.raises(OriginFetchError) as exc_info:
            await client.fetch_source("uploads/a.jpg")

        assert exc_info.value.status_code == status_code
        assert str(status_code) in str(exc_info.value)
        assert isinstance(exc_info.value, TransientInfraError)

    @pytest.mark.asyncio
    async def test_connection_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler)

        with pytest.raises(OriginFetchError, match="Connection error") as exc_info:
            await client.fetch_source("uploads/a.jpg")

        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_timeout_raises(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        client = _client(handler)

        with pytest.raises(OriginFetchError, match="Timed out"):
            await client.fetch_source("uploads/a.jpg")

    @pytest.mark.asyncio
    async def test_client_recreated_after_close(self):
        client = _client(lambda request: httpx.Response(200, content=b"x"))

        await client.fetch_source("a")
        await client.close()
        assert await client.fetch_source("a") == b"x"
        await client.close()
