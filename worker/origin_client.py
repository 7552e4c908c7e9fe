"""HTTP client for fetching source files from the origin file server."""

import logging
from typing import Optional
from urllib.parse import quote

import httpx

from api.errors import OriginFetchError
from config import ORIGIN_AUTH_HEADER, ORIGIN_ENDPOINT, ORIGIN_SECRET, ORIGIN_TIMEOUT

logger = logging.getLogger(__name__)


class OriginClient:
    """Downloads source bytes from the origin server with the shared-secret header."""

    def __init__(
        self,
        base_url: str = ORIGIN_ENDPOINT,
        secret: str = ORIGIN_SECRET,
        timeout: float = ORIGIN_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: Origin endpoint (e.g., https://files.example.com)
            secret: Value sent in the X-Auction-Publisher header
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.headers = {ORIGIN_AUTH_HEADER: secret}
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client with connection pooling."""
        if self._client is None or self._client.is_closed:
            limits = httpx.Limits(
                max_connections=20,
                max_keepalive_connections=10,
                keepalive_expiry=30.0,
            )
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                limits=limits,
                transport=self._transport,
            )
        return self._client

    def source_url(self, source_key: str) -> str:
        return f"{self.base_url}/{quote(source_key.lstrip('/'), safe='/')}"

    async def fetch_source(self, source_key: str) -> bytes:
        """
        Download the full source file.

        Raises:
            OriginFetchError: on any non-2xx response, timeout or connection error
        """
        client = await self._get_client()
        url = self.source_url(source_key)

        try:
            resp = await client.get(url, headers=self.headers)
        except httpx.TimeoutException as e:
            raise OriginFetchError(f"Timed out fetching {source_key} from origin: {e}") from e
        except httpx.RequestError as e:
            raise OriginFetchError(f"Connection error fetching {source_key} from origin: {e}") from e

        if not resp.is_success:
            raise OriginFetchError(
                f"Failed to fetch {source_key} from origin: {resp.status_code} {resp.reason_phrase}",
                status_code=resp.status_code,
            )

        logger.debug(f"Fetched {source_key} from origin ({len(resp.content)} bytes)")
        return resp.content

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
