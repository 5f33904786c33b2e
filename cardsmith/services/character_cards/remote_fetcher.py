"""
Remote asset fetcher.

Optional download of http(s) asset references during import. Disabled
unless ``import_settings.fetch_remote_assets`` is set.
"""

import logging
from typing import Optional, Tuple

import httpx

logger = logging.getLogger(__name__)


class RemoteFetchError(Exception):
    """A remote asset could not be downloaded."""
    pass


class RemoteAssetFetcher:
    """
    Download asset bytes over HTTP with a size cap.

    Handles:
    - Timeouts
    - Non-2xx responses
    - Responses larger than the configured limit
    """

    def __init__(
        self,
        timeout: float = 15.0,
        max_bytes: int = 20 * 1024 * 1024,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize fetcher.

        Args:
            timeout: Per-request timeout (seconds)
            max_bytes: Largest response body accepted
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.transport = transport

    async def fetch(self, url: str) -> Tuple[bytes, Optional[str]]:
        """
        Download one asset.

        Returns:
            Tuple of (body, content type without parameters)

        Raises:
            RemoteFetchError: Request failed or body too large
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                transport=self.transport,
                follow_redirects=True,
            ) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()

                    declared = response.headers.get("content-length")
                    if declared and declared.isdigit() and int(declared) > self.max_bytes:
                        raise RemoteFetchError(f"Remote asset too large: {declared} bytes")

                    chunks = []
                    received = 0
                    async for chunk in response.aiter_bytes():
                        received += len(chunk)
                        if received > self.max_bytes:
                            raise RemoteFetchError(f"Remote asset exceeded {self.max_bytes} bytes")
                        chunks.append(chunk)

                    content_type = response.headers.get("content-type")
        except httpx.HTTPStatusError as e:
            raise RemoteFetchError(f"HTTP {e.response.status_code} for {url}")
        except httpx.HTTPError as e:
            raise RemoteFetchError(f"Request failed for {url}: {e}")

        if content_type:
            content_type = content_type.split(";", 1)[0].strip()

        logger.debug(f"Fetched remote asset {url} ({received} bytes)")
        return b"".join(chunks), content_type
