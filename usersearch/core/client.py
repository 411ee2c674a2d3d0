"""HTTP client for the search API and avatar downloads.

The client is stateless apart from the pooled ``httpx.AsyncClient`` and may
be called concurrently. Every failure surfaces as a ``FetchError`` subclass.
"""

from io import BytesIO
from typing import List, Optional, Protocol

import httpx
from loguru import logger
from PIL import Image

from .config import Config
from .errors import DecodeError, HttpStatusError, NetworkError
from .models import Entity


def decode_image(data: bytes, url: Optional[str] = None) -> bytes:
    """
    Check that ``data`` is an image Pillow can read.

    Args:
        data: Raw bytes from an asset download
        url: Source URL, only used for error reporting

    Returns:
        The unchanged bytes

    Raises:
        DecodeError: If the bytes are empty or not a readable image
    """
    if not data:
        raise DecodeError("Empty image payload", url=url)

    try:
        with Image.open(BytesIO(data)) as image:
            image.verify()
    except Exception as e:
        raise DecodeError(f"Undecodable image: {e}", url=url)

    return data


class SearchBackend(Protocol):
    """Anything that can run a search; RemoteClient is the real one."""

    async def search_entities(self, query: str) -> List[Entity]: ...


class AssetBackend(Protocol):
    """Anything that can download raw asset bytes."""

    async def fetch_bytes(self, uri: str) -> bytes: ...


class RemoteClient:
    """Performs the search and asset GET requests."""

    def __init__(self, config: Optional[Config] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize remote client.

        Args:
            config: Configuration; defaults are used when omitted
            http_client: Pre-built client (tests pass one with a mock
                transport). It is not closed by ``close()``.
        """
        self.config = config or Config()
        self._owns_client = http_client is None
        if http_client is None:
            headers = {'User-Agent': self.config.http.user_agent}
            headers.update(self.config.http.headers)
            http_client = httpx.AsyncClient(
                timeout=self.config.http.timeout_s,
                headers=headers,
                follow_redirects=True
            )
        self._http = http_client

    async def __aenter__(self) -> "RemoteClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _get(self, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._http.get(url, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Timed out: {e}", url=url)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise NetworkError(f"Transport error: {e}", url=url)

        if not 200 <= response.status_code < 300:
            raise HttpStatusError(response.status_code, url=url)
        return response

    async def search_entities(self, query: str) -> List[Entity]:
        """
        Run one search request and decode its ordered list of entities.

        Args:
            query: Query text, sent as the only request parameter

        Returns:
            Entities in the order the API returned them

        Raises:
            FetchError: On transport, status or decode failure
        """
        search = self.config.search
        response = await self._get(
            search.url,
            params={search.query_param: query},
            headers={
                'Accept': 'application/json',
                'Content-Type': 'application/json'
            }
        )

        try:
            payload = response.json()
        except ValueError as e:
            raise DecodeError(f"Invalid JSON: {e}", url=search.url)

        if not isinstance(payload, dict):
            raise DecodeError("Search response is not an object", url=search.url)
        items = payload.get(search.results_key)
        if not isinstance(items, list):
            raise DecodeError(f"Search response has no '{search.results_key}' list", url=search.url)

        try:
            entities = [Entity.from_mapping(item) for item in items]
        except DecodeError as e:
            e.url = search.url
            raise

        logger.debug(f"Search '{query}' returned {len(entities)} entities")
        return entities

    async def fetch_bytes(self, uri: str) -> bytes:
        """Download raw bytes; only 2xx responses succeed."""
        response = await self._get(uri)
        return response.content
