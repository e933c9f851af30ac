"""
Shortener resolution: follows t.co redirects to the final URL.
"""

import asyncio
import logging
from typing import Optional

import httpx

from linkwatch.config import Settings
from linkwatch.extractor import is_shortener
from linkwatch.metrics import record_resolution

logger = logging.getLogger(__name__)


class LinkResolver:
    """
    Resolves shortener links with a bounded HEAD request.

    The timeout bounds the whole lookup, every redirect hop included.

    resolve() never raises: on timeout, connection errors, too many
    redirects or an error status the original URL is returned and the
    failure is logged.
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._client = httpx.AsyncClient(
            follow_redirects=True,
            max_redirects=settings.RESOLVE_MAX_REDIRECTS,
            timeout=settings.RESOLVE_TIMEOUT_SECONDS,
            transport=transport,
        )
        self.timeout = settings.RESOLVE_TIMEOUT_SECONDS

    async def resolve(self, url: str) -> str:
        if not is_shortener(url):
            record_resolution("passthrough")
            return url

        logger.debug(f"Resolving short URL {url}")
        try:
            response = await asyncio.wait_for(self._client.head(url), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Failed to expand URL {url}: timed out after {self.timeout}s")
            record_resolution("failed")
            return url
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Failed to expand URL {url}: {e}")
            record_resolution("failed")
            return url

        if response.is_error:
            logger.warning(f"Failed to expand URL {url}: HTTP {response.status_code}")
            record_resolution("failed")
            return url

        final_url = str(response.url)
        logger.info(f"Resolved {url} -> {final_url}")
        record_resolution("resolved")
        return final_url

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "LinkResolver":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
