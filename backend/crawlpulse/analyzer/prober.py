import asyncio
import logging
from typing import Optional
from urllib.parse import urlparse

import httpx

from crawlpulse.core.config import settings

logger = logging.getLogger(__name__)

PROBE_ERRORS = (httpx.HTTPError, httpx.InvalidURL, asyncio.TimeoutError)


class LinkProber:
    """
    Checks whether a discovered link answers, and with which status code.

    HEAD is tried first because it is cheap; any transport-level failure is
    retried once with GET since plenty of servers mishandle HEAD. Redirects
    are followed by hand so that hitting the cap returns the last response
    instead of raising. Every probe is bounded by its own timeout.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = settings.LINK_PROBE_TIMEOUT,
        max_redirects: int = settings.LINK_PROBE_MAX_REDIRECTS,
        user_agent: str = settings.CRAWL_USER_AGENT,
    ):
        self.timeout = timeout
        self.max_redirects = max_redirects
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": user_agent},
        )

    async def __aenter__(self) -> "LinkProber":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def probe(self, url: str) -> Optional[int]:
        """Return the status code for ``url``, or None if it could not be reached."""
        try:
            scheme = urlparse(url).scheme
        except ValueError:
            return None
        if scheme not in ("http", "https"):
            return None

        try:
            return await asyncio.wait_for(self._fetch_status("HEAD", url), self.timeout)
        except PROBE_ERRORS as e:
            logger.debug(f"HEAD probe failed for {url}: {e!r}, retrying with GET")

        try:
            return await asyncio.wait_for(self._fetch_status("GET", url), self.timeout)
        except PROBE_ERRORS as e:
            logger.debug(f"GET probe failed for {url}: {e!r}")
            return None

    async def _fetch_status(self, method: str, url: str) -> int:
        request = self._client.build_request(method, url)
        response = await self._client.send(request, stream=True, follow_redirects=False)
        redirects = 0
        try:
            while response.next_request is not None and redirects < self.max_redirects:
                next_request = response.next_request
                await response.aclose()
                response = await self._client.send(next_request, stream=True, follow_redirects=False)
                redirects += 1
            return response.status_code
        finally:
            await response.aclose()
