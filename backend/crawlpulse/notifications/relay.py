import logging
import uuid
from typing import Protocol

import httpx

from crawlpulse.core.config import settings

from .broadcaster import Broadcaster
from .schemas import CrawlUpdateRelay

logger = logging.getLogger(__name__)

INTERNAL_TOKEN_HEADER = "X-Internal-Token"


class Notifier(Protocol):
    async def notify_crawl_update(self, user_id: uuid.UUID, url_id: uuid.UUID) -> None: ...


class LocalNotifier:
    """Publishes straight into a Broadcaster living in the same process."""

    def __init__(self, broadcaster: Broadcaster):
        self.broadcaster = broadcaster

    async def notify_crawl_update(self, user_id: uuid.UUID, url_id: uuid.UUID) -> None:
        self.broadcaster.notify_crawl_update(user_id, url_id)


class RelayNotifier:
    """
    Forwards crawl updates from the worker process to the API process, which
    owns the SSE connections. Failures are logged and dropped; clients
    reconcile by polling crawl state.
    """

    def __init__(
        self,
        base_url: str = settings.NOTIFY_RELAY_URL,
        timeout: float = settings.NOTIFY_RELAY_TIMEOUT,
        token: str | None = settings.INTERNAL_API_TOKEN,
        client: httpx.AsyncClient | None = None,
    ):
        self.endpoint = f"{base_url.rstrip('/')}{settings.API_V1_STR}/internal/notify-crawl-update"
        self._headers = {INTERNAL_TOKEN_HEADER: token} if token else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def notify_crawl_update(self, user_id: uuid.UUID, url_id: uuid.UUID) -> None:
        payload = CrawlUpdateRelay(user_id=user_id, url_id=url_id)
        try:
            response = await self._client.post(
                self.endpoint,
                json=payload.model_dump(mode="json"),
                headers=self._headers,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Failed to relay crawl update for user {user_id}, url {url_id}: {e!r}")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
