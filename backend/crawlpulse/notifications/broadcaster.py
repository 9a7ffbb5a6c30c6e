import asyncio
import logging
import threading
import uuid
from typing import AsyncIterator

from crawlpulse.core.config import settings

from .schemas import SSENotification

logger = logging.getLogger(__name__)


class Connection:
    """One open SSE stream: a bounded queue plus a close signal."""

    def __init__(self, user_id: uuid.UUID, buffer_size: int):
        self.id = uuid.uuid4()
        self.user_id = user_id
        self.queue: asyncio.Queue[SSENotification] = asyncio.Queue(maxsize=buffer_size)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        self._closed.set()

    def deliver(self, notification: SSENotification) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(notification)
        except asyncio.QueueFull:
            return False
        return True

    async def listen(self, keepalive_interval: float) -> AsyncIterator[SSENotification]:
        """
        Yield queued notifications until the connection is closed.

        Each wait races the next notification against the close signal; when
        neither arrives within ``keepalive_interval`` a ``ping`` is yielded so
        proxies keep the stream open.
        """
        close_waiter = asyncio.ensure_future(self._closed.wait())
        try:
            while not self.closed:
                getter = asyncio.ensure_future(self.queue.get())
                try:
                    done, _ = await asyncio.wait(
                        {getter, close_waiter},
                        timeout=keepalive_interval,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                finally:
                    if not getter.done():
                        getter.cancel()

                if getter in done:
                    yield getter.result()
                elif close_waiter in done:
                    return
                else:
                    yield SSENotification(type="ping", user_id=self.user_id)
        finally:
            close_waiter.cancel()


class Broadcaster:
    """
    Per-user fan-out of live crawl updates to open SSE connections.

    Publishing never blocks: a connection whose buffer is full simply misses
    that notification. Clients reconcile by re-reading crawl state, so
    delivery is best-effort.
    """

    def __init__(
        self,
        buffer_size: int = settings.SSE_CHANNEL_BUFFER,
        keepalive_interval: float = settings.SSE_KEEPALIVE_INTERVAL,
    ):
        self.buffer_size = buffer_size
        self.keepalive_interval = keepalive_interval
        self._lock = threading.Lock()
        self._connections: dict[uuid.UUID, dict[uuid.UUID, Connection]] = {}

    def subscribe(self, user_id: uuid.UUID) -> Connection:
        connection = Connection(user_id, self.buffer_size)
        with self._lock:
            self._connections.setdefault(user_id, {})[connection.id] = connection
            total = len(self._connections[user_id])
        logger.info(f"SSE client connected: user {user_id} (connections: {total})")
        return connection

    def unsubscribe(self, connection: Connection) -> None:
        with self._lock:
            user_connections = self._connections.get(connection.user_id)
            if user_connections is not None:
                user_connections.pop(connection.id, None)
                if not user_connections:
                    del self._connections[connection.user_id]
        connection.close()
        logger.info(f"SSE client disconnected: user {connection.user_id}")

    def connection_count(self, user_id: uuid.UUID | None = None) -> int:
        with self._lock:
            if user_id is not None:
                return len(self._connections.get(user_id, {}))
            return sum(len(c) for c in self._connections.values())

    def publish(self, user_id: uuid.UUID, notification: SSENotification) -> int:
        """Deliver ``notification`` to every open connection of ``user_id``; returns the delivery count."""
        with self._lock:
            targets = list(self._connections.get(user_id, {}).values())

        delivered = 0
        for connection in targets:
            if connection.deliver(notification):
                delivered += 1
            else:
                logger.warning(
                    f"Dropped {notification.type} notification for user {user_id}: "
                    f"connection {connection.id} buffer full or closed"
                )
        return delivered

    def notify_crawl_update(self, user_id: uuid.UUID, url_id: uuid.UUID) -> int:
        notification = SSENotification(type="crawl_update", user_id=user_id, url_id=url_id)
        delivered = self.publish(user_id, notification)
        logger.info(f"Crawl update for url {url_id} sent to {delivered} connection(s) of user {user_id}")
        return delivered

    async def stream(self, user_id: uuid.UUID) -> AsyncIterator[str]:
        """SSE frames for one client: a connection event, then updates and pings."""
        connection = self.subscribe(user_id)
        try:
            yield SSENotification(type="connection", user_id=user_id).to_sse()
            async for notification in connection.listen(self.keepalive_interval):
                yield notification.to_sse()
        finally:
            self.unsubscribe(connection)

    def close(self) -> None:
        with self._lock:
            connections = [c for user in self._connections.values() for c in user.values()]
            self._connections.clear()
        for connection in connections:
            connection.close()
