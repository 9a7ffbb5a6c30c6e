from .broadcaster import Broadcaster, Connection
from .relay import INTERNAL_TOKEN_HEADER, LocalNotifier, Notifier, RelayNotifier
from .schemas import CrawlUpdateRelay, SSENotification

__all__ = [
    "Broadcaster",
    "Connection",
    "CrawlUpdateRelay",
    "INTERNAL_TOKEN_HEADER",
    "LocalNotifier",
    "Notifier",
    "RelayNotifier",
    "SSENotification",
]
