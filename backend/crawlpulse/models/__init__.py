from sqlmodel import SQLModel

from .crawl import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Crawl,
    CrawlPublic,
    CrawlStatus,
    DiscoveredLink,
    DiscoveredLinkPublic,
    DiscoveredLinksPublic,
)
from .message import Message, TokenPayload
from .url import Url
