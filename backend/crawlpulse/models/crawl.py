import enum
import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime
from sqlmodel import Field, Relationship, SQLModel

from crawlpulse.utils import utcnow

if TYPE_CHECKING:
    from .url import Url


class CrawlStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"
    STOPPED = "stopped"


ACTIVE_STATUSES = (CrawlStatus.QUEUED, CrawlStatus.RUNNING)
TERMINAL_STATUSES = (CrawlStatus.DONE, CrawlStatus.ERROR, CrawlStatus.STOPPED)


# 共享属性：页面分析结果
class CrawlResultBase(SQLModel):
    html_version: str | None = Field(default=None, max_length=32)
    page_title: str | None = Field(default=None, max_length=500)
    h1_count: int | None = None
    h2_count: int | None = None
    h3_count: int | None = None
    h4_count: int | None = None
    h5_count: int | None = None
    h6_count: int | None = None
    internal_links_count: int | None = None
    external_links_count: int | None = None
    inaccessible_links_count: int | None = None
    has_login_form: bool = False


# 数据库模型：每次爬取尝试一行
class Crawl(CrawlResultBase, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    url_id: uuid.UUID = Field(foreign_key="url.id", nullable=False, ondelete="CASCADE", index=True)
    status: CrawlStatus = Field(default=CrawlStatus.QUEUED, index=True)
    queued_at: datetime = Field(default_factory=utcnow, sa_type=DateTime())
    started_at: datetime | None = Field(default=None, sa_type=DateTime())
    finished_at: datetime | None = Field(default=None, sa_type=DateTime())
    error_message: str | None = Field(default=None, max_length=2048)
    workflow_id: str = Field(max_length=255, unique=True, index=True)

    # 编排器持久化状态
    attempts: int = 0
    worker_id: str | None = Field(default=None, max_length=255, index=True)
    not_before: datetime = Field(default_factory=utcnow, sa_type=DateTime())
    heartbeat_at: datetime | None = Field(default=None, sa_type=DateTime())
    cancel_requested: bool = False

    url: "Url" = Relationship(back_populates="crawls")
    links: list["DiscoveredLink"] = Relationship(back_populates="crawl", cascade_delete=True)


# 通过 API 返回的属性
class CrawlPublic(CrawlResultBase):
    id: uuid.UUID
    url_id: uuid.UUID
    status: CrawlStatus
    queued_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error_message: str | None = None


class DiscoveredLinkBase(SQLModel):
    href: str = Field(max_length=2048)
    absolute_url: str = Field(max_length=2048)
    is_internal: bool
    status_code: int | None = None
    anchor_text: str | None = Field(default=None, max_length=1024)


class DiscoveredLink(DiscoveredLinkBase, table=True):
    __tablename__ = "discovered_link"
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    crawl_id: uuid.UUID = Field(foreign_key="crawl.id", nullable=False, ondelete="CASCADE", index=True)
    crawl: Crawl = Relationship(back_populates="links")


class DiscoveredLinkPublic(DiscoveredLinkBase):
    id: uuid.UUID
    crawl_id: uuid.UUID


class DiscoveredLinksPublic(SQLModel):
    data: list[DiscoveredLinkPublic]
    count: int
