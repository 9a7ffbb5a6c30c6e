import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime
from sqlmodel import Field, Relationship, SQLModel

from crawlpulse.utils import utcnow

if TYPE_CHECKING:
    from .crawl import Crawl


# URL 由外部的 URL 管理模块维护，这里只保留爬取需要的字段
class Url(SQLModel, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    user_id: uuid.UUID = Field(index=True)
    normalized_url: str = Field(max_length=2048)
    domain: str = Field(max_length=255)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime())
    crawls: list["Crawl"] = Relationship(back_populates="url", cascade_delete=True)
