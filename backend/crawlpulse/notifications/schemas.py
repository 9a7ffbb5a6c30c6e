import uuid
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field

NotificationType = Literal["connection", "ping", "crawl_update"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SSENotification(BaseModel):
    type: NotificationType
    user_id: uuid.UUID
    # 仅 crawl_update 携带
    url_id: uuid.UUID | None = None
    timestamp: datetime = Field(default_factory=_now)

    def to_sse(self) -> str:
        """序列化为一个 SSE data 帧"""
        return f"data: {self.model_dump_json(exclude_none=True)}\n\n"


# 工作进程 -> API 进程的中继请求体
class CrawlUpdateRelay(BaseModel):
    user_id: uuid.UUID
    url_id: uuid.UUID
