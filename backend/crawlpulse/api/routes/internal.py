import logging
import secrets
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from crawlpulse.api.deps import BroadcasterDep
from crawlpulse.core.config import settings
from crawlpulse.models import Message
from crawlpulse.notifications import CrawlUpdateRelay

router = APIRouter(prefix="/internal", tags=["internal"], include_in_schema=False)
logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = {"127.0.0.1", "::1", "localhost"}


def verify_internal_caller(
    request: Request,
    x_internal_token: Annotated[str | None, Header()] = None,
) -> None:
    """只允许本机调用，或携带正确内部令牌的调用方。"""
    expected = settings.INTERNAL_API_TOKEN
    if expected and x_internal_token and secrets.compare_digest(x_internal_token, expected):
        return
    host = request.client.host if request.client else None
    if host in LOOPBACK_HOSTS:
        return
    logger.warning(f"Rejected internal notification from {host}")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


@router.post(
    "/notify-crawl-update",
    response_model=Message,
    dependencies=[Depends(verify_internal_caller)],
)
async def notify_crawl_update(body: CrawlUpdateRelay, broadcaster: BroadcasterDep) -> Message:
    """
    工作进程中继：把爬取状态变化推送给该用户的 SSE 连接。
    """
    delivered = broadcaster.notify_crawl_update(body.user_id, body.url_id)
    return Message(message=f"Delivered to {delivered} connection(s)")
