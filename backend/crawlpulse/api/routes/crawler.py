import uuid
from typing import Any

from anyio import from_thread
from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse

from crawlpulse import crud
from crawlpulse.api.deps import BroadcasterDep, CrawlClientDep, CurrentUserId, SessionDep
from crawlpulse.models import CrawlPublic, DiscoveredLinksPublic, Message
from crawlpulse.orchestrator import UrlNotFound

router = APIRouter(prefix="/crawl", tags=["crawler"])


@router.post("/start/{url_id}", response_model=Message)
def start_crawl(
    session: SessionDep,
    user_id: CurrentUserId,
    crawl_client: CrawlClientDep,
    url_id: uuid.UUID,
) -> Any:
    """
    为 URL 启动爬取任务。已有排队或运行中的任务时直接返回成功。
    """
    try:
        crawl_client.submit(session=session, url_id=url_id, user_id=user_id)
    except UrlNotFound:
        raise HTTPException(status_code=404, detail="URL not found")
    return Message(message="Crawl started")


@router.post("/stop/{url_id}", response_model=Message)
def stop_crawl(
    session: SessionDep,
    user_id: CurrentUserId,
    crawl_client: CrawlClientDep,
    broadcaster: BroadcasterDep,
    url_id: uuid.UUID,
) -> Any:
    """
    停止 URL 所有进行中的爬取任务。任务已结束时不做任何修改。
    """
    try:
        stopped = crawl_client.stop(session=session, url_id=url_id, user_id=user_id)
    except UrlNotFound:
        raise HTTPException(status_code=404, detail="URL not found")
    if stopped:
        from_thread.run_sync(broadcaster.notify_crawl_update, user_id, url_id)
    return Message(message="Crawl stopped")


@router.get("/stream")
async def stream_crawl_updates(user_id: CurrentUserId, broadcaster: BroadcasterDep) -> StreamingResponse:
    """
    订阅当前用户的爬取状态推送（SSE），客户端断开时结束。
    """
    return StreamingResponse(
        broadcaster.stream(user_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/{crawl_id}", response_model=CrawlPublic)
def read_crawl(session: SessionDep, user_id: CurrentUserId, crawl_id: uuid.UUID) -> Any:
    """
    获取爬取任务的状态和分析结果。
    """
    crawl = crud.get_crawl_for_user(session=session, crawl_id=crawl_id, user_id=user_id)
    if not crawl:
        raise HTTPException(status_code=404, detail="Crawl not found")
    return crawl


@router.get("/{crawl_id}/links", response_model=DiscoveredLinksPublic)
def read_crawl_links(
    session: SessionDep,
    user_id: CurrentUserId,
    crawl_id: uuid.UUID,
    skip: int = 0,
    limit: int = 100,
) -> Any:
    """
    获取爬取任务发现的链接。
    """
    crawl = crud.get_crawl_for_user(session=session, crawl_id=crawl_id, user_id=user_id)
    if not crawl:
        raise HTTPException(status_code=404, detail="Crawl not found")
    links, count = crud.list_discovered_links(session=session, crawl_id=crawl_id, skip=skip, limit=limit)
    return DiscoveredLinksPublic(data=links, count=count)
