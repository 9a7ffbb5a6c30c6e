import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx
from bs4 import BeautifulSoup
from bs4.builder import ParserRejectedMarkup
from sqlalchemy import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from crawlpulse import crud
from crawlpulse.analyzer import LinkProber, analyze_document
from crawlpulse.core.config import settings
from crawlpulse.notifications import Notifier
from crawlpulse.orchestrator.context import AttemptContext, CrawlJob

logger = logging.getLogger(__name__)

# 每处理多少个链接上报一次心跳
HEARTBEAT_LINK_INTERVAL = 25


@asynccontextmanager
async def heartbeat_loop(context: AttemptContext, interval: float) -> AsyncIterator[None]:
    """Beat on a timer for as long as the block runs."""

    async def beat() -> None:
        while True:
            await asyncio.sleep(interval)
            context.heartbeat()

    task = asyncio.create_task(beat())
    try:
        yield
    finally:
        task.cancel()
        await asyncio.wait({task})


class LinkProgress:
    def __init__(self, context: AttemptContext, every: int = HEARTBEAT_LINK_INTERVAL):
        self.context = context
        self.every = every

    async def __call__(self, completed: int, total: int) -> None:
        if completed % self.every == 0 or completed == total:
            self.context.heartbeat(f"Processing link {completed}/{total}")


def _record_error(engine: Engine, job: CrawlJob, message: str) -> bool:
    logger.error(f"Crawl {job.crawl_id} ({job.url}) failed: {message}")
    with Session(engine) as session:
        return crud.set_crawl_error(session=session, crawl_id=job.crawl_id, error_message=message)


async def crawl_url(
    job: CrawlJob,
    context: AttemptContext,
    *,
    engine: Engine,
    notifier: Notifier,
    client: Optional[httpx.AsyncClient] = None,
    prober: Optional[LinkProber] = None,
) -> None:
    """
    Background task: crawl one URL and record the outcome on its Crawl row.

    Marks the crawl running, fetches and analyzes the page, stores discovered
    links and the aggregate metadata. Every exit path leaves the crawl in a
    terminal state, unless the orchestrator has announced that the aborted
    attempt will be retried.
    """
    # 该步骤失败时直接抛出，由编排器按重试策略处理
    with Session(engine) as session:
        running = crud.set_crawl_running(session=session, crawl_id=job.crawl_id)
    if not running:
        logger.info(f"Crawl {job.crawl_id} is no longer active, skipping")
        return
    logger.info(f"Crawl {job.crawl_id} running for {job.url} (attempt {context.attempt})")
    await notifier.notify_crawl_update(job.user_id, job.url_id)

    # None 表示还没有写入终态
    recorded: Optional[bool] = None
    failure = "Crawl did not complete"
    try:
        async with heartbeat_loop(context, settings.CRAWL_HEARTBEAT_INTERVAL):
            recorded = await _process(job, context, engine=engine, client=client, prober=prober)
    except asyncio.CancelledError:
        logger.info(f"Crawl {job.crawl_id} cancelled (will_retry={context.will_retry})")
        raise
    except Exception as e:
        logger.exception(f"Unexpected error in crawl {job.crawl_id}")
        failure = f"Crawl did not complete: {e}"
    finally:
        if recorded is None and not context.will_retry:
            with Session(engine) as session:
                recorded = crud.set_crawl_error(session=session, crawl_id=job.crawl_id, error_message=failure)
        if recorded:
            await notifier.notify_crawl_update(job.user_id, job.url_id)


async def _process(
    job: CrawlJob,
    context: AttemptContext,
    *,
    engine: Engine,
    client: Optional[httpx.AsyncClient],
    prober: Optional[LinkProber],
) -> bool:
    """Fetch, analyze and persist; returns whether the terminal write changed the crawl."""
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(
            timeout=settings.CRAWL_FETCH_TIMEOUT,
            follow_redirects=True,
            headers={"User-Agent": settings.CRAWL_USER_AGENT},
        )
    owns_prober = prober is None
    if prober is None:
        prober = LinkProber()

    try:
        # Step 1: 抓取页面
        try:
            response = await asyncio.wait_for(client.get(job.url), settings.CRAWL_FETCH_TIMEOUT)
        except asyncio.TimeoutError:
            return _record_error(
                engine, job, f"Failed to fetch URL: no response within {settings.CRAWL_FETCH_TIMEOUT:g}s"
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return _record_error(engine, job, f"Failed to fetch URL: {str(e) or repr(e)}")
        context.heartbeat("HTTP response received")
        if not response.is_success:
            return _record_error(engine, job, f"HTTP error: {response.status_code}")

        # Step 2: 解析 HTML
        context.heartbeat("Parsing HTML")
        try:
            soup = BeautifulSoup(response.text, "html.parser")
        except (ParserRejectedMarkup, AssertionError) as e:
            return _record_error(engine, job, f"Failed to parse HTML: {e}")

        # Step 3: 分析页面和链接
        metadata = await analyze_document(
            soup,
            job.url,
            prober,
            heartbeat=context.heartbeat,
            on_progress=LinkProgress(context),
        )

        # Step 4: 保存链接，单条失败不影响整体
        saved = 0
        with Session(engine) as session:
            for link in metadata.links.links:
                try:
                    crud.create_discovered_link(session=session, crawl_id=job.crawl_id, link=link)
                    saved += 1
                except SQLAlchemyError as e:
                    session.rollback()
                    logger.warning(f"Failed to save link {link.absolute_url} for crawl {job.crawl_id}: {e}")
        logger.info(f"Saved {saved}/{len(metadata.links.links)} links for crawl {job.crawl_id}")

        # Step 5: 保存汇总结果
        try:
            with Session(engine) as session:
                done = crud.save_crawl_result(session=session, crawl_id=job.crawl_id, metadata=metadata)
        except SQLAlchemyError as e:
            return _record_error(engine, job, f"Failed to update crawl result: {e}")
        if done:
            logger.info(f"Crawl {job.crawl_id} completed for {job.url}")
        else:
            logger.info(f"Crawl {job.crawl_id} left its running state before the result was saved")
        return done
    finally:
        if owns_prober:
            await prober.aclose()
        if owns_client:
            await client.aclose()


def build_crawl_task(engine: Engine, notifier: Notifier):
    """Bind storage and notifier so the orchestrator can call ``task(job, context)``."""

    async def task(job: CrawlJob, context: AttemptContext) -> None:
        await crawl_url(job, context, engine=engine, notifier=notifier)

    return task
