import asyncio
import unittest
import uuid
from unittest.mock import patch

import httpx
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from crawlpulse import crud
from crawlpulse.analyzer import LinkProber
from crawlpulse.core.config import settings
from crawlpulse.models import CrawlStatus, DiscoveredLink
from crawlpulse.orchestrator import AttemptContext, CrawlJob
from crawlpulse.worker_tasks.crawler import crawl_url, heartbeat_loop

from tests.helpers import RecordingNotifier, create_crawl, create_url, get_crawl, make_engine

PAGE = """<!DOCTYPE html>
<html><head><title>Home</title></head>
<body>
  <h1>Welcome</h1>
  <a href="/about">About</a>
  <a href="/gone">Gone</a>
  <a href="https://partner.example/">Partner</a>
  <a href="#top">Top</a>
</body></html>
"""


def site(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/gone":
        return httpx.Response(404)
    if request.url.host == "example.com" and request.url.path == "/":
        return httpx.Response(200, text=PAGE, headers={"Content-Type": "text/html"})
    return httpx.Response(200)


class CrawlTaskTest(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.engine = make_engine()
        self.url = create_url(self.engine, url="https://example.com/")
        self.crawl = create_crawl(self.engine, self.url)
        self.notifier = RecordingNotifier()
        self.job = CrawlJob(
            crawl_id=self.crawl.id,
            url_id=self.url.id,
            user_id=self.url.user_id,
            url=self.url.normalized_url,
            workflow_id=self.crawl.workflow_id,
        )
        self.context = AttemptContext(self.crawl.id, attempt=1, max_attempts=3)

    def use_site(self, handler):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        self.addAsyncCleanup(client.aclose)
        return client, LinkProber(client=client, timeout=2.0)

    async def run_crawl(self, handler=site):
        client, prober = self.use_site(handler)
        await crawl_url(
            self.job,
            self.context,
            engine=self.engine,
            notifier=self.notifier,
            client=client,
            prober=prober,
        )

    async def test_successful_crawl(self):
        await self.run_crawl()

        crawl = get_crawl(self.engine, self.crawl.id)
        self.assertEqual(crawl.status, CrawlStatus.DONE)
        self.assertEqual(crawl.page_title, "Home")
        self.assertEqual(crawl.html_version, "HTML5")
        self.assertEqual(crawl.h1_count, 1)
        self.assertEqual(crawl.internal_links_count, 1)
        self.assertEqual(crawl.external_links_count, 1)
        self.assertEqual(crawl.inaccessible_links_count, 1)
        self.assertIsNone(crawl.error_message)

        with Session(self.engine) as session:
            links = session.exec(select(DiscoveredLink).where(DiscoveredLink.crawl_id == self.crawl.id)).all()
        self.assertEqual(sorted(link.href for link in links), ["/about", "/gone", "https://partner.example/"])

        # running + done
        self.assertEqual(self.notifier.calls, [(self.url.user_id, self.url.id)] * 2)

    async def test_http_error_status(self):
        await self.run_crawl(lambda request: httpx.Response(503))

        crawl = get_crawl(self.engine, self.crawl.id)
        self.assertEqual(crawl.status, CrawlStatus.ERROR)
        self.assertEqual(crawl.error_message, "HTTP error: 503")
        self.assertEqual(len(self.notifier.calls), 2)

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("name resolution failed", request=request)

        await self.run_crawl(handler)

        crawl = get_crawl(self.engine, self.crawl.id)
        self.assertEqual(crawl.status, CrawlStatus.ERROR)
        self.assertTrue(crawl.error_message.startswith("Failed to fetch URL: "))
        self.assertIn("name resolution failed", crawl.error_message)

    async def test_slow_page_hits_fetch_deadline(self):
        async def handler(request):
            await asyncio.sleep(30)
            return httpx.Response(200, text=PAGE)

        with patch.object(settings, "CRAWL_FETCH_TIMEOUT", 0.05):
            await asyncio.wait_for(self.run_crawl(handler), timeout=5)

        crawl = get_crawl(self.engine, self.crawl.id)
        self.assertEqual(crawl.status, CrawlStatus.ERROR)
        self.assertEqual(crawl.error_message, "Failed to fetch URL: no response within 0.05s")

    async def test_stopped_before_start_does_nothing(self):
        with Session(self.engine) as session:
            crud.set_crawl_stopped(session=session, crawl_id=self.crawl.id)

        await self.run_crawl()

        self.assertEqual(get_crawl(self.engine, self.crawl.id).status, CrawlStatus.STOPPED)
        self.assertEqual(self.notifier.calls, [])

    async def test_start_transition_failure_propagates(self):
        error = OperationalError("UPDATE crawl", {}, Exception("database is down"))
        with patch("crawlpulse.worker_tasks.crawler.crud.set_crawl_running", side_effect=error):
            with self.assertRaises(OperationalError):
                await self.run_crawl()
        self.assertEqual(get_crawl(self.engine, self.crawl.id).status, CrawlStatus.QUEUED)
        self.assertEqual(self.notifier.calls, [])

    async def test_unexpected_exception_marks_error(self):
        with patch("crawlpulse.worker_tasks.crawler.analyze_document", side_effect=RuntimeError("boom")):
            await self.run_crawl()

        crawl = get_crawl(self.engine, self.crawl.id)
        self.assertEqual(crawl.status, CrawlStatus.ERROR)
        self.assertEqual(crawl.error_message, "Crawl did not complete: boom")
        self.assertEqual(len(self.notifier.calls), 2)

    async def test_result_save_failure(self):
        error = OperationalError("UPDATE crawl", {}, Exception("disk full"))
        with patch("crawlpulse.worker_tasks.crawler.crud.save_crawl_result", side_effect=error):
            await self.run_crawl()

        crawl = get_crawl(self.engine, self.crawl.id)
        self.assertEqual(crawl.status, CrawlStatus.ERROR)
        self.assertTrue(crawl.error_message.startswith("Failed to update crawl result: "))

    async def test_link_save_failure_is_skipped(self):
        real_create = crud.create_discovered_link
        error = OperationalError("INSERT discovered_link", {}, Exception("constraint"))

        def flaky(*, session, crawl_id, link):
            if link.href == "/gone":
                raise error
            return real_create(session=session, crawl_id=crawl_id, link=link)

        with patch("crawlpulse.worker_tasks.crawler.crud.create_discovered_link", side_effect=flaky):
            await self.run_crawl()

        self.assertEqual(get_crawl(self.engine, self.crawl.id).status, CrawlStatus.DONE)
        with Session(self.engine) as session:
            hrefs = session.exec(select(DiscoveredLink.href)).all()
        self.assertEqual(sorted(hrefs), ["/about", "https://partner.example/"])

    async def start_hanging_crawl(self) -> asyncio.Task:
        probing = asyncio.Event()

        async def handler(request):
            if request.url.path == "/":
                return httpx.Response(200, text=PAGE)
            probing.set()
            await asyncio.sleep(30)
            return httpx.Response(200)

        client, prober = self.use_site(handler)
        task = asyncio.create_task(
            crawl_url(self.job, self.context, engine=self.engine, notifier=self.notifier, client=client, prober=prober)
        )
        await asyncio.wait_for(probing.wait(), timeout=5)
        return task

    async def test_stop_while_running_wins(self):
        task = await self.start_hanging_crawl()
        with Session(self.engine) as session:
            self.assertTrue(crud.set_crawl_stopped(session=session, crawl_id=self.crawl.id))
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        self.assertEqual(get_crawl(self.engine, self.crawl.id).status, CrawlStatus.STOPPED)
        # 只有 running 那一次
        self.assertEqual(len(self.notifier.calls), 1)

    async def test_cancel_without_retry_marks_error(self):
        task = await self.start_hanging_crawl()
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        crawl = get_crawl(self.engine, self.crawl.id)
        self.assertEqual(crawl.status, CrawlStatus.ERROR)
        self.assertEqual(crawl.error_message, "Crawl did not complete")
        self.assertEqual(len(self.notifier.calls), 2)

    async def test_cancel_with_retry_leaves_crawl_running(self):
        task = await self.start_hanging_crawl()
        self.context.will_retry = True
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task

        self.assertEqual(get_crawl(self.engine, self.crawl.id).status, CrawlStatus.RUNNING)
        self.assertEqual(len(self.notifier.calls), 1)


class HeartbeatLoopTest(unittest.IsolatedAsyncioTestCase):
    async def test_beats_while_open(self):
        context = AttemptContext(uuid.uuid4())
        before = context.last_heartbeat
        async with heartbeat_loop(context, interval=0.01):
            await asyncio.sleep(0.05)
        self.assertGreater(context.last_heartbeat, before)

        after_exit = context.last_heartbeat
        await asyncio.sleep(0.03)
        self.assertEqual(context.last_heartbeat, after_exit)


if __name__ == "__main__":
    unittest.main()
