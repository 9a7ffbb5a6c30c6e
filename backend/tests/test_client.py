import unittest
import uuid

from sqlmodel import Session, select

from crawlpulse.models import Crawl, CrawlStatus
from crawlpulse.orchestrator import ActivityOptions, CrawlClient, UrlNotFound
from crawlpulse.utils import utcnow

from tests.helpers import create_crawl, create_url, get_crawl, make_engine


class CrawlClientTest(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine()
        self.url = create_url(self.engine)
        self.client = CrawlClient(ActivityOptions(start_delay=2))

    def test_submit_queues_crawl_after_start_delay(self):
        before = utcnow()
        with Session(self.engine) as session:
            crawl = self.client.submit(session=session, url_id=self.url.id, user_id=self.url.user_id)
            self.assertIsNotNone(crawl)
            self.assertEqual(crawl.status, CrawlStatus.QUEUED)
            self.assertTrue(crawl.workflow_id.startswith(f"crawl_{self.url.id}_"))
            self.assertGreaterEqual((crawl.not_before - before).total_seconds(), 2)

    def test_submit_is_idempotent(self):
        with Session(self.engine) as session:
            self.client.submit(session=session, url_id=self.url.id, user_id=self.url.user_id)
            self.assertIsNone(self.client.submit(session=session, url_id=self.url.id, user_id=self.url.user_id))
            crawls = session.exec(select(Crawl)).all()
        self.assertEqual(len(crawls), 1)

    def test_submit_after_terminal_crawl_creates_new_one(self):
        create_crawl(self.engine, self.url, status=CrawlStatus.DONE)
        with Session(self.engine) as session:
            self.assertIsNotNone(self.client.submit(session=session, url_id=self.url.id, user_id=self.url.user_id))

    def test_unknown_or_foreign_url(self):
        with Session(self.engine) as session:
            with self.assertRaises(UrlNotFound):
                self.client.submit(session=session, url_id=uuid.uuid4(), user_id=self.url.user_id)
            with self.assertRaises(UrlNotFound):
                self.client.submit(session=session, url_id=self.url.id, user_id=uuid.uuid4())
            with self.assertRaises(UrlNotFound):
                self.client.stop(session=session, url_id=self.url.id, user_id=uuid.uuid4())
            self.assertEqual(session.exec(select(Crawl)).all(), [])

    def test_stop_marks_stopped_then_requests_cancel(self):
        running = create_crawl(self.engine, self.url, status=CrawlStatus.RUNNING)
        with Session(self.engine) as session:
            stopped = self.client.stop(session=session, url_id=self.url.id, user_id=self.url.user_id)
        self.assertEqual(stopped, [running.id])
        stored = get_crawl(self.engine, running.id)
        self.assertEqual(stored.status, CrawlStatus.STOPPED)
        self.assertTrue(stored.cancel_requested)
        self.assertIsNotNone(stored.finished_at)

    def test_stop_after_done_is_noop(self):
        done = create_crawl(self.engine, self.url, status=CrawlStatus.DONE)
        with Session(self.engine) as session:
            self.assertEqual(self.client.stop(session=session, url_id=self.url.id, user_id=self.url.user_id), [])
        stored = get_crawl(self.engine, done.id)
        self.assertEqual(stored.status, CrawlStatus.DONE)
        self.assertFalse(stored.cancel_requested)


if __name__ == "__main__":
    unittest.main()
