import logging
import uuid
from datetime import timedelta

from sqlmodel import Session

from crawlpulse import crud
from crawlpulse.models import Crawl
from crawlpulse.utils import utcnow

from .policy import ActivityOptions

logger = logging.getLogger(__name__)


class UrlNotFound(Exception):
    def __init__(self, url_id: uuid.UUID):
        super().__init__(f"URL {url_id} not found")
        self.url_id = url_id


def new_workflow_id(url_id: uuid.UUID) -> str:
    return f"crawl_{url_id}_{uuid.uuid4()}"


class CrawlClient:
    """Submission side of the orchestrator, used from the API process."""

    def __init__(self, options: ActivityOptions | None = None):
        self.options = options or ActivityOptions()

    def submit(self, *, session: Session, url_id: uuid.UUID, user_id: uuid.UUID) -> Crawl | None:
        """
        Queue a crawl for ``url_id``.

        Returns the new Crawl, or None when one is already queued or running
        for that URL.
        """
        if crud.get_url_for_user(session=session, url_id=url_id, user_id=user_id) is None:
            raise UrlNotFound(url_id)

        if crud.count_active_crawls(session=session, url_id=url_id) > 0:
            logger.info(f"Crawl already active for url {url_id}, ignoring submission")
            return None

        crawl = crud.queue_crawl(
            session=session,
            url_id=url_id,
            workflow_id=new_workflow_id(url_id),
            not_before=utcnow() + timedelta(seconds=self.options.start_delay),
        )
        logger.info(f"Queued crawl {crawl.id} ({crawl.workflow_id}) for url {url_id}")
        return crawl

    def stop(self, *, session: Session, url_id: uuid.UUID, user_id: uuid.UUID) -> list[uuid.UUID]:
        """Mark every active crawl of ``url_id`` stopped, then ask the worker to cancel it."""
        if crud.get_url_for_user(session=session, url_id=url_id, user_id=user_id) is None:
            raise UrlNotFound(url_id)

        stopped = []
        for crawl in crud.list_active_crawls(session=session, url_id=url_id):
            crawl_id, workflow_id = crawl.id, crawl.workflow_id
            if not crud.set_crawl_stopped(session=session, crawl_id=crawl_id):
                continue
            crud.request_cancel(session=session, crawl_id=crawl_id)
            logger.info(f"Stopped crawl {crawl_id} ({workflow_id})")
            stopped.append(crawl_id)
        return stopped
