import uuid
from datetime import timedelta

import jwt
from sqlalchemy import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from crawlpulse.core.config import settings
from crawlpulse.core.db import init_db
from crawlpulse.models import Crawl, CrawlStatus, Url
from crawlpulse.utils import utcnow


def make_engine() -> Engine:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


def create_url(engine: Engine, user_id: uuid.UUID | None = None, url: str = "https://example.com/") -> Url:
    db_url = Url(
        user_id=user_id or uuid.uuid4(),
        normalized_url=url,
        domain="example.com",
    )
    with Session(engine) as session:
        session.add(db_url)
        session.commit()
        session.refresh(db_url)
    return db_url


def create_crawl(engine: Engine, url: Url, status: CrawlStatus = CrawlStatus.QUEUED, **fields) -> Crawl:
    crawl = Crawl(
        url_id=url.id,
        status=status,
        workflow_id=f"crawl_{url.id}_{uuid.uuid4()}",
        **fields,
    )
    with Session(engine) as session:
        session.add(crawl)
        session.commit()
        session.refresh(crawl)
    return crawl


def get_crawl(engine: Engine, crawl_id: uuid.UUID) -> Crawl:
    with Session(engine) as session:
        crawl = session.get(Crawl, crawl_id)
        assert crawl is not None
        return crawl


def make_token(user_id: uuid.UUID) -> str:
    payload = {"sub": str(user_id), "exp": utcnow() + timedelta(minutes=10)}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


class RecordingNotifier:
    def __init__(self):
        self.calls: list[tuple[uuid.UUID, uuid.UUID]] = []

    async def notify_crawl_update(self, user_id: uuid.UUID, url_id: uuid.UUID) -> None:
        self.calls.append((user_id, url_id))
