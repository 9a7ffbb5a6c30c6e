import uuid
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import func, update
from sqlmodel import Session, col, select

from crawlpulse.analyzer.schemas import LinkInfo, PageMetadata
from crawlpulse.core.config import settings
from crawlpulse.models import (
    ACTIVE_STATUSES,
    Crawl,
    CrawlStatus,
    DiscoveredLink,
    Url,
)
from crawlpulse.utils import sanitize_text, utcnow

ERROR_MESSAGE_MAX_LENGTH = 2048


# ---- URL 归属（由 URL 管理模块拥有的数据） ----


def get_url_for_user(*, session: Session, url_id: uuid.UUID, user_id: uuid.UUID) -> Url | None:
    statement = select(Url).where(Url.id == url_id, Url.user_id == user_id)
    return session.exec(statement).first()


# ---- 爬取记录 ----


def count_active_crawls(*, session: Session, url_id: uuid.UUID) -> int:
    statement = (
        select(func.count())
        .select_from(Crawl)
        .where(Crawl.url_id == url_id, col(Crawl.status).in_(ACTIVE_STATUSES))
    )
    return session.exec(statement).one()


def queue_crawl(
    *, session: Session, url_id: uuid.UUID, workflow_id: str, not_before: datetime | None = None
) -> Crawl:
    crawl = Crawl(
        url_id=url_id,
        workflow_id=workflow_id,
        status=CrawlStatus.QUEUED,
        not_before=not_before or utcnow(),
    )
    session.add(crawl)
    session.commit()
    session.refresh(crawl)
    return crawl


def get_crawl_by_workflow_id(*, session: Session, workflow_id: str) -> Crawl | None:
    statement = select(Crawl).where(Crawl.workflow_id == workflow_id)
    return session.exec(statement).first()


def get_crawl_for_user(*, session: Session, crawl_id: uuid.UUID, user_id: uuid.UUID) -> Crawl | None:
    statement = (
        select(Crawl)
        .join(Url, col(Url.id) == col(Crawl.url_id))
        .where(Crawl.id == crawl_id, Url.user_id == user_id)
    )
    return session.exec(statement).first()


def list_active_crawls(*, session: Session, url_id: uuid.UUID) -> Sequence[Crawl]:
    statement = (
        select(Crawl)
        .where(Crawl.url_id == url_id, col(Crawl.status).in_(ACTIVE_STATUSES))
        .order_by(col(Crawl.queued_at))
    )
    return session.exec(statement).all()


def _transition(
    session: Session,
    crawl_id: uuid.UUID,
    allowed: Sequence[CrawlStatus],
    **values: Any,
) -> bool:
    """
    Conditionally update a crawl that is still in one of ``allowed`` states.

    The status check happens inside the UPDATE so that writers in other
    processes (a stop request racing the worker) cannot resurrect a crawl
    that already reached a terminal state.
    """
    statement = (
        update(Crawl)
        .where(col(Crawl.id) == crawl_id, col(Crawl.status).in_(allowed))
        .values(**values)
    )
    result = session.exec(statement)  # type: ignore[call-overload]
    session.commit()
    return result.rowcount > 0


def set_crawl_running(*, session: Session, crawl_id: uuid.UUID) -> bool:
    return _transition(
        session,
        crawl_id,
        ACTIVE_STATUSES,
        status=CrawlStatus.RUNNING,
        started_at=utcnow(),
        error_message=None,
    )


def set_crawl_error(*, session: Session, crawl_id: uuid.UUID, error_message: str) -> bool:
    return _transition(
        session,
        crawl_id,
        ACTIVE_STATUSES,
        status=CrawlStatus.ERROR,
        finished_at=utcnow(),
        error_message=sanitize_text(error_message, ERROR_MESSAGE_MAX_LENGTH),
    )


def set_crawl_stopped(*, session: Session, crawl_id: uuid.UUID) -> bool:
    return _transition(
        session,
        crawl_id,
        ACTIVE_STATUSES,
        status=CrawlStatus.STOPPED,
        finished_at=utcnow(),
    )


def save_crawl_result(*, session: Session, crawl_id: uuid.UUID, metadata: PageMetadata) -> bool:
    return _transition(
        session,
        crawl_id,
        (CrawlStatus.RUNNING,),
        status=CrawlStatus.DONE,
        finished_at=utcnow(),
        html_version=metadata.html_version,
        page_title=metadata.title or None,
        h1_count=metadata.heading_count(1),
        h2_count=metadata.heading_count(2),
        h3_count=metadata.heading_count(3),
        h4_count=metadata.heading_count(4),
        h5_count=metadata.heading_count(5),
        h6_count=metadata.heading_count(6),
        internal_links_count=metadata.links.count("internal"),
        external_links_count=metadata.links.count("external"),
        inaccessible_links_count=metadata.links.count("inaccessible"),
        has_login_form=metadata.has_login_form,
    )


# ---- 发现的链接 ----


def create_discovered_link(*, session: Session, crawl_id: uuid.UUID, link: LinkInfo) -> DiscoveredLink:
    db_link = DiscoveredLink(
        crawl_id=crawl_id,
        href=link.href,
        absolute_url=link.absolute_url,
        is_internal=link.is_internal,
        status_code=link.status_code,
        anchor_text=sanitize_text(link.anchor_text, settings.ANCHOR_TEXT_MAX_LENGTH) or None,
    )
    session.add(db_link)
    session.commit()
    return db_link


def list_discovered_links(
    *, session: Session, crawl_id: uuid.UUID, skip: int = 0, limit: int = 100
) -> tuple[Sequence[DiscoveredLink], int]:
    count_statement = (
        select(func.count()).select_from(DiscoveredLink).where(DiscoveredLink.crawl_id == crawl_id)
    )
    count = session.exec(count_statement).one()
    statement = (
        select(DiscoveredLink)
        .where(DiscoveredLink.crawl_id == crawl_id)
        .offset(skip)
        .limit(limit)
    )
    return session.exec(statement).all(), count


# ---- 编排器状态 ----


def list_due_crawls(*, session: Session, now: datetime, limit: int) -> Sequence[Crawl]:
    statement = (
        select(Crawl)
        .where(
            col(Crawl.status).in_(ACTIVE_STATUSES),
            col(Crawl.worker_id).is_(None),
            col(Crawl.cancel_requested).is_(False),
            col(Crawl.not_before) <= now,
        )
        .order_by(col(Crawl.not_before))
        .limit(limit)
    )
    return session.exec(statement).all()


def claim_crawl(*, session: Session, crawl_id: uuid.UUID, worker_id: str) -> bool:
    statement = (
        update(Crawl)
        .where(
            col(Crawl.id) == crawl_id,
            col(Crawl.worker_id).is_(None),
            col(Crawl.status).in_(ACTIVE_STATUSES),
        )
        .values(worker_id=worker_id, heartbeat_at=utcnow())
    )
    result = session.exec(statement)  # type: ignore[call-overload]
    session.commit()
    return result.rowcount > 0


def release_crawl(*, session: Session, crawl_id: uuid.UUID, worker_id: str) -> bool:
    statement = (
        update(Crawl)
        .where(col(Crawl.id) == crawl_id, col(Crawl.worker_id) == worker_id)
        .values(worker_id=None)
    )
    result = session.exec(statement)  # type: ignore[call-overload]
    session.commit()
    return result.rowcount > 0


def record_attempt(*, session: Session, crawl_id: uuid.UUID) -> int:
    statement = (
        update(Crawl)
        .where(col(Crawl.id) == crawl_id)
        .values(attempts=col(Crawl.attempts) + 1, heartbeat_at=utcnow())
    )
    session.exec(statement)  # type: ignore[call-overload]
    session.commit()
    return session.exec(select(Crawl.attempts).where(Crawl.id == crawl_id)).one()


def record_heartbeat(*, session: Session, crawl_id: uuid.UUID, at: datetime) -> None:
    statement = update(Crawl).where(col(Crawl.id) == crawl_id).values(heartbeat_at=at)
    session.exec(statement)  # type: ignore[call-overload]
    session.commit()


def request_cancel(*, session: Session, crawl_id: uuid.UUID) -> None:
    statement = update(Crawl).where(col(Crawl.id) == crawl_id).values(cancel_requested=True)
    session.exec(statement)  # type: ignore[call-overload]
    session.commit()


def list_cancel_requested(*, session: Session, crawl_ids: Sequence[uuid.UUID]) -> Sequence[uuid.UUID]:
    if not crawl_ids:
        return []
    statement = select(Crawl.id).where(
        col(Crawl.id).in_(crawl_ids), col(Crawl.cancel_requested).is_(True)
    )
    return session.exec(statement).all()


def list_orphaned_crawls(*, session: Session, stale_before: datetime) -> Sequence[Crawl]:
    """Active crawls claimed by a worker that stopped heartbeating."""
    statement = select(Crawl).where(
        col(Crawl.status).in_(ACTIVE_STATUSES),
        col(Crawl.worker_id).is_not(None),
        func.coalesce(col(Crawl.heartbeat_at), col(Crawl.queued_at)) < stale_before,
    )
    return session.exec(statement).all()
