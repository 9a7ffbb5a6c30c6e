"""
In-process durable execution engine for crawl tasks.

Durable state lives on the Crawl row (status, attempt counter, claim owner,
heartbeat timestamp, cancellation flag), so any worker process can pick up an
execution another worker abandoned. Each claimed crawl gets one supervisor
task which runs attempts under tenacity's retry loop and watches each attempt
for liveness and for the per-attempt deadline.
"""
import asyncio
import logging
import os
import socket
import uuid
from datetime import timedelta
from typing import Awaitable, Callable, Dict, Optional

from sqlalchemy import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
)

from crawlpulse import crud
from crawlpulse.core.config import settings
from crawlpulse.notifications import Notifier
from crawlpulse.utils import utcnow

from .context import AttemptContext, CrawlJob
from .exceptions import AttemptFailed, AttemptTimeout, HeartbeatTimeout
from .policy import ActivityOptions

logger = logging.getLogger(__name__)

CrawlTaskFn = Callable[[CrawlJob, AttemptContext], Awaitable[None]]


HOSTNAME_MAX_LENGTH = 200


def default_worker_id() -> str:
    return f"{socket.gethostname()[:HOSTNAME_MAX_LENGTH]}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class Execution:
    def __init__(self, job: CrawlJob, attempts_used: int, deadline_at):
        self.job = job
        self.attempts_used = attempts_used
        self.deadline_at = deadline_at
        self.context: Optional[AttemptContext] = None
        self.shutting_down = False
        self.task: Optional[asyncio.Task] = None

    def remaining(self) -> float:
        return (self.deadline_at - utcnow()).total_seconds()


class Orchestrator:
    def __init__(
        self,
        *,
        engine: Engine,
        task: CrawlTaskFn,
        notifier: Notifier,
        options: Optional[ActivityOptions] = None,
        concurrency: int = settings.WORKER_CONCURRENCY,
        poll_interval: float = settings.WORKER_POLL_INTERVAL,
        watchdog_interval: float = 1.0,
        orphan_check_interval: Optional[float] = None,
        worker_id: Optional[str] = None,
    ):
        self.engine = engine
        self.task = task
        self.notifier = notifier
        self.options = options or ActivityOptions()
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.watchdog_interval = watchdog_interval
        self.orphan_check_interval = orphan_check_interval or self.options.heartbeat_timeout
        self.worker_id = worker_id or default_worker_id()
        self._executions: Dict[uuid.UUID, Execution] = {}

    @property
    def active_count(self) -> int:
        return len(self._executions)

    # ---- 主循环 ----

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        stop_event = stop_event or asyncio.Event()
        logger.info(
            f"Worker {self.worker_id} started (concurrency={self.concurrency}, "
            f"poll_interval={self.poll_interval}s)"
        )
        loop = asyncio.get_running_loop()
        next_orphan_check = loop.time()
        try:
            while not stop_event.is_set():
                try:
                    if loop.time() >= next_orphan_check:
                        next_orphan_check = loop.time() + self.orphan_check_interval
                        await self.recover_orphans()
                    await self.poll_once()
                except SQLAlchemyError as e:
                    logger.error(f"Worker {self.worker_id} poll failed: {e}")
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.shutdown()
            logger.info(f"Worker {self.worker_id} stopped")

    async def poll_once(self) -> int:
        """Honour cancellation requests, then claim due crawls up to the free slots."""
        self._reap()

        with Session(self.engine) as session:
            cancelled = crud.list_cancel_requested(session=session, crawl_ids=list(self._executions))
        for crawl_id in cancelled:
            self.cancel(crawl_id)

        free = self.concurrency - len(self._executions)
        if free <= 0:
            return 0

        started = 0
        with Session(self.engine) as session:
            due = crud.list_due_crawls(session=session, now=utcnow(), limit=free)
            for crawl in due:
                job = CrawlJob(
                    crawl_id=crawl.id,
                    url_id=crawl.url_id,
                    user_id=crawl.url.user_id,
                    url=crawl.url.normalized_url,
                    workflow_id=crawl.workflow_id,
                )
                attempts_used = crawl.attempts
                deadline_at = crawl.queued_at + timedelta(seconds=self.options.schedule_to_close_timeout)
                if not crud.claim_crawl(session=session, crawl_id=job.crawl_id, worker_id=self.worker_id):
                    continue
                self.start(Execution(job, attempts_used, deadline_at))
                started += 1
        return started

    def start(self, execution: Execution) -> None:
        job = execution.job
        execution.task = asyncio.create_task(self._supervise(execution), name=job.workflow_id)
        self._executions[job.crawl_id] = execution
        logger.info(f"Claimed crawl {job.crawl_id} ({job.workflow_id}) for {job.url}")

    def cancel(self, crawl_id: uuid.UUID) -> bool:
        execution = self._executions.get(crawl_id)
        if execution is None or execution.task is None or execution.task.done():
            return False
        logger.info(f"Cancelling crawl {crawl_id} ({execution.job.workflow_id})")
        execution.task.cancel()
        return True

    def _reap(self) -> None:
        for crawl_id, execution in list(self._executions.items()):
            task = execution.task
            if task is None or not task.done():
                continue
            del self._executions[crawl_id]
            if not task.cancelled() and task.exception() is not None:
                logger.error(f"Supervisor for crawl {crawl_id} crashed: {task.exception()!r}")

    async def wait_idle(self) -> None:
        tasks = [e.task for e in self._executions.values() if e.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._reap()

    # ---- 单次执行 ----

    async def _supervise(self, execution: Execution) -> None:
        job = execution.job
        try:
            await self._execute(execution)
        except asyncio.CancelledError:
            reason = "worker shutdown" if execution.shutting_down else "stop requested"
            logger.info(f"Crawl {job.crawl_id} ({job.workflow_id}) cancelled: {reason}")
            raise
        except Exception as e:
            logger.exception(f"Supervisor for crawl {job.crawl_id} ({job.workflow_id}) failed: {e}")
            self._abandon(job)

    async def _execute(self, execution: Execution) -> None:
        job = execution.job
        policy = self.options.retry_policy
        remaining_attempts = policy.maximum_attempts - execution.attempts_used
        remaining_time = execution.remaining()
        if remaining_attempts <= 0 or remaining_time <= 0:
            await self._fail(job, "Crawl did not complete: retry budget exhausted")
            return

        retrying = AsyncRetrying(
            stop=stop_after_attempt(remaining_attempts) | stop_after_delay(remaining_time),
            wait=policy.wait(),
            retry=retry_if_exception_type(AttemptFailed),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._run_attempt(execution)
        except AttemptFailed as e:
            logger.error(f"Crawl {job.crawl_id} ({job.workflow_id}) failed permanently: {e}")
            await self._fail(job, f"Crawl did not complete: {e}")

    def _abandon(self, job: CrawlJob) -> None:
        """
        Give the claim back after an unexpected supervisor error.

        The next claim re-checks the attempt and time budgets and fails the
        crawl once they are spent. If the release itself fails, orphan
        recovery picks the crawl up after its heartbeat goes stale.
        """
        try:
            with Session(self.engine) as session:
                crud.release_crawl(session=session, crawl_id=job.crawl_id, worker_id=self.worker_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to release crawl {job.crawl_id}: {e}")

    async def _run_attempt(self, execution: Execution) -> None:
        job = execution.job
        options = self.options
        with Session(self.engine) as session:
            attempt = crud.record_attempt(session=session, crawl_id=job.crawl_id)

        context = AttemptContext(job.crawl_id, attempt=attempt, max_attempts=options.retry_policy.maximum_attempts)
        context.will_retry = execution.shutting_down
        execution.context = context
        timeout = min(options.start_to_close_timeout, execution.remaining())
        logger.info(f"Crawl {job.crawl_id} attempt {attempt}/{context.max_attempts} (timeout {timeout:.0f}s)")

        loop = asyncio.get_running_loop()
        started_at = loop.time()
        persisted_beat = context.last_heartbeat
        child = asyncio.create_task(self.task(job, context), name=f"{job.workflow_id}-attempt-{attempt}")
        try:
            while True:
                done, _ = await asyncio.wait({child}, timeout=self.watchdog_interval)
                if child in done:
                    break
                if context.last_heartbeat != persisted_beat:
                    persisted_beat = context.last_heartbeat
                    self._record_heartbeat(job)
                if context.seconds_since_heartbeat() > options.heartbeat_timeout:
                    raise HeartbeatTimeout(
                        f"no heartbeat for {options.heartbeat_timeout:.0f}s (last: {context.details})"
                    )
                if loop.time() - started_at > timeout:
                    raise AttemptTimeout(f"attempt exceeded {timeout:.0f}s")
        except AttemptFailed as e:
            context.will_retry = not context.is_final and execution.remaining() > 0
            logger.warning(
                f"Crawl {job.crawl_id} attempt {attempt} aborted: {e} "
                f"({'will retry' if context.will_retry else 'final attempt'})"
            )
            raise
        finally:
            if not child.done():
                child.cancel()
                await asyncio.wait({child})

        if child.cancelled():
            raise AttemptFailed("attempt cancelled")
        exc = child.exception()
        if exc is not None:
            raise AttemptFailed(f"crawl task raised {exc!r}") from exc

    def _record_heartbeat(self, job: CrawlJob) -> None:
        try:
            with Session(self.engine) as session:
                crud.record_heartbeat(session=session, crawl_id=job.crawl_id, at=utcnow())
        except SQLAlchemyError as e:
            logger.warning(f"Failed to persist heartbeat for crawl {job.crawl_id}: {e}")

    async def _fail(self, job: CrawlJob, message: str) -> None:
        with Session(self.engine) as session:
            marked = crud.set_crawl_error(session=session, crawl_id=job.crawl_id, error_message=message)
        if marked:
            await self.notifier.notify_crawl_update(job.user_id, job.url_id)

    # ---- 恢复与关闭 ----

    async def recover_orphans(self) -> int:
        """
        Release crawls whose claiming worker stopped heartbeating.

        Crawls with attempts left go back to the queue; the rest are marked
        ``error``. The grace period covers the longest retry backoff, during
        which a live supervisor does not heartbeat.
        """
        grace = self.options.heartbeat_timeout + self.options.retry_policy.maximum_interval
        stale_before = utcnow() - timedelta(seconds=grace)
        failed = []
        with Session(self.engine) as session:
            for crawl in crud.list_orphaned_crawls(session=session, stale_before=stale_before):
                if crawl.worker_id == self.worker_id and crawl.id in self._executions:
                    continue
                crawl_id, worker_id, attempts = crawl.id, crawl.worker_id, crawl.attempts
                user_id, url_id = crawl.url.user_id, crawl.url_id
                if attempts < self.options.retry_policy.maximum_attempts:
                    crud.release_crawl(session=session, crawl_id=crawl_id, worker_id=worker_id)
                    logger.warning(f"Released orphaned crawl {crawl_id} from worker {worker_id}")
                elif crud.set_crawl_error(
                    session=session,
                    crawl_id=crawl_id,
                    error_message=f"Crawl did not complete: worker lost after {attempts} attempts",
                ):
                    logger.warning(f"Orphaned crawl {crawl_id} exhausted its attempts")
                    failed.append((user_id, url_id))
        for user_id, url_id in failed:
            await self.notifier.notify_crawl_update(user_id, url_id)
        return len(failed)

    async def shutdown(self) -> None:
        """Cancel running executions and hand their crawls back for another worker."""
        executions = [e for e in self._executions.values() if e.task is not None and not e.task.done()]
        for execution in executions:
            execution.shutting_down = True
            if execution.context is not None:
                execution.context.will_retry = True
            execution.task.cancel()
        if executions:
            await asyncio.gather(*(e.task for e in executions), return_exceptions=True)
            with Session(self.engine) as session:
                for execution in executions:
                    crud.release_crawl(session=session, crawl_id=execution.job.crawl_id, worker_id=self.worker_id)
            logger.info(f"Worker {self.worker_id} released {len(executions)} crawl(s)")
        self._executions.clear()
