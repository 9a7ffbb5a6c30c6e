import time
import uuid
from dataclasses import dataclass


@dataclass(frozen=True)
class CrawlJob:
    crawl_id: uuid.UUID
    url_id: uuid.UUID
    user_id: uuid.UUID
    url: str
    workflow_id: str


class AttemptContext:
    """
    Per-attempt handle shared between the orchestrator and the running task.

    The task calls ``heartbeat`` to prove liveness; the orchestrator watches
    ``last_heartbeat`` and, before aborting an attempt, sets ``will_retry`` so
    the task knows whether to leave the crawl for the next attempt.
    """

    def __init__(self, crawl_id: uuid.UUID, attempt: int = 1, max_attempts: int = 1):
        self.crawl_id = crawl_id
        self.attempt = attempt
        self.max_attempts = max_attempts
        self.will_retry = False
        self.details: str | None = None
        self.last_heartbeat = time.monotonic()

    @property
    def is_final(self) -> bool:
        return self.attempt >= self.max_attempts

    def heartbeat(self, details: str | None = None) -> None:
        self.last_heartbeat = time.monotonic()
        if details is not None:
            self.details = details

    def seconds_since_heartbeat(self) -> float:
        return time.monotonic() - self.last_heartbeat
