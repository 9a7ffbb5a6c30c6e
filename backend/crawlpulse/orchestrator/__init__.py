from .client import CrawlClient, UrlNotFound
from .context import AttemptContext, CrawlJob
from .engine import Orchestrator
from .exceptions import AttemptFailed, AttemptTimeout, HeartbeatTimeout
from .policy import ActivityOptions, RetryPolicy

__all__ = [
    "ActivityOptions",
    "AttemptContext",
    "AttemptFailed",
    "AttemptTimeout",
    "CrawlClient",
    "CrawlJob",
    "HeartbeatTimeout",
    "Orchestrator",
    "RetryPolicy",
    "UrlNotFound",
]
