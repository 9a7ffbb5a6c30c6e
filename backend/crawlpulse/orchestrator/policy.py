from dataclasses import dataclass, field

from tenacity import wait_exponential

from crawlpulse.core.config import settings


@dataclass(frozen=True)
class RetryPolicy:
    initial_interval: float = settings.CRAWL_RETRY_INITIAL_INTERVAL
    backoff_coefficient: float = settings.CRAWL_RETRY_BACKOFF_COEFFICIENT
    maximum_interval: float = settings.CRAWL_RETRY_MAX_INTERVAL
    maximum_attempts: int = settings.CRAWL_RETRY_MAX_ATTEMPTS

    def wait(self) -> wait_exponential:
        # 第 n 次失败后等待 initial * coefficient^(n-1)，上限 maximum_interval
        return wait_exponential(
            multiplier=self.initial_interval,
            exp_base=self.backoff_coefficient,
            max=self.maximum_interval,
        )


@dataclass(frozen=True)
class ActivityOptions:
    """Timeouts and retry policy applied to every crawl execution."""

    start_to_close_timeout: float = settings.CRAWL_START_TO_CLOSE_TIMEOUT
    schedule_to_close_timeout: float = settings.CRAWL_SCHEDULE_TO_CLOSE_TIMEOUT
    heartbeat_timeout: float = settings.CRAWL_HEARTBEAT_TIMEOUT
    start_delay: float = settings.CRAWL_START_DELAY
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
