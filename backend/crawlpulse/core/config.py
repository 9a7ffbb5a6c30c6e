import secrets
from typing import Annotated, Any, Literal

from pydantic import (
    AnyUrl,
    BeforeValidator,
    HttpUrl,
    PostgresDsn,
    computed_field,
)
from pydantic_core import MultiHostUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


def parse_cors(v: Any) -> list[str] | str:
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",")]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # 使用 backend/ 上一级目录中的 .env 文件
        env_file="../.env",
        env_ignore_empty=True,
        extra="ignore",
    )
    API_V1_STR: str = "/api/v1"
    SECRET_KEY: str = secrets.token_urlsafe(32)
    ALGORITHM: str = "HS256"
    FRONTEND_HOST: str = "http://localhost:5173"
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"

    BACKEND_CORS_ORIGINS: Annotated[
        list[AnyUrl] | str, BeforeValidator(parse_cors)
    ] = []

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_cors_origins(self) -> list[str]:
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS] + [
            self.FRONTEND_HOST
        ]

    PROJECT_NAME: str = "crawlpulse"
    SENTRY_DSN: HttpUrl | None = None
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "crawlpulse"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> PostgresDsn:
        return MultiHostUrl.build(
            scheme="postgresql+psycopg",
            username=self.POSTGRES_USER,
            password=self.POSTGRES_PASSWORD,
            host=self.POSTGRES_SERVER,
            port=self.POSTGRES_PORT,
            path=self.POSTGRES_DB,
        )

    # 页面抓取
    CRAWL_USER_AGENT: str = "Mozilla/5.0 (compatible; CrawlPulseBot/1.0)"
    CRAWL_FETCH_TIMEOUT: float = 120.0
    CRAWL_TITLE_MAX_LENGTH: int = 500
    ANCHOR_TEXT_MAX_LENGTH: int = 1024

    # 链接可达性探测
    LINK_PROBE_TIMEOUT: float = 10.0
    LINK_PROBE_MAX_REDIRECTS: int = 5
    LINK_PROBE_CONCURRENCY: int = 10

    # 编排器策略
    CRAWL_START_DELAY: float = 2.0
    CRAWL_START_TO_CLOSE_TIMEOUT: float = 10 * 60
    CRAWL_SCHEDULE_TO_CLOSE_TIMEOUT: float = 15 * 60
    CRAWL_HEARTBEAT_TIMEOUT: float = 30.0
    CRAWL_HEARTBEAT_INTERVAL: float = 10.0
    CRAWL_RETRY_INITIAL_INTERVAL: float = 1.0
    CRAWL_RETRY_BACKOFF_COEFFICIENT: float = 2.0
    CRAWL_RETRY_MAX_INTERVAL: float = 60.0
    CRAWL_RETRY_MAX_ATTEMPTS: int = 3
    WORKER_CONCURRENCY: int = 4
    WORKER_POLL_INTERVAL: float = 1.0

    # 实时推送
    SSE_KEEPALIVE_INTERVAL: float = 30.0
    SSE_CHANNEL_BUFFER: int = 10
    NOTIFY_RELAY_URL: str = "http://localhost:8000"
    NOTIFY_RELAY_TIMEOUT: float = 5.0
    INTERNAL_API_TOKEN: str | None = None


settings = Settings()  # type: ignore
