from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI
from fastapi.routing import APIRoute
from starlette.middleware.cors import CORSMiddleware

from crawlpulse.api.main import api_router
from crawlpulse.core.config import settings
from crawlpulse.notifications import Broadcaster
from crawlpulse.orchestrator import CrawlClient


# 自定义生成唯一ID函数
def custom_generate_unique_id(route: APIRoute) -> str:
    return f"{route.tags[0]}-{route.name}"


@asynccontextmanager
async def lifespan(app: FastAPI):
    # 启动：创建 SSE 广播器和爬取提交客户端
    app.state.broadcaster = Broadcaster()
    app.state.crawl_client = CrawlClient()
    yield
    # 关闭：断开所有 SSE 连接
    app.state.broadcaster.close()


if settings.SENTRY_DSN and settings.ENVIRONMENT != "local":
    sentry_sdk.init(dsn=str(settings.SENTRY_DSN), enable_tracing=True)

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    generate_unique_id_function=custom_generate_unique_id,
    lifespan=lifespan,
)

# 添加 CORS 中间件
# 设置所有允许的 CORS 源
if settings.all_cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.all_cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(api_router, prefix=settings.API_V1_STR)
