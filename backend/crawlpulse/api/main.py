from fastapi import APIRouter

from crawlpulse.api.routes import crawler, internal, utils

api_router = APIRouter()
api_router.include_router(utils.router)
api_router.include_router(crawler.router)
api_router.include_router(internal.router)
