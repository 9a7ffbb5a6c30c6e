import uuid
from collections.abc import Generator
from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jwt.exceptions import InvalidTokenError
from pydantic import ValidationError
from sqlmodel import Session

from crawlpulse.core.config import settings
from crawlpulse.core.db import engine
from crawlpulse.models import TokenPayload
from crawlpulse.notifications import Broadcaster
from crawlpulse.orchestrator import CrawlClient

# 令牌由外部的登录模块签发
reusable_oauth2 = OAuth2PasswordBearer(
    tokenUrl=f"{settings.API_V1_STR}/login/access-token", auto_error=False
)


def get_db() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


SessionDep = Annotated[Session, Depends(get_db)]
BearerDep = Annotated[str | None, Depends(reusable_oauth2)]


def get_token(request: Request, bearer: BearerDep) -> str:
    # EventSource 不能设置请求头，所以还接受 cookie 和查询参数
    token = request.cookies.get("token") or bearer or request.query_params.get("token")
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token


def get_current_user_id(token: Annotated[str, Depends(get_token)]) -> uuid.UUID:
    try:
        payload = jwt.decode(
            token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM]
        )
        token_data = TokenPayload(**payload)
        return uuid.UUID(str(token_data.sub))
    except (InvalidTokenError, ValidationError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Could not validate credentials",
        )


CurrentUserId = Annotated[uuid.UUID, Depends(get_current_user_id)]


def get_broadcaster(request: Request) -> Broadcaster:
    return request.app.state.broadcaster


def get_crawl_client(request: Request) -> CrawlClient:
    return request.app.state.crawl_client


BroadcasterDep = Annotated[Broadcaster, Depends(get_broadcaster)]
CrawlClientDep = Annotated[CrawlClient, Depends(get_crawl_client)]
