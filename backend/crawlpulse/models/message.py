from sqlmodel import SQLModel


# 通用消息
class Message(SQLModel):
    message: str


# JWT 令牌的内容
class TokenPayload(SQLModel):
    sub: str | None = None
