from sqlalchemy import Engine
from sqlmodel import SQLModel, create_engine

from crawlpulse.core.config import settings

engine = create_engine(str(settings.SQLALCHEMY_DATABASE_URI), pool_pre_ping=True)


# 确保在初始化数据库之前导入所有 SQLModel 模型 (crawlpulse.models)
# 否则，SQLModel 可能无法正确初始化关系
import crawlpulse.models  # noqa: E402,F401


def init_db(db_engine: Engine = engine) -> None:
    # 表应使用迁移创建，这里直接建表以便 API 进程与 worker 进程共享同一套结构
    SQLModel.metadata.create_all(db_engine)
