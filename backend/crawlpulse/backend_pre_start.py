import logging

from sqlalchemy import Engine
from sqlmodel import Session, select
from tenacity import after_log, before_log, retry, stop_after_attempt, wait_fixed

from crawlpulse.core.db import engine, init_db

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

max_tries = 60 * 5  # 5 分钟
wait_seconds = 1


@retry(
    stop=stop_after_attempt(max_tries),
    wait=wait_fixed(wait_seconds),
    before=before_log(logger, logging.INFO),
    after=after_log(logger, logging.WARN),
)
def wait_for_db(db_engine: Engine) -> None:
    try:
        with Session(db_engine) as session:
            session.exec(select(1))
    except Exception as e:
        logger.error(f"Database not ready: {e}")
        raise e


def main() -> None:
    # API 进程和 worker 启动前都先执行
    logger.info("Waiting for database")
    wait_for_db(engine)
    logger.info("Creating tables")
    init_db(engine)
    logger.info("Database ready")


if __name__ == "__main__":
    main()
