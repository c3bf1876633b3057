from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from pydantic_settings import BaseSettings
from functools import lru_cache, wraps
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    database_url: str = "sqlite:///./lucky_lobby.db"

    # 大廳節奏
    countdown_seconds: int = 3
    spin_duration_ms: int = 5500
    default_queue_size: int = 20

    # 排程器
    scheduler_enabled: bool = True
    sweep_interval_seconds: int = 2

    # 結算重試
    settlement_max_attempts: int = 5
    settlement_retry_backoff_seconds: float = 0.2

    # 未滿員大廳的處理策略："none" 或 "refund"
    lobby_expiry_policy: str = "none"
    lobby_wait_timeout_seconds: int = 300

    history_default_limit: int = 50
    history_max_limit: int = 200

    internal_api_token: Optional[str] = None
    log_level: str = "INFO"

    class Config:
        env_file = ".env"


@lru_cache()
def get_settings():
    return Settings()


settings = get_settings()

# SQLite 需要特殊設定：connect_args={"check_same_thread": False}
# 請求執行緒與排程器執行緒會共用同一個 SQLite 檔案
engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if settings.database_url.startswith("sqlite") else {},
    pool_pre_ping=True
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """每個請求一個 Session，請求結束就關閉"""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def _session_from(args, kwargs) -> Optional[Session]:
    if args and isinstance(args[0], Session):
        return args[0]
    candidate = kwargs.get("db")
    return candidate if isinstance(candidate, Session) else None


def transactional(func):
    """
    讓一個業務操作變成一個 transaction

    成功就 commit；拋出任何異常就 rollback 後原樣往上拋。
    被包住的函式只 flush，不自己 commit，第一個參數（或 db=）必須是 Session。

    記錄方式：
        - 一般的業務異常（餘額不足、號碼被選走…）記 INFO，不印 traceback
        - 不變量被破壞與其他異常記 ERROR，附 traceback
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        db = _session_from(args, kwargs)
        if db is None:
            raise ValueError(f"{func.__name__} is @transactional and needs a Session as 'db'")

        try:
            result = func(*args, **kwargs)
            db.commit()
        except Exception as e:
            from core.exceptions import LuckyLobbyException  # 避免 circular import

            db.rollback()
            if isinstance(e, LuckyLobbyException) and not e.fatal:
                logger.info(f"{func.__name__} rolled back: {e.code} {e}")
            else:
                logger.error(f"{func.__name__} rolled back: {e}", exc_info=True)
            raise
        return result

    return wrapper
