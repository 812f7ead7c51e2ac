"""数据库连接与会话管理。"""
import os
import threading
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from core.config import cfg
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)

DEFAULT_DB_URL = "sqlite:///data/telemetry.db"


def _resolve_url(url: Optional[str] = None) -> str:
    value = url or os.getenv("DATABASE_URL") or cfg.get("db", DEFAULT_DB_URL)
    value = str(value or DEFAULT_DB_URL).strip()
    # Render/Heroku 仍下发 postgres://
    if value.startswith("postgres://"):
        value = value.replace("postgres://", "postgresql://", 1)
    return value


def _build_engine(url: str):
    if url.startswith("sqlite"):
        if url in ("sqlite://", "sqlite:///:memory:"):
            # 内存库必须共享同一连接，否则每个线程看到的是空库
            return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
        path = url.replace("sqlite:///", "", 1)
        folder = os.path.dirname(os.path.abspath(path))
        os.makedirs(folder, exist_ok=True)
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True, pool_size=5, max_overflow=10)


class Db:
    def __init__(self, tag: str = "默认", url: Optional[str] = None):
        self.tag = tag
        self._lock = threading.Lock()
        self._url = url
        self._engine = None
        self._session_factory = None

    def bind(self, url: Optional[str] = None):
        """(重新)绑定数据库，测试用 Db.bind("sqlite://") 切到内存库。"""
        with self._lock:
            if self._engine is not None:
                self._engine.dispose()
            self._url = _resolve_url(url)
            self._engine = _build_engine(self._url)
            self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self._engine)
        return self._engine

    @property
    def engine(self):
        if self._engine is None:
            self.bind(self._url)
        return self._engine

    def get_session(self):
        if self._session_factory is None:
            self.bind(self._url)
        return self._session_factory()

    def create_tables(self) -> None:
        from core.models.base import Base
        import core.models  # noqa: F401  注册全部模型

        Base.metadata.create_all(self.engine)
        log_event(logger, E.SYSTEM_DB_INIT, tag=self.tag, url=self._url.split("@")[-1])


DB = Db(tag="遥测")
