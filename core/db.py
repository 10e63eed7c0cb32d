import os
import threading
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from core.config import cfg
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)

DEFAULT_DB_URL = "sqlite:///data/coverflow.db"


class Database:
    """进程内共享的 SQLAlchemy 引擎与会话工厂"""

    def __init__(self, url: str = ""):
        self._url = url
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None
        self._lock = threading.Lock()

    @property
    def url(self) -> str:
        return self._url or str(cfg.get("db.url", DEFAULT_DB_URL) or DEFAULT_DB_URL)

    def configure(self, url: str) -> None:
        """切换数据库地址（测试中使用 sqlite://）"""
        with self._lock:
            if self._engine is not None:
                self._engine.dispose()
            self._url = url
            self._engine = None
            self._session_factory = None

    def _build_engine(self) -> Engine:
        url = self.url
        if url.startswith("sqlite"):
            db_path = url.split("///", 1)[1] if "///" in url else ""
            if db_path and db_path != ":memory:":
                directory = os.path.dirname(db_path)
                if directory:
                    os.makedirs(directory, exist_ok=True)
            kwargs = {"connect_args": {"check_same_thread": False}}
            if not db_path or db_path == ":memory:":
                # 内存库需要单连接共享，否则每个会话看到的是不同的库
                kwargs["poolclass"] = StaticPool
            return create_engine(url, **kwargs)
        return create_engine(url, pool_pre_ping=True)

    def get_engine(self) -> Engine:
        with self._lock:
            if self._engine is None:
                self._engine = self._build_engine()
                self._session_factory = sessionmaker(
                    bind=self._engine,
                    autoflush=False,
                    expire_on_commit=False,
                )
            return self._engine

    def get_session(self) -> Session:
        self.get_engine()
        assert self._session_factory is not None
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_tables(self) -> None:
        # 延迟导入模型，避免循环依赖
        from core.models import base, account, generation, transaction  # noqa: F401

        engine = self.get_engine()
        base.Base.metadata.create_all(engine)
        log_event(logger, E.SYSTEM_DB_INIT, url=engine.url.render_as_string(hide_password=True))

    def drop_tables(self) -> None:
        from core.models import base

        base.Base.metadata.drop_all(self.get_engine())


DB = Database()
