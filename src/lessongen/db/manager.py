"""Engine and session handling for the lesson store."""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from lessongen.db.base import Base

logger = logging.getLogger(__name__)

# Counter updates and lesson inserts come from the API, the scheduler thread
# and asyncio.to_thread workers at once.
SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=30000",
)


def _apply_sqlite_pragmas(dbapi_connection, connection_record) -> None:  # type: ignore
    cursor = dbapi_connection.cursor()
    for pragma in SQLITE_PRAGMAS:
        cursor.execute(pragma)
    cursor.close()


class DatabaseManager:
    """Owns the engine for lessons, counters, idempotency keys and job rows."""

    def __init__(
        self,
        database_url: str = "sqlite:///data/lessongen.db",
        echo: bool = False,
    ) -> None:
        """
        Args:
            database_url: SQLAlchemy database URL
            echo: Log every SQL statement
        """
        self._url = make_url(database_url)
        self._echo = echo
        self._engine: Engine | None = None
        self._sessions: sessionmaker[Session] | None = None

    @property
    def is_sqlite(self) -> bool:
        return self._url.get_backend_name() == "sqlite"

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = self._build_engine()
        return self._engine

    def _build_engine(self) -> Engine:
        connect_args: dict = {}
        if self.is_sqlite:
            if self._url.database and self._url.database != ":memory:":
                Path(self._url.database).parent.mkdir(parents=True, exist_ok=True)
            connect_args = {"check_same_thread": False, "timeout": 30}

        engine = create_engine(
            self._url,
            echo=self._echo,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
        if self.is_sqlite:
            event.listen(engine, "connect", _apply_sqlite_pragmas)
            logger.info(f"SQLite store at {self._url.database} (WAL)")
        return engine

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Transactional session: commits on success, rolls back on error.

        Usage:
            with db_manager.get_session() as session:
                session.add(lesson)
        """
        if self._sessions is None:
            self._sessions = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        session = self._sessions()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_db(self) -> None:
        """Create missing tables and unique indexes."""
        Base.metadata.create_all(bind=self.engine)
        logger.info(f"Schema ready ({len(Base.metadata.tables)} tables)")

    def health_check(self) -> bool:
        """True if a trivial query succeeds."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False
        return True

    def close(self) -> None:
        if self._engine is None:
            return
        self._engine.dispose()
        self._engine = None
        self._sessions = None
        logger.info("Database engine disposed")
