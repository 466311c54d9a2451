import logging
import os
import time
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from rentbook.core.config import DatabaseConfig

logger = logging.getLogger(__name__)

Base = declarative_base()

T = TypeVar("T")

# SQLSTATE 40001 serialization_failure, 40P01 deadlock_detected
_RETRYABLE_PGCODES = {"40001", "40P01"}

IMMEDIATE_OPTION = "rentbook_immediate"


def _is_retryable(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) in _RETRYABLE_PGCODES:
        return True
    msg = str(orig or exc).lower()
    return "database is locked" in msg or "could not serialize" in msg


class Database:
    """Engine, session factory and serializable transaction runner."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.url = make_url(config.url)
        self.is_sqlite = self.url.get_backend_name() == "sqlite"

        if self.is_sqlite:
            if self.url.database and self.url.database != ":memory:":
                folder = os.path.dirname(self.url.database)
                if folder:
                    os.makedirs(folder, exist_ok=True)
            self.engine = create_engine(
                self.url,
                echo=config.echo,
                pool_pre_ping=True,
                connect_args={"check_same_thread": False, "timeout": 30},
            )
            self._install_sqlite_hooks()
        else:
            # PostgreSQL: 5 idle + 5 overflow, recycled hourly
            self.engine = create_engine(
                self.url,
                echo=config.echo,
                pool_pre_ping=True,
                pool_size=config.pool_size,
                max_overflow=config.max_overflow,
                pool_recycle=config.pool_recycle,
                isolation_level="SERIALIZABLE",
            )

        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def _install_sqlite_hooks(self) -> None:
        @event.listens_for(self.engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            # let SQLAlchemy's begin event issue BEGIN itself
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

        @event.listens_for(self.engine, "begin")
        def _on_begin(conn):
            # write transactions take the database lock up front
            if conn.get_execution_options().get(IMMEDIATE_OPTION):
                conn.exec_driver_sql("BEGIN IMMEDIATE")
            else:
                conn.exec_driver_sql("BEGIN")

    # -----------------------------------------------------------------------

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    def transaction(self, fn: Callable[[Session], T]) -> T:
        """Run ``fn`` in one serializable transaction, retrying serialization conflicts."""
        attempts = max(1, self.config.serializable_retries)
        for attempt in range(1, attempts + 1):
            db = self.SessionLocal()
            try:
                if self.is_sqlite:
                    db.connection(execution_options={IMMEDIATE_OPTION: True})
                result = fn(db)
                db.commit()
                return result
            except (OperationalError, DBAPIError) as e:
                db.rollback()
                if attempt < attempts and _is_retryable(e):
                    logger.warning("Serialization conflict (attempt %d/%d): %s", attempt, attempts, e)
                    time.sleep(0.01 * attempt)
                    continue
                raise
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()
        raise RuntimeError("unreachable")

    def ping(self) -> None:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def dispose(self) -> None:
        self.engine.dispose()
