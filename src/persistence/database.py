"""
Database connection management
"""

from contextlib import contextmanager
from typing import Iterator, Optional

from loguru import logger
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from .models import Base
from ..execution_engine.exceptions import StoreUnavailableError


MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


class Database:
    """
    Engine and session factory shared by the order and job stores

    Schema is created on construction. Any SQLAlchemyError raised inside a
    session is rolled back and re-raised as StoreUnavailableError.

    Sessions are synchronous and run on the calling thread, which for queue
    workers is the event loop: each commit briefly holds up the other
    workers. The in-memory database shares a single connection and must
    stay on one thread.
    """

    def __init__(self, database_url: str = "sqlite:///orders.db"):
        self.database_url = database_url

        engine_kwargs = {}
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in MEMORY_URLS:
                # One shared connection so every session sees the same database
                engine_kwargs["poolclass"] = StaticPool

        try:
            self.engine = create_engine(database_url, **engine_kwargs)
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize database: {e}")
            raise StoreUnavailableError(f"Database unavailable: {e}") from e

        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.info(f"Database initialized: {self._safe_url()}")

    @contextmanager
    def session(self, existing: Optional[Session] = None) -> Iterator[Session]:
        """
        Transactional scope: commit on success, roll back on error

        Given an `existing` session, joins its transaction instead; the
        outer scope commits or rolls back.
        """
        if existing is not None:
            yield existing
            return

        session = self.session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database operation failed: {e}")
            raise StoreUnavailableError(f"Database operation failed: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def ping(self) -> bool:
        """Check the database answers a trivial query"""
        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database ping failed: {e}")
            return False

    def dispose(self) -> None:
        self.engine.dispose()
        logger.info("Database connection closed")

    def _safe_url(self) -> str:
        return self.engine.url.render_as_string(hide_password=True)
