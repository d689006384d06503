"""Database connection and session management."""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from vouchfor.logging_config import get_logger
from vouchfor.settings import settings
from vouchfor.storage.models import Base

logger = get_logger(__name__)


class Database:
    """Database connection manager.

    One instance is created by the application factory or the CLI and
    handed to every service that needs the store.
    """

    def __init__(self, database_url: str | None = None, echo: bool | None = None):
        """Initialize database connection.

        Args:
            database_url: Database URL (defaults to settings)
            echo: Log SQL statements (defaults to settings)
        """
        self.database_url = database_url or settings.database_url
        engine_kwargs: dict = {
            "echo": settings.database_echo if echo is None else echo,
            "pool_pre_ping": True,
        }
        if self.database_url.startswith("sqlite"):
            # Requests are served from a threadpool
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if self.database_url in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs["poolclass"] = StaticPool

        self.engine = create_engine(self.database_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine,
        )
        logger.info("database_initialized", url=self.engine.url.render_as_string(hide_password=True))

    def create_tables(self) -> None:
        """Create all tables in the database."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("tables_created")

    def drop_tables(self) -> None:
        """Drop all tables from the database."""
        Base.metadata.drop_all(bind=self.engine)
        logger.warning("tables_dropped")

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Provide a transactional scope for database operations.

        Commits on normal exit, rolls back and re-raises on error.

        Yields:
            Database session
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
