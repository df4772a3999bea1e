"""
Database Manager for SmartAttend
================================
Handles database connection, initialization, and session management.

Features:
- Any SQLAlchemy URL (SQLite by default, in-memory for tests)
- Automatic table creation
- Default configuration seeding
- Connect-once / dispose-on-shutdown lifecycle
"""

import logging
from typing import Optional, Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from .. import config
from .models import Base, SystemConfig, DEFAULT_CONFIG, utcnow

# Configure logging
logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    Manages database connections and provides session context.

    One instance is created per process and handed to every service.

    Usage:
        db = DatabaseManager("sqlite://")
        db.initialize()
        with db.get_session() as session:
            user = session.query(User).filter_by(email="a@x.com").first()
    """

    def __init__(self, database_url: Optional[str] = None, echo: bool = False):
        """
        Initialize database manager.

        Args:
            database_url: SQLAlchemy URL. Defaults to config.DATABASE_URL
            echo: If True, log all SQL statements (useful for debugging)
        """
        self.database_url = database_url or config.DATABASE_URL
        self.echo = echo
        self.engine = None
        self.SessionLocal = None
        self._initialized = False

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def initialize(self) -> bool:
        """
        Initialize database connection and create tables.

        Returns:
            True if initialization successful, False otherwise
        """
        if self._initialized:
            return True

        try:
            engine_kwargs = {"echo": self.echo}
            if self.is_sqlite:
                # check_same_thread=False needed for async/multi-threaded access
                engine_kwargs["connect_args"] = {"check_same_thread": False}
                if self.database_url in ("sqlite://", "sqlite:///:memory:"):
                    # A single shared connection keeps the in-memory database alive
                    engine_kwargs["poolclass"] = StaticPool

            self.engine = create_engine(self.database_url, **engine_kwargs)

            if self.is_sqlite:
                @event.listens_for(self.engine, "connect")
                def set_sqlite_pragma(dbapi_connection, connection_record):
                    cursor = dbapi_connection.cursor()
                    cursor.execute("PRAGMA foreign_keys=ON")
                    cursor.execute("PRAGMA journal_mode=WAL")
                    cursor.close()

            self.SessionLocal = sessionmaker(
                autocommit=False,
                autoflush=False,
                expire_on_commit=False,
                bind=self.engine
            )

            Base.metadata.create_all(bind=self.engine)
            logger.info(f"Database initialized at: {self.engine.url.render_as_string(hide_password=True)}")

            self._initialized = True
            self._seed_default_config()
            return True

        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            self._initialized = False
            return False

    def _seed_default_config(self):
        """Insert default configuration values if not present."""
        with self.get_session() as session:
            for key, (value, description) in DEFAULT_CONFIG.items():
                existing = session.query(SystemConfig).filter_by(key=key).first()
                if not existing:
                    session.add(SystemConfig(key=key, value=value, description=description))
                    logger.debug(f"Added default config: {key}={value}")
            session.commit()
            logger.info("Default configuration seeded")

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Get a database session with automatic cleanup.

        Usage:
            with db.get_session() as session:
                # do database operations
                session.commit()

        Yields:
            SQLAlchemy Session object
        """
        if not self._initialized and not self.initialize():
            raise RuntimeError("Database is not available")

        session = self.SessionLocal()
        try:
            yield session
        except Exception as e:
            session.rollback()
            logger.error(f"Database session error: {e}")
            raise
        finally:
            session.close()

    def get_config(self, key: str, default: str = None) -> Optional[str]:
        """
        Get a configuration value by key.

        Args:
            key: Configuration key name
            default: Default value if key not found

        Returns:
            Configuration value as string
        """
        with self.get_session() as session:
            row = session.query(SystemConfig).filter_by(key=key).first()
            return row.value if row else default

    def get_config_int(self, key: str, default: int = 0) -> int:
        """Get config value as integer."""
        value = self.get_config(key)
        try:
            return int(value) if value else default
        except ValueError:
            return default

    def get_config_float(self, key: str, default: float = 0.0) -> float:
        """Get config value as float."""
        value = self.get_config(key)
        try:
            return float(value) if value else default
        except ValueError:
            return default

    def set_config(self, key: str, value: str, description: str = None):
        """
        Set a configuration value.

        Args:
            key: Configuration key name
            value: Configuration value
            description: Optional description
        """
        with self.get_session() as session:
            row = session.query(SystemConfig).filter_by(key=key).first()
            if row:
                row.value = value
                row.updated_at = utcnow()
                if description:
                    row.description = description
            else:
                session.add(SystemConfig(key=key, value=value, description=description))
            session.commit()
            logger.info(f"Config updated: {key}={value}")

    def get_stats(self) -> dict:
        """
        Get database statistics.

        Returns:
            Dictionary with counts and status info
        """
        from .models import User, AuthSession, Attendance

        with self.get_session() as session:
            return {
                "total_users": session.query(User).count(),
                "active_sessions": session.query(AuthSession).filter(
                    AuthSession.expires_at > utcnow()
                ).count(),
                "total_attendance": session.query(Attendance).count(),
                "initialized": self._initialized
            }

    def close(self):
        """Close database connection."""
        if self.engine:
            self.engine.dispose()
            logger.info("Database connection closed")
        self._initialized = False
