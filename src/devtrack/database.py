"""
Engine construction and session management for devtrack.

This module builds SQLite engines for one profile's storage file, in
writable or read-only mode, and provides the session context managers
used for every read and write.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine.base import Engine
from sqlmodel import Session, create_engine


class StorageError(Exception):
    """Base exception for storage operations."""

    pass


class DatabaseConfig:
    """Location of one profile's storage file."""

    def __init__(self, db_path: str | Path):
        """Initialize database configuration.

        Args:
            db_path: Path of the SQLite file
        """
        self.db_path = Path(db_path)
        self.profile_dir = self.db_path.parent
        self.database_url = f"sqlite:///{self.db_path}"
        self.read_only_url = f"sqlite:///file:{self.db_path}?mode=ro&uri=true"


def _apply_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def create_writable_engine(db_path: str | Path) -> Engine:
    """Create the writable engine for a storage file.

    The pool holds a single connection so every write goes through it.

    Args:
        db_path: Path of the SQLite file; parent directories are created

    Returns:
        SQLAlchemy engine instance
    """
    config = DatabaseConfig(db_path)
    config.profile_dir.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        config.database_url,
        echo=False,
        connect_args={"check_same_thread": False},
        pool_size=1,
        max_overflow=0,
    )
    event.listen(engine, "connect", _apply_pragmas)

    # WAL lets read-only connections proceed during a write
    with engine.connect() as connection:
        connection.exec_driver_sql("PRAGMA journal_mode=WAL")
        connection.commit()

    return engine


def create_read_only_engine(db_path: str | Path) -> Engine | None:
    """Create a read-only engine for a storage file.

    Args:
        db_path: Path of the SQLite file

    Returns:
        Engine instance, or None if the file does not exist yet
    """
    config = DatabaseConfig(db_path)
    if not config.db_path.exists():
        return None

    engine = create_engine(
        config.read_only_url,
        echo=False,
        connect_args={"check_same_thread": False},
    )
    event.listen(engine, "connect", _apply_pragmas)
    return engine


@contextmanager
def get_session(engine: Engine) -> Generator[Session, None, None]:
    """Get database session context manager.

    Args:
        engine: Engine to bind the session to

    Yields:
        SQLModel Session instance

    Example:
        with get_session(engine) as session:
            session.exec(select(Codebase)).all()
    """
    with Session(engine, expire_on_commit=False) as session:
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


@contextmanager
def transaction(engine: Engine) -> Generator[Session, None, None]:
    """Run a multi-step write as one transaction.

    Commits when the block exits normally. Rolls back and re-raises on
    any exception, including KeyboardInterrupt.

    Args:
        engine: Writable engine

    Yields:
        SQLModel Session instance
    """
    with Session(engine, expire_on_commit=False) as session:
        try:
            yield session
            session.commit()
        except BaseException:
            session.rollback()
            raise


def get_database_info(db_path: str | Path) -> dict[str, str | bool | float]:
    """Get database information and status.

    Args:
        db_path: Path of the SQLite file

    Returns:
        Dictionary with database information
    """
    config = DatabaseConfig(db_path)

    info: dict[str, str | bool | float] = {
        "database_path": str(config.db_path),
        "database_exists": config.db_path.exists(),
        "profile_dir": str(config.profile_dir),
    }

    if config.db_path.exists():
        size_bytes = config.db_path.stat().st_size
        info["size_mb"] = round(size_bytes / (1024 * 1024), 2)

    return info
