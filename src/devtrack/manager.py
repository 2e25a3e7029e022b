"""
Connection and profile management.

A ``ConnectionManager`` is created by the application and passed to every
component that needs storage. It hands out one ``ProfileStore`` per named
profile. Each store owns the single writable engine for its profile,
guarded by an exclusive lock file, and opens read-only engines on demand.
"""

import fcntl
import os
import re
import threading
import time
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

import structlog
from sqlalchemy.engine.base import Engine
from sqlmodel import Session

from .config import Settings
from .database import (
    StorageError,
    create_read_only_engine,
    create_writable_engine,
    get_session,
    transaction,
)
from .schema import SchemaMigrationError, apply_schema

logger = structlog.get_logger(__name__)

PROFILE_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
LOCK_POLL_INTERVAL = 0.05


class StorageLockedError(StorageError):
    """Raised when the writable connection is held by someone else."""

    def __init__(self, profile: str, lock_path: Path, timeout: float):
        self.profile = profile
        self.lock_path = lock_path
        self.timeout = timeout
        super().__init__(
            f"Profile '{profile}' is locked by another devtrack process "
            f"({lock_path}); gave up after {timeout:.1f}s, retry shortly"
        )


class ProfileExistsError(StorageError):
    """Raised when creating a profile that already exists."""

    pass


def validate_profile_name(name: str) -> str:
    if not PROFILE_NAME_RE.match(name or ""):
        raise ValueError(
            f"Invalid profile name '{name}': use letters, digits, '-' or '_'"
        )
    return name


class ProfileStore:
    """Storage handle for one profile."""

    def __init__(self, name: str, settings: Settings):
        self.name = validate_profile_name(name)
        self.settings = settings
        self.profile_dir = settings.profile_dir(name)
        self.db_path = settings.db_path(name)
        self.lock_path = self.profile_dir / "devtrack.lock"

        self._writer: Engine | None = None
        self._lock_fd: int | None = None
        self._write_lock = threading.RLock()
        self._open_lock = threading.Lock()

    @property
    def exists(self) -> bool:
        return self.db_path.exists()

    def _acquire_lock(self) -> None:
        self.profile_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        timeout = self.settings.lock_timeout
        deadline = time.monotonic() + timeout

        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    logger.warning(
                        "storage_locked", profile=self.name, lock_path=str(self.lock_path)
                    )
                    raise StorageLockedError(self.name, self.lock_path, timeout)
                time.sleep(LOCK_POLL_INTERVAL)

        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        self._lock_fd = fd

    def _release_lock(self) -> None:
        if self._lock_fd is None:
            return
        try:
            fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
        finally:
            os.close(self._lock_fd)
            self._lock_fd = None

    def writer(self) -> Engine:
        """Return the profile's writable engine, opening it on first use.

        Raises:
            StorageLockedError: If the lock is not acquired within
                ``settings.lock_timeout`` seconds
            SchemaMigrationError: If the schema cannot be applied
        """
        with self._open_lock:
            if self._writer is not None:
                return self._writer

            self._acquire_lock()
            engine: Engine | None = None
            try:
                engine = create_writable_engine(self.db_path)
                version = apply_schema(engine)
            except Exception as e:
                if engine is not None:
                    engine.dispose()
                self._release_lock()
                if isinstance(e, SchemaMigrationError):
                    raise
                raise SchemaMigrationError(
                    f"Failed to open profile '{self.name}' at {self.db_path}: {str(e)}"
                ) from e

            self._writer = engine
            logger.debug(
                "writer_opened", profile=self.name, path=str(self.db_path), version=version
            )
            return engine

    def reader(self) -> Engine | None:
        """Return a new read-only engine, or None if the store does not exist."""
        return create_read_only_engine(self.db_path)

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """Run a write transaction on the writable engine.

        Commits on success; rolls back and re-raises on error.
        """
        engine = self.writer()
        with self._write_lock:
            with transaction(engine) as session:
                yield session

    @contextmanager
    def read_session(self) -> Generator[Session | None, None, None]:
        """Yield a session on a fresh read-only engine, or None if no store."""
        engine = self.reader()
        if engine is None:
            yield None
            return
        try:
            with get_session(engine) as session:
                yield session
        finally:
            engine.dispose()

    def close(self) -> None:
        """Dispose the writable engine and release the lock."""
        with self._open_lock:
            if self._writer is not None:
                self._writer.dispose()
                self._writer = None
            self._release_lock()


class ConnectionManager:
    """Owns the profile stores for one application instance."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()
        self._stores: dict[str, ProfileStore] = {}
        self._lock = threading.Lock()

    def for_profile(self, name: str | None = None) -> ProfileStore:
        """Get the store for a profile, defaulting to the active one."""
        name = validate_profile_name(name or self.settings.profile)
        with self._lock:
            store = self._stores.get(name)
            if store is None:
                store = ProfileStore(name, self.settings)
                self._stores[name] = store
            return store

    def create_profile(self, name: str) -> ProfileStore:
        """Create a new profile directory.

        Raises:
            ProfileExistsError: If the profile already exists
        """
        validate_profile_name(name)
        profile_dir = self.settings.profile_dir(name)
        if profile_dir.exists():
            raise ProfileExistsError(f"Profile '{name}' already exists at {profile_dir}")
        profile_dir.mkdir(parents=True)
        logger.info("profile_created", profile=name)
        return self.for_profile(name)

    def list_profiles(self) -> list[str]:
        root = self.settings.profiles_dir()
        if not root.exists():
            return []
        return sorted(p.name for p in root.iterdir() if p.is_dir())

    def close_all(self) -> None:
        with self._lock:
            for store in self._stores.values():
                store.close()
            self._stores.clear()

    def __enter__(self) -> "ConnectionManager":
        return self

    def __exit__(self, *exc) -> None:
        self.close_all()
