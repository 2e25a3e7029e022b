"""
Tests for profile stores: the exclusive writer lock, read-only access while
a writer is held, transaction rollback and profile management.
"""

import time

import pytest
from sqlmodel import select

from devtrack import repository as repo
from devtrack.config import Settings
from devtrack.database import StorageError
from devtrack.manager import (
    ConnectionManager,
    ProfileExistsError,
    StorageLockedError,
    validate_profile_name,
)
from devtrack.models import Developer


class TestWriterLock:
    """Test single-writer enforcement across managers."""

    def test_second_writer_times_out(self, settings: Settings, store):
        """Test that a competing writer fails with StorageLockedError."""
        store.writer()

        with ConnectionManager(settings) as other:
            started = time.monotonic()
            with pytest.raises(StorageLockedError) as excinfo:
                other.for_profile().writer()
            elapsed = time.monotonic() - started

        assert excinfo.value.profile == "test"
        assert excinfo.value.timeout == settings.lock_timeout
        assert elapsed >= settings.lock_timeout
        assert "retry" in str(excinfo.value)

    def test_writer_available_after_close(self, settings: Settings, store):
        """Test that closing a store releases the lock."""
        store.writer()
        store.close()

        with ConnectionManager(settings) as other:
            engine = other.for_profile().writer()
            assert engine is not None

    def test_writer_is_reused(self, store):
        """Test that one store hands out a single writable engine."""
        assert store.writer() is store.writer()

    def test_reader_works_while_writer_held(self, settings: Settings, store):
        """Test that read-only sessions proceed while another manager writes."""
        with store.transaction() as session:
            repo.upsert_developer(session, "a@example.com", "A")

        with ConnectionManager(settings) as other:
            with other.for_profile().read_session() as session:
                developers = session.exec(select(Developer)).all()
        assert [d.email for d in developers] == ["a@example.com"]

    def test_reader_before_store_exists(self, store):
        """Test that reading a missing store yields no session."""
        assert store.reader() is None
        with store.read_session() as session:
            assert session is None


class TestTransactions:
    """Test write transaction semantics."""

    def test_rollback_and_reraise(self, store):
        """Test that an error inside a transaction discards its writes."""
        with pytest.raises(RuntimeError, match="boom"):
            with store.transaction() as session:
                repo.upsert_developer(session, "gone@example.com")
                raise RuntimeError("boom")

        with store.transaction() as session:
            assert repo.get_developer_by_email(session, "gone@example.com") is None

    def test_commit_is_visible_to_readers(self, store):
        """Test that committed rows are visible to a read-only session."""
        with store.transaction() as session:
            repo.upsert_developer(session, "kept@example.com", "Kept")

        with store.read_session() as session:
            developer = repo.get_developer_by_email(session, "kept@example.com")
        assert developer is not None
        assert developer.name == "Kept"


class TestProfiles:
    """Test profile creation and listing."""

    def test_create_and_list(self, manager: ConnectionManager):
        """Test creating profiles and listing them sorted."""
        manager.create_profile("work")
        manager.create_profile("side-project")
        assert manager.list_profiles() == ["side-project", "work"]

    def test_create_existing_profile_fails(self, manager: ConnectionManager):
        """Test that creating a duplicate profile raises."""
        manager.create_profile("work")
        with pytest.raises(ProfileExistsError):
            manager.create_profile("work")

    def test_profiles_are_isolated(self, manager: ConnectionManager):
        """Test that each profile owns its own storage file."""
        with manager.for_profile("one").transaction() as session:
            repo.upsert_developer(session, "one@example.com")

        with manager.for_profile("two").transaction() as session:
            assert repo.get_developer_by_email(session, "one@example.com") is None

        assert manager.for_profile("one").db_path != manager.for_profile("two").db_path

    def test_list_without_home(self, manager: ConnectionManager):
        """Test listing when no profile was ever created."""
        assert manager.list_profiles() == []

    @pytest.mark.parametrize("name", ["", "../escape", "with space", "a/b"])
    def test_invalid_names(self, name: str):
        """Test that unsafe profile names are rejected."""
        with pytest.raises(ValueError):
            validate_profile_name(name)

    def test_storage_errors_share_a_base(self):
        """Test that lock and profile errors are storage errors."""
        assert issubclass(StorageLockedError, StorageError)
        assert issubclass(ProfileExistsError, StorageError)
