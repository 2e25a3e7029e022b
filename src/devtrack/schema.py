"""
Database schema creation, migration and validation utilities.

Schema creation is idempotent: tables and indexes are created if missing,
then additive column migrations are applied to stores created by older
versions, and the schema version is recorded.
"""

from pathlib import Path

import structlog
from sqlalchemy import inspect
from sqlalchemy.engine.base import Engine
from sqlmodel import SQLModel, text

from . import models  # noqa: F401  registers tables with SQLModel.metadata
from .database import StorageError

logger = structlog.get_logger(__name__)

# Current schema version - increment when adding a migration
SCHEMA_VERSION = 4

# Additive migrations: (version introduced, table, column, column DDL)
MIGRATIONS: list[tuple[int, str, str, str]] = [
    (2, "commits", "embedding", "TEXT"),
    (2, "commits", "parent_count", "INTEGER NOT NULL DEFAULT 1"),
    (2, "branches", "status", "VARCHAR NOT NULL DEFAULT 'active'"),
    (3, "file_indexes", "key_exports", "VARCHAR"),
    (3, "worklog_entries", "fingerprint", "TEXT NOT NULL DEFAULT ''"),
    (4, "branches", "story", "TEXT"),
    (4, "worklog_entries", "has_narrative", "BOOLEAN NOT NULL DEFAULT 0"),
]

REQUIRED_TABLES = [
    "developers",
    "codebases",
    "branches",
    "commits",
    "file_changes",
    "folders",
    "file_indexes",
    "ingest_cursors",
    "worklog_entries",
]


class SchemaError(StorageError):
    """Base exception for schema operations."""

    pass


class SchemaValidationError(SchemaError):
    """Raised when schema validation fails."""

    pass


class SchemaMigrationError(SchemaError):
    """Raised when schema creation or migration fails."""

    pass


def _ensure_version_table(connection) -> None:
    connection.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                version INTEGER NOT NULL,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
    )


def get_schema_version(engine: Engine) -> int:
    """Get current database schema version.

    Args:
        engine: Engine for the store

    Returns:
        Schema version number (0 if not set)

    Raises:
        SchemaError: If unable to determine schema version
    """
    try:
        with engine.connect() as connection:
            exists = connection.execute(
                text(
                    "SELECT name FROM sqlite_master WHERE type='table' "
                    "AND name='schema_version'"
                )
            ).first()
            if not exists:
                return 0

            row = connection.execute(
                text("SELECT version FROM schema_version ORDER BY id DESC LIMIT 1")
            ).first()
            return int(row[0]) if row else 0

    except Exception as e:
        raise SchemaError(f"Failed to get schema version: {str(e)}") from e


def apply_migrations(engine: Engine) -> list[str]:
    """Add columns introduced after a store was created.

    Columns that already exist are skipped, so the pass can run on every
    open.

    Args:
        engine: Writable engine

    Returns:
        List of "table.column" names that were added
    """
    added: list[str] = []
    existing_tables = set(inspect(engine).get_table_names())

    with engine.begin() as connection:
        for _, table, column, ddl in MIGRATIONS:
            if table not in existing_tables:
                continue
            columns = {
                row[1]
                for row in connection.exec_driver_sql(f"PRAGMA table_info({table})")
            }
            if column in columns:
                continue
            connection.exec_driver_sql(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
            added.append(f"{table}.{column}")

    return added


def apply_schema(engine: Engine) -> int:
    """Create tables and indexes, run migrations and record the version.

    Args:
        engine: Writable engine

    Returns:
        Schema version after the call

    Raises:
        SchemaMigrationError: If any step fails
    """
    try:
        # Migrations first, so create_all never races an old table layout
        added = apply_migrations(engine)
        SQLModel.metadata.create_all(engine)

        current = get_schema_version(engine)
        if current < SCHEMA_VERSION:
            with engine.begin() as connection:
                _ensure_version_table(connection)
                connection.execute(
                    text("INSERT INTO schema_version (version) VALUES (:version)"),
                    {"version": SCHEMA_VERSION},
                )

        if added:
            logger.info("schema_migrated", columns=added, version=SCHEMA_VERSION)
        return SCHEMA_VERSION

    except SchemaMigrationError:
        raise
    except Exception as e:
        raise SchemaMigrationError(f"Failed to apply schema: {str(e)}") from e


def validate_schema(engine: Engine) -> dict[str, bool | int | list[str]]:
    """Validate database schema integrity.

    Args:
        engine: Engine for the store

    Returns:
        Dictionary with validation results

    Raises:
        SchemaValidationError: If the schema cannot be inspected
    """
    try:
        existing = set(inspect(engine).get_table_names())
        missing = [t for t in REQUIRED_TABLES if t not in existing]

        with engine.connect() as connection:
            fk = connection.exec_driver_sql("PRAGMA foreign_keys").first()
            indexes = connection.execute(
                text(
                    "SELECT name FROM sqlite_master WHERE type='index' "
                    "AND name NOT LIKE 'sqlite_%'"
                )
            ).all()
            orphans = 0
            if not missing:
                row = connection.execute(
                    text(
                        "SELECT COUNT(*) FROM file_changes "
                        "WHERE commit_id NOT IN (SELECT id FROM commits)"
                    )
                ).first()
                orphans = int(row[0]) if row else 0

        return {
            "schema_version": get_schema_version(engine),
            "tables_exist": not missing,
            "missing_tables": missing,
            "foreign_keys_enabled": bool(fk[0]) if fk else False,
            "indexes_exist": len(indexes) > 0,
            "orphaned_file_changes": orphans,
            "data_integrity": not missing and orphans == 0,
        }

    except Exception as e:
        raise SchemaValidationError(f"Schema validation failed: {str(e)}") from e


def get_database_statistics(
    engine: Engine, db_path: str | Path | None = None
) -> dict[str, int | float]:
    """Get row counts per table plus file size.

    Args:
        engine: Engine for the store
        db_path: Optional storage file path, used for the size figure

    Returns:
        Dictionary with database statistics

    Raises:
        SchemaError: If unable to gather statistics
    """
    try:
        stats: dict[str, int | float] = {"schema_version": get_schema_version(engine)}
        existing = set(inspect(engine).get_table_names())

        with engine.connect() as connection:
            for table in REQUIRED_TABLES:
                if table not in existing:
                    stats[f"{table}_count"] = 0
                    continue
                row = connection.execute(text(f"SELECT COUNT(*) FROM {table}")).first()
                stats[f"{table}_count"] = int(row[0]) if row else 0

        if db_path is not None and Path(db_path).exists():
            stats["size_mb"] = round(Path(db_path).stat().st_size / (1024 * 1024), 2)

        return stats

    except Exception as e:
        raise SchemaError(f"Failed to get database statistics: {str(e)}") from e
