"""
Database migrations for the local store.

Uses SQLite ALTER TABLE ADD COLUMN for incremental schema evolution.
Each migration is idempotent: columns are only added if absent.

Databases created before cloud sync existed lack the mapping columns on the
job-tracking tables; create_all() never alters existing tables, so they are
added here. Called automatically from build_engine() after create_all().
"""
from sqlalchemy import text

from jobtracker.models.records import SYNCABLE_TABLES


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times; checks column existence before altering.
    Supports SQLite only (uses PRAGMA table_info).

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    with engine.connect() as conn:
        for table in SYNCABLE_TABLES:
            # SQLite cannot ADD COLUMN ... UNIQUE, so uniqueness comes from an index
            _add_column_if_missing(conn, table, "cloud_id", "TEXT")
            _add_column_if_missing(conn, table, "last_synced_at", "DATETIME")
            conn.execute(
                text(
                    f"CREATE UNIQUE INDEX IF NOT EXISTS "
                    f"ux_{table}_cloud_id ON {table} (cloud_id)"
                )
            )

        # Outbox: non-retryable flag for malformed payloads
        _add_column_if_missing(conn, "sync_queue", "retryable", "BOOLEAN NOT NULL DEFAULT 1")

        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLite stores it).
        column: Column name to add.
        col_type: SQLite type string, e.g. "INTEGER", "TEXT", "DATETIME".
    """
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    existing_columns = {row[1] for row in result}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
