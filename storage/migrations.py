"""Ad-hoc database migrations for the operation store."""

from __future__ import annotations

from sqlalchemy import text

from models.sync_operation import SyncStatus


def _column_exists(conn, table: str, column: str) -> bool:
    result = conn.execute(text(f"PRAGMA table_info('{table}')"))
    return any(row[1] == column for row in result)


def ensure_sync_operation_columns(conn) -> None:
    # Databases created before manual resets and retention existed
    columns = {
        "max_attempts": "INTEGER NOT NULL DEFAULT 3",
        "retry_base": "INTEGER NOT NULL DEFAULT 0",
        "completed_at": "DATETIME",
    }
    for name, ddl_type in columns.items():
        if not _column_exists(conn, "syncoperation", name):
            conn.execute(text(f"ALTER TABLE syncoperation ADD COLUMN {name} {ddl_type}"))

    # Synced rows written without a completion time fall back to their last attempt
    conn.execute(
        text(
            """
            UPDATE syncoperation
            SET completed_at = COALESCE(last_sync_attempt, created_at)
            WHERE sync_status = :synced AND completed_at IS NULL
            """
        ),
        {"synced": SyncStatus.SYNCED},
    )


def ensure_sync_operation_indexes(conn) -> None:
    conn.execute(
        text(
            """
            CREATE INDEX IF NOT EXISTS ix_syncoperation_status_created
            ON syncoperation (sync_status, created_at)
            """
        )
    )


def ensure_sync_log_indexes(conn) -> None:
    conn.execute(text("CREATE INDEX IF NOT EXISTS ix_synclog_started_at ON synclog (started_at)"))


def run_all(engine) -> None:
    with engine.begin() as conn:
        ensure_sync_operation_columns(conn)
        # SQLModel creates the tables, but ensure indexes exist in legacy DBs
        ensure_sync_operation_indexes(conn)
        ensure_sync_log_indexes(conn)


__all__ = ["run_all"]
