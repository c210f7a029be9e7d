from __future__ import annotations

import logging

from sqlalchemy import Engine, text

logger = logging.getLogger(__name__)


def _has_column(conn, dialect: str, table: str, column: str) -> bool:
    if dialect == "sqlite":
        rows = conn.execute(text(f"PRAGMA table_info({table})")).mappings().all()
        return any(r["name"] == column for r in rows)
    row = conn.execute(
        text(
            """
            SELECT 1
            FROM information_schema.columns
            WHERE table_name = :table AND column_name = :column
            """
        ),
        {"table": table, "column": column},
    ).first()
    return row is not None


def _table_exists(conn, dialect: str, table: str) -> bool:
    if dialect == "sqlite":
        row = conn.execute(
            text("SELECT 1 FROM sqlite_master WHERE type='table' AND name=:name"),
            {"name": table},
        ).first()
        return row is not None
    row = conn.execute(
        text(
            """
            SELECT 1
            FROM information_schema.tables
            WHERE table_name = :table
            """
        ),
        {"table": table},
    ).first()
    return row is not None


# (table, column, DDL type) added after the first schema release
_ADDED_COLUMNS = [
    ("automations", "lease_token", "VARCHAR(64)"),
    ("automations", "lease_acquired_at", "TIMESTAMP"),
    ("automations", "proposed_at", "TIMESTAMP"),
    ("automation_executions", "trigger_source", "VARCHAR(32)"),
    ("effectiveness_checks", "notes", "TEXT"),
]

_INDEXES = [
    ("ix_scheduled_jobs_status_run_at", "scheduled_jobs", "status, run_at"),
    ("ix_automation_executions_automation_started", "automation_executions", "automation_id, started_at"),
    ("ix_effectiveness_checks_execution_id", "effectiveness_checks", "execution_id"),
]


def run_migrations(engine: Engine) -> None:
    """Bring an existing database up to the current model without a migration tool."""
    dialect = engine.dialect.name
    with engine.begin() as conn:
        for table, column, ddl in _ADDED_COLUMNS:
            if not _table_exists(conn, dialect, table):
                continue
            if not _has_column(conn, dialect, table, column):
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
                logger.info("added column %s.%s", table, column)

        for name, table, cols in _INDEXES:
            if _table_exists(conn, dialect, table):
                conn.execute(text(f"CREATE INDEX IF NOT EXISTS {name} ON {table} ({cols})"))
