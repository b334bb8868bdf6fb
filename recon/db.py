"""Engine construction and schema bootstrap for PostgreSQL and SQLite."""

from __future__ import annotations

import sqlite3
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection, Engine

SCHEMA_PATH = Path(__file__).parent / "schema.sql"


def create_db_engine(database_url: str) -> Engine:
    """Create SQLAlchemy engine with the psycopg driver for PostgreSQL URLs."""
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+psycopg://", 1)
    if database_url.startswith("sqlite"):
        # Exact decimal text, no float rounding
        sqlite3.register_adapter(Decimal, str)
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
    return create_engine(database_url)


def _schema_statements(dialect: str) -> list[str]:
    sql = SCHEMA_PATH.read_text(encoding="utf-8")
    if dialect == "postgresql":
        # SQLite aliases INTEGER PRIMARY KEY to rowid; Postgres needs SERIAL
        sql = sql.replace("INTEGER PRIMARY KEY", "SERIAL PRIMARY KEY")
    lines = [line for line in sql.splitlines() if not line.lstrip().startswith("--")]
    return [stmt.strip() for stmt in "\n".join(lines).split(";") if stmt.strip()]


def create_schema(conn: Connection) -> int:
    """Create all tables and indexes; returns the number of statements run."""
    statements = _schema_statements(conn.dialect.name)
    for stmt in statements:
        conn.execute(text(stmt))
    return len(statements)


def as_date(value: Any) -> date | None:  # noqa: ANN401
    """Normalize a DATE column value (date on Postgres, str on SQLite)."""
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def as_decimal(value: Any) -> Decimal | None:  # noqa: ANN401
    """Normalize a NUMERIC column value to a 2dp Decimal."""
    if value is None:
        return None
    return Decimal(str(value)).quantize(Decimal("0.01"))
