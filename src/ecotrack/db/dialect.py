"""Dialect-aware INSERT .. ON CONFLICT support."""

from __future__ import annotations

from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


def insert_for(db: AsyncSession, model: Any) -> Any:
    """Return an ``insert()`` construct for ``model`` that supports ``on_conflict_do_nothing``.

    PostgreSQL and SQLite share the ON CONFLICT syntax; both expose it through
    their dialect-specific insert constructs.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    msg = f"Conditional inserts are not supported on dialect {dialect!r}"
    raise RuntimeError(msg)
