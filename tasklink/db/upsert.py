"""
Dialect-aware ``INSERT ... ON CONFLICT`` builder.

Production runs on PostgreSQL; the test suite runs on SQLite. Both dialects
expose the same ``on_conflict_do_nothing`` / ``on_conflict_do_update`` API, so
services build their idempotent inserts through :func:`insert_for`.
"""

from sqlalchemy.dialects import postgresql, sqlite
from sqlmodel.ext.asyncio.session import AsyncSession


def insert_for(session: AsyncSession, model):
    """Return a dialect-specific insert construct for ``model``."""
    dialect = session.bind.dialect.name if session.bind is not None else "postgresql"
    if dialect == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)
