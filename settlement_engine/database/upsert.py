"""
Insert-or-ignore statements backed by unique constraints.

Concurrent writers racing on the same natural key both succeed; the loser's
insert is a no-op instead of a duplicate row or an IntegrityError.
"""
from typing import Any, Dict, Iterable, List, Sequence, Type

from sqlalchemy import insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.dml import Insert

from .models import Base


def insert_ignore(
    session: AsyncSession,
    model: Type[Base],
    rows: List[Dict[str, Any]],
    conflict_columns: Sequence[str],
) -> Insert:
    """
    Build an INSERT that skips rows violating ``conflict_columns`` uniqueness.

    Supports PostgreSQL and SQLite (ON CONFLICT DO NOTHING) and MySQL/MariaDB
    (INSERT IGNORE).
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model).values(rows).on_conflict_do_nothing(
            index_elements=list(conflict_columns)
        )
    if dialect == "sqlite":
        return sqlite.insert(model).values(rows).on_conflict_do_nothing(
            index_elements=list(conflict_columns)
        )
    if dialect in ("mysql", "mariadb"):
        return insert(model).values(rows).prefix_with("IGNORE")
    raise NotImplementedError(f"insert-or-ignore is not supported for dialect {dialect!r}")


def chunked(rows: List[Dict[str, Any]], size: int = 500) -> Iterable[List[Dict[str, Any]]]:
    """Split rows into batches to stay under bind-parameter limits."""
    for start in range(0, len(rows), size):
        yield rows[start:start + size]
