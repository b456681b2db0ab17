"""Insert-if-absent helper for lazily created per-user rows."""

from __future__ import annotations

from typing import Any, Dict, Sequence

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


async def insert_if_absent(
    db: AsyncSession,
    model: Any,
    values: Dict[str, Any],
    conflict_columns: Sequence[str],
) -> None:
    """Create the row unless a row with the same conflict key already exists.

    Concurrent first-use from two requests must not raise a unique violation,
    so this uses the dialect's ``ON CONFLICT DO NOTHING``.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values)
    else:
        raise RuntimeError(f"Unsupported database dialect for upsert: {dialect}")
    await db.execute(stmt.on_conflict_do_nothing(index_elements=list(conflict_columns)))
