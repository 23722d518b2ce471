"""
Dialect-aware INSERT ... ON CONFLICT helpers.

PostgreSQL runs in production and SQLite in the test suite; both support
``ON CONFLICT`` through their SQLAlchemy dialect ``insert`` constructs.
"""

from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import SchemaViolationError

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def dialect_insert(session: AsyncSession, model):
    dialect = session.get_bind().dialect.name
    try:
        return _INSERTS[dialect](model)
    except KeyError:
        raise SchemaViolationError(
            f"Upserts are not supported on dialect {dialect}",
            context={"dialect": dialect, "table_name": model.__tablename__}
        )


async def upsert(
    session: AsyncSession,
    model,
    rows: List[Dict[str, Any]],
    index_elements: Sequence[str],
    update_columns: Optional[Sequence[str]] = None,
):
    """
    INSERT rows, replacing ``update_columns`` on conflict.

    With no update columns the conflicting rows are left untouched
    (ON CONFLICT DO NOTHING).
    """
    if not rows:
        return None

    stmt = dialect_insert(session, model).values(rows)
    if update_columns:
        stmt = stmt.on_conflict_do_update(
            index_elements=list(index_elements),
            set_={column: stmt.excluded[column] for column in update_columns},
        )
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=list(index_elements))

    return await session.execute(stmt)
