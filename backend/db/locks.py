"""
Row-level locks on scope anchor rows.

Policy writes lock their ``policy_scopes`` row and reservation writes
lock their ``capacity_ledger_days`` row with ``SELECT ... FOR UPDATE``,
so two writers on the same key are serialized while writers on other
keys proceed untouched. A missing anchor row is created inside a
SAVEPOINT; if a concurrent writer inserts it first, the unique
constraint fires and we lock the winner's row instead.

SQLite ignores FOR UPDATE; it serializes writers at the database level.
"""

from __future__ import annotations

from typing import Any, TypeVar

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()

T = TypeVar("T")


async def lock_anchor_row(
    db: AsyncSession,
    model: type[T],
    *,
    defaults: dict[str, Any] | None = None,
    **key: Any,
) -> T:
    """Get-or-create the anchor row identified by ``key`` and lock it."""
    stmt = select(model).filter_by(**key).with_for_update()
    row = (await db.execute(stmt)).scalar_one_or_none()
    if row is not None:
        return row

    try:
        async with db.begin_nested():
            db.add(model(**key, **(defaults or {})))
    except IntegrityError:
        logger.info("lock.anchor_insert_raced", table=model.__tablename__, **{k: str(v) for k, v in key.items()})

    return (await db.execute(stmt)).scalar_one()
