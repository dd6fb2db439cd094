"""
HubOps API Dependencies

Dependency injection for DB sessions and the calling actor.
"""

from collections.abc import AsyncGenerator

from fastapi import Header
from sqlalchemy.ext.asyncio import AsyncSession

from db.session import AsyncSessionLocal

SYSTEM_ACTOR = "system"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_actor_id(x_actor_id: str | None = Header(default=None)) -> str:
    """Who is making the change; recorded on versions, reservations and events."""
    if x_actor_id is None or not x_actor_id.strip():
        return SYSTEM_ACTOR
    return x_actor_id.strip()
