from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession

from signature_sync.db.session import get_session


async def get_db() -> AsyncIterator[AsyncSession]:
    async for session in get_session():
        yield session
