"""
User row helpers shared by every processor.

Rows are created with an insert that ignores conflicts so concurrent
processors touching the same address never race on creation.
"""

from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from gmtea.models.user import User
from gmtea.utils.formatters import normalize_address


def _insert_for(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Unsupported dialect for user upsert: {dialect}")


async def ensure_user(db: AsyncSession, address: str, **defaults) -> None:
    """Create the user row if it does not exist yet."""
    await ensure_users(db, [address], **defaults)


async def ensure_users(db: AsyncSession, addresses: Iterable[Optional[str]], **defaults) -> None:
    insert = _insert_for(db)
    for address in {normalize_address(a) for a in addresses if a}:
        stmt = insert(User).values(address=address, **defaults)
        await db.execute(stmt.on_conflict_do_nothing(index_elements=["address"]))


async def get_user(db: AsyncSession, address: str) -> Optional[User]:
    result = await db.execute(
        select(User).where(User.address == normalize_address(address))
    )
    return result.scalar_one_or_none()
