"""User row helpers; identity itself is owned by the login surface."""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.user import User


async def ensure_user(db: AsyncSession, user_id: str, email: Optional[str] = None) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user:
        return user

    user = User(id=user_id, email=email or f"{user_id}@local.invalid")
    db.add(user)
    await db.flush()
    return user
