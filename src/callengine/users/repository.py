"""
Read access to user call profiles.
"""

from typing import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from callengine.users.models import UserProfile


class UserProfileRepository:
    """Repository for user call profiles."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, user_id: str) -> UserProfile | None:
        stmt = select(UserProfile).where(UserProfile.id == user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_callable(self) -> Sequence[UserProfile]:
        """Profiles with calls enabled and a phone number on file."""
        stmt = (
            select(UserProfile)
            .where(
                UserProfile.call_enabled.is_(True),
                UserProfile.phone.is_not(None),
                UserProfile.phone != "",
            )
            .order_by(UserProfile.id)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()
