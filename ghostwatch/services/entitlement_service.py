"""
Entitlement checks: who is the administrator and who holds premium.

Privileged owners skip cooldowns and queue order, and only privileged
owners may keep monitors.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from ..domain.errors import PersistenceError
from ..models.base import utcnow
from ..models.user import User
from .job_store import SessionFactory

logger = logging.getLogger(__name__)


class EntitlementService:
    def __init__(
        self,
        admin_id: int,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        if session_factory is None:
            from ..core.database import get_db_session

            session_factory = get_db_session
        self.admin_id = admin_id
        self._session_factory = session_factory

    def is_admin(self, owner_id: int) -> bool:
        return bool(self.admin_id) and owner_id == self.admin_id

    async def is_premium(self, owner_id: int) -> bool:
        """True if the user has premium that has not lapsed."""
        try:
            async with self._session_factory() as session:
                user = await session.get(User, owner_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Entitlement lookup failed: {e}") from e
        if user is None or not user.is_premium:
            return False
        return user.premium_until is None or user.premium_until > utcnow()

    async def is_privileged(self, owner_id: int) -> bool:
        return self.is_admin(owner_id) or await self.is_premium(owner_id)

    async def save_user(
        self, telegram_id: int, username: Optional[str] = None, language: Optional[str] = None
    ) -> User:
        """Create the user row if missing and refresh its username."""
        try:
            async with self._session_factory() as session:
                user = await session.get(User, telegram_id)
                if user is None:
                    user = User(telegram_id=telegram_id, username=username, language=language)
                    session.add(user)
                else:
                    if username is not None:
                        user.username = username
                    if language is not None:
                        user.language = language
                await session.commit()
                await session.refresh(user)
                return user
        except SQLAlchemyError as e:
            raise PersistenceError(f"Saving user {telegram_id} failed: {e}") from e

    async def grant_premium(self, telegram_id: int, until: Optional[datetime] = None) -> User:
        """Grant premium, indefinitely when *until* is None."""
        return await self._set_premium(telegram_id, True, until)

    async def revoke_premium(self, telegram_id: int) -> User:
        return await self._set_premium(telegram_id, False, None)

    async def _set_premium(self, telegram_id: int, premium: bool, until: Optional[datetime]) -> User:
        try:
            async with self._session_factory() as session:
                user = await session.get(User, telegram_id)
                if user is None:
                    user = User(telegram_id=telegram_id)
                    session.add(user)
                user.is_premium = premium
                user.premium_until = until
                await session.commit()
                await session.refresh(user)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Updating premium for {telegram_id} failed: {e}") from e

        logger.info("Premium %s for user %s", "granted" if premium else "revoked", telegram_id)
        return user

