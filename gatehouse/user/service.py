"""
Thin interface onto the application's local accounts and sessions.

Password login itself lives outside gatehouse; this module only answers
"who is the caller", looks users up, and creates accounts and sessions for
the federated login broker.
"""

import secrets
from datetime import timedelta
from typing import Optional

from fastapi import Depends, Request
from passlib.hash import argon2
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from gatehouse.config import settings
from gatehouse.database import Database, get_db, utcnow
from gatehouse.user.schemas import User, UserSession


class UsernameTaken(Exception):
    """Raised when a new account collides with an existing username."""

    def __init__(self, username: str):
        super().__init__(f"username already taken: {username}")
        self.username = username


def hash_password(password: str) -> str:
    return argon2.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return argon2.verify(password, password_hash)
    except (ValueError, TypeError):
        return False


def unusable_password_hash() -> str:
    """
    Hash of a random secret that is discarded immediately, so the account can
    never log in with a password.
    """
    return argon2.hash(secrets.token_urlsafe(48))


class UserDirectory:
    def __init__(self, db: Database):
        self.db = db

    async def get(self, user_id: str) -> Optional[User]:
        async with self.db.session() as session:
            return await session.get(User, user_id)

    async def get_by_email(self, email: str) -> Optional[User]:
        if not email:
            return None
        async with self.db.session() as session:
            return (
                (
                    await session.execute(
                        select(User)
                        .where(func.lower(User.email) == email.lower())
                        .order_by(User.created_at)
                        .limit(1)
                    )
                )
                .scalars()
                .first()
            )

    async def get_by_username(self, username: str) -> Optional[User]:
        if not username:
            return None
        async with self.db.session() as session:
            return (
                await session.execute(select(User).where(User.username == username))
            ).scalar_one_or_none()

    async def create(
        self, username: str, password_hash: str, email: Optional[str] = None
    ) -> User:
        user = User(username=username, password_hash=password_hash, email=email)
        async with self.db.session() as session:
            session.add(user)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise UsernameTaken(username) from exc
            await session.refresh(user)
        return user


class SessionManager:
    def __init__(self, db: Database):
        self.db = db

    async def create(self, user: User) -> UserSession:
        user_session = UserSession(
            user_id=user.user_id,
            expires_at=utcnow() + timedelta(days=settings.session_ttl_days),
        )
        async with self.db.session() as session:
            session.add(user_session)
            await session.commit()
        return user_session

    async def resolve(self, session_id: str) -> Optional[User]:
        if not session_id:
            return None
        async with self.db.session() as session:
            user_session = await session.get(UserSession, session_id)
            if not user_session or user_session.expires_at < utcnow():
                return None
            return await session.get(User, user_session.user_id)


def set_session_cookie(response, user_session: UserSession):
    response.set_cookie(
        key=settings.session_cookie_name,
        value=user_session.session_id,
        max_age=settings.session_ttl_days * 24 * 60 * 60,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )


async def current_user(request: Request, db: Database = Depends(get_db)) -> Optional[User]:
    """Resolve the caller from the session cookie, or None when anonymous."""
    session_id = request.cookies.get(settings.session_cookie_name)
    return await SessionManager(db).resolve(session_id)
