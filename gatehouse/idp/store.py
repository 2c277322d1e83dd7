"""
Persistence for authorization codes, tokens and user consents.

Every consume/revoke step is a single conditional UPDATE whose affected-row
count decides the outcome, so two concurrent attempts cannot both succeed.
"""

from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from gatehouse.database import Database, generate_uuid, utcnow
from gatehouse.idp.schemas import (
    OAuthAccessToken,
    OAuthAuthorizationCode,
    OAuthRefreshToken,
    OAuthUserConsent,
    RevokedSignedToken,
)


def merge_scopes(current: List[str], added: List[str]) -> List[str]:
    merged = list(current or [])
    for scope in added:
        if scope not in merged:
            merged.append(scope)
    return merged


class GrantStore:
    def __init__(self, db: Database):
        self.db = db

    # Authorization codes.

    async def create_authorization_code(
        self,
        client_id: str,
        user_id: str,
        redirect_uri: str,
        scopes: List[str],
        ttl: int,
        code_challenge: Optional[str] = None,
        code_challenge_method: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> str:
        """Persist a new code and return the plain value (sent to the client only)."""
        code = OAuthAuthorizationCode.generate_code()
        async with self.db.session() as session:
            session.add(
                OAuthAuthorizationCode(
                    code_hash=OAuthAuthorizationCode.hash_code(code),
                    client_id=client_id,
                    user_id=user_id,
                    redirect_uri=redirect_uri,
                    scopes=list(scopes),
                    code_challenge=code_challenge,
                    code_challenge_method=code_challenge_method,
                    nonce=nonce,
                    expires_at=utcnow() + timedelta(seconds=ttl),
                )
            )
            await session.commit()
        return code

    async def get_authorization_code(self, code: Optional[str]) -> Optional[OAuthAuthorizationCode]:
        if not code:
            return None
        async with self.db.session() as session:
            return await session.get(
                OAuthAuthorizationCode, OAuthAuthorizationCode.hash_code(code)
            )

    async def consume_authorization_code(self, code_hash: str) -> bool:
        """Mark a code used. Returns False if it was already used (or is gone)."""
        async with self.db.session() as session:
            result = await session.execute(
                update(OAuthAuthorizationCode)
                .where(
                    OAuthAuthorizationCode.code_hash == code_hash,
                    OAuthAuthorizationCode.used.is_(False),
                )
                .values(used=True)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    # Opaque access tokens.

    async def create_access_token(
        self,
        client_id: str,
        user_id: Optional[str],
        scopes: List[str],
        ttl: int,
    ) -> Tuple[OAuthAccessToken, str]:
        token_id = generate_uuid()
        token = OAuthAccessToken.generate_token(token_id)
        token_obj = OAuthAccessToken(
            token_id=token_id,
            token_hash=OAuthAccessToken.hash_token(token),
            client_id=client_id,
            user_id=user_id,
            scopes=list(scopes),
            expires_at=utcnow() + timedelta(seconds=ttl),
        )
        async with self.db.session() as session:
            session.add(token_obj)
            await session.commit()
            await session.refresh(token_obj)
        return token_obj, token

    async def _load_access_token(self, token: Optional[str]) -> Optional[OAuthAccessToken]:
        if not OAuthAccessToken.could_be_valid(token):
            return None
        token_id, _ = OAuthAccessToken.parse_token(token)
        async with self.db.session() as session:
            token_obj = await session.get(OAuthAccessToken, token_id)
        if not token_obj or not token_obj.verify_secret(token):
            return None
        return token_obj

    async def get_access_token(self, token: Optional[str]) -> Optional[OAuthAccessToken]:
        """Return the token row if it is known, unrevoked and unexpired."""
        token_obj = await self._load_access_token(token)
        if not token_obj or token_obj.revoked or token_obj.expires_at < utcnow():
            return None
        return token_obj

    async def revoke_access_token(self, token: Optional[str], client_id: Optional[str] = None) -> bool:
        """Revoke once. With ``client_id``, only that client's token is touched."""
        token_obj = await self._load_access_token(token)
        if not token_obj or (client_id is not None and token_obj.client_id != client_id):
            return False
        async with self.db.session() as session:
            result = await session.execute(
                update(OAuthAccessToken)
                .where(
                    OAuthAccessToken.token_id == token_obj.token_id,
                    OAuthAccessToken.revoked.is_(False),
                )
                .values(revoked=True)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    # Refresh tokens.

    async def create_refresh_token(
        self,
        access_token_id: Optional[str],
        client_id: str,
        user_id: str,
        scopes: List[str],
        ttl: int,
    ) -> Tuple[OAuthRefreshToken, str]:
        token_id = generate_uuid()
        token = OAuthRefreshToken.generate_token(token_id)
        token_obj = OAuthRefreshToken(
            token_id=token_id,
            token_hash=OAuthRefreshToken.hash_token(token),
            access_token_id=access_token_id,
            client_id=client_id,
            user_id=user_id,
            scopes=list(scopes),
            expires_at=utcnow() + timedelta(seconds=ttl),
        )
        async with self.db.session() as session:
            session.add(token_obj)
            await session.commit()
            await session.refresh(token_obj)
        return token_obj, token

    async def _load_refresh_token(self, token: Optional[str]) -> Optional[OAuthRefreshToken]:
        if not OAuthRefreshToken.could_be_valid(token):
            return None
        token_id, _ = OAuthRefreshToken.parse_token(token)
        async with self.db.session() as session:
            token_obj = await session.get(OAuthRefreshToken, token_id)
        if not token_obj or not token_obj.verify_secret(token):
            return None
        return token_obj

    async def get_refresh_token(self, token: Optional[str]) -> Optional[OAuthRefreshToken]:
        token_obj = await self._load_refresh_token(token)
        if not token_obj or token_obj.revoked or token_obj.expires_at < utcnow():
            return None
        return token_obj

    async def revoke_refresh_token(self, token: Optional[str], client_id: Optional[str] = None) -> bool:
        """Revoke once. With ``client_id``, only that client's token is touched."""
        token_obj = await self._load_refresh_token(token)
        if not token_obj or (client_id is not None and token_obj.client_id != client_id):
            return False
        async with self.db.session() as session:
            result = await session.execute(
                update(OAuthRefreshToken)
                .where(
                    OAuthRefreshToken.token_id == token_obj.token_id,
                    OAuthRefreshToken.revoked.is_(False),
                )
                .values(revoked=True)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    # Signed access token denylist.

    async def deny_signed_token(self, jti: str, client_id: str, expires_at: datetime) -> bool:
        """Add a signed token's jti to the denylist. False if it was already there."""
        async with self.db.session() as session:
            session.add(RevokedSignedToken(jti=jti, client_id=client_id, expires_at=expires_at))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
        return True

    async def is_signed_token_denied(self, jti: Optional[str]) -> bool:
        if not jti:
            return False
        async with self.db.session() as session:
            return await session.get(RevokedSignedToken, jti) is not None

    # User consent.

    async def get_consent(self, user_id: str, client_id: str) -> Optional[OAuthUserConsent]:
        async with self.db.session() as session:
            return (
                await session.execute(
                    select(OAuthUserConsent).where(
                        OAuthUserConsent.user_id == user_id,
                        OAuthUserConsent.client_id == client_id,
                    )
                )
            ).scalar_one_or_none()

    async def save_consent(self, user_id: str, client_id: str, scopes: List[str]) -> List[str]:
        """
        Upsert a consent record. Granted scopes are merged into the existing
        set, which only shrinks through ``revoke_consent``. Returns the stored scopes.
        """
        query = (
            select(OAuthUserConsent)
            .where(
                OAuthUserConsent.user_id == user_id,
                OAuthUserConsent.client_id == client_id,
            )
            .with_for_update()
        )
        async with self.db.session() as session:
            async with session.begin():
                consent = (await session.execute(query)).scalar_one_or_none()
                if consent is None:
                    try:
                        async with session.begin_nested():
                            consent = OAuthUserConsent(
                                user_id=user_id,
                                client_id=client_id,
                                scopes=list(scopes),
                            )
                            session.add(consent)
                        return list(consent.scopes)
                    except IntegrityError:
                        # Inserted concurrently; fall through to the merge.
                        consent = (await session.execute(query)).scalar_one()
                consent.scopes = merge_scopes(consent.scopes, scopes)
                consent.updated_at = utcnow()
                return list(consent.scopes)

    async def revoke_consent(self, user_id: str, client_id: str) -> bool:
        async with self.db.session() as session:
            result = await session.execute(
                delete(OAuthUserConsent).where(
                    OAuthUserConsent.user_id == user_id,
                    OAuthUserConsent.client_id == client_id,
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def purge_expired(self) -> int:
        """Delete expired codes, tokens and denylist entries. Returns rows removed."""
        now = utcnow()
        removed = 0
        async with self.db.session() as session:
            for model in (
                OAuthAuthorizationCode,
                OAuthAccessToken,
                OAuthRefreshToken,
                RevokedSignedToken,
            ):
                result = await session.execute(delete(model).where(model.expires_at < now))
                removed += result.rowcount or 0
            await session.commit()
        return removed
