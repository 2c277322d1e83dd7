"""
Token introspection (RFC 7662) and revocation (RFC 7009).
"""

from datetime import datetime, timezone
from typing import Optional

import jwt
from loguru import logger

from gatehouse.idp.response import IntrospectionResponse
from gatehouse.idp.schemas import TokenTypeHint, format_scopes
from gatehouse.idp.store import GrantStore
from gatehouse.keys import KeyManager


def _epoch(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.replace(tzinfo=timezone.utc).timestamp())


class TokenInspector:
    def __init__(self, store: GrantStore, keys: KeyManager):
        self.store = store
        self.keys = keys

    async def introspect(self, token: Optional[str]) -> IntrospectionResponse:
        """
        Report on an opaque access token. Anything unknown, revoked, expired or
        signed is reported as inactive and nothing more.
        """
        token_obj = await self.store.get_access_token(token)
        if not token_obj:
            return IntrospectionResponse(active=False)
        return IntrospectionResponse(
            active=True,
            scope=format_scopes(token_obj.scopes or []),
            client_id=token_obj.client_id,
            username=token_obj.user.username if token_obj.user else None,
            token_type="Bearer",
            exp=_epoch(token_obj.expires_at),
            iat=_epoch(token_obj.created_at),
            sub=token_obj.user_id,
        )

    async def revoke(
        self, token: Optional[str], client_id: str, token_type_hint: Optional[str] = None
    ) -> None:
        """
        Revoke whatever the token turns out to be, provided it was issued to
        ``client_id``. Never reports whether the token existed or who owns it;
        the endpoint answers 200 either way.
        """
        if not token:
            return
        if TokenTypeHint.parse(token_type_hint) == TokenTypeHint.REFRESH_TOKEN:
            if await self.store.revoke_refresh_token(token, client_id):
                logger.info(f"Revoked refresh token for client_id={client_id}")
            return

        if await self.store.revoke_access_token(token, client_id):
            logger.info(f"Revoked opaque access token for client_id={client_id}")
            return
        if await self._deny_signed(token, client_id):
            return
        if await self.store.revoke_refresh_token(token, client_id):
            logger.info(f"Revoked refresh token for client_id={client_id}")

    async def _deny_signed(self, token: str, client_id: str) -> bool:
        """True when the token is one of ours and signed, whether or not it was denylisted."""
        try:
            claims = self.keys.verify(token)
        except jwt.InvalidTokenError:
            return False
        jti = claims.get("jti")
        if not jti or "client_id" not in claims:
            return False
        if claims["client_id"] != client_id:
            logger.warning(f"client_id={client_id} tried to revoke a token issued to another client")
            return True
        expires_at = datetime.fromtimestamp(claims["exp"], tz=timezone.utc).replace(tzinfo=None)
        if await self.store.deny_signed_token(jti, claims["client_id"], expires_at):
            logger.info(f"Denylisted signed access token jti={jti}")
        return True
