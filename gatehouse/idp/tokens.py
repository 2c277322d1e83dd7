"""
Token endpoint logic: grant dispatch, PKCE, and issuance of opaque or signed
access tokens, refresh tokens and ID tokens.
"""

import base64
import hashlib
import secrets
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import jwt
from loguru import logger

from gatehouse.config import settings
from gatehouse.database import utcnow
from gatehouse.idp.clients import ClientRegistry
from gatehouse.idp.errors import OAuthErrorCode, OAuthFailure, failure
from gatehouse.idp.response import TokenResponse, UserInfoResponse
from gatehouse.idp.schemas import (
    AccessTokenKind,
    CodeChallengeMethod,
    GrantType,
    OAuthAccessToken,
    OAuthClient,
    TokenRequest,
    format_scopes,
    parse_scopes,
)
from gatehouse.idp.store import GrantStore
from gatehouse.keys import KeyManager
from gatehouse.user.schemas import User
from gatehouse.user.service import UserDirectory

TokenResult = Tuple[Optional[TokenResponse], Optional[OAuthFailure]]


def pkce_challenge(verifier: str, method: CodeChallengeMethod = CodeChallengeMethod.S256) -> str:
    """Compute the code_challenge for a code_verifier (RFC 7636)."""
    if method == CodeChallengeMethod.PLAIN:
        return verifier
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_pkce(verifier: str, challenge: str, method: Optional[str]) -> bool:
    try:
        method = CodeChallengeMethod(method or CodeChallengeMethod.S256.value)
        expected = pkce_challenge(verifier, method)
    except (ValueError, UnicodeEncodeError):
        return False
    return secrets.compare_digest(expected, challenge)


class IssuedAccessToken:
    """
    An access token as handed to the client, tagged with its representation.
    Opaque tokens carry the store row id, signed tokens their jti.
    """

    def __init__(
        self,
        kind: AccessTokenKind,
        token: str,
        expires_in: int,
        token_id: Optional[str] = None,
        jti: Optional[str] = None,
    ):
        self.kind = kind
        self.token = token
        self.expires_in = expires_in
        self.token_id = token_id
        self.jti = jti

    @property
    def reference(self) -> Optional[str]:
        return self.token_id if self.kind == AccessTokenKind.OPAQUE else self.jti


class BearerContext:
    """What a presented bearer token grants."""

    def __init__(
        self,
        kind: AccessTokenKind,
        client_id: str,
        user_id: Optional[str],
        scopes: List[str],
        expires_at: datetime,
    ):
        self.kind = kind
        self.client_id = client_id
        self.user_id = user_id
        self.scopes = scopes
        self.expires_at = expires_at


class TokenEngine:
    def __init__(
        self,
        clients: ClientRegistry,
        store: GrantStore,
        keys: KeyManager,
        users: UserDirectory,
    ):
        self.clients = clients
        self.store = store
        self.keys = keys
        self.users = users
        # One handler per GrantType member.
        self._handlers: Dict[
            GrantType, Callable[[OAuthClient, TokenRequest, str], Awaitable[TokenResult]]
        ] = {
            GrantType.AUTHORIZATION_CODE: self._authorization_code_grant,
            GrantType.CLIENT_CREDENTIALS: self._client_credentials_grant,
            GrantType.REFRESH_TOKEN: self._refresh_token_grant,
        }

    async def handle(self, request: TokenRequest, issuer: str) -> TokenResult:
        """
        Single entry point for POST /token. Client credentials must already be
        normalized into the request (see ``extract_client_credentials``).
        """
        if not request.grant_type:
            return None, failure(OAuthErrorCode.INVALID_REQUEST, "Missing grant_type")
        grant_type = GrantType.parse(request.grant_type)
        if grant_type is None:
            return None, failure(
                OAuthErrorCode.UNSUPPORTED_GRANT_TYPE,
                f'Grant type "{request.grant_type}" is not supported',
            )

        client, error = await self.clients.authenticate(request.client_id, request.client_secret)
        if error:
            return None, error
        if not client.allows_grant(grant_type):
            return None, failure(
                OAuthErrorCode.UNAUTHORIZED_CLIENT,
                "Client is not authorized for this grant type",
            )

        return await self._handlers[grant_type](client, request, issuer)

    async def _authorization_code_grant(
        self, client: OAuthClient, request: TokenRequest, issuer: str
    ) -> TokenResult:
        if not request.code:
            return None, failure(OAuthErrorCode.INVALID_REQUEST, "Missing authorization code")
        if not request.redirect_uri:
            return None, failure(OAuthErrorCode.INVALID_REQUEST, "Missing redirect_uri")

        auth_code = await self.store.get_authorization_code(request.code)
        if not auth_code:
            return None, failure(
                OAuthErrorCode.INVALID_GRANT, "Invalid or expired authorization code"
            )
        if auth_code.used:
            logger.warning(f"Replay of used authorization code for client_id={client.client_id}")
            return None, failure(
                OAuthErrorCode.INVALID_GRANT, "Authorization code has already been used"
            )
        if auth_code.client_id != client.client_id:
            return None, failure(
                OAuthErrorCode.INVALID_GRANT,
                "Authorization code was issued to a different client",
            )
        if auth_code.redirect_uri != request.redirect_uri:
            return None, failure(OAuthErrorCode.INVALID_GRANT, "Redirect URI mismatch")
        if auth_code.expires_at < utcnow():
            return None, failure(OAuthErrorCode.INVALID_GRANT, "Authorization code has expired")
        if auth_code.code_challenge:
            if not request.code_verifier:
                return None, failure(
                    OAuthErrorCode.INVALID_REQUEST, "Missing code_verifier for PKCE"
                )
            if not verify_pkce(
                request.code_verifier,
                auth_code.code_challenge,
                auth_code.code_challenge_method,
            ):
                return None, failure(OAuthErrorCode.INVALID_GRANT, "Invalid PKCE code_verifier")

        # Compare-and-set: of two concurrent exchanges only one gets here.
        if not await self.store.consume_authorization_code(auth_code.code_hash):
            return None, failure(
                OAuthErrorCode.INVALID_GRANT, "Authorization code has already been used"
            )

        user = await self.users.get(auth_code.user_id)
        if not user:
            return None, failure(OAuthErrorCode.SERVER_ERROR, "User not found")

        scopes = list(auth_code.scopes or [])
        access = await self._issue_access_token(client, user.user_id, scopes, issuer)
        refresh_token = await self._maybe_issue_refresh_token(client, user.user_id, scopes, access)
        id_token = None
        if "openid" in scopes:
            id_token = self._issue_id_token(client, user, scopes, issuer, auth_code.nonce)

        logger.info(
            f"Issued {access.kind.value} access token for client_id={client.client_id} "
            f"user_id={user.user_id} scope={format_scopes(scopes)!r}"
        )
        return (
            TokenResponse(
                access_token=access.token,
                expires_in=access.expires_in,
                refresh_token=refresh_token,
                scope=format_scopes(scopes),
                id_token=id_token,
            ),
            None,
        )

    async def _client_credentials_grant(
        self, client: OAuthClient, request: TokenRequest, issuer: str
    ) -> TokenResult:
        if not client.is_confidential and not settings.allow_public_client_credentials:
            return None, failure(
                OAuthErrorCode.UNAUTHORIZED_CLIENT,
                "Public clients cannot use the client_credentials grant",
            )
        scopes = parse_scopes(request.scope)
        if not client.allows_scopes(scopes):
            return None, failure(
                OAuthErrorCode.INVALID_SCOPE,
                "Requested scope is not allowed for this client",
            )
        token_obj, token = await self.store.create_access_token(
            client.client_id, None, scopes, settings.access_token_ttl
        )
        logger.info(f"Issued client_credentials token for client_id={client.client_id}")
        return (
            TokenResponse(
                access_token=token,
                expires_in=settings.access_token_ttl,
                scope=format_scopes(scopes),
            ),
            None,
        )

    async def _refresh_token_grant(
        self, client: OAuthClient, request: TokenRequest, issuer: str
    ) -> TokenResult:
        if not request.refresh_token:
            return None, failure(OAuthErrorCode.INVALID_REQUEST, "Missing refresh_token")

        refresh_obj = await self.store.get_refresh_token(request.refresh_token)
        if not refresh_obj:
            return None, failure(OAuthErrorCode.INVALID_GRANT, "Invalid or expired refresh token")
        if refresh_obj.client_id != client.client_id:
            return None, failure(
                OAuthErrorCode.INVALID_GRANT,
                "Refresh token was issued to a different client",
            )

        # Only the original grant, or a subset of it, can be carried forward.
        scopes = list(refresh_obj.scopes or [])
        if request.scope:
            requested = parse_scopes(request.scope)
            if not all(scope in scopes for scope in requested):
                return None, failure(
                    OAuthErrorCode.INVALID_SCOPE,
                    "Requested scope exceeds the original grant",
                )
            scopes = requested

        access = await self._issue_access_token(client, refresh_obj.user_id, scopes, issuer)
        return (
            TokenResponse(
                access_token=access.token,
                expires_in=access.expires_in,
                # No rotation: the same refresh token stays valid.
                refresh_token=request.refresh_token,
                scope=format_scopes(scopes),
            ),
            None,
        )

    async def _issue_access_token(
        self,
        client: OAuthClient,
        user_id: Optional[str],
        scopes: List[str],
        issuer: str,
    ) -> IssuedAccessToken:
        """Signed when openid was granted, opaque and store-backed otherwise."""
        ttl = settings.access_token_ttl
        if "openid" in scopes:
            now = int(time.time())
            jti = secrets.token_urlsafe(16)
            token = self.keys.sign(
                {
                    "sub": user_id or client.client_id,
                    "iss": issuer,
                    "aud": client.client_id,
                    "exp": now + ttl,
                    "iat": now,
                    "jti": jti,
                    "scope": format_scopes(scopes),
                    "client_id": client.client_id,
                }
            )
            return IssuedAccessToken(AccessTokenKind.SIGNED, token, ttl, jti=jti)

        token_obj, token = await self.store.create_access_token(
            client.client_id, user_id, scopes, ttl
        )
        return IssuedAccessToken(AccessTokenKind.OPAQUE, token, ttl, token_id=token_obj.token_id)

    async def _maybe_issue_refresh_token(
        self,
        client: OAuthClient,
        user_id: str,
        scopes: List[str],
        access: IssuedAccessToken,
    ) -> Optional[str]:
        if "offline_access" not in scopes or not client.allows_grant(GrantType.REFRESH_TOKEN):
            return None
        _, token = await self.store.create_refresh_token(
            access.reference,
            client.client_id,
            user_id,
            scopes,
            settings.refresh_token_ttl_days * 24 * 60 * 60,
        )
        return token

    def _issue_id_token(
        self,
        client: OAuthClient,
        user: User,
        scopes: List[str],
        issuer: str,
        nonce: Optional[str],
    ) -> str:
        now = int(time.time())
        claims = {
            "sub": user.user_id,
            "iss": issuer,
            "aud": client.client_id,
            "exp": now + settings.access_token_ttl,
            "iat": now,
            "preferred_username": user.username,
            "name": user.username,
        }
        if "email" in scopes and user.email:
            claims["email"] = user.email
            claims["email_verified"] = True
        if nonce:
            claims["nonce"] = nonce
        return self.keys.sign(claims)

    async def resolve_bearer(
        self, token: Optional[str]
    ) -> Tuple[Optional[BearerContext], Optional[OAuthFailure]]:
        """
        Resolve a presented bearer token: opaque tokens through the store,
        signed tokens through signature verification plus the jti denylist.
        """
        invalid = failure(OAuthErrorCode.INVALID_TOKEN, "Invalid or expired access token")
        if not token:
            return None, invalid

        if OAuthAccessToken.parse_token(token)[0]:
            token_obj = await self.store.get_access_token(token)
            if not token_obj:
                return None, invalid
            return (
                BearerContext(
                    AccessTokenKind.OPAQUE,
                    token_obj.client_id,
                    token_obj.user_id,
                    list(token_obj.scopes or []),
                    token_obj.expires_at,
                ),
                None,
            )

        try:
            claims = self.keys.verify(token)
        except jwt.InvalidTokenError as exc:
            logger.warning(f"Bearer token verification failed: {exc}")
            return None, invalid
        if "client_id" not in claims or await self.store.is_signed_token_denied(claims.get("jti")):
            return None, invalid
        user_id = None if claims["sub"] == claims["client_id"] else claims["sub"]
        return (
            BearerContext(
                AccessTokenKind.SIGNED,
                claims["client_id"],
                user_id,
                (claims.get("scope") or "").split(),
                datetime.fromtimestamp(claims["exp"], tz=timezone.utc).replace(tzinfo=None),
            ),
            None,
        )

    async def userinfo(
        self, token: Optional[str]
    ) -> Tuple[Optional[UserInfoResponse], Optional[OAuthFailure]]:
        """Claims about the token's user, gated by the granted scopes."""
        context, error = await self.resolve_bearer(token)
        if error:
            return None, error
        if not context.user_id:
            return None, failure(
                OAuthErrorCode.INVALID_TOKEN, "Token is not associated with a user"
            )
        user = await self.users.get(context.user_id)
        if not user:
            return None, failure(OAuthErrorCode.INVALID_TOKEN, "User not found")

        info = UserInfoResponse(sub=user.user_id)
        if "profile" in context.scopes or "username" in context.scopes:
            info.preferred_username = user.username
            info.name = user.username
        if "email" in context.scopes and user.email:
            info.email = user.email
            info.email_verified = True
        return info, None
