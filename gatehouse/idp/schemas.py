"""
Database models and request models for the OAuth2/OIDC authorization server.

Scopes:
-------
- "openid" - OpenID Connect sign-in; switches the token response to signed tokens
  and adds an ID token
- "profile" / "username" - username and display name in userinfo and ID tokens
- "email" - email address in userinfo and ID tokens
- "offline_access" - refresh token (when the client supports the refresh_token grant)

Token formats:
--------------
- opaque access token: gat_{token_id}.{secret}
- refresh token: grt_{token_id}.{secret}
- signed access token: RS256 JWT carrying a jti, never written to the store
"""

import hashlib
import re
import secrets
import string
from enum import Enum
from typing import List, Optional, Self

from passlib.hash import argon2
from pydantic import BaseModel, field_validator
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from gatehouse.constants import (
    ACCESS_TOKEN_PREFIX,
    DEFAULT_GRANT_TYPES,
    DEFAULT_SCOPE,
    REFRESH_TOKEN_PREFIX,
    SUPPORTED_SCOPES,
)
from gatehouse.database import Base, generate_uuid


class GrantType(str, Enum):
    AUTHORIZATION_CODE = "authorization_code"
    CLIENT_CREDENTIALS = "client_credentials"
    REFRESH_TOKEN = "refresh_token"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["GrantType"]:
        try:
            return cls(value)
        except ValueError:
            return None


class TokenTypeHint(str, Enum):
    ACCESS_TOKEN = "access_token"
    REFRESH_TOKEN = "refresh_token"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["TokenTypeHint"]:
        try:
            return cls(value)
        except ValueError:
            return None


class CodeChallengeMethod(str, Enum):
    S256 = "S256"
    PLAIN = "plain"


class AccessTokenKind(str, Enum):
    """
    Access tokens come in two mutually exclusive representations: opaque
    strings backed by the grant store, or self-contained signed tokens.
    """

    OPAQUE = "opaque"
    SIGNED = "signed"


SCOPE_DESCRIPTIONS = {
    "openid": "Sign you in with your account",
    "profile": "Read your username and display name",
    "username": "Read your username",
    "email": "Read your email address",
    "offline_access": "Stay connected while you are away",
}


def parse_scopes(scope: Optional[str]) -> List[str]:
    """
    Split a space-delimited scope string, preserving order and dropping
    duplicates. An absent or blank scope means "openid".
    """
    if not scope or not scope.strip():
        return [DEFAULT_SCOPE]
    seen = []
    for item in scope.split():
        if item not in seen:
            seen.append(item)
    return seen


def format_scopes(scopes: List[str]) -> str:
    return " ".join(scopes)


def get_scope_descriptions(scopes: List[str]) -> List[str]:
    """
    Human-readable descriptions for a list of scopes, used on the consent page.
    """
    return [SCOPE_DESCRIPTIONS.get(scope, f"Access: {scope}") for scope in scopes]


def _random_string(length: int, alphabet: str = string.ascii_letters + string.digits) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


class OAuthClientCreateRequest(BaseModel):
    """Request model for registering an OAuth client."""

    name: str
    description: Optional[str] = None
    redirect_uris: List[str]
    allowed_scopes: List[str] = ["openid", "profile", "email"]
    grant_types: List[str] = list(DEFAULT_GRANT_TYPES)
    is_confidential: bool = True

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v or len(v) > 64:
            raise ValueError("Name must be between 1 and 64 characters")
        return v

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v):
        for uri in v:
            if not uri.startswith(("http://", "https://")):
                raise ValueError(f"Invalid redirect URI: {uri}")
        return v

    @field_validator("allowed_scopes")
    @classmethod
    def validate_allowed_scopes(cls, v):
        for scope in v:
            if scope not in SUPPORTED_SCOPES:
                raise ValueError(f"Unsupported scope: {scope}")
        return v

    @field_validator("grant_types")
    @classmethod
    def validate_grant_types(cls, v):
        for grant_type in v:
            if GrantType.parse(grant_type) is None:
                raise ValueError(f"Unsupported grant type: {grant_type}")
        return v


class AuthorizeRequest(BaseModel):
    """Parameters of a GET /authorize request."""

    response_type: str = ""
    client_id: str = ""
    redirect_uri: str = ""
    scope: Optional[str] = None
    state: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    nonce: Optional[str] = None


class ConsentDecision(AuthorizeRequest):
    """Body of POST /authorize, submitted by the consent page."""

    response_type: str = "code"
    approved: bool = False


class TokenRequest(BaseModel):
    """Form parameters of POST /token after credential normalization."""

    grant_type: str
    code: Optional[str] = None
    redirect_uri: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    code_verifier: Optional[str] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None


class OAuthClient(Base):
    """Registered OAuth client."""

    __tablename__ = "oauth_clients"

    client_id = Column(String, primary_key=True)
    client_secret_hash = Column(String, nullable=True)
    name = Column(String(64), nullable=False)
    description = Column(Text, nullable=True)
    redirect_uris = Column(JSON, nullable=False, default=list)
    allowed_scopes = Column(JSON, nullable=False, default=list)
    grant_types = Column(JSON, nullable=False, default=list)
    is_confidential = Column(Boolean, default=True, nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    @classmethod
    def generate_client_id(cls) -> str:
        return generate_uuid()

    @classmethod
    def generate_client_secret(cls) -> str:
        return _random_string(48)

    @classmethod
    def create(cls, args: OAuthClientCreateRequest) -> tuple[Self, Optional[str]]:
        """Create a new client with generated credentials; public clients get no secret."""
        client_secret = cls.generate_client_secret() if args.is_confidential else None
        instance = cls(
            client_id=cls.generate_client_id(),
            client_secret_hash=argon2.hash(client_secret) if client_secret else None,
            name=args.name,
            description=args.description,
            redirect_uris=list(args.redirect_uris),
            allowed_scopes=list(args.allowed_scopes),
            grant_types=list(args.grant_types),
            is_confidential=args.is_confidential,
        )
        return instance, client_secret

    def verify_secret(self, secret: Optional[str]) -> bool:
        if not secret or not self.client_secret_hash:
            return False
        try:
            return argon2.verify(secret, self.client_secret_hash)
        except (ValueError, TypeError):
            return False

    def is_valid_redirect_uri(self, uri: Optional[str]) -> bool:
        """Exact match only, no prefix or suffix tolerance."""
        return bool(uri) and uri in (self.redirect_uris or [])

    def allows_scopes(self, scopes: List[str]) -> bool:
        allowed = set(self.allowed_scopes or [])
        return all(scope in allowed for scope in scopes)

    def allows_grant(self, grant_type: GrantType) -> bool:
        return grant_type.value in (self.grant_types or [])


class OAuthAuthorizationCode(Base):
    """
    Single-use authorization code. Only the SHA-256 of the code is stored;
    client_id and redirect_uri are pinned at issuance.
    """

    __tablename__ = "oauth_authorization_codes"

    code_hash = Column(String, primary_key=True)
    client_id = Column(
        String,
        ForeignKey("oauth_clients.client_id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id = Column(
        String,
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    redirect_uri = Column(String, nullable=False)
    scopes = Column(JSON, nullable=False, default=list)
    code_challenge = Column(String, nullable=True)
    code_challenge_method = Column(String, nullable=True)
    nonce = Column(String, nullable=True)
    expires_at = Column(DateTime, nullable=False)
    used = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    @staticmethod
    def generate_code() -> str:
        return _random_string(64)

    @staticmethod
    def hash_code(code: str) -> str:
        """SHA256 rather than argon2: codes are short-lived and high entropy."""
        return hashlib.sha256(code.encode()).hexdigest()


class _SecretToken:
    """Shared token_id.secret handling for opaque access and refresh tokens."""

    prefix = ""

    @classmethod
    def generate_token(cls, token_id: str) -> str:
        """
        Generate a secure token with embedded token_id for O(1) lookup.
        Format: {prefix}{token_id}.{secret}
        """
        return f"{cls.prefix}{token_id}.{_random_string(48)}"

    @classmethod
    def hash_token(cls, token: str) -> str:
        """Hash the secret portion of a token for storage (argon2)."""
        _, secret = cls.parse_token(token)
        return argon2.hash(secret or token)

    @classmethod
    def parse_token(cls, token: Optional[str]) -> tuple[Optional[str], Optional[str]]:
        """
        Parse a token string into (token_id, secret).
        Returns (None, None) if format is invalid.
        """
        if not token or not token.startswith(cls.prefix):
            return None, None
        parts = token[len(cls.prefix) :].split(".", 1)
        if len(parts) != 2 or not parts[0] or not parts[1]:
            return None, None
        return parts[0], parts[1]

    @classmethod
    def could_be_valid(cls, token: Optional[str]) -> bool:
        """Fast check for token format."""
        token_id, secret = cls.parse_token(token)
        return (
            token_id is not None
            and len(token_id) == 36
            and len(secret) == 48
            and re.match(r"^[a-zA-Z0-9]+$", secret) is not None
        )

    def verify_secret(self, token: str) -> bool:
        _, secret = self.parse_token(token)
        if not secret:
            return False
        try:
            return argon2.verify(secret, self.token_hash)
        except (ValueError, TypeError):
            return False


class OAuthAccessToken(_SecretToken, Base):
    """Opaque, store-backed access token. user_id is null for client_credentials."""

    __tablename__ = "oauth_access_tokens"
    prefix = ACCESS_TOKEN_PREFIX

    token_id = Column(String, primary_key=True, default=generate_uuid)
    token_hash = Column(String, nullable=False)
    client_id = Column(
        String,
        ForeignKey("oauth_clients.client_id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id = Column(
        String,
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=True,
    )
    scopes = Column(JSON, nullable=False, default=list)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    revoked = Column(Boolean, default=False, nullable=False)

    user = relationship("User", lazy="joined")


class OAuthRefreshToken(_SecretToken, Base):
    """
    Refresh token. access_token_id points at the opaque token row, or holds
    the jti when the access token was signed.
    """

    __tablename__ = "oauth_refresh_tokens"
    prefix = REFRESH_TOKEN_PREFIX

    token_id = Column(String, primary_key=True, default=generate_uuid)
    token_hash = Column(String, nullable=False)
    access_token_id = Column(String, nullable=True)
    client_id = Column(
        String,
        ForeignKey("oauth_clients.client_id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id = Column(
        String,
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    scopes = Column(JSON, nullable=False, default=list)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    revoked = Column(Boolean, default=False, nullable=False)


class OAuthUserConsent(Base):
    """
    A user's standing approval of a client's scopes.
    """

    __tablename__ = "oauth_user_consents"

    consent_id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(
        String,
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    client_id = Column(
        String,
        ForeignKey("oauth_clients.client_id", ondelete="CASCADE"),
        nullable=False,
    )
    scopes = Column(JSON, nullable=False, default=list)
    granted_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "client_id", name="constraint_oauth_consent_user_client"),
    )

    def covers(self, scopes: List[str]) -> bool:
        granted = set(self.scopes or [])
        return all(scope in granted for scope in scopes)


class RevokedSignedToken(Base):
    """Denylist entry for a revoked signed access token, keyed by its jti."""

    __tablename__ = "oauth_revoked_signed_tokens"

    jti = Column(String, primary_key=True)
    client_id = Column(String, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    revoked_at = Column(DateTime, server_default=func.now())
