"""
Response models for the OAuth2/OIDC endpoints.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class OAuthClientResponse(BaseModel):
    """Public view of a registered client."""

    client_id: str
    name: str
    description: Optional[str] = None
    redirect_uris: List[str]
    allowed_scopes: List[str]
    grant_types: List[str]
    is_confidential: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class OAuthClientCreationResponse(OAuthClientResponse):
    """Returned once at registration time, includes the plain secret."""

    client_secret: Optional[str] = None

    @classmethod
    def from_client(cls, client, client_secret: Optional[str]) -> "OAuthClientCreationResponse":
        response = cls.model_validate(client)
        response.client_secret = client_secret
        return response


class TokenResponse(BaseModel):
    """OAuth2 token response following RFC 6749, plus the OIDC id_token."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    scope: str
    id_token: Optional[str] = None


class IntrospectionResponse(BaseModel):
    """RFC 7662 introspection result."""

    active: bool
    scope: Optional[str] = None
    client_id: Optional[str] = None
    username: Optional[str] = None
    token_type: Optional[str] = None
    exp: Optional[int] = None
    iat: Optional[int] = None
    sub: Optional[str] = None


class ConsentRedirectResponse(BaseModel):
    """Where the consent page should navigate after a decision."""

    redirect_uri: str


class UserInfoResponse(BaseModel):
    sub: str
    preferred_username: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    email_verified: Optional[bool] = None
