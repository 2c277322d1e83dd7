"""
External identity providers and the links between their accounts and local users.
"""

import base64
import binascii
import json
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
)

from gatehouse.database import Base, generate_uuid


class ProviderKind(str, Enum):
    OIDC = "oidc"
    OAUTH2 = "oauth2"


class UserMatchField(str, Enum):
    EMAIL = "email"
    USERNAME = "username"


class IssuerPolicy(str, Enum):
    """
    How an ID token's ``iss`` is compared to the configured issuer.
    strict: exact match or the login fails.
    lenient: mismatches are logged and tolerated (trailing slash variance etc).
    """

    STRICT = "strict"
    LENIENT = "lenient"


class AuthProvider(Base):
    """A registered upstream OIDC or plain OAuth2 identity provider."""

    __tablename__ = "auth_providers"

    provider_id = Column(Integer, primary_key=True, autoincrement=True)
    slug = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    kind = Column(String, nullable=False, default=ProviderKind.OIDC.value)
    issuer = Column(String, nullable=True)
    client_id = Column(String, nullable=False)
    client_secret = Column(String, nullable=False)
    scopes = Column(String, nullable=True)
    authorization_endpoint = Column(String, nullable=True)
    token_endpoint = Column(String, nullable=True)
    userinfo_endpoint = Column(String, nullable=True)
    jwks_uri = Column(String, nullable=True)
    emails_endpoint = Column(String, nullable=True)
    user_match_field = Column(String, nullable=False, default=UserMatchField.EMAIL.value)
    auto_register = Column(Boolean, nullable=False, default=True)
    auto_launch = Column(Boolean, nullable=False, default=False)
    issuer_policy = Column(String, nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class FederatedIdentity(Base):
    """
    Link between (provider, external subject) and a local user. The subject
    is the stable key; the email is only recorded at link time.
    """

    __tablename__ = "federated_identities"

    identity_id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(
        String,
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
    )
    provider_slug = Column(String, nullable=False)
    subject = Column(String, nullable=False)
    email = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("provider_slug", "subject", name="constraint_federated_provider_subject"),
    )


class AuthProviderCreateRequest(BaseModel):
    name: str
    slug: str
    kind: ProviderKind = ProviderKind.OIDC
    issuer: Optional[str] = None
    client_id: str
    client_secret: str
    scopes: Optional[str] = None
    authorization_endpoint: Optional[str] = None
    token_endpoint: Optional[str] = None
    userinfo_endpoint: Optional[str] = None
    jwks_uri: Optional[str] = None
    emails_endpoint: Optional[str] = None
    user_match_field: UserMatchField = UserMatchField.EMAIL
    auto_register: bool = True
    auto_launch: bool = False
    issuer_policy: Optional[IssuerPolicy] = None
    enabled: bool = True

    @field_validator("slug")
    @classmethod
    def validate_slug(cls, v):
        if not v or not all(c.isalnum() or c in "-_" for c in v):
            raise ValueError("Slug may only contain letters, digits, '-' and '_'")
        return v.lower()


class StatePayload(BaseModel):
    """Contents of the per-provider state cookie."""

    model_config = ConfigDict(populate_by_name=True)

    state: str
    nonce: str
    provider: str
    return_to: Optional[str] = Field(default=None, alias="returnTo")

    def encode(self) -> str:
        raw = json.dumps(self.model_dump(by_alias=True, exclude_none=True)).encode()
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()

    @classmethod
    def decode(cls, value: Optional[str]) -> Optional["StatePayload"]:
        if not value:
            return None
        try:
            padded = value + "=" * (-len(value) % 4)
            return cls.model_validate(json.loads(base64.urlsafe_b64decode(padded)))
        except (binascii.Error, ValueError, ValidationError):
            return None


class ExternalIdentity(BaseModel):
    """Canonical (subject, username, email) triple taken from a provider."""

    subject: str
    username: Optional[str] = None
    email: Optional[str] = None
