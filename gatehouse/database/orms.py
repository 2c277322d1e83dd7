"""
Imports every ORM module so the declarative metadata is complete.
"""

from gatehouse.user.schemas import User, UserSession  # noqa: F401
from gatehouse.idp.schemas import (  # noqa: F401
    OAuthAccessToken,
    OAuthAuthorizationCode,
    OAuthClient,
    OAuthRefreshToken,
    OAuthUserConsent,
    RevokedSignedToken,
)
from gatehouse.federation.schemas import AuthProvider, FederatedIdentity  # noqa: F401
