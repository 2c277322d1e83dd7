"""
Protocol constants shared across the identity core.
"""

SUPPORTED_SCOPES = ("openid", "profile", "username", "email", "offline_access")
DEFAULT_SCOPE = "openid"
DEFAULT_GRANT_TYPES = ("authorization_code", "refresh_token")

JWT_ALGORITHM = "RS256"

ACCESS_TOKEN_PREFIX = "gat_"
REFRESH_TOKEN_PREFIX = "grt_"

FEDERATION_STATE_COOKIE_PREFIX = "oauth_state_"
FEDERATION_USERNAME_SUFFIX_LENGTH = 4
DEFAULT_FEDERATION_SCOPES = "openid profile email"
# Asymmetric only; external ID tokens are never accepted with HS* or none.
ID_TOKEN_ALGORITHMS = ("RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512")

USERNAME_MAX_LENGTH = 64
