"""
OpenID Connect discovery metadata and the public JWKS.
"""

from fastapi import Request

from gatehouse.config import settings
from gatehouse.constants import JWT_ALGORITHM, SUPPORTED_SCOPES
from gatehouse.idp.schemas import CodeChallengeMethod, GrantType
from gatehouse.keys import KeyManager


def request_origin(request: Request) -> str:
    """
    The externally visible origin, honouring reverse proxy headers. A
    configured ``issuer_url`` always wins.
    """
    if settings.issuer_url:
        return settings.issuer_url.rstrip("/")
    proto = request.headers.get("x-forwarded-proto") or request.url.scheme
    host = request.headers.get("x-forwarded-host") or request.headers.get("host")
    if not host:
        host = request.url.netloc
    # Proxies may send comma separated lists; the first entry is the client-facing one.
    proto = proto.split(",")[0].strip()
    host = host.split(",")[0].strip()
    return f"{proto}://{host}"


def openid_configuration(origin: str) -> dict:
    return {
        "issuer": origin,
        "authorization_endpoint": f"{origin}/oauth/authorize",
        "token_endpoint": f"{origin}/oauth/token",
        "userinfo_endpoint": f"{origin}/oauth/userinfo",
        "introspection_endpoint": f"{origin}/oauth/introspect",
        "revocation_endpoint": f"{origin}/oauth/revoke",
        "jwks_uri": f"{origin}/.well-known/jwks.json",
        "response_types_supported": ["code"],
        "grant_types_supported": [grant_type.value for grant_type in GrantType],
        "scopes_supported": list(SUPPORTED_SCOPES),
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": [JWT_ALGORITHM],
        "token_endpoint_auth_methods_supported": [
            "client_secret_basic",
            "client_secret_post",
            "none",
        ],
        "claims_supported": [
            "sub",
            "iss",
            "aud",
            "exp",
            "iat",
            "nonce",
            "name",
            "preferred_username",
            "email",
            "email_verified",
        ],
        "code_challenge_methods_supported": [method.value for method in CodeChallengeMethod],
    }


def jwks_document(keys: KeyManager) -> dict:
    return keys.jwks()
