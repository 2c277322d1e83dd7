"""
OAuth2 error taxonomy and helpers for delivering errors.
"""

from enum import Enum
from typing import Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

from fastapi.responses import JSONResponse
from pydantic import BaseModel


class OAuthErrorCode(str, Enum):
    INVALID_REQUEST = "invalid_request"
    INVALID_CLIENT = "invalid_client"
    INVALID_GRANT = "invalid_grant"
    UNAUTHORIZED_CLIENT = "unauthorized_client"
    UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
    UNSUPPORTED_RESPONSE_TYPE = "unsupported_response_type"
    INVALID_SCOPE = "invalid_scope"
    ACCESS_DENIED = "access_denied"
    INVALID_TOKEN = "invalid_token"
    SERVER_ERROR = "server_error"


ERROR_STATUS_CODES = {
    OAuthErrorCode.INVALID_CLIENT: 401,
    OAuthErrorCode.INVALID_TOKEN: 401,
    OAuthErrorCode.ACCESS_DENIED: 403,
    OAuthErrorCode.SERVER_ERROR: 500,
}


class OAuthFailure(BaseModel):
    """A protocol-level failure, returned (not raised) by validation functions."""

    error: OAuthErrorCode
    error_description: Optional[str] = None

    @property
    def status_code(self) -> int:
        return ERROR_STATUS_CODES.get(self.error, 400)

    def body(self) -> dict:
        body = {"error": self.error.value}
        if self.error_description:
            body["error_description"] = self.error_description
        return body

    def to_response(self) -> JSONResponse:
        headers = None
        if self.error == OAuthErrorCode.INVALID_CLIENT:
            headers = {"WWW-Authenticate": 'Basic realm="oauth"'}
        elif self.error == OAuthErrorCode.INVALID_TOKEN:
            headers = {"WWW-Authenticate": 'Bearer error="invalid_token"'}
        return JSONResponse(
            content=self.body(),
            status_code=self.status_code,
            headers=headers,
            media_type="application/json",
        )


def failure(error: OAuthErrorCode, description: Optional[str] = None) -> OAuthFailure:
    return OAuthFailure(error=error, error_description=description)


def append_query(uri: str, params: dict) -> str:
    """Add query parameters to a URI, keeping any it already carries."""
    params = {key: value for key, value in params.items() if value}
    scheme, netloc, path, query, fragment = urlsplit(uri)
    extra = urlencode(params)
    query = f"{query}&{extra}" if query else extra
    return urlunsplit((scheme, netloc, path, query, fragment))


def error_redirect_uri(redirect_uri: str, error: OAuthFailure, state: Optional[str] = None) -> str:
    return append_query(
        redirect_uri,
        {
            "error": error.error.value,
            "error_description": error.error_description,
            "state": state,
        },
    )
