"""
OAuth2/IDP Router for authorization, token and discovery endpoints.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Form, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from loguru import logger

from gatehouse.config import settings
from gatehouse.database import Database, get_db
from gatehouse.idp.authorization import AuthorizationEngine
from gatehouse.idp.clients import ClientRegistry, extract_client_credentials
from gatehouse.idp.discovery import jwks_document, openid_configuration, request_origin
from gatehouse.idp.errors import OAuthErrorCode, append_query, failure
from gatehouse.idp.introspection import TokenInspector
from gatehouse.idp.response import ConsentRedirectResponse
from gatehouse.idp.schemas import (
    AuthorizeRequest,
    ConsentDecision,
    TokenRequest,
    get_scope_descriptions,
)
from gatehouse.idp.store import GrantStore
from gatehouse.idp.templater import consent_page, error_page
from gatehouse.idp.tokens import TokenEngine
from gatehouse.keys import KeyManager, get_keys
from gatehouse.user.schemas import User
from gatehouse.user.service import UserDirectory, current_user

router = APIRouter()
well_known_router = APIRouter()

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def get_authorization_engine(db: Database = Depends(get_db)) -> AuthorizationEngine:
    return AuthorizationEngine(ClientRegistry(db), GrantStore(db))


def get_token_engine(
    db: Database = Depends(get_db), keys: KeyManager = Depends(get_keys)
) -> TokenEngine:
    return TokenEngine(ClientRegistry(db), GrantStore(db), keys, UserDirectory(db))


def get_token_inspector(
    db: Database = Depends(get_db), keys: KeyManager = Depends(get_keys)
) -> TokenInspector:
    return TokenInspector(GrantStore(db), keys)


def get_client_registry(db: Database = Depends(get_db)) -> ClientRegistry:
    return ClientRegistry(db)


def _server_error() -> JSONResponse:
    return failure(OAuthErrorCode.SERVER_ERROR, "Internal server error").to_response()


def _login_redirect(request: Request) -> RedirectResponse:
    """Send an anonymous browser to the login page, coming back here afterwards."""
    return_to = request.url.path
    if request.url.query:
        return_to = f"{return_to}?{request.url.query}"
    return RedirectResponse(
        url=append_query(f"{request_origin(request)}{settings.login_path}", {"returnTo": return_to}),
        status_code=302,
    )


@router.get("/authorize")
async def authorize_get(
    request: Request,
    response_type: str = Query(""),
    client_id: str = Query(""),
    redirect_uri: str = Query(""),
    scope: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    code_challenge: Optional[str] = Query(None),
    code_challenge_method: Optional[str] = Query(None),
    nonce: Optional[str] = Query(None),
    user: Optional[User] = Depends(current_user),
    engine: AuthorizationEngine = Depends(get_authorization_engine),
):
    """
    OAuth2 Authorization Endpoint.
    Redirects to login when anonymous, then either issues a code straight
    away (consent already on file) or hands over to the consent page.
    """
    params = AuthorizeRequest(
        response_type=response_type,
        client_id=client_id,
        redirect_uri=redirect_uri,
        scope=scope,
        state=state,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        nonce=nonce,
    )
    try:
        validated, rejection = await engine.validate(params)
        if rejection:
            target = engine.rejection_target(rejection, state)
            if target:
                return RedirectResponse(url=target, status_code=302)
            return rejection.error.to_response()

        if not user:
            return _login_redirect(request)

        decision = await engine.decide(user, validated, request_origin(request))
        return RedirectResponse(url=decision.redirect_uri, status_code=302)
    except Exception as exc:
        logger.exception(f"Authorization request failed: {exc}")
        return _server_error()


@router.get("/consent", response_class=HTMLResponse)
async def consent_page_get(
    request: Request,
    client_id: str = Query(""),
    redirect_uri: str = Query(""),
    scope: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    code_challenge: Optional[str] = Query(None),
    code_challenge_method: Optional[str] = Query(None),
    nonce: Optional[str] = Query(None),
    user: Optional[User] = Depends(current_user),
    engine: AuthorizationEngine = Depends(get_authorization_engine),
):
    """Show the authorization consent page."""
    if not user:
        return _login_redirect(request)

    validated, rejection = await engine.validate(
        AuthorizeRequest(
            response_type="code",
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=scope,
            state=state,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            nonce=nonce,
        )
    )
    if rejection:
        return HTMLResponse(
            content=error_page(rejection.error.error.value, rejection.error.error_description or ""),
            status_code=rejection.error.status_code,
        )

    return HTMLResponse(
        content=consent_page(
            client_id=client_id,
            redirect_uri=redirect_uri,
            state=state or "",
            scope=" ".join(validated.scopes),
            app_name=validated.client.name,
            app_description=validated.client.description or "",
            user_name=user.username,
            scopes=get_scope_descriptions(validated.scopes),
            code_challenge=code_challenge or "",
            code_challenge_method=code_challenge_method or "",
            nonce=nonce or "",
            authorize_url=str(request.url_for("authorize_post").path),
        )
    )


@router.post("/authorize", name="authorize_post")
async def authorize_post(
    decision: ConsentDecision,
    user: Optional[User] = Depends(current_user),
    engine: AuthorizationEngine = Depends(get_authorization_engine),
):
    """
    Consent decision submitted by the consent page. Answers with the URI the
    browser should navigate to.
    """
    if not user:
        return failure(OAuthErrorCode.ACCESS_DENIED, "Login required").to_response()
    try:
        redirect_uri, error = await engine.submit_consent(user, decision)
    except Exception as exc:
        logger.exception(f"Consent submission failed: {exc}")
        return _server_error()
    if error:
        return error.to_response()
    return ConsentRedirectResponse(redirect_uri=redirect_uri)


@router.post("/token")
async def token_endpoint(
    request: Request,
    grant_type: Optional[str] = Form(None),
    code: Optional[str] = Form(None),
    redirect_uri: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    code_verifier: Optional[str] = Form(None),
    refresh_token: Optional[str] = Form(None),
    scope: Optional[str] = Form(None),
    engine: TokenEngine = Depends(get_token_engine),
):
    """OAuth2 Token Endpoint."""
    client_id, client_secret = extract_client_credentials(
        request.headers.get("Authorization"), client_id, client_secret
    )
    token_request = TokenRequest(
        grant_type=grant_type or "",
        code=code,
        redirect_uri=redirect_uri,
        client_id=client_id,
        client_secret=client_secret,
        code_verifier=code_verifier,
        refresh_token=refresh_token,
        scope=scope,
    )
    try:
        token, error = await engine.handle(token_request, request_origin(request))
    except Exception as exc:
        logger.exception(f"Token request failed: {exc}")
        return _server_error()
    if error:
        return error.to_response()
    return JSONResponse(content=token.model_dump(exclude_none=True), headers=NO_STORE_HEADERS)


@router.post("/introspect")
async def introspect_endpoint(
    request: Request,
    token: Optional[str] = Form(None),
    token_type_hint: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    clients: ClientRegistry = Depends(get_client_registry),
    inspector: TokenInspector = Depends(get_token_inspector),
):
    """OAuth2 Token Introspection Endpoint (RFC 7662)."""
    client_id, client_secret = extract_client_credentials(
        request.headers.get("Authorization"), client_id, client_secret
    )
    try:
        _, error = await clients.authenticate(client_id, client_secret)
        if error:
            return error.to_response()
        result = await inspector.introspect(token)
    except Exception as exc:
        logger.exception(f"Introspection failed: {exc}")
        return _server_error()
    return result.model_dump(exclude_none=True)


@router.post("/revoke")
async def revoke_endpoint(
    request: Request,
    token: Optional[str] = Form(None),
    token_type_hint: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    clients: ClientRegistry = Depends(get_client_registry),
    inspector: TokenInspector = Depends(get_token_inspector),
):
    """OAuth2 Token Revocation Endpoint (RFC 7009)."""
    client_id, client_secret = extract_client_credentials(
        request.headers.get("Authorization"), client_id, client_secret
    )
    try:
        client, error = await clients.authenticate(client_id, client_secret)
        if error:
            return error.to_response()
        await inspector.revoke(token, client.client_id, token_type_hint)
    except Exception as exc:
        logger.exception(f"Revocation failed: {exc}")
        return _server_error()
    # Always 200, whether or not the token was known.
    return {}


@router.get("/userinfo")
async def userinfo_endpoint(
    request: Request,
    engine: TokenEngine = Depends(get_token_engine),
):
    """OpenID Connect UserInfo Endpoint."""
    auth_header = request.headers.get("Authorization") or ""
    if not auth_header.lower().startswith("bearer "):
        return failure(
            OAuthErrorCode.INVALID_TOKEN, "Missing or invalid authorization header"
        ).to_response()
    try:
        info, error = await engine.userinfo(auth_header[7:].strip())
    except Exception as exc:
        logger.exception(f"UserInfo request failed: {exc}")
        return _server_error()
    if error:
        return error.to_response()
    return info.model_dump(exclude_none=True)


@well_known_router.get("/openid-configuration")
async def openid_configuration_endpoint(request: Request):
    return JSONResponse(
        content=openid_configuration(request_origin(request)),
        headers={"Cache-Control": f"public, max-age={settings.discovery_max_age}"},
    )


@well_known_router.get("/jwks.json")
async def jwks_endpoint(keys: KeyManager = Depends(get_keys)):
    return JSONResponse(
        content=jwks_document(keys),
        headers={"Cache-Control": f"public, max-age={settings.jwks_cache_max_age}"},
    )
