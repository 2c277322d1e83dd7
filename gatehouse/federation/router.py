"""
Browser-facing federated login endpoints.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from loguru import logger

from gatehouse.config import settings
from gatehouse.constants import FEDERATION_STATE_COOKIE_PREFIX
from gatehouse.database import Database, get_db
from gatehouse.federation.client import FederationError, ProviderClient
from gatehouse.federation.response import ProviderSummary
from gatehouse.federation.service import FederatedLoginBroker, LoginAborted
from gatehouse.idp.discovery import request_origin
from gatehouse.idp.errors import append_query
from gatehouse.user.service import set_session_cookie

router = APIRouter()


def get_provider_client(request: Request) -> ProviderClient:
    return request.app.state.provider_client


def get_broker(
    db: Database = Depends(get_db), client: ProviderClient = Depends(get_provider_client)
) -> FederatedLoginBroker:
    return FederatedLoginBroker(db, client)


def _cookie_name(slug: str) -> str:
    return f"{FEDERATION_STATE_COOKIE_PREFIX}{slug}"


def _cookie_path(slug: str) -> str:
    return f"/auth/{slug}"


def _callback_url(request: Request, slug: str) -> str:
    return f"{request_origin(request)}/auth/{slug}/callback"


def _login_error(message: str) -> RedirectResponse:
    return RedirectResponse(
        url=append_query(settings.login_path, {"error": message}),
        status_code=302,
    )


@router.get("/providers", response_model=List[ProviderSummary])
async def list_providers(broker: FederatedLoginBroker = Depends(get_broker)):
    """Enabled providers, for rendering login buttons."""
    return [ProviderSummary.model_validate(provider) for provider in await broker.list_providers()]


@router.get("/{slug}/login")
async def federated_login(
    request: Request,
    slug: str,
    return_to: Optional[str] = Query(None, alias="returnTo"),
    broker: FederatedLoginBroker = Depends(get_broker),
):
    """Start a login with the provider; remembers state in a path-scoped cookie."""
    try:
        url, payload = await broker.initiate(slug, _callback_url(request, slug), return_to)
    except LoginAborted as exc:
        return _login_error(exc.message)
    except Exception as exc:
        logger.exception(f"Failed to initiate login with {slug}: {exc}")
        return _login_error("Failed to initiate login")

    response = RedirectResponse(url=url, status_code=302)
    response.set_cookie(
        key=_cookie_name(slug),
        value=payload.encode(),
        max_age=settings.federation_state_ttl,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path=_cookie_path(slug),
    )
    return response


@router.get("/{slug}/callback")
async def federated_callback(
    request: Request,
    slug: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    broker: FederatedLoginBroker = Depends(get_broker),
):
    """
    Provider redirect target. The state cookie is single use: it is cleared on
    every response from here, success or not.
    """
    cookie_value = request.cookies.get(_cookie_name(slug))

    def finish(response: RedirectResponse) -> RedirectResponse:
        response.delete_cookie(
            key=_cookie_name(slug),
            path=_cookie_path(slug),
            httponly=True,
            secure=settings.cookie_secure,
            samesite="lax",
        )
        return response

    if error:
        logger.warning(f"Provider {slug} returned error: {error}")
        return finish(_login_error(error))
    if not code or not state:
        return finish(_login_error("Missing code or state"))

    try:
        user, user_session, return_to = await broker.complete_login(
            slug, code, state, cookie_value, _callback_url(request, slug)
        )
    except LoginAborted as exc:
        return finish(_login_error(exc.message))
    except FederationError as exc:
        logger.error(f"Upstream call failed during {slug} login: {exc}")
        return finish(_login_error("Authentication failed"))
    except Exception as exc:
        logger.exception(f"Federated login with {slug} failed: {exc}")
        return finish(_login_error("Authentication failed"))

    logger.success(f"User {user.username} signed in via {slug}")
    response = RedirectResponse(url=return_to, status_code=302)
    set_session_cookie(response, user_session)
    return finish(response)
