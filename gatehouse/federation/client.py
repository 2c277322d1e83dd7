"""
HTTP calls to upstream identity providers.
"""

import asyncio
from typing import List, Optional

import aiohttp
from async_lru import alru_cache
from loguru import logger

from gatehouse.config import settings


class FederationError(Exception):
    """An upstream provider call failed or returned something unusable."""


async def _request_json(method: str, url: str, timeout: float, **kwargs):
    try:
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=timeout), raise_for_status=True
        ) as session:
            async with session.request(method, url, **kwargs) as response:
                return await response.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
        raise FederationError(f"{method} {url} failed: {exc}") from exc


@alru_cache(maxsize=64, ttl=settings.discovery_cache_ttl)
async def _cached_document(url: str, timeout: float) -> dict:
    document = await _request_json("GET", url, timeout, headers={"Accept": "application/json"})
    if not isinstance(document, dict):
        raise FederationError(f"Unexpected document at {url}")
    return document


class ProviderClient:
    """
    Thin aiohttp wrapper, one short-lived session per call. Every call is
    bounded by ``timeout`` and failures surface as ``FederationError``.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout or settings.federation_http_timeout

    async def discover(self, issuer: str) -> dict:
        url = f"{issuer.rstrip('/')}/.well-known/openid-configuration"
        logger.info(f"Fetching OIDC discovery document {url}")
        return await _cached_document(url, self.timeout)

    async def fetch_jwks(self, jwks_uri: str) -> dict:
        return await _cached_document(jwks_uri, self.timeout)

    async def exchange_code(
        self,
        token_endpoint: str,
        code: str,
        redirect_uri: str,
        client_id: str,
        client_secret: str,
    ) -> dict:
        # Some providers (GitHub) answer form-encoded unless JSON is asked for.
        tokens = await _request_json(
            "POST",
            token_endpoint,
            self.timeout,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": client_id,
                "client_secret": client_secret,
            },
            headers={"Accept": "application/json"},
        )
        if not isinstance(tokens, dict) or tokens.get("error"):
            error = tokens.get("error") if isinstance(tokens, dict) else "malformed response"
            raise FederationError(f"Token exchange rejected: {error}")
        return tokens

    async def fetch_userinfo(self, userinfo_endpoint: str, access_token: str) -> dict:
        profile = await _request_json(
            "GET",
            userinfo_endpoint,
            self.timeout,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            },
        )
        if not isinstance(profile, dict):
            raise FederationError("UserInfo response is not an object")
        return profile

    async def fetch_emails(self, emails_endpoint: str, access_token: str) -> List[dict]:
        emails = await _request_json(
            "GET",
            emails_endpoint,
            self.timeout,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            },
        )
        if not isinstance(emails, list):
            raise FederationError("Email list response is not an array")
        return [entry for entry in emails if isinstance(entry, dict)]
