"""
Lookup and authentication of registered OAuth clients.
"""

import base64
import binascii
from typing import Optional, Tuple
from urllib.parse import unquote

from loguru import logger
from sqlalchemy import select

from gatehouse.database import Database
from gatehouse.idp.errors import OAuthErrorCode, OAuthFailure, failure
from gatehouse.idp.schemas import OAuthClient, OAuthClientCreateRequest


def parse_basic_auth(auth_header: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    Parse HTTP Basic client authentication into (client_id, client_secret).
    Both parts are form-urlencoded per RFC 6749 section 2.3.1.
    """
    if not auth_header or not auth_header.lower().startswith("basic "):
        return None, None
    try:
        raw = base64.b64decode(auth_header.split(" ", 1)[1].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None, None
    if ":" not in raw:
        return None, None
    client_id, client_secret = raw.split(":", 1)
    return unquote(client_id), unquote(client_secret)


def extract_client_credentials(
    auth_header: Optional[str],
    client_id: Optional[str],
    client_secret: Optional[str],
) -> Tuple[Optional[str], Optional[str]]:
    """
    Normalize Basic-auth and body-delivered credentials into a single pair,
    so both go through the same check. Body values win when both are sent.
    """
    header_client_id, header_client_secret = parse_basic_auth(auth_header)
    return client_id or header_client_id, client_secret or header_client_secret


class ClientRegistry:
    def __init__(self, db: Database):
        self.db = db

    async def get(self, client_id: Optional[str]) -> Optional[OAuthClient]:
        """Load an active client by client_id."""
        if not client_id:
            return None
        async with self.db.session() as session:
            return (
                await session.execute(
                    select(OAuthClient).where(
                        OAuthClient.client_id == client_id,
                        OAuthClient.active.is_(True),
                    )
                )
            ).scalar_one_or_none()

    async def authenticate(
        self, client_id: Optional[str], client_secret: Optional[str]
    ) -> Tuple[Optional[OAuthClient], Optional[OAuthFailure]]:
        """
        Confidential clients must present a matching secret; public clients
        are exempt from the secret check.
        """
        client = await self.get(client_id)
        if not client:
            logger.warning(f"OAuth client lookup failed for {client_id=}")
            return None, failure(OAuthErrorCode.INVALID_CLIENT, "Invalid client credentials")
        if client.is_confidential and not client.verify_secret(client_secret):
            logger.warning(f"OAuth client secret mismatch for {client_id=}")
            return None, failure(OAuthErrorCode.INVALID_CLIENT, "Invalid client credentials")
        return client, None

    async def register(self, args: OAuthClientCreateRequest) -> Tuple[OAuthClient, Optional[str]]:
        """Register a new client. Returns the client and its plain secret (shown once)."""
        client, client_secret = OAuthClient.create(args)
        async with self.db.session() as session:
            session.add(client)
            await session.commit()
            await session.refresh(client)
        logger.info(f"Registered OAuth client {client.name} ({client.client_id})")
        return client, client_secret
