"""
Register an external identity provider from a JSON description.

  python scripts/register_provider.py github.json

Example github.json (plain OAuth2, no ID token):
  {
    "name": "GitHub", "slug": "github", "kind": "oauth2",
    "client_id": "...", "client_secret": "...", "scopes": "read:user user:email",
    "authorization_endpoint": "https://github.com/login/oauth/authorize",
    "token_endpoint": "https://github.com/login/oauth/access_token",
    "userinfo_endpoint": "https://api.github.com/user",
    "emails_endpoint": "https://api.github.com/user/emails"
  }
"""

import asyncio
import json
import sys

from loguru import logger

from gatehouse.config import settings
from gatehouse.database import Database
from gatehouse.federation.client import ProviderClient
from gatehouse.federation.schemas import AuthProviderCreateRequest
from gatehouse.federation.service import FederatedLoginBroker


async def register_provider(path: str):
    with open(path) as infile:
        args = AuthProviderCreateRequest.model_validate(json.load(infile))
    db = Database(settings.database_url)
    await db.create_all()
    try:
        provider = await FederatedLoginBroker(db, ProviderClient()).register_provider(args)
    finally:
        await db.dispose()
    logger.success(f"Registered provider {provider.name}, login at /auth/{provider.slug}/login")


if __name__ == "__main__":
    asyncio.run(register_provider(sys.argv[1]))
