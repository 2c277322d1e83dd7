"""
Register an OAuth client and print its credentials.

  python scripts/register_client.py "My App" https://app.example.com/callback \
      --scopes openid profile email offline_access --public
"""

import argparse
import asyncio

from loguru import logger

from gatehouse.config import settings
from gatehouse.constants import DEFAULT_GRANT_TYPES
from gatehouse.database import Database
from gatehouse.idp.clients import ClientRegistry
from gatehouse.idp.response import OAuthClientCreationResponse
from gatehouse.idp.schemas import OAuthClientCreateRequest


async def register_client(args: argparse.Namespace):
    db = Database(settings.database_url)
    await db.create_all()
    try:
        client, client_secret = await ClientRegistry(db).register(
            OAuthClientCreateRequest(
                name=args.name,
                description=args.description,
                redirect_uris=args.redirect_uris,
                allowed_scopes=args.scopes,
                grant_types=args.grant_types,
                is_confidential=not args.public,
            )
        )
    finally:
        await db.dispose()
    logger.success(f"Registered {client.name}")
    print(OAuthClientCreationResponse.from_client(client, client_secret).model_dump_json(indent=2))
    if client_secret:
        logger.warning("The client secret is shown only once, store it now.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Register an OAuth client")
    parser.add_argument("name")
    parser.add_argument("redirect_uris", nargs="+")
    parser.add_argument("--description")
    parser.add_argument("--scopes", nargs="+", default=["openid", "profile", "email"])
    parser.add_argument("--grant-types", nargs="+", default=list(DEFAULT_GRANT_TYPES))
    parser.add_argument("--public", action="store_true", help="No secret, PKCE only")
    asyncio.run(register_client(parser.parse_args()))
