"""
Application factory for the gatehouse identity server.

    uvicorn gatehouse.main:create_app --factory
"""

from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from loguru import logger

from gatehouse.config import settings
from gatehouse.database import Database
from gatehouse.federation.client import ProviderClient
from gatehouse.federation.router import router as federation_router
from gatehouse.idp.errors import OAuthErrorCode, failure
from gatehouse.idp.router import router as idp_router
from gatehouse.idp.router import well_known_router
from gatehouse.idp.store import GrantStore
from gatehouse.keys import KeyManager, get_key_manager


def create_app(
    database_url: Optional[str] = None,
    keys: Optional[KeyManager] = None,
    provider_client: Optional[ProviderClient] = None,
) -> FastAPI:
    db = Database(database_url or settings.database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await db.create_all()
        if keys is None:
            app.state.keys = get_key_manager()
        purged = await GrantStore(db).purge_expired()
        if purged:
            logger.info(f"Purged {purged} expired codes and tokens")
        logger.info(f"gatehouse started, signing key kid={app.state.keys.kid}")
        yield
        await db.dispose()
        logger.info("gatehouse stopped")

    app = FastAPI(title="gatehouse", lifespan=lifespan)
    app.state.db = db
    if keys is not None:
        app.state.keys = keys
    app.state.provider_client = provider_client or ProviderClient()

    app.include_router(idp_router, prefix="/oauth", tags=["oauth"])
    app.include_router(well_known_router, prefix="/.well-known", tags=["discovery"])
    app.include_router(federation_router, prefix="/auth", tags=["federation"])

    @app.exception_handler(Exception)
    async def unhandled_exception(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
        return failure(OAuthErrorCode.SERVER_ERROR, "Internal server error").to_response()

    return app


if __name__ == "__main__":
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
