"""
Unit test fixtures: an isolated in-memory store per test and a throwaway signing key.
"""

import pytest

from gatehouse.database import Database
from gatehouse.idp.clients import ClientRegistry
from gatehouse.idp.schemas import OAuthClientCreateRequest
from gatehouse.keys import KeyManager
from gatehouse.user.service import UserDirectory, hash_password

REDIRECT_URI = "https://app.example.com/callback"


@pytest.fixture
async def db():
    database = Database("sqlite+aiosqlite://")
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture(scope="session")
def keys(tmp_path_factory):
    return KeyManager(tmp_path_factory.mktemp("keys"))


@pytest.fixture
async def user(db):
    return await UserDirectory(db).create("alice", hash_password("wonderland"), "alice@example.com")


@pytest.fixture
def make_client(db):
    async def _make_client(**kwargs):
        args = {
            "name": "Test App",
            "redirect_uris": [REDIRECT_URI],
            "allowed_scopes": ["openid", "profile", "email", "offline_access"],
            "grant_types": ["authorization_code", "refresh_token"],
        }
        args.update(kwargs)
        return await ClientRegistry(db).register(OAuthClientCreateRequest(**args))

    return _make_client


@pytest.fixture
async def confidential_client(make_client):
    """(client, secret) for a confidential web application."""
    return await make_client()


@pytest.fixture
async def public_client(make_client):
    client, _ = await make_client(name="SPA", is_confidential=False)
    return client


@pytest.fixture
async def service_client(make_client):
    """(client, secret) for a machine-to-machine client."""
    return await make_client(
        name="Service",
        redirect_uris=[],
        allowed_scopes=["profile", "email"],
        grant_types=["client_credentials"],
    )
