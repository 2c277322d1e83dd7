"""ProviderClient against a local aiohttp application standing in for an upstream provider."""

import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from gatehouse.federation.client import FederationError, ProviderClient, _cached_document


def upstream_app(seen: dict) -> web.Application:
    async def discovery(request):
        seen["discovery"] = seen.get("discovery", 0) + 1
        base = f"{request.scheme}://{request.host}"
        return web.json_response(
            {
                "issuer": base,
                "authorization_endpoint": f"{base}/authorize",
                "token_endpoint": f"{base}/token",
                "jwks_uri": f"{base}/jwks",
            }
        )

    async def jwks(request):
        seen["jwks"] = seen.get("jwks", 0) + 1
        return web.json_response({"keys": [{"kty": "RSA", "kid": "k1", "n": "AQAB", "e": "AQAB"}]})

    async def token(request):
        seen["accept"] = request.headers.get("Accept")
        seen["form"] = dict(await request.post())
        return web.json_response({"access_token": "upstream-access", "token_type": "bearer"})

    async def token_error(request):
        return web.json_response({"error": "bad_verification_code"})

    async def token_form(request):
        return web.Response(
            text="access_token=upstream-access&token_type=bearer",
            content_type="application/x-www-form-urlencoded",
        )

    async def slow(request):
        await asyncio.sleep(0.5)
        return web.json_response({})

    async def broken(request):
        seen["broken"] = seen.get("broken", 0) + 1
        return web.Response(status=500, text="upstream down")

    async def userinfo(request):
        if request.headers.get("Authorization") != "Bearer upstream-access":
            return web.json_response({"message": "Bad credentials"}, status=401)
        return web.json_response({"id": 583231, "login": "octocat"})

    async def emails(request):
        return web.json_response(
            [{"email": "octocat@example.org", "primary": True, "verified": True}, "junk", 7]
        )

    async def not_a_list(request):
        return web.json_response({"email": "octocat@example.org"})

    app = web.Application()
    app.router.add_get("/.well-known/openid-configuration", discovery)
    app.router.add_get("/jwks", jwks)
    app.router.add_post("/token", token)
    app.router.add_post("/token-error", token_error)
    app.router.add_post("/token-form", token_form)
    app.router.add_get("/slow", slow)
    app.router.add_get("/broken", broken)
    app.router.add_get("/user", userinfo)
    app.router.add_get("/user/emails", emails)
    app.router.add_get("/user/not-a-list", not_a_list)
    return app


@pytest.fixture
def seen():
    return {}


@pytest.fixture
async def upstream(seen):
    _cached_document.cache_clear()
    server = TestServer(upstream_app(seen))
    await server.start_server()
    yield server
    await server.close()
    _cached_document.cache_clear()


def url(server, path: str) -> str:
    return str(server.make_url(path))


@pytest.fixture
def client():
    return ProviderClient(timeout=0.2)


class TestDocuments:
    @pytest.mark.asyncio
    async def test_discovery_is_cached(self, client, upstream, seen):
        issuer = url(upstream, "/")

        first = await client.discover(issuer)
        second = await client.discover(issuer.rstrip("/"))

        assert first == second
        assert first["token_endpoint"].endswith("/token")
        assert seen["discovery"] == 1

    @pytest.mark.asyncio
    async def test_jwks_is_cached(self, client, upstream, seen):
        jwks_uri = url(upstream, "/jwks")

        assert (await client.fetch_jwks(jwks_uri))["keys"][0]["kid"] == "k1"
        await client.fetch_jwks(jwks_uri)

        assert seen["jwks"] == 1

    @pytest.mark.asyncio
    async def test_document_must_be_an_object(self, client, upstream):
        with pytest.raises(FederationError):
            await client.fetch_jwks(url(upstream, "/user/emails"))

    @pytest.mark.asyncio
    async def test_failed_fetch_not_cached(self, client, upstream, seen):
        with pytest.raises(FederationError):
            await client.fetch_jwks(url(upstream, "/broken"))

        with pytest.raises(FederationError):
            await client.fetch_jwks(url(upstream, "/broken"))

        assert seen["broken"] == 2


class TestCodeExchange:
    @pytest.mark.asyncio
    async def test_form_post_asking_for_json(self, client, upstream, seen):
        tokens = await client.exchange_code(
            url(upstream, "/token"), "the-code", "https://id.example.com/cb", "gatehouse", "s3cret"
        )

        assert tokens["access_token"] == "upstream-access"
        assert seen["accept"] == "application/json"
        assert seen["form"] == {
            "grant_type": "authorization_code",
            "code": "the-code",
            "redirect_uri": "https://id.example.com/cb",
            "client_id": "gatehouse",
            "client_secret": "s3cret",
        }

    @pytest.mark.asyncio
    async def test_error_body_with_200(self, client, upstream):
        with pytest.raises(FederationError) as exc_info:
            await client.exchange_code(url(upstream, "/token-error"), "c", "cb", "id", "secret")

        assert "bad_verification_code" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_form_encoded_answer_rejected(self, client, upstream):
        with pytest.raises(FederationError):
            await client.exchange_code(url(upstream, "/token-form"), "c", "cb", "id", "secret")

    @pytest.mark.asyncio
    async def test_http_error(self, client, upstream):
        with pytest.raises(FederationError):
            await client.fetch_userinfo(url(upstream, "/broken"), "upstream-access")

    @pytest.mark.asyncio
    async def test_timeout(self, client, upstream):
        with pytest.raises(FederationError):
            await client.fetch_userinfo(url(upstream, "/slow"), "upstream-access")

    @pytest.mark.asyncio
    async def test_unreachable(self, client, upstream):
        endpoint = url(upstream, "/token")
        await upstream.close()

        with pytest.raises(FederationError):
            await client.exchange_code(endpoint, "c", "cb", "id", "secret")


class TestUserInfo:
    @pytest.mark.asyncio
    async def test_bearer_token_sent(self, client, upstream):
        profile = await client.fetch_userinfo(url(upstream, "/user"), "upstream-access")

        assert profile == {"id": 583231, "login": "octocat"}

    @pytest.mark.asyncio
    async def test_wrong_token_is_an_error(self, client, upstream):
        with pytest.raises(FederationError):
            await client.fetch_userinfo(url(upstream, "/user"), "stale")

    @pytest.mark.asyncio
    async def test_emails_keep_objects_only(self, client, upstream):
        emails = await client.fetch_emails(url(upstream, "/user/emails"), "upstream-access")

        assert emails == [{"email": "octocat@example.org", "primary": True, "verified": True}]

    @pytest.mark.asyncio
    async def test_emails_must_be_a_list(self, client, upstream):
        with pytest.raises(FederationError):
            await client.fetch_emails(url(upstream, "/user/not-a-list"), "upstream-access")
