"""Unit tests for the token engine."""

from datetime import datetime, timezone

import jwt
import pytest

from gatehouse.config import settings
from gatehouse.idp.clients import ClientRegistry
from gatehouse.idp.errors import OAuthErrorCode
from gatehouse.idp.schemas import TokenRequest
from gatehouse.idp.store import GrantStore
from gatehouse.idp.tokens import TokenEngine, pkce_challenge
from gatehouse.user.service import UserDirectory

REDIRECT_URI = "https://app.example.com/callback"
ISSUER = "https://id.example.com"
VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"


@pytest.fixture
def engine(db, keys):
    return TokenEngine(ClientRegistry(db), GrantStore(db), keys, UserDirectory(db))


@pytest.fixture
def issue_code(db, user):
    async def _issue_code(client, scopes, **kwargs):
        return await GrantStore(db).create_authorization_code(
            client_id=client.client_id,
            user_id=user.user_id,
            redirect_uri=REDIRECT_URI,
            scopes=scopes,
            ttl=kwargs.pop("ttl", 600),
            **kwargs,
        )

    return _issue_code


def code_request(client, secret, code, **kwargs) -> TokenRequest:
    params = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": REDIRECT_URI,
        "client_id": client.client_id,
        "client_secret": secret,
    }
    params.update(kwargs)
    return TokenRequest(**params)


class TestGrantDispatch:
    @pytest.mark.asyncio
    async def test_missing_grant_type(self, engine):
        token, error = await engine.handle(TokenRequest(grant_type=""), ISSUER)

        assert token is None
        assert error.error == OAuthErrorCode.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_unknown_grant_type(self, engine, confidential_client):
        client, secret = confidential_client

        _, error = await engine.handle(
            TokenRequest(grant_type="password", client_id=client.client_id, client_secret=secret),
            ISSUER,
        )

        assert error.error == OAuthErrorCode.UNSUPPORTED_GRANT_TYPE

    @pytest.mark.asyncio
    async def test_grant_not_allowed_for_client(self, engine, confidential_client):
        client, secret = confidential_client

        _, error = await engine.handle(
            TokenRequest(
                grant_type="client_credentials", client_id=client.client_id, client_secret=secret
            ),
            ISSUER,
        )

        assert error.error == OAuthErrorCode.UNAUTHORIZED_CLIENT

    @pytest.mark.asyncio
    async def test_bad_client_secret(self, engine, confidential_client, issue_code):
        client, _ = confidential_client
        code = await issue_code(client, ["profile"])

        _, error = await engine.handle(code_request(client, "wrong", code), ISSUER)

        assert error.error == OAuthErrorCode.INVALID_CLIENT
        assert error.status_code == 401


class TestAuthorizationCodeGrant:
    @pytest.mark.asyncio
    async def test_opaque_token_without_openid(self, engine, confidential_client, issue_code):
        client, secret = confidential_client
        code = await issue_code(client, ["profile", "email"])

        token, error = await engine.handle(code_request(client, secret, code), ISSUER)

        assert error is None
        assert token.access_token.startswith("gat_")
        assert token.token_type == "Bearer"
        assert token.expires_in == 3600
        assert token.scope == "profile email"
        assert token.id_token is None
        assert token.refresh_token is None

    @pytest.mark.asyncio
    async def test_signed_tokens_with_openid(self, engine, keys, user, confidential_client, issue_code):
        client, secret = confidential_client
        code = await issue_code(client, ["openid", "email"], nonce="n-123")

        token, error = await engine.handle(code_request(client, secret, code), ISSUER)

        assert error is None
        access = keys.verify(token.access_token, audience=client.client_id)
        assert access["sub"] == user.user_id
        assert access["iss"] == ISSUER
        assert access["client_id"] == client.client_id
        assert access["scope"] == "openid email"
        assert access["jti"]

        id_token = keys.verify(token.id_token, audience=client.client_id)
        assert id_token["sub"] == user.user_id
        assert id_token["nonce"] == "n-123"
        assert id_token["preferred_username"] == "alice"
        assert id_token["email"] == "alice@example.com"
        assert id_token["email_verified"] is True

    @pytest.mark.asyncio
    async def test_id_token_omits_email_without_scope(self, engine, keys, confidential_client, issue_code):
        client, secret = confidential_client
        code = await issue_code(client, ["openid", "profile"])

        token, _ = await engine.handle(code_request(client, secret, code), ISSUER)

        claims = keys.verify(token.id_token)
        assert "email" not in claims
        assert "nonce" not in claims

    @pytest.mark.asyncio
    async def test_code_exchanged_at_most_once(self, engine, confidential_client, issue_code):
        client, secret = confidential_client
        code = await issue_code(client, ["profile"])

        first, error = await engine.handle(code_request(client, secret, code), ISSUER)
        assert error is None and first.access_token

        second, error = await engine.handle(code_request(client, secret, code), ISSUER)
        assert second is None
        assert error.error == OAuthErrorCode.INVALID_GRANT

    @pytest.mark.asyncio
    async def test_code_bound_to_client(self, engine, make_client, confidential_client, issue_code):
        client, _ = confidential_client
        other, other_secret = await make_client(name="Other")
        code = await issue_code(client, ["profile"])

        _, error = await engine.handle(code_request(other, other_secret, code), ISSUER)

        assert error.error == OAuthErrorCode.INVALID_GRANT

    @pytest.mark.asyncio
    async def test_redirect_uri_must_match(self, engine, confidential_client, issue_code):
        client, secret = confidential_client
        code = await issue_code(client, ["profile"])

        _, error = await engine.handle(
            code_request(client, secret, code, redirect_uri="https://app.example.com/other"),
            ISSUER,
        )

        assert error.error == OAuthErrorCode.INVALID_GRANT

    @pytest.mark.asyncio
    async def test_expired_code(self, engine, confidential_client, issue_code):
        client, secret = confidential_client
        code = await issue_code(client, ["profile"], ttl=-1)

        _, error = await engine.handle(code_request(client, secret, code), ISSUER)

        assert error.error == OAuthErrorCode.INVALID_GRANT

    @pytest.mark.asyncio
    async def test_missing_parameters(self, engine, confidential_client):
        client, secret = confidential_client

        _, error = await engine.handle(code_request(client, secret, None), ISSUER)
        assert error.error == OAuthErrorCode.INVALID_REQUEST

        _, error = await engine.handle(code_request(client, secret, "abc", redirect_uri=None), ISSUER)
        assert error.error == OAuthErrorCode.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_pkce_s256(self, engine, public_client, issue_code):
        code = await issue_code(
            public_client,
            ["profile"],
            code_challenge=pkce_challenge(VERIFIER),
            code_challenge_method="S256",
        )

        _, error = await engine.handle(
            code_request(public_client, None, code, code_verifier="not-the-verifier"), ISSUER
        )
        assert error.error == OAuthErrorCode.INVALID_GRANT

        token, error = await engine.handle(
            code_request(public_client, None, code, code_verifier=VERIFIER), ISSUER
        )
        assert error is None
        assert token.access_token

    @pytest.mark.asyncio
    async def test_pkce_verifier_required(self, engine, public_client, issue_code):
        code = await issue_code(
            public_client,
            ["profile"],
            code_challenge=pkce_challenge(VERIFIER),
            code_challenge_method="S256",
        )

        _, error = await engine.handle(code_request(public_client, None, code), ISSUER)

        assert error.error == OAuthErrorCode.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_refresh_token_needs_offline_access(self, engine, confidential_client, issue_code):
        client, secret = confidential_client
        code = await issue_code(client, ["openid", "offline_access"])

        token, _ = await engine.handle(code_request(client, secret, code), ISSUER)

        assert token.refresh_token.startswith("grt_")

    @pytest.mark.asyncio
    async def test_no_refresh_token_without_refresh_grant(self, engine, make_client, issue_code):
        client, secret = await make_client(grant_types=["authorization_code"])
        code = await issue_code(client, ["openid", "offline_access"])

        token, _ = await engine.handle(code_request(client, secret, code), ISSUER)

        assert token.refresh_token is None


class TestRefreshTokenGrant:
    @pytest.fixture
    async def refresh_token(self, engine, confidential_client, issue_code):
        client, secret = confidential_client
        code = await issue_code(client, ["profile", "email", "offline_access"])
        token, _ = await engine.handle(code_request(client, secret, code), ISSUER)
        return token.refresh_token

    def refresh_request(self, client, secret, refresh_token, scope=None) -> TokenRequest:
        return TokenRequest(
            grant_type="refresh_token",
            refresh_token=refresh_token,
            client_id=client.client_id,
            client_secret=secret,
            scope=scope,
        )

    @pytest.mark.asyncio
    async def test_refresh_keeps_original_scopes(self, engine, confidential_client, refresh_token):
        client, secret = confidential_client

        token, error = await engine.handle(
            self.refresh_request(client, secret, refresh_token), ISSUER
        )

        assert error is None
        assert token.scope == "profile email offline_access"
        assert token.refresh_token == refresh_token
        assert token.access_token.startswith("gat_")

    @pytest.mark.asyncio
    async def test_refresh_cannot_escalate_scope(self, engine, confidential_client, refresh_token):
        client, secret = confidential_client

        token, error = await engine.handle(
            self.refresh_request(client, secret, refresh_token, scope="profile openid"), ISSUER
        )

        assert token is None
        assert error.error == OAuthErrorCode.INVALID_SCOPE

    @pytest.mark.asyncio
    async def test_refresh_can_narrow_scope(self, engine, confidential_client, refresh_token):
        client, secret = confidential_client

        token, error = await engine.handle(
            self.refresh_request(client, secret, refresh_token, scope="email"), ISSUER
        )

        assert error is None
        assert token.scope == "email"

    @pytest.mark.asyncio
    async def test_refresh_bound_to_client(self, engine, make_client, refresh_token):
        other, other_secret = await make_client(name="Other")

        _, error = await engine.handle(
            self.refresh_request(other, other_secret, refresh_token), ISSUER
        )

        assert error.error == OAuthErrorCode.INVALID_GRANT

    @pytest.mark.asyncio
    async def test_revoked_refresh_token(self, engine, db, confidential_client, refresh_token):
        client, secret = confidential_client
        await GrantStore(db).revoke_refresh_token(refresh_token)

        _, error = await engine.handle(self.refresh_request(client, secret, refresh_token), ISSUER)

        assert error.error == OAuthErrorCode.INVALID_GRANT


class TestClientCredentialsGrant:
    @pytest.mark.asyncio
    async def test_allowed_scope(self, engine, db, service_client):
        client, secret = service_client

        token, error = await engine.handle(
            TokenRequest(
                grant_type="client_credentials",
                client_id=client.client_id,
                client_secret=secret,
                scope="profile",
            ),
            ISSUER,
        )

        assert error is None
        assert token.scope == "profile"
        assert token.refresh_token is None
        token_obj = await GrantStore(db).get_access_token(token.access_token)
        assert token_obj.user_id is None

    @pytest.mark.asyncio
    async def test_disallowed_scope(self, engine, service_client):
        client, secret = service_client

        token, error = await engine.handle(
            TokenRequest(
                grant_type="client_credentials",
                client_id=client.client_id,
                client_secret=secret,
                scope="admin",
            ),
            ISSUER,
        )

        assert token is None
        assert error.error == OAuthErrorCode.INVALID_SCOPE

    @pytest.mark.asyncio
    async def test_public_client_rejected(self, engine, make_client):
        client, _ = await make_client(
            name="Public service", is_confidential=False, grant_types=["client_credentials"]
        )

        _, error = await engine.handle(
            TokenRequest(grant_type="client_credentials", client_id=client.client_id, scope="profile"),
            ISSUER,
        )

        assert error.error == OAuthErrorCode.UNAUTHORIZED_CLIENT

    @pytest.mark.asyncio
    async def test_public_client_allowed_when_configured(self, engine, make_client, monkeypatch):
        monkeypatch.setattr(settings, "allow_public_client_credentials", True)
        client, _ = await make_client(
            name="Public service", is_confidential=False, grant_types=["client_credentials"]
        )

        token, error = await engine.handle(
            TokenRequest(grant_type="client_credentials", client_id=client.client_id, scope="profile"),
            ISSUER,
        )

        assert error is None
        assert token.scope == "profile"


class TestBearerResolution:
    @pytest.mark.asyncio
    async def test_userinfo_with_opaque_token(self, engine, user, confidential_client, issue_code):
        client, secret = confidential_client
        code = await issue_code(client, ["email"])
        token, _ = await engine.handle(code_request(client, secret, code), ISSUER)

        info, error = await engine.userinfo(token.access_token)

        assert error is None
        assert info.sub == user.user_id
        assert info.email == "alice@example.com"
        assert info.preferred_username is None

    @pytest.mark.asyncio
    async def test_userinfo_with_signed_token(self, engine, user, confidential_client, issue_code):
        client, secret = confidential_client
        code = await issue_code(client, ["openid", "profile"])
        token, _ = await engine.handle(code_request(client, secret, code), ISSUER)

        info, error = await engine.userinfo(token.access_token)

        assert error is None
        assert info.sub == user.user_id
        assert info.preferred_username == "alice"
        assert info.name == "alice"
        assert info.email is None

    @pytest.mark.asyncio
    async def test_userinfo_rejects_denylisted_signed_token(
        self, engine, db, keys, confidential_client, issue_code
    ):
        client, secret = confidential_client
        code = await issue_code(client, ["openid"])
        token, _ = await engine.handle(code_request(client, secret, code), ISSUER)
        claims = keys.verify(token.access_token)
        await GrantStore(db).deny_signed_token(
            claims["jti"],
            client.client_id,
            datetime.fromtimestamp(claims["exp"], tz=timezone.utc).replace(tzinfo=None),
        )

        info, error = await engine.userinfo(token.access_token)

        assert info is None
        assert error.error == OAuthErrorCode.INVALID_TOKEN

    @pytest.mark.asyncio
    async def test_userinfo_rejects_client_token(self, engine, service_client):
        client, secret = service_client
        token, _ = await engine.handle(
            TokenRequest(
                grant_type="client_credentials",
                client_id=client.client_id,
                client_secret=secret,
                scope="profile",
            ),
            ISSUER,
        )

        info, error = await engine.userinfo(token.access_token)

        assert info is None
        assert error.error == OAuthErrorCode.INVALID_TOKEN

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token", [None, "", "garbage", "gat_abc.def", "a.b.c"])
    async def test_invalid_bearer(self, engine, token):
        context, error = await engine.resolve_bearer(token)

        assert context is None
        assert error.error == OAuthErrorCode.INVALID_TOKEN

    @pytest.mark.asyncio
    async def test_tampered_signed_token(self, engine, confidential_client, issue_code):
        client, secret = confidential_client
        code = await issue_code(client, ["openid"])
        token, _ = await engine.handle(code_request(client, secret, code), ISSUER)
        header, payload, signature = token.access_token.split(".")
        forged_payload = jwt.utils.base64url_encode(b'{"sub":"mallory"}').decode()

        context, error = await engine.resolve_bearer(f"{header}.{forged_payload}.{signature}")

        assert context is None
        assert error.error == OAuthErrorCode.INVALID_TOKEN
