"""Unit tests for the grant store."""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import update

from gatehouse.database import utcnow
from gatehouse.idp.schemas import OAuthAccessToken, OAuthAuthorizationCode
from gatehouse.idp.store import GrantStore, merge_scopes

REDIRECT_URI = "https://app.example.com/callback"


class TestAuthorizationCodes:
    @pytest.mark.asyncio
    async def test_code_stored_hashed(self, db, user, confidential_client):
        client, _ = confidential_client
        store = GrantStore(db)

        code = await store.create_authorization_code(
            client.client_id, user.user_id, REDIRECT_URI, ["openid"], ttl=600
        )
        auth_code = await store.get_authorization_code(code)

        assert auth_code.code_hash == OAuthAuthorizationCode.hash_code(code)
        assert auth_code.code_hash != code
        assert auth_code.used is False
        assert await store.get_authorization_code("not-a-code") is None

    @pytest.mark.asyncio
    async def test_consume_only_once(self, db, user, confidential_client):
        client, _ = confidential_client
        store = GrantStore(db)
        code = await store.create_authorization_code(
            client.client_id, user.user_id, REDIRECT_URI, ["openid"], ttl=600
        )
        code_hash = OAuthAuthorizationCode.hash_code(code)

        assert await store.consume_authorization_code(code_hash) is True
        assert await store.consume_authorization_code(code_hash) is False
        assert (await store.get_authorization_code(code)).used is True


class TestAccessTokens:
    @pytest.mark.asyncio
    async def test_create_and_get(self, db, user, confidential_client):
        client, _ = confidential_client
        store = GrantStore(db)

        token_obj, token = await store.create_access_token(
            client.client_id, user.user_id, ["profile"], ttl=3600
        )

        assert token.startswith("gat_")
        assert OAuthAccessToken.could_be_valid(token)
        found = await store.get_access_token(token)
        assert found.token_id == token_obj.token_id
        assert found.user.username == "alice"

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, db, user, confidential_client):
        client, _ = confidential_client
        store = GrantStore(db)
        token_obj, token = await store.create_access_token(
            client.client_id, user.user_id, ["profile"], ttl=3600
        )

        forged = f"gat_{token_obj.token_id}.{'A' * 48}"
        assert await store.get_access_token(forged) is None

    @pytest.mark.asyncio
    async def test_malformed_token_skips_hash_check(self, db, user, confidential_client):
        client, _ = confidential_client
        store = GrantStore(db)
        token_obj, _ = await store.create_access_token(
            client.client_id, user.user_id, ["profile"], ttl=3600
        )

        with patch.object(OAuthAccessToken, "verify_secret") as verify_secret:
            for malformed in (
                f"gat_{token_obj.token_id}.short",
                f"gat_{token_obj.token_id}.{'!' * 48}",
                f"gat_{token_obj.token_id[:8]}.{'A' * 48}",
            ):
                assert await store.get_access_token(malformed) is None
                assert await store.revoke_access_token(malformed) is False

        verify_secret.assert_not_called()

    @pytest.mark.asyncio
    async def test_revoke_once(self, db, user, confidential_client):
        client, _ = confidential_client
        store = GrantStore(db)
        _, token = await store.create_access_token(client.client_id, user.user_id, ["profile"], 3600)

        assert await store.revoke_access_token(token) is True
        assert await store.revoke_access_token(token) is False
        assert await store.get_access_token(token) is None

    @pytest.mark.asyncio
    async def test_revoke_limited_to_owning_client(self, db, user, confidential_client):
        client, _ = confidential_client
        store = GrantStore(db)
        _, token = await store.create_access_token(client.client_id, user.user_id, ["profile"], 3600)

        assert await store.revoke_access_token(token, "someone-else") is False
        assert await store.get_access_token(token) is not None
        assert await store.revoke_access_token(token, client.client_id) is True

    @pytest.mark.asyncio
    async def test_expired_token_not_returned(self, db, user, confidential_client):
        client, _ = confidential_client
        store = GrantStore(db)
        token_obj, token = await store.create_access_token(
            client.client_id, user.user_id, ["profile"], 3600
        )
        async with db.session() as session:
            await session.execute(
                update(OAuthAccessToken)
                .where(OAuthAccessToken.token_id == token_obj.token_id)
                .values(expires_at=utcnow() - timedelta(seconds=1))
            )
            await session.commit()

        assert await store.get_access_token(token) is None
        assert await store.purge_expired() == 1


class TestRefreshTokens:
    @pytest.mark.asyncio
    async def test_refresh_token_lifecycle(self, db, user, confidential_client):
        client, _ = confidential_client
        store = GrantStore(db)

        _, token = await store.create_refresh_token(
            None, client.client_id, user.user_id, ["openid", "offline_access"], 86400
        )

        assert token.startswith("grt_")
        assert (await store.get_refresh_token(token)).scopes == ["openid", "offline_access"]
        assert await store.revoke_refresh_token(token) is True
        assert await store.get_refresh_token(token) is None
        assert await store.revoke_refresh_token(token) is False


class TestSignedTokenDenylist:
    @pytest.mark.asyncio
    async def test_deny(self, db, confidential_client):
        client, _ = confidential_client
        store = GrantStore(db)
        expires_at = utcnow() + timedelta(hours=1)

        assert await store.is_signed_token_denied("jti-1") is False
        assert await store.deny_signed_token("jti-1", client.client_id, expires_at) is True
        assert await store.deny_signed_token("jti-1", client.client_id, expires_at) is False
        assert await store.is_signed_token_denied("jti-1") is True
        assert await store.is_signed_token_denied(None) is False


class TestConsent:
    def test_merge_scopes_keeps_order(self):
        assert merge_scopes(["openid", "email"], ["email", "profile"]) == [
            "openid",
            "email",
            "profile",
        ]

    @pytest.mark.asyncio
    async def test_consent_only_grows(self, db, user, confidential_client):
        client, _ = confidential_client
        store = GrantStore(db)

        assert await store.save_consent(user.user_id, client.client_id, ["openid"]) == ["openid"]
        assert await store.save_consent(user.user_id, client.client_id, ["email"]) == [
            "openid",
            "email",
        ]
        assert await store.save_consent(user.user_id, client.client_id, ["openid"]) == [
            "openid",
            "email",
        ]

        consent = await store.get_consent(user.user_id, client.client_id)
        assert consent.covers(["email", "openid"])
        assert not consent.covers(["profile"])

    @pytest.mark.asyncio
    async def test_revoke_consent(self, db, user, confidential_client):
        client, _ = confidential_client
        store = GrantStore(db)
        await store.save_consent(user.user_id, client.client_id, ["openid"])

        assert await store.revoke_consent(user.user_id, client.client_id) is True
        assert await store.get_consent(user.user_id, client.client_id) is None
        assert await store.revoke_consent(user.user_id, client.client_id) is False
