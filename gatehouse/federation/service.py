"""
Federated login broker: signs local users in through external OIDC or plain
OAuth2 providers.

Flow per attempt, scoped by provider slug:
  initiate -> provider login -> callback (state check) -> code exchange
  -> identity extraction -> account resolution -> local session
"""

import re
import secrets
import string
from typing import List, Optional, Tuple

import jwt
from jwt.exceptions import PyJWKError, PyJWKSetError
from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from gatehouse.config import settings
from gatehouse.constants import (
    DEFAULT_FEDERATION_SCOPES,
    FEDERATION_USERNAME_SUFFIX_LENGTH,
    ID_TOKEN_ALGORITHMS,
    USERNAME_MAX_LENGTH,
)
from gatehouse.database import Database
from gatehouse.federation.client import FederationError, ProviderClient
from gatehouse.federation.schemas import (
    AuthProvider,
    AuthProviderCreateRequest,
    ExternalIdentity,
    FederatedIdentity,
    IssuerPolicy,
    ProviderKind,
    StatePayload,
    UserMatchField,
)
from gatehouse.idp.errors import append_query
from gatehouse.user.schemas import User, UserSession
from gatehouse.user.service import (
    SessionManager,
    UserDirectory,
    UsernameTaken,
    unusable_password_hash,
)


class LoginAborted(Exception):
    """A federated login that must stop; ``message`` is shown to the user."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ProviderEndpoints:
    def __init__(
        self,
        authorization_endpoint: Optional[str] = None,
        token_endpoint: Optional[str] = None,
        userinfo_endpoint: Optional[str] = None,
        jwks_uri: Optional[str] = None,
        emails_endpoint: Optional[str] = None,
    ):
        self.authorization_endpoint = authorization_endpoint
        self.token_endpoint = token_endpoint
        self.userinfo_endpoint = userinfo_endpoint
        self.jwks_uri = jwks_uri
        self.emails_endpoint = emails_endpoint

    def incomplete(self, kind: ProviderKind) -> bool:
        required = [self.authorization_endpoint, self.token_endpoint]
        if kind == ProviderKind.OIDC:
            required += [self.jwks_uri, self.userinfo_endpoint]
        return not all(required)


def safe_return_to(value: Optional[str]) -> str:
    """Only same-site relative paths survive; anything else becomes "/"."""
    if not value or not value.startswith("/") or value.startswith("//") or "\\" in value:
        return "/"
    return value


def issuer_matches(expected: Optional[str], actual: Optional[str], policy: IssuerPolicy) -> bool:
    if not expected or not actual:
        return False
    if policy == IssuerPolicy.STRICT:
        return expected == actual
    expected, actual = expected.rstrip("/"), actual.rstrip("/")
    return actual == expected or actual.startswith(expected) or expected.startswith(actual)


def generate_username(identity: ExternalIdentity) -> str:
    """
    Provider username first, then the email local part, then a name derived
    from the subject. Leaves room for a collision suffix.
    """
    max_length = USERNAME_MAX_LENGTH - FEDERATION_USERNAME_SUFFIX_LENGTH - 1
    candidates = [identity.username]
    if identity.email:
        candidates.append(identity.email.split("@", 1)[0])
    for candidate in candidates:
        cleaned = re.sub(r"[^A-Za-z0-9_.-]", "", candidate or "")[:max_length]
        if cleaned:
            return cleaned
    subject = re.sub(r"[^A-Za-z0-9]", "", identity.subject)[:8] or secrets.token_hex(4)
    return f"user_{subject}"


def _username_suffix() -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(FEDERATION_USERNAME_SUFFIX_LENGTH))


def _pick_email(emails: List[dict]) -> Optional[str]:
    """Primary verified address first, then any verified one."""
    verified = [entry for entry in emails if entry.get("verified") and entry.get("email")]
    for entry in verified:
        if entry.get("primary"):
            return entry["email"]
    return verified[0]["email"] if verified else None


class FederatedLoginBroker:
    def __init__(self, db: Database, client: ProviderClient):
        self.db = db
        self.client = client
        self.users = UserDirectory(db)
        self.sessions = SessionManager(db)

    async def get_provider(self, slug: str) -> Optional[AuthProvider]:
        """Load an enabled provider by slug."""
        async with self.db.session() as session:
            return (
                await session.execute(
                    select(AuthProvider).where(
                        AuthProvider.slug == slug,
                        AuthProvider.enabled.is_(True),
                    )
                )
            ).scalar_one_or_none()

    async def list_providers(self) -> List[AuthProvider]:
        async with self.db.session() as session:
            return list(
                (
                    await session.execute(
                        select(AuthProvider)
                        .where(AuthProvider.enabled.is_(True))
                        .order_by(AuthProvider.name)
                    )
                )
                .scalars()
                .all()
            )

    async def register_provider(self, args: AuthProviderCreateRequest) -> AuthProvider:
        provider = AuthProvider(
            slug=args.slug,
            name=args.name,
            kind=args.kind.value,
            issuer=args.issuer,
            client_id=args.client_id,
            client_secret=args.client_secret,
            scopes=args.scopes,
            authorization_endpoint=args.authorization_endpoint,
            token_endpoint=args.token_endpoint,
            userinfo_endpoint=args.userinfo_endpoint,
            jwks_uri=args.jwks_uri,
            emails_endpoint=args.emails_endpoint,
            user_match_field=args.user_match_field.value,
            auto_register=args.auto_register,
            auto_launch=args.auto_launch,
            issuer_policy=args.issuer_policy.value if args.issuer_policy else None,
            enabled=args.enabled,
        )
        async with self.db.session() as session:
            session.add(provider)
            await session.commit()
            await session.refresh(provider)
        logger.info(f"Registered identity provider {provider.name} ({provider.slug})")
        return provider

    async def resolve_endpoints(self, provider: AuthProvider) -> ProviderEndpoints:
        """
        Statically configured endpoints win. OIDC providers fill the gaps from
        discovery; if discovery fails the static values are used as they are.
        """
        endpoints = ProviderEndpoints(
            authorization_endpoint=provider.authorization_endpoint,
            token_endpoint=provider.token_endpoint,
            userinfo_endpoint=provider.userinfo_endpoint,
            jwks_uri=provider.jwks_uri,
            emails_endpoint=provider.emails_endpoint,
        )
        kind = ProviderKind(provider.kind)
        if kind != ProviderKind.OIDC or not provider.issuer or not endpoints.incomplete(kind):
            return endpoints
        try:
            document = await self.client.discover(provider.issuer)
        except FederationError as exc:
            logger.warning(
                f"Discovery failed for provider {provider.slug}, using static endpoints: {exc}"
            )
            return endpoints
        for field in ("authorization_endpoint", "token_endpoint", "userinfo_endpoint", "jwks_uri"):
            if not getattr(endpoints, field) and document.get(field):
                setattr(endpoints, field, document[field])
        return endpoints

    async def initiate(
        self, slug: str, callback_url: str, return_to: Optional[str] = None
    ) -> Tuple[str, StatePayload]:
        """Build the provider authorization URL and the state to remember."""
        provider = await self.get_provider(slug)
        if not provider:
            raise LoginAborted("Provider not found or disabled")
        endpoints = await self.resolve_endpoints(provider)
        if not endpoints.authorization_endpoint:
            logger.error(f"No authorization endpoint known for provider {slug}")
            raise LoginAborted("Provider is not configured correctly")

        payload = StatePayload(
            state=secrets.token_urlsafe(24),
            nonce=secrets.token_urlsafe(24),
            provider=slug,
            return_to=safe_return_to(return_to) if return_to else None,
        )
        url = append_query(
            endpoints.authorization_endpoint,
            {
                "response_type": "code",
                "client_id": provider.client_id,
                "redirect_uri": callback_url,
                "scope": provider.scopes or DEFAULT_FEDERATION_SCOPES,
                "state": payload.state,
                "nonce": payload.nonce,
            },
        )
        return url, payload

    def verify_state(self, cookie_value: Optional[str], slug: str, state: Optional[str]) -> StatePayload:
        """Both the state and the provider must match exactly."""
        payload = StatePayload.decode(cookie_value)
        if payload is None:
            raise LoginAborted("Login session expired, please try again")
        if not state or not secrets.compare_digest(payload.state, state) or payload.provider != slug:
            logger.warning(f"Federated login state mismatch for provider {slug}")
            raise LoginAborted("State mismatch")
        return payload

    def verify_id_token(
        self, provider: AuthProvider, id_token: str, jwks: dict, nonce: Optional[str]
    ) -> dict:
        try:
            header = jwt.get_unverified_header(id_token)
            algorithm = header.get("alg")
            if algorithm not in ID_TOKEN_ALGORITHMS:
                raise LoginAborted("ID token uses an unsupported algorithm")
            keys = jwt.PyJWKSet.from_dict(jwks).keys
            kid = header.get("kid")
            candidates = [key for key in keys if key.key_id == kid] if kid else keys
            if len(candidates) != 1:
                raise LoginAborted("No matching signing key for ID token")
            claims = jwt.decode(
                id_token,
                candidates[0].key,
                algorithms=[algorithm],
                audience=provider.client_id,
                options={"verify_iss": False, "require": ["sub", "exp"]},
            )
        except (jwt.InvalidTokenError, PyJWKError, PyJWKSetError) as exc:
            logger.warning(f"ID token verification failed for provider {provider.slug}: {exc}")
            raise LoginAborted("ID token verification failed") from exc

        policy = IssuerPolicy(provider.issuer_policy or settings.federation_issuer_policy)
        if not issuer_matches(provider.issuer, claims.get("iss"), policy):
            if policy == IssuerPolicy.STRICT:
                logger.warning(
                    f"Rejected ID token for {provider.slug}: issuer {claims.get('iss')!r} "
                    f"!= {provider.issuer!r}"
                )
                raise LoginAborted("ID token issuer mismatch")
            logger.warning(
                f"Issuer mismatch tolerated for {provider.slug}: {claims.get('iss')!r} "
                f"vs {provider.issuer!r}"
            )
        if nonce is not None and claims.get("nonce") != nonce:
            raise LoginAborted("ID token nonce mismatch")
        return claims

    async def extract_identity(
        self,
        provider: AuthProvider,
        endpoints: ProviderEndpoints,
        tokens: dict,
        nonce: Optional[str],
    ) -> ExternalIdentity:
        subject = username = email = None
        access_token = tokens.get("access_token")

        id_token = tokens.get("id_token")
        if id_token and endpoints.jwks_uri:
            jwks = await self.client.fetch_jwks(endpoints.jwks_uri)
            claims = self.verify_id_token(provider, id_token, jwks, nonce)
            subject = claims.get("sub")
            email = claims.get("email")
            username = claims.get("preferred_username") or claims.get("name")

        if not subject and endpoints.userinfo_endpoint and access_token:
            profile = await self.client.fetch_userinfo(endpoints.userinfo_endpoint, access_token)
            raw_subject = profile.get("sub") or profile.get("id")
            subject = str(raw_subject) if raw_subject is not None else None
            username = (
                username
                or profile.get("login")
                or profile.get("preferred_username")
                or profile.get("name")
            )
            email = email or profile.get("email")

        if not subject:
            logger.error(f"Provider {provider.slug} returned no subject")
            raise LoginAborted("Could not identify the external account")

        if not email and endpoints.emails_endpoint and access_token:
            try:
                email = _pick_email(
                    await self.client.fetch_emails(endpoints.emails_endpoint, access_token)
                )
            except FederationError as exc:
                logger.warning(f"Optional email lookup failed for {provider.slug}: {exc}")

        return ExternalIdentity(subject=str(subject), username=username, email=email)

    async def get_linked_user(self, slug: str, subject: str) -> Optional[User]:
        async with self.db.session() as session:
            link = (
                await session.execute(
                    select(FederatedIdentity).where(
                        FederatedIdentity.provider_slug == slug,
                        FederatedIdentity.subject == subject,
                    )
                )
            ).scalar_one_or_none()
            if not link:
                return None
            return await session.get(User, link.user_id)

    async def link(self, user: User, slug: str, identity: ExternalIdentity) -> User:
        """
        Record the link. If the same identity was linked concurrently, the
        existing link wins and its user is returned.
        """
        conflict = None
        async with self.db.session() as session:
            session.add(
                FederatedIdentity(
                    user_id=user.user_id,
                    provider_slug=slug,
                    subject=identity.subject,
                    email=identity.email,
                )
            )
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                conflict = exc
        if conflict is not None:
            existing = await self.get_linked_user(slug, identity.subject)
            if existing:
                return existing
            raise conflict
        logger.info(f"Linked {slug} subject {identity.subject} to user {user.user_id}")
        return user

    async def _register_user(self, identity: ExternalIdentity) -> User:
        username = generate_username(identity)
        try:
            return await self.users.create(username, unusable_password_hash(), identity.email)
        except UsernameTaken:
            retry = f"{username}_{_username_suffix()}"
            logger.info(f"Username {username} taken, registering as {retry}")
            return await self.users.create(retry, unusable_password_hash(), identity.email)

    async def resolve_account(self, provider: AuthProvider, identity: ExternalIdentity) -> User:
        """
        Existing link, then a local match on the configured field, then
        auto-registration when the provider allows it.
        """
        user = await self.get_linked_user(provider.slug, identity.subject)
        if user:
            return user

        match_field = UserMatchField(provider.user_match_field or UserMatchField.EMAIL.value)
        if match_field == UserMatchField.EMAIL:
            user = await self.users.get_by_email(identity.email) if identity.email else None
        else:
            user = await self.users.get_by_username(identity.username) if identity.username else None

        if not user:
            if not provider.auto_register:
                logger.warning(
                    f"No local account for {provider.slug} subject {identity.subject} "
                    "and auto-registration is disabled"
                )
                raise LoginAborted("Access denied: no local account is linked to this login")
            user = await self._register_user(identity)
            logger.info(f"Auto-registered user {user.username} via {provider.slug}")

        return await self.link(user, provider.slug, identity)

    async def complete_login(
        self,
        slug: str,
        code: str,
        state: str,
        cookie_value: Optional[str],
        callback_url: str,
    ) -> Tuple[User, UserSession, str]:
        """Run the callback half of the flow. Returns the user, a new session and the return path."""
        payload = self.verify_state(cookie_value, slug, state)
        provider = await self.get_provider(slug)
        if not provider:
            raise LoginAborted("Provider not found or disabled")
        endpoints = await self.resolve_endpoints(provider)
        if not endpoints.token_endpoint:
            logger.error(f"No token endpoint known for provider {slug}")
            raise LoginAborted("Provider is not configured correctly")

        tokens = await self.client.exchange_code(
            endpoints.token_endpoint,
            code,
            callback_url,
            provider.client_id,
            provider.client_secret,
        )
        identity = await self.extract_identity(provider, endpoints, tokens, payload.nonce)
        user = await self.resolve_account(provider, identity)
        user_session = await self.sessions.create(user)
        return user, user_session, safe_return_to(payload.return_to)
