"""
Authorization endpoint logic: request validation, the consent decision, and
authorization code issuance.
"""

from enum import Enum
from typing import List, Optional, Tuple

from loguru import logger

from gatehouse.config import settings
from gatehouse.idp.clients import ClientRegistry
from gatehouse.idp.errors import (
    OAuthErrorCode,
    OAuthFailure,
    append_query,
    error_redirect_uri,
    failure,
)
from gatehouse.idp.schemas import (
    AuthorizeRequest,
    CodeChallengeMethod,
    ConsentDecision,
    GrantType,
    OAuthClient,
    format_scopes,
    parse_scopes,
)
from gatehouse.idp.store import GrantStore
from gatehouse.user.schemas import User


class ValidatedAuthorization:
    """An authorize request that passed validation."""

    def __init__(self, client: OAuthClient, scopes: List[str], request: AuthorizeRequest):
        self.client = client
        self.scopes = scopes
        self.request = request


class AuthorizationRejection:
    """
    A failed authorize request. ``redirect_uri`` is set only when the caller
    may safely be sent back to the client (known client, registered URI).
    """

    def __init__(self, error: OAuthFailure, redirect_uri: Optional[str] = None):
        self.error = error
        self.redirect_uri = redirect_uri


class DecisionKind(str, Enum):
    ISSUE_CODE = "issue_code"
    SHOW_CONSENT = "show_consent"


class AuthorizationDecision:
    def __init__(self, kind: DecisionKind, redirect_uri: str):
        self.kind = kind
        self.redirect_uri = redirect_uri


class AuthorizationEngine:
    def __init__(self, clients: ClientRegistry, store: GrantStore):
        self.clients = clients
        self.store = store

    async def validate(
        self, params: AuthorizeRequest
    ) -> Tuple[Optional[ValidatedAuthorization], Optional[AuthorizationRejection]]:
        """
        Validate an authorization request without side effects.
        """
        client = await self.clients.get(params.client_id)
        redirectable = client is not None and client.is_valid_redirect_uri(params.redirect_uri)
        safe_redirect = params.redirect_uri if redirectable else None

        def reject(code: OAuthErrorCode, description: str):
            logger.warning(
                f"Rejected authorize request client_id={params.client_id!r}: {code.value} ({description})"
            )
            return None, AuthorizationRejection(failure(code, description), safe_redirect)

        if params.response_type != "code":
            return reject(
                OAuthErrorCode.UNSUPPORTED_RESPONSE_TYPE,
                'Only "code" response type is supported',
            )
        if not client:
            return reject(OAuthErrorCode.INVALID_CLIENT, "Client not found")
        if not redirectable:
            return reject(OAuthErrorCode.INVALID_REQUEST, "Invalid redirect_uri")

        scopes = parse_scopes(params.scope)
        if not client.allows_scopes(scopes):
            return reject(
                OAuthErrorCode.INVALID_SCOPE,
                "Requested scope is not allowed for this client",
            )
        if not client.allows_grant(GrantType.AUTHORIZATION_CODE):
            return reject(
                OAuthErrorCode.UNAUTHORIZED_CLIENT,
                "Client is not authorized for authorization code flow",
            )
        if params.code_challenge:
            if not params.code_challenge_method:
                return reject(
                    OAuthErrorCode.INVALID_REQUEST,
                    "code_challenge_method is required when using PKCE",
                )
            if params.code_challenge_method not in {m.value for m in CodeChallengeMethod}:
                return reject(OAuthErrorCode.INVALID_REQUEST, "Unsupported code_challenge_method")

        return ValidatedAuthorization(client, scopes, params), None

    def rejection_target(self, rejection: AuthorizationRejection, state: Optional[str]) -> Optional[str]:
        """Where to send the browser for a rejection, or None for a JSON error."""
        if not rejection.redirect_uri:
            return None
        return error_redirect_uri(rejection.redirect_uri, rejection.error, state)

    async def issue_code(self, user: User, validated: ValidatedAuthorization) -> str:
        """Mint a code and return the client redirect URI that carries it."""
        request = validated.request
        code = await self.store.create_authorization_code(
            client_id=validated.client.client_id,
            user_id=user.user_id,
            redirect_uri=request.redirect_uri,
            scopes=validated.scopes,
            ttl=settings.auth_code_ttl,
            code_challenge=request.code_challenge or None,
            code_challenge_method=request.code_challenge_method if request.code_challenge else None,
            nonce=request.nonce or None,
        )
        return append_query(request.redirect_uri, {"code": code, "state": request.state})

    def consent_uri(self, origin: str, validated: ValidatedAuthorization) -> str:
        request = validated.request
        return append_query(
            f"{origin}{settings.consent_path}",
            {
                "client_id": request.client_id,
                "redirect_uri": request.redirect_uri,
                "scope": format_scopes(validated.scopes),
                "state": request.state,
                "code_challenge": request.code_challenge,
                "code_challenge_method": request.code_challenge_method,
                "nonce": request.nonce,
            },
        )

    async def decide(
        self, user: User, validated: ValidatedAuthorization, origin: str
    ) -> AuthorizationDecision:
        """
        Skip the consent screen when the user's stored consent already covers
        every requested scope; otherwise ask the consent UI.
        """
        consent = await self.store.get_consent(user.user_id, validated.client.client_id)
        if consent and consent.covers(validated.scopes):
            logger.info(
                f"Existing consent covers request, issuing code for {user.user_id=} "
                f"client_id={validated.client.client_id}"
            )
            return AuthorizationDecision(
                DecisionKind.ISSUE_CODE, await self.issue_code(user, validated)
            )
        return AuthorizationDecision(DecisionKind.SHOW_CONSENT, self.consent_uri(origin, validated))

    async def submit_consent(
        self, user: User, decision: ConsentDecision
    ) -> Tuple[Optional[str], Optional[OAuthFailure]]:
        """
        Apply the user's approve/deny answer. The request is validated again
        so the consent body cannot widen what the client is allowed.
        """
        validated, rejection = await self.validate(decision)
        if rejection:
            target = self.rejection_target(rejection, decision.state)
            return (target, None) if target else (None, rejection.error)

        if not decision.approved:
            logger.info(f"User {user.user_id} denied client_id={decision.client_id}")
            return (
                error_redirect_uri(
                    decision.redirect_uri,
                    failure(
                        OAuthErrorCode.ACCESS_DENIED,
                        "User denied the authorization request",
                    ),
                    decision.state,
                ),
                None,
            )

        redirect_uri = await self.issue_code(user, validated)
        await self.store.save_consent(user.user_id, validated.client.client_id, validated.scopes)
        logger.info(f"User {user.user_id} approved client_id={decision.client_id}")
        return redirect_uri, None
