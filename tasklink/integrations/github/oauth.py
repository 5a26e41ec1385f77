"""
GitHub OAuth authorization-code flow.

The ``state`` parameter is a short-lived HS256 JWT carrying the project id and
a random nonce (``jti``). Nothing is kept server-side until the callback, when
the nonce is claimed in Valkey with ``SET NX`` so each state works once.
"""

import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
import jwt
import redis.asyncio as redis

from tasklink.core.config import settings
from tasklink.core.logging import get_logger
from tasklink.core.valkey import claim_once
from tasklink.integrations.github.client import GitHubClient
from tasklink.integrations.github.errors import AuthStateError, OAuthExchangeError

logger = get_logger(__name__)

STATE_ALGORITHM = "HS256"
STATE_PURPOSE = "github_oauth"
NONCE_KEY_PREFIX = "oauth:state:"


class OAuthFlowState(str, Enum):
    INITIATED = "INITIATED"
    AWAITING_CALLBACK = "AWAITING_CALLBACK"
    EXCHANGED = "EXCHANGED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


_TRANSITIONS = {
    OAuthFlowState.INITIATED: {OAuthFlowState.AWAITING_CALLBACK, OAuthFlowState.FAILED},
    OAuthFlowState.AWAITING_CALLBACK: {OAuthFlowState.EXCHANGED, OAuthFlowState.FAILED},
    OAuthFlowState.EXCHANGED: {OAuthFlowState.COMPLETED, OAuthFlowState.FAILED},
    OAuthFlowState.COMPLETED: set(),
    OAuthFlowState.FAILED: set(),
}


@dataclass
class OAuthFlow:
    """Tracks one authorization attempt through its states."""

    project_id: Optional[int] = None
    state: OAuthFlowState = OAuthFlowState.INITIATED
    history: List[OAuthFlowState] = field(default_factory=list)

    def advance(self, target: OAuthFlowState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise ValueError(f"Illegal OAuth transition {self.state.value} -> {target.value}")
        self.history.append(self.state)
        self.state = target

    def fail(self) -> None:
        if self.state not in (OAuthFlowState.COMPLETED, OAuthFlowState.FAILED):
            self.advance(OAuthFlowState.FAILED)


@dataclass
class AuthorizationRequest:
    authorization_url: str
    state: str
    expires_in: int


@dataclass
class OAuthResult:
    access_token: str
    token_type: str
    scope: str
    user_info: Dict[str, Any]
    project_id: int
    flow_state: OAuthFlowState = OAuthFlowState.COMPLETED


class OAuthBroker:
    def __init__(
        self,
        redis_client: redis.Redis,
        github: Optional[GitHubClient] = None,
        *,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        state_secret: Optional[str] = None,
        state_ttl: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.redis = redis_client
        self.github = github or GitHubClient(transport=transport)
        self.client_id = client_id or settings.GITHUB_CLIENT_ID
        self.client_secret = client_secret or settings.GITHUB_CLIENT_SECRET
        self.redirect_uri = redirect_uri or settings.GITHUB_OAUTH_REDIRECT_URI
        self.state_secret = state_secret or settings.OAUTH_STATE_SECRET
        self.state_ttl = state_ttl or settings.OAUTH_STATE_TTL_SECONDS
        self.transport = transport

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------
    def start_authorization(self, project_id: int) -> AuthorizationRequest:
        """Build the provider URL with a signed, single-use state for ``project_id``."""
        flow = OAuthFlow(project_id=project_id)
        now = int(time.time())
        claims = {
            "pid": project_id,
            "jti": secrets.token_urlsafe(16),
            "purpose": STATE_PURPOSE,
            "iat": now,
            "exp": now + self.state_ttl,
        }
        state = jwt.encode(claims, self.state_secret, algorithm=STATE_ALGORITHM)

        params = {
            "client_id": self.client_id,
            "scope": settings.GITHUB_OAUTH_SCOPE,
            "state": state,
            "allow_signup": "true",
        }
        if self.redirect_uri:
            params["redirect_uri"] = self.redirect_uri
        url = f"{settings.GITHUB_OAUTH_AUTHORIZE_URL}?{urlencode(params)}"

        flow.advance(OAuthFlowState.AWAITING_CALLBACK)
        logger.info("OAuth flow started for project %s", project_id)
        return AuthorizationRequest(
            authorization_url=url, state=state, expires_in=self.state_ttl
        )

    # ------------------------------------------------------------------
    # Callback
    # ------------------------------------------------------------------
    async def handle_callback(self, code: Optional[str], state: Optional[str]) -> OAuthResult:
        """
        Validate ``state``, exchange ``code`` and fetch the GitHub user.

        Raises:
            AuthStateError: state invalid, expired, reused, or code missing.
            OAuthExchangeError: GitHub refused the code exchange.
        """
        flow = OAuthFlow(state=OAuthFlowState.AWAITING_CALLBACK)
        try:
            claims = await self._consume_state(state)
            flow.project_id = claims["pid"]
            if not code:
                raise AuthStateError("Authorization code missing")

            token_data = await self._exchange_code(code)
            flow.advance(OAuthFlowState.EXCHANGED)

            user_info = await self.github.get_authenticated_user(token_data["access_token"])
            flow.advance(OAuthFlowState.COMPLETED)
        except Exception:
            flow.fail()
            logger.warning("OAuth flow for project %s failed", flow.project_id)
            raise

        logger.info(
            "OAuth flow completed for project %s (user %s)",
            flow.project_id,
            user_info.get("login"),
        )
        return OAuthResult(
            access_token=token_data["access_token"],
            token_type=token_data.get("token_type", "bearer"),
            scope=token_data.get("scope", ""),
            user_info=user_info,
            project_id=flow.project_id,
            flow_state=flow.state,
        )

    async def _consume_state(self, state: Optional[str]) -> Dict[str, Any]:
        if not state:
            raise AuthStateError("OAuth state missing")
        try:
            claims = jwt.decode(
                state,
                self.state_secret,
                algorithms=[STATE_ALGORITHM],
                options={"require": ["exp", "iat", "jti"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise AuthStateError("OAuth state expired") from e
        except jwt.InvalidTokenError as e:
            raise AuthStateError("OAuth state invalid") from e

        if claims.get("purpose") != STATE_PURPOSE or "pid" not in claims:
            raise AuthStateError("OAuth state invalid")

        remaining = max(int(claims["exp"] - time.time()), 1)
        if not await claim_once(self.redis, f"{NONCE_KEY_PREFIX}{claims['jti']}", remaining):
            raise AuthStateError("OAuth state already used")
        return claims

    async def _exchange_code(self, code: str) -> Dict[str, Any]:
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
        }
        if self.redirect_uri:
            data["redirect_uri"] = self.redirect_uri

        try:
            async with httpx.AsyncClient(
                timeout=settings.GITHUB_API_TIMEOUT_SECONDS, transport=self.transport
            ) as client:
                resp = await client.post(
                    settings.GITHUB_OAUTH_TOKEN_URL,
                    data=data,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            raise OAuthExchangeError(f"Token exchange request failed: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if not resp.is_success:
            raise OAuthExchangeError(
                body.get("error_description") or f"Token endpoint returned {resp.status_code}",
                body.get("error"),
            )
        if "error" in body:
            raise OAuthExchangeError(
                body.get("error_description") or body["error"], body["error"]
            )
        if not body.get("access_token"):
            raise OAuthExchangeError("Token endpoint returned no access token")
        return body
