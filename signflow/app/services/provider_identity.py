"""
Provider OAuth surfaces: authorization redirects, code exchange, user info.

Token and user-info calls share the Provider token breaker. A failure of
either is surfaced as DependencyUnavailable; there is no sensible
degraded answer for a user-level credential.
"""

from __future__ import annotations

import logging
from typing import Mapping

import httpx

from signflow.app.core.config import Settings
from signflow.app.core.errors import DependencyUnavailable
from signflow.app.services.resilience import (
    CallOutcome,
    CircuitBreaker,
    Dependency,
    Failure,
    RemoteError,
    Success,
    send_request,
)

logger = logging.getLogger("signflow.provider")

HASH_SIGN_AUTHORIZE_PATH = "/trustedx-authserver/oauth/hsign-as"
AUTHORIZE_PATH = "/idshub/authorize"
TOKEN_PATH = "/idshub/token"
USERINFO_PATH = "/idshub/userinfo"


def build_url(base: str, params: Mapping[str, str]) -> str:
    """Append URL-encoded query parameters to ``base``."""
    return str(httpx.URL(base, params=dict(params)))


class ProviderIdentityClient:
    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        settings: Settings,
        breaker: CircuitBreaker,
    ) -> None:
        self.client = http_client
        self.settings = settings
        self.breaker = breaker
        self.base_url = settings.provider_base

    def _client_auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(
            self.settings.provider_client_id,
            self.settings.provider_client_secret.get_secret_value(),
        )

    def authorize_url(self, path: str, params: Mapping[str, str]) -> str:
        return build_url(f"{self.base_url}{path}", params)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def exchange_code(self, *, code: str, redirect_uri: str) -> str:
        """Exchange an authorization code for a user access token."""

        async def _operation() -> CallOutcome:
            outcome = await send_request(
                self.client,
                "POST",
                f"{self.base_url}{TOKEN_PATH}",
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": redirect_uri,
                },
                auth=self._client_auth(),
                headers={"Accept": "application/json"},
            )
            if not isinstance(outcome, Success):
                return outcome
            token = _json_field(outcome.value, "access_token")
            if not token:
                return RemoteError(code=502, detail="token response without access_token")
            return Success(value=token)

        return await self.breaker.call(_operation, fallback=self._unavailable)

    async def fetch_userinfo(self, *, access_token: str) -> dict:
        async def _operation() -> CallOutcome:
            outcome = await send_request(
                self.client,
                "GET",
                f"{self.base_url}{USERINFO_PATH}",
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
            )
            if not isinstance(outcome, Success):
                return outcome
            try:
                body = outcome.value.json()
            except ValueError:
                return RemoteError(code=502, detail="userinfo response is not JSON")
            if not isinstance(body, dict):
                return RemoteError(code=502, detail="userinfo response is not an object")
            return Success(value=body)

        return await self.breaker.call(_operation, fallback=self._unavailable)

    @staticmethod
    def _unavailable(failure: Failure) -> None:
        raise DependencyUnavailable(
            Dependency.PROVIDER_TOKEN.value,
            "Identity provider is temporarily unavailable. Please try again later.",
        )


def _json_field(response: httpx.Response, name: str):
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    return body.get(name)
