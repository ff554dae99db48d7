"""
Service-level (client credential) token cache.

The multi-document signing API is called with a client-level token, not
the user's. The cache owns exactly one entry whose expiry is explicit
bookkeeping on the entry itself.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

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

logger = logging.getLogger("signflow.credentials")

SAFETY_BUFFER_SECONDS = 60
MIN_TTL_SECONDS = 60
DEFAULT_EXPIRES_IN = 3600


@dataclass(frozen=True)
class CachedCredential:
    value: str
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


def credential_ttl(expires_in: Optional[int]) -> int:
    """Reported lifetime minus the safety buffer, never below one minute."""
    lifetime = DEFAULT_EXPIRES_IN if expires_in is None else int(expires_in)
    return max(lifetime - SAFETY_BUFFER_SECONDS, MIN_TTL_SECONDS)


class ServiceCredentialCache:
    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        settings: Settings,
        breaker: CircuitBreaker,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = http_client
        self.settings = settings
        self.breaker = breaker
        self._clock = clock
        self._entry: Optional[CachedCredential] = None

    @property
    def entry(self) -> Optional[CachedCredential]:
        return self._entry

    async def get(self) -> str:
        entry = self._entry
        if entry is not None and entry.is_fresh(self._clock()):
            return entry.value

        fetched = await self.breaker.call(self._fetch, fallback=self._fallback)
        if isinstance(fetched, CachedCredential):
            self._entry = fetched
            return fetched.value
        return fetched

    async def _fetch(self) -> CallOutcome:
        logger.info("service_credential_fetch")
        outcome = await send_request(
            self.client,
            "POST",
            str(self.settings.service_token_url),
            data={
                "grant_type": "client_credentials",
                "scope": self.settings.service_token_scope,
            },
            auth=httpx.BasicAuth(
                self.settings.provider_client_id,
                self.settings.provider_client_secret.get_secret_value(),
            ),
            headers={"Accept": "application/json"},
        )
        if not isinstance(outcome, Success):
            return outcome

        try:
            body = outcome.value.json()
        except ValueError:
            return RemoteError(code=502, detail="token response is not JSON")

        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            return RemoteError(code=502, detail="token response without access_token")

        ttl = credential_ttl(body.get("expires_in"))
        logger.info("service_credential_cached", extra={"ttl_seconds": ttl})
        return Success(
            value=CachedCredential(value=token, expires_at=self._clock() + ttl)
        )

    def _fallback(self, failure: Failure) -> str:
        stale = self._entry
        if stale is not None:
            logger.warning(
                "service_credential_stale_fallback",
                extra={"outcome": failure.kind},
            )
            return stale.value
        raise DependencyUnavailable(
            Dependency.PROVIDER_TOKEN.value,
            "Signing service credential is unavailable. Please try again later.",
        )
