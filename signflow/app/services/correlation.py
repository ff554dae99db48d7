"""
One-time correlation tokens.

A token ties a Provider redirect back to the request that started it.
Tokens live for a fixed 300 seconds and resolve at most once: ``consume``
removes the entry in the same indivisible step that reads it, so two
callback deliveries racing on the same token can never both succeed.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field
from redis import asyncio as redis_asyncio

from signflow.app.core.errors import InvalidToken
from signflow.app.schemas.jobs import utcnow

logger = logging.getLogger("signflow.correlation")

TOKEN_TTL_SECONDS = 300
_TOKEN_BYTES = 32
_REDIS_PREFIX = "signflow:state:"


class FlowKind(str, Enum):
    SIGN = "SIGN"
    HASH_SIGN = "HASH_SIGN"
    RECONFIRM = "RECONFIRM"


class TokenPayload(BaseModel):
    flow_kind: FlowKind
    continuation: Optional[str] = Field(
        None,
        description="Opaque resume data, e.g. a job or verification id",
    )
    owner_id: Optional[str] = None
    issued_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True, extra="forbid")


def new_token() -> str:
    return secrets.token_urlsafe(_TOKEN_BYTES)


class CorrelationTokenStore(Protocol):
    async def issue(
        self,
        flow_kind: FlowKind,
        continuation: Optional[str],
        owner_id: Optional[str],
    ) -> str:
        ...

    async def consume(self, token: str) -> TokenPayload:
        ...


# ----------------------------------------------------------------------
# In-process store
# ----------------------------------------------------------------------

class InMemoryCorrelationTokenStore:
    """
    Process-local token store.

    Suitable for a single replica. The lock guards pop-and-check as one
    step; expiry is evaluated against a monotonic clock.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = TOKEN_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, TokenPayload]] = {}
        self._lock = threading.Lock()

    async def issue(
        self,
        flow_kind: FlowKind,
        continuation: Optional[str],
        owner_id: Optional[str],
    ) -> str:
        token = new_token()
        payload = TokenPayload(
            flow_kind=flow_kind,
            continuation=continuation,
            owner_id=owner_id,
        )
        now = self._clock()
        with self._lock:
            self._purge(now)
            self._entries[token] = (now + self._ttl, payload)

        logger.debug(
            "correlation_token_issued",
            extra={"flow_kind": flow_kind.value, "owner_id": owner_id},
        )
        return token

    async def consume(self, token: str) -> TokenPayload:
        now = self._clock()
        with self._lock:
            entry = self._entries.pop(token, None)

        if entry is None or entry[0] <= now:
            logger.warning("correlation_token_rejected")
            raise InvalidToken()

        return entry[1]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _purge(self, now: float) -> None:
        expired = [key for key, (deadline, _) in self._entries.items() if deadline <= now]
        for key in expired:
            del self._entries[key]


# ----------------------------------------------------------------------
# Redis-backed store (shared across replicas)
# ----------------------------------------------------------------------

class RedisCorrelationTokenStore:
    """
    Token store backed by Redis.

    Expiry is delegated to the key TTL; consumption uses GETDEL, which
    reads and deletes atomically on the server.
    """

    def __init__(self, redis, *, ttl_seconds: int = TOKEN_TTL_SECONDS) -> None:
        self._redis = redis
        self._ttl = ttl_seconds

    @classmethod
    def from_url(cls, url: str) -> "RedisCorrelationTokenStore":
        return cls(redis_asyncio.from_url(url))

    async def issue(
        self,
        flow_kind: FlowKind,
        continuation: Optional[str],
        owner_id: Optional[str],
    ) -> str:
        token = new_token()
        payload = TokenPayload(
            flow_kind=flow_kind,
            continuation=continuation,
            owner_id=owner_id,
        )
        await self._redis.set(
            _REDIS_PREFIX + token,
            payload.model_dump_json(),
            ex=self._ttl,
        )
        return token

    async def consume(self, token: str) -> TokenPayload:
        raw = await self._redis.getdel(_REDIS_PREFIX + token)
        if raw is None:
            logger.warning("correlation_token_rejected")
            raise InvalidToken()
        return TokenPayload.model_validate_json(raw)

    async def aclose(self) -> None:
        await self._redis.aclose()
