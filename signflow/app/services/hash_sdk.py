import base64
import logging
from typing import Annotated

import httpx
from pydantic import BaseModel, ConfigDict

from signflow.app.core.config import Settings
from signflow.app.core.errors import DependencyUnavailable, TransactionConflict
from signflow.app.services.resilience import (
    CallOutcome,
    CircuitBreaker,
    Dependency,
    Failure,
    RemoteError,
    Success,
    send_request,
)

logger = logging.getLogger("signflow.hash_sdk")

TX_ID_REUSED = 412


class HashPreparation(BaseModel):
    """Result of the co-process ``/start`` operation for one document."""

    tx_id: str
    sign_identity_id: str
    digest: str

    model_config = ConfigDict(frozen=True)


class HashSigningSdkClient:
    """
    Client for the local hash-signing co-process.

    The co-process computes the document digest (``prepare``) and later
    embeds the Provider-issued signature into the PDF (``sign``). Only
    the digest ever leaves the host.
    """

    PREPARE_TIMEOUT = httpx.Timeout(30.0, connect=10.0)
    SIGN_TIMEOUT = httpx.Timeout(60.0, connect=10.0)

    def __init__(
        self,
        *,
        http_client: Annotated[httpx.AsyncClient, "Persistent HTTP client"],
        settings: Annotated[Settings, "Application configuration"],
        breaker: CircuitBreaker,
    ) -> None:
        self.client = http_client
        self.breaker = breaker
        self.base_url = str(settings.hash_sdk_base_url).rstrip("/")

    async def prepare(self, pdf: bytes, *, sign_prop: str) -> HashPreparation:
        async def _operation() -> CallOutcome:
            outcome = await send_request(
                self.client,
                "POST",
                f"{self.base_url}/start",
                json={
                    "document": base64.b64encode(pdf).decode("ascii"),
                    "signProp": sign_prop,
                },
                timeout=self.PREPARE_TIMEOUT,
            )
            if not isinstance(outcome, Success):
                return outcome
            try:
                body = outcome.value.json()
                prepared = HashPreparation(
                    tx_id=body["txId"],
                    sign_identity_id=body["sign_identity_id"],
                    digest=body["digest"],
                )
                bytes.fromhex(prepared.digest)
            except (ValueError, KeyError, TypeError):
                return RemoteError(code=502, detail="malformed /start response")
            return Success(value=prepared)

        prepared = await self.breaker.call(_operation, fallback=_hash_sdk_fallback)
        logger.info("hash_sdk_prepared", extra={"tx_id": prepared.tx_id})
        return prepared

    async def sign(
        self,
        *,
        tx_id: str,
        sign_identity_id: str,
        access_token: str,
    ) -> bytes:
        async def _operation() -> CallOutcome:
            outcome = await send_request(
                self.client,
                "POST",
                f"{self.base_url}/sign",
                json={"txId": tx_id, "sign_identity_id": sign_identity_id},
                headers={"X-SIGN-ACCESSTOKEN": access_token},
                timeout=self.SIGN_TIMEOUT,
            )
            if not isinstance(outcome, Success):
                return outcome
            if not outcome.value.content:
                return RemoteError(code=502, detail="empty /sign response")
            return Success(value=outcome.value.content)

        return await self.breaker.call(_operation, fallback=_hash_sdk_fallback)


def _hash_sdk_fallback(failure: Failure):
    if isinstance(failure, RemoteError) and failure.code == TX_ID_REUSED:
        raise TransactionConflict(
            "Transaction id was already used; start a new signing request"
        )
    raise DependencyUnavailable(
        Dependency.HASH_SDK.value,
        "Hash signing service is temporarily unavailable. Please try again later.",
    )
