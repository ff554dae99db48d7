"""
Client for the Provider's interactive multi-document signing API.

Creates signer processes (one or many documents approved in a single
user interaction), downloads signed documents, and deletes the
Provider-side copies once they are persisted locally.
"""

import json
import logging
from typing import Annotated, List, Optional, Sequence

import httpx
from pydantic import BaseModel, ConfigDict

from signflow.app.core.config import Settings
from signflow.app.core.errors import DependencyUnavailable
from signflow.app.schemas.signing import SignDocument
from signflow.app.services.resilience import (
    CallOutcome,
    CircuitBreaker,
    Dependency,
    Failure,
    RemoteError,
    Success,
    send_request,
)

logger = logging.getLogger("signflow.signing_api")


class SignerProcess(BaseModel):
    process_id: str
    signing_url: str
    document_urls: List[str]

    model_config = ConfigDict(frozen=True)


class SigningApiClient:
    """
    Async client for the signer-process resource.

    All calls authenticate with the service-level credential and run
    under the signing API breaker.
    """

    PROCESS_TYPE = "urn:safelayer:eidas:processes:document:sign:esigp"
    SIGNATURE_POLICY = "urn:safelayer:eidas:policies:sign:document:pdf"
    TIMESTAMP_PROVIDER = "urn:uae:tws:generation:policy:digitalid"
    LABELS = [["digitalid", "server", "qualified"]]

    def __init__(
        self,
        *,
        http_client: Annotated[httpx.AsyncClient, "Persistent HTTP client"],
        settings: Annotated[Settings, "Application configuration"],
        breaker: CircuitBreaker,
    ) -> None:
        self.client = http_client
        self.settings = settings
        self.breaker = breaker
        self.base_url = settings.signing_api_base

    # ------------------------------------------------------------------
    # Request shaping
    # ------------------------------------------------------------------

    def build_process(
        self,
        documents: Sequence[SignDocument],
        *,
        finish_callback_url: str,
    ) -> dict:
        first = documents[0]
        return {
            "process_type": self.PROCESS_TYPE,
            "labels": self.LABELS,
            "signer": {
                "signature_policy_id": self.SIGNATURE_POLICY,
                "parameters": {
                    "type": "pades-baseline",
                    "signature_field": {
                        "name": "Sign1",
                        "location": first.placement.location(),
                    },
                    "appearance": {
                        "show_signature_image": first.show_signature_image,
                    },
                },
            },
            "ui_locales": ["en_US"],
            "finish_callback_url": finish_callback_url,
            "timestamp": {"provider_id": self.TIMESTAMP_PROVIDER},
        }

    def fallback_signing_url(self, process_id: str) -> str:
        ui_base = self.base_url.replace("/v2", "/v2/ui")
        return f"{ui_base}?signerProcessId={process_id}"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create_process(
        self,
        documents: Sequence[SignDocument],
        *,
        finish_callback_url: str,
        credential: str,
    ) -> SignerProcess:
        process = self.build_process(documents, finish_callback_url=finish_callback_url)
        files = [("process", (None, json.dumps(process), "application/json"))]
        files.extend(
            ("document", (doc.name, doc.content, "application/pdf"))
            for doc in documents
        )

        async def _operation() -> CallOutcome:
            outcome = await send_request(
                self.client,
                "POST",
                f"{self.base_url}/signer_processes",
                files=files,
                headers={
                    "Authorization": f"Bearer {credential}",
                    "Accept": "application/json",
                },
            )
            if not isinstance(outcome, Success):
                return outcome
            parsed = self._parse_process(outcome.value, expected=len(documents))
            if parsed is None:
                return RemoteError(code=502, detail="malformed signer process response")
            return Success(value=parsed)

        process_result = await self.breaker.call(_operation, fallback=_raise_unavailable)
        logger.info(
            "signer_process_created",
            extra={
                "process_id": process_result.process_id,
                "documents": len(documents),
            },
        )
        return process_result

    async def download(self, document_url: str, *, credential: str) -> bytes:
        async def _operation() -> CallOutcome:
            outcome = await send_request(
                self.client,
                "GET",
                f"{document_url.rstrip('/')}/content",
                headers={"Authorization": f"Bearer {credential}"},
            )
            if not isinstance(outcome, Success):
                return outcome
            if not outcome.value.content:
                return RemoteError(code=502, detail="empty document content")
            return Success(value=outcome.value.content)

        return await self.breaker.call(_operation, fallback=_raise_unavailable)

    async def delete(self, document_url: str, *, credential: str) -> bool:
        """Best-effort cleanup; returns False instead of raising."""

        async def _operation() -> CallOutcome:
            outcome = await send_request(
                self.client,
                "DELETE",
                document_url,
                headers={"Authorization": f"Bearer {credential}"},
            )
            if isinstance(outcome, Success):
                return Success(value=True)
            return outcome

        def _fallback(failure: Failure) -> bool:
            logger.warning(
                "provider_document_cleanup_failed",
                extra={"outcome": failure.kind},
            )
            return False

        return await self.breaker.call(_operation, fallback=_fallback)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _parse_process(
        self,
        response: httpx.Response,
        *,
        expected: int,
    ) -> Optional[SignerProcess]:
        try:
            body = response.json()
        except ValueError:
            return None
        if not isinstance(body, dict) or not body.get("id"):
            return None

        process_id = str(body["id"])
        document_urls = [
            doc.get("url")
            for doc in body.get("documents") or []
            if isinstance(doc, dict) and doc.get("url")
        ]
        if len(document_urls) != expected:
            return None

        signing_url = None
        pending = (body.get("tasks") or {}).get("pending") or []
        if pending and isinstance(pending[0], dict):
            signing_url = pending[0].get("url")

        return SignerProcess(
            process_id=process_id,
            signing_url=signing_url or self.fallback_signing_url(process_id),
            document_urls=document_urls,
        )


def _raise_unavailable(failure: Failure):
    raise DependencyUnavailable(
        Dependency.SIGNING_API.value,
        "Signing service is temporarily unavailable. Please try again later.",
    )
