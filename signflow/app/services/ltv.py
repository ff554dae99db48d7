"""
Long-term validation (LTV) enhancement of signed PDFs.

LTV is best effort. Every backend runs under the LTV breaker and its
fallback always answers with the unenhanced artifact; callers only learn
whether enhancement was applied.
"""

from __future__ import annotations

import abc
import asyncio
import base64
import binascii
import io
import logging
from pathlib import Path
from typing import Protocol

import aiohttp
import httpx
from asn1crypto import pem, x509
from lxml import etree
from pydantic import BaseModel, ConfigDict
from pyhanko.pdf_utils.misc import PdfError
from pyhanko.pdf_utils.reader import PdfFileReader
from pyhanko.sign.validation.dss import async_add_validation_info
from pyhanko_certvalidator import ValidationContext
from pyhanko_certvalidator.errors import (
    CRLValidationError,
    OCSPValidationError,
    PathError,
    ValidationError as CertValidationError,
)
from pyhanko_certvalidator.fetchers.aiohttp_fetchers import AIOHttpFetcherBackend

from signflow.app.core.config import Settings
from signflow.app.services.resilience import (
    CallOutcome,
    CircuitBreaker,
    Failure,
    RemoteError,
    Success,
)
from signflow.app.services.soap import SoapTransport, find_text, new_request_id

logger = logging.getLogger("signflow.ltv")


class LtvResult(BaseModel):
    pdf: bytes
    applied: bool

    model_config = ConfigDict(frozen=True)


class LtvEnhancer(Protocol):
    async def enhance(self, pdf: bytes, *, job_id: str) -> LtvResult:
        ...


class _BreakerGuardedEnhancer(abc.ABC):
    """
    Shared breaker/fallback wiring for every LTV backend.

    Backends translate their expected failures into outcomes. Anything
    else they raise is counted against the breaker and propagates.
    """

    def __init__(self, breaker: CircuitBreaker) -> None:
        self.breaker = breaker

    async def enhance(self, pdf: bytes, *, job_id: str) -> LtvResult:
        async def _operation() -> CallOutcome:
            return await self._enhance(pdf, job_id=job_id)

        def _fallback(failure: Failure) -> LtvResult:
            logger.warning(
                "ltv_degraded_to_unenhanced",
                extra={"job_id": job_id, "outcome": failure.kind},
            )
            return LtvResult(pdf=pdf, applied=False)

        result = await self.breaker.call(_operation, fallback=_fallback)
        if result.applied:
            logger.info(
                "ltv_applied",
                extra={
                    "job_id": job_id,
                    "size_in": len(pdf),
                    "size_out": len(result.pdf),
                },
            )
        return result

    @abc.abstractmethod
    async def _enhance(self, pdf: bytes, *, job_id: str) -> CallOutcome:
        ...


# ----------------------------------------------------------------------
# Provider LTV endpoint (XML remote procedure)
# ----------------------------------------------------------------------

class SoapLtvEnhancer(_BreakerGuardedEnhancer):
    def __init__(
        self,
        *,
        transport: SoapTransport,
        endpoint: str,
        breaker: CircuitBreaker,
    ) -> None:
        super().__init__(breaker)
        self.transport = transport
        self.endpoint = endpoint

    @staticmethod
    def build_request(pdf: bytes) -> etree._Element:
        request = etree.Element("LTVRequest")
        etree.SubElement(request, "Document").text = base64.b64encode(pdf).decode("ascii")
        return request

    async def _enhance(self, pdf: bytes, *, job_id: str) -> CallOutcome:
        outcome = await self.transport.post(
            self.endpoint,
            self.build_request(pdf),
            request_id=new_request_id(),
        )
        if not isinstance(outcome, Success):
            return outcome

        encoded = find_text(outcome.value, "Document", "LTVDocument")
        if not encoded:
            return RemoteError(code=502, detail="LTV response without document")
        try:
            enhanced = base64.b64decode("".join(encoded.split()), validate=True)
        except (binascii.Error, ValueError):
            return RemoteError(code=502, detail="LTV document is not base64")
        return Success(value=LtvResult(pdf=enhanced, applied=True))


# ----------------------------------------------------------------------
# Local DSS embedding (pyHanko)
# ----------------------------------------------------------------------

def load_trust_root(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    if pem.detect(data):
        _, _, data = pem.unarmor(data)
    return x509.Certificate.load(data)


class DssLtvEnhancer(_BreakerGuardedEnhancer):
    """
    Embeds a Document Security Store for the last signature in the file.

    The signer's chain is validated against the configured trust root and
    the collected certificates, CRLs and OCSP responses are written in an
    incremental update. Revocation checking is soft-fail, so a chain
    without revocation endpoints still gets a DSS. A chain that does not
    validate, or a fetch that errors out, degrades to the unenhanced
    artifact.
    """

    _VALIDATION_ERRORS = (
        PathError,
        CertValidationError,
        CRLValidationError,
        OCSPValidationError,
        aiohttp.ClientError,
        asyncio.TimeoutError,
    )

    def __init__(
        self,
        *,
        trust_root: x509.Certificate,
        breaker: CircuitBreaker,
        timeout_seconds: float = 30.0,
    ) -> None:
        super().__init__(breaker)
        self.trust_root = trust_root
        self.timeout_seconds = timeout_seconds

    async def _enhance(self, pdf: bytes, *, job_id: str) -> CallOutcome:
        try:
            signatures = PdfFileReader(io.BytesIO(pdf)).embedded_signatures
        except PdfError:
            return RemoteError(code=422, detail="document is not a readable PDF")
        if not signatures:
            return RemoteError(code=422, detail="document carries no signature")

        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            vc = ValidationContext(
                trust_roots=[self.trust_root],
                allow_fetching=True,
                fetcher_backend=AIOHttpFetcherBackend(session),
            )
            try:
                output = await async_add_validation_info(
                    signatures[-1],
                    vc,
                    output=io.BytesIO(),
                    force_write=True,
                )
            except self._VALIDATION_ERRORS as exc:
                logger.warning(
                    "ltv_validation_info_failed",
                    extra={"job_id": job_id, "error_type": type(exc).__name__},
                )
                return RemoteError(code=503, detail="validation info unavailable")

        return Success(value=LtvResult(pdf=output.getvalue(), applied=True))


# ----------------------------------------------------------------------
# No-op backend
# ----------------------------------------------------------------------

class DisabledLtvEnhancer:
    async def enhance(self, pdf: bytes, *, job_id: str) -> LtvResult:
        logger.info("ltv_not_configured", extra={"job_id": job_id})
        return LtvResult(pdf=pdf, applied=False)


def build_ltv_enhancer(
    settings: Settings,
    *,
    http_client: httpx.AsyncClient,
    breaker: CircuitBreaker,
) -> LtvEnhancer:
    if settings.ltv_backend == "soap" and settings.ltv_soap_endpoint is not None:
        return SoapLtvEnhancer(
            transport=SoapTransport(http_client=http_client, settings=settings),
            endpoint=str(settings.ltv_soap_endpoint),
            breaker=breaker,
        )
    if settings.ltv_backend == "dss" and settings.ltv_trust_root_path is not None:
        return DssLtvEnhancer(
            trust_root=load_trust_root(settings.ltv_trust_root_path),
            breaker=breaker,
            timeout_seconds=settings.http_read_timeout_seconds,
        )
    return DisabledLtvEnhancer()
