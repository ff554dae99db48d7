"""
Organizational seals (eSeal) over the Provider's DSS XML interface.

PAdES seals embed the signature into a PDF; CAdES seals return a
detached PKCS#7 signature for an arbitrary document. Both use a
server-side key selected by X.509 subject name.

Sealing raises (DependencyUnavailable / SealRejected). Verification
never raises: every problem is reported inside the VerifyResult.
"""

from __future__ import annotations

import base64
import binascii
import logging
from datetime import datetime
from typing import Callable, Optional

from lxml import etree

from signflow.app.core.config import Settings
from signflow.app.core.errors import DependencyUnavailable, SealRejected
from signflow.app.events import AuditAction, SafeAuditor, SubjectType
from signflow.app.schemas.eseal import (
    SealJob,
    SealResult,
    SealStatus,
    SealType,
    VerifyResult,
)
from signflow.app.schemas.jobs import utcnow
from signflow.app.services.resilience import CircuitBreaker, Dependency, Failure
from signflow.app.services.soap import SoapTransport, find_text, new_request_id
from signflow.app.storage.blobs import PDF, BlobStore, artifact_key
from signflow.app.storage.seals import SealJobStore

logger = logging.getLogger("signflow.eseal")

DSS_NS = "http://www.docs.oasis-open.org/dss/2004/06/oasis-dss-1.0-core-schema-wd-27.xsd"
TWS_NS = "http://www.safelayer.com/TWS"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"
XSD_NS = "http://www.w3.org/2001/XMLSchema"

PADES_SIGN_PROFILE = "urn:safelayer:tws:dss:1.0:profiles:pades:1.0:sign"
CADES_SIGN_PROFILE = "urn:safelayer:tws:dss:1.0:profiles:cmspkcs7sig:1.0:sign"
PDF_VERIFY_PROFILE = "urn:safelayer:tws:dss:1.0:profiles:pdf:1.0:verify"
CADES_VERIFY_PROFILE = "urn:safelayer:tws:dss:1.0:profiles:cmspkcs7sig:1.0:verify"

SUBJECT_NAME_FORMAT = "urn:oasis:names:tc:SAML:1.1:nameid-format:X509SubjectName"
CADES_SIGNATURE_TYPE = "urn:etsi:ts:101733"

OCTET_STREAM = "application/octet-stream"
PKCS7_SIGNATURE = "application/pkcs7-signature"

NOT_CONFIGURED = "NotConfigured"
SERVICE_UNAVAILABLE = "ServiceUnavailable"

_MINOR = "urn:oasis:names:tc:dss:1.0:resultminor:"
_TWS_MINOR = "urn:safelayer:tws:dss:resultminor:"

RESULT_MINOR_MESSAGES = {
    f"{_MINOR}invalid:IncorrectSignature": "Invalid eSeal signature",
    f"{_MINOR}InvalidSignatureTimestamp": "Invalid signature timestamp",
    f"{_MINOR}GeneralError": "General eSeal processing error",
    f"{_MINOR}invalid:ReferdHash": "Document hash reference is invalid",
    f"{_MINOR}NotSupported": "Requested operation is not supported",
    f"{_MINOR}InsufficientInformation": "Insufficient information provided for eSeal",
    f"{_MINOR}KeyLookupFailed": (
        "eSeal certificate key lookup failed, check the configured certificate subject name"
    ),
    f"{_MINOR}inappropriate:signature": "Inappropriate signature format for the document type",
    f"{_TWS_MINOR}certificate:revoked": "eSeal certificate has been revoked",
    f"{_TWS_MINOR}certificate:expired": "eSeal certificate has expired",
    f"{_TWS_MINOR}certificate:not_yet_valid": "eSeal certificate is not yet valid",
    f"{_MINOR}valid:signature:InvalidSignatureTimestamp": (
        "Signature is valid but timestamp is invalid"
    ),
    f"{_MINOR}valid:signature:OnAllDocuments": "Valid eSeal on all documents",
}


def result_minor_message(result_minor: Optional[str]) -> str:
    """Human-readable text for a ResultMinor URN; unknown URNs pass through."""
    if result_minor is None or not result_minor.strip():
        return "No additional error details"
    return RESULT_MINOR_MESSAGES.get(result_minor.strip(), result_minor.strip())


def is_success(result_major: Optional[str]) -> bool:
    return bool(result_major) and "Success" in result_major


# ----------------------------------------------------------------------
# Request bodies
# ----------------------------------------------------------------------

def _dss(tag: str) -> str:
    return f"{{{DSS_NS}}}{tag}"


def _request(kind: str, profile: str, request_id: str, nsmap: Optional[dict] = None) -> etree._Element:
    element = etree.Element(_dss(kind), nsmap={None: DSS_NS, **(nsmap or {})})
    element.set("Profile", profile)
    element.set("RequestID", request_id)
    return element


def _input_document(parent: etree._Element, content: bytes, mime_type: Optional[str]) -> None:
    docs = etree.SubElement(parent, _dss("InputDocuments"))
    document = etree.SubElement(docs, _dss("Document"))
    data = etree.SubElement(document, _dss("Base64Data"))
    if mime_type:
        data.set("MimeType", mime_type)
    data.text = base64.b64encode(content).decode("ascii")


def _key_selector(parent: etree._Element, subject_name: str) -> None:
    outer = etree.SubElement(parent, _dss("KeySelector"))
    inner = etree.SubElement(outer, f"{{{TWS_NS}}}KeySelector", nsmap={"ns1": TWS_NS})
    name = etree.SubElement(inner, f"{{{TWS_NS}}}Name", Format=SUBJECT_NAME_FORMAT)
    name.text = subject_name
    etree.SubElement(inner, f"{{{TWS_NS}}}KeyUsage").text = "nonRepudiation"


def build_pades_sign_request(pdf: bytes, *, request_id: str, subject_name: str) -> etree._Element:
    request = _request("SignRequest", PADES_SIGN_PROFILE, request_id)
    options = etree.SubElement(request, _dss("OptionalInputs"))
    _key_selector(options, subject_name)
    _input_document(request, pdf, PDF)
    return request


def build_cades_sign_request(
    document: bytes,
    *,
    request_id: str,
    subject_name: str,
) -> etree._Element:
    request = _request(
        "SignRequest",
        CADES_SIGN_PROFILE,
        request_id,
        nsmap={"xsi": XSI_NS, "xsd": XSD_NS},
    )
    options = etree.SubElement(request, _dss("OptionalInputs"))
    _key_selector(options, subject_name)
    signature_type = etree.SubElement(options, _dss("SignatureType"))
    signature_type.set(f"{{{XSI_NS}}}type", "xsd:anyURI")
    signature_type.text = CADES_SIGNATURE_TYPE
    etree.SubElement(options, _dss("EnvelopingSignature"))
    _input_document(request, document, None)
    return request


def build_pdf_verify_request(pdf: bytes, *, request_id: str) -> etree._Element:
    request = _request("VerifyRequest", PDF_VERIFY_PROFILE, request_id)
    _input_document(request, pdf, PDF)
    return request


def build_cades_verify_request(
    document: bytes,
    signature: bytes,
    *,
    request_id: str,
) -> etree._Element:
    request = _request("VerifyRequest", CADES_VERIFY_PROFILE, request_id)
    _input_document(request, document, None)
    sig_object = etree.SubElement(request, _dss("SignatureObject"))
    etree.SubElement(sig_object, _dss("Base64Signature")).text = (
        base64.b64encode(signature).decode("ascii")
    )
    return request


def _decode(value: Optional[str]) -> Optional[bytes]:
    if not value:
        return None
    try:
        return base64.b64decode("".join(value.split()), validate=True)
    except (binascii.Error, ValueError):
        return None


# ----------------------------------------------------------------------
# Service
# ----------------------------------------------------------------------

class ESealService:
    def __init__(
        self,
        *,
        settings: Settings,
        transport: SoapTransport,
        breaker: CircuitBreaker,
        seals: SealJobStore,
        blobs: BlobStore,
        auditor: SafeAuditor,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.transport = transport
        self.breaker = breaker
        self.seals = seals
        self.blobs = blobs
        self.auditor = auditor
        self._clock = clock

    @property
    def endpoint(self) -> Optional[str]:
        if self.settings.eseal_soap_endpoint is None:
            return None
        return str(self.settings.eseal_soap_endpoint)

    # ------------------------------------------------------------------
    # Sealing
    # ------------------------------------------------------------------

    async def seal_pdf(
        self,
        pdf: bytes,
        *,
        requested_by: str,
        client_ip: Optional[str] = None,
    ) -> SealResult:
        request_id = new_request_id()
        body = build_pades_sign_request(
            pdf,
            request_id=request_id,
            subject_name=self.settings.eseal_cert_subject_name,
        )
        root = await self._sign(body, request_id=request_id)
        sealed = await self._require_output(
            root, "Base64Data", SealType.PADES, requested_by, request_id
        )

        job = SealJob(
            requested_by=requested_by,
            seal_type=SealType.PADES,
            status=SealStatus.SEALED,
            request_id=request_id,
            completed_at=self._clock(),
        )
        input_key = artifact_key("input", job.id, prefix="eseal")
        output_key = artifact_key("eseal", job.id)
        await self.blobs.put(pdf, input_key, PDF)
        await self.blobs.put(sealed, output_key, PDF)
        job = await self.seals.save(
            job.model_copy(update={"input_key": input_key, "output_key": output_key})
        )

        return await self._sealed(job, sealed, AuditAction.ESEAL_PDF, client_ip)

    async def seal_document(
        self,
        document: bytes,
        *,
        requested_by: str,
        client_ip: Optional[str] = None,
    ) -> SealResult:
        request_id = new_request_id()
        body = build_cades_sign_request(
            document,
            request_id=request_id,
            subject_name=self.settings.eseal_cert_subject_name,
        )
        root = await self._sign(body, request_id=request_id)
        signature = await self._require_output(
            root, "Base64Signature", SealType.CADES, requested_by, request_id
        )

        job = SealJob(
            requested_by=requested_by,
            seal_type=SealType.CADES,
            status=SealStatus.SEALED,
            request_id=request_id,
            completed_at=self._clock(),
        )
        input_key = artifact_key("eseal", job.id, suffix=".bin")
        output_key = artifact_key("eseal", job.id, suffix=".p7s")
        await self.blobs.put(document, input_key, OCTET_STREAM)
        await self.blobs.put(signature, output_key, PKCS7_SIGNATURE)
        job = await self.seals.save(
            job.model_copy(update={"input_key": input_key, "output_key": output_key})
        )

        return await self._sealed(job, signature, AuditAction.ESEAL_DOCUMENT, client_ip)

    async def _sign(self, body: etree._Element, *, request_id: str) -> etree._Element:
        endpoint = self.endpoint
        if endpoint is None:
            raise DependencyUnavailable(Dependency.ESEAL.value, "eSeal endpoint is not configured")

        def _fallback(failure: Failure):
            raise DependencyUnavailable(
                Dependency.ESEAL.value,
                "eSeal service is temporarily unavailable. Please try again later.",
            )

        logger.info("eseal_request", extra={"request_id": request_id})
        return await self.breaker.call(
            lambda: self.transport.post(endpoint, body, request_id=request_id),
            fallback=_fallback,
        )

    async def _require_output(
        self,
        root: etree._Element,
        element: str,
        seal_type: SealType,
        requested_by: str,
        request_id: str,
    ) -> bytes:
        result_major = find_text(root, "ResultMajor")
        if not is_success(result_major):
            result_minor = find_text(root, "ResultMinor")
            message = result_minor_message(result_minor)
            logger.error(
                "eseal_rejected",
                extra={
                    "request_id": request_id,
                    "seal_type": seal_type.value,
                    "result_major": result_major,
                    "result_minor": result_minor,
                },
            )
            await self._record_failure(seal_type, requested_by, request_id, message)
            raise SealRejected(f"{seal_type.value} eSeal failed: {message}")

        output = _decode(find_text(root, element))
        if output is None:
            message = f"No {element} found in eSeal response"
            await self._record_failure(seal_type, requested_by, request_id, message)
            raise SealRejected(f"{seal_type.value} eSeal failed: {message}")
        return output

    async def _record_failure(
        self,
        seal_type: SealType,
        requested_by: str,
        request_id: str,
        message: str,
    ) -> None:
        await self.seals.save(
            SealJob(
                requested_by=requested_by,
                seal_type=seal_type,
                status=SealStatus.FAILED,
                request_id=request_id,
                error_message=message,
                completed_at=self._clock(),
            )
        )

    async def _sealed(
        self,
        job: SealJob,
        output: bytes,
        action: AuditAction,
        client_ip: Optional[str],
    ) -> SealResult:
        logger.info(
            "eseal_completed",
            extra={
                "job_id": str(job.id),
                "request_id": job.request_id,
                "seal_type": job.seal_type.value,
            },
        )
        await self.auditor.record(
            actor_id=job.requested_by,
            action=action,
            subject_type=SubjectType.ESEAL_JOB,
            subject_id=str(job.id),
            client_ip=client_ip,
            request_id=job.request_id,
            seal_type=job.seal_type.value,
        )
        return SealResult(job_id=job.id, request_id=job.request_id, sealed=output)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify_pdf(self, pdf: bytes) -> VerifyResult:
        request_id = new_request_id()
        return await self._verify(
            build_pdf_verify_request(pdf, request_id=request_id),
            request_id=request_id,
        )

    async def verify_cades(self, document: bytes, signature: bytes) -> VerifyResult:
        request_id = new_request_id()
        return await self._verify(
            build_cades_verify_request(document, signature, request_id=request_id),
            request_id=request_id,
        )

    async def _verify(self, body: etree._Element, *, request_id: str) -> VerifyResult:
        endpoint = self.endpoint
        if endpoint is None:
            return VerifyResult(
                valid=False,
                result_major=NOT_CONFIGURED,
                result_message="eSeal endpoint is not configured",
            )

        unavailable = VerifyResult(
            valid=False,
            result_major=SERVICE_UNAVAILABLE,
            result_message="eSeal service is temporarily unavailable. Please try again later.",
        )
        try:
            root = await self.breaker.call(
                lambda: self.transport.post(endpoint, body, request_id=request_id),
                fallback=lambda failure: None,
            )
        except Exception:
            logger.exception("eseal_verify_error", extra={"request_id": request_id})
            return VerifyResult(
                valid=False,
                result_major="Error",
                result_message="Verification could not be completed",
            )
        if root is None:
            return unavailable

        result_major = find_text(root, "ResultMajor")
        result_minor = find_text(root, "ResultMinor")
        valid = is_success(result_major)
        logger.info(
            "eseal_verified",
            extra={"request_id": request_id, "result_major": result_major, "valid": valid},
        )
        return VerifyResult(
            valid=valid,
            result_major=result_major,
            result_minor=result_minor,
            result_message=result_minor_message(result_minor),
            signer_name=find_text(root, "SignerIdentity"),
            signing_time=find_text(root, "SigningTime"),
        )
