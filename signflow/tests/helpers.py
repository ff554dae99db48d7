import base64
import hashlib
import json
from typing import Dict, List, Optional, Set

import httpx

from signflow.app.core.config import Settings
from signflow.app.events import MemoryAuditRecorder
from signflow.app.schemas.identity import CallerIdentity
from signflow.app.schemas.jobs import JobStatus, SigningJob
from signflow.app.schemas.signing import Placement, SignDocument
from signflow.app.services.container import ServiceContainer, build_services
from signflow.app.services.correlation import InMemoryCorrelationTokenStore
from signflow.app.storage.blobs import InMemoryBlobStore
from signflow.tests.fixtures.pdf_factory import blank_pdf, signed_pdf

PROVIDER = "https://stg-id.uaepass.ae"
SIGNING_API = f"{PROVIDER}/trustedx-resources/esignsp/v2"
HASH_SDK = "http://localhost:8081"
ESEAL_ENDPOINT = "https://eseal.test/trustedx-gw/SoapGateway"
LTV_ENDPOINT = "https://ltv.test/trustedx-gw/LtvGateway"
APP = "https://app.test"
FRONTEND = "https://web.test"

SIGNED_PDF = signed_pdf("provider-signed")
HASH_SIGNED_PDF = signed_pdf("hash-signed")
LTV_PDF = signed_pdf("ltv-enhanced")


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        provider_client_id="client-id",
        provider_client_secret="client-secret",
        app_base_url=APP,
        frontend_url=FRONTEND,
        storage_root=tmp_path / "storage",
        ltv_backend="disabled",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_caller(
    owner_id: str = "owner-1",
    *,
    identity_class: str = "SOP3",
    provider_identity: Optional[str] = "uuid-1111",
) -> CallerIdentity:
    return CallerIdentity(
        owner_id=owner_id,
        identity_class=identity_class,
        provider_identity=provider_identity,
        eid="784-1990-1234567-1",
        mobile="971500000000",
        email="signer@example.test",
    )


def make_document(name: str = "contract.pdf", *, pages: int = 1) -> SignDocument:
    return SignDocument(
        name=name,
        content=blank_pdf(pages),
        placement=Placement(page=1, x=100, y=100, width=200, height=80),
    )


def dss_response(result_major: str, *, result_minor: str = "", **outputs: str) -> bytes:
    """Minimal DSS response envelope as the eSeal/verify endpoint answers."""
    extra = "".join(f"<dss:{name}>{value}</dss:{name}>" for name, value in outputs.items())
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<soapenv:Envelope xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/">'
        "<soapenv:Body>"
        '<dss:SignResponse xmlns:dss="urn:oasis:names:tc:dss:1.0:core:schema">'
        "<dss:Result>"
        f"<dss:ResultMajor>{result_major}</dss:ResultMajor>"
        f"<dss:ResultMinor>{result_minor}</dss:ResultMinor>"
        "</dss:Result>"
        f"{extra}"
        "</dss:SignResponse>"
        "</soapenv:Body>"
        "</soapenv:Envelope>"
    ).encode("utf-8")


class FakeProvider:
    """
    In-process stand-in for every remote the orchestrator talks to.

    Routes by host and path; each knob switches one remote into a failure
    mode. All requests are kept for assertions.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []

        self.process_status: Optional[int] = None
        self.failing_downloads: Set[int] = set()
        self.empty_downloads: Set[int] = set()
        self.userinfo: Dict[str, object] = {"uuid": "uuid-1111"}

        self.sdk_start_status: Optional[int] = None
        self.sdk_sign_status: Dict[str, int] = {}
        self.sign_identity_ids: List[str] = []

        self.eseal_body: Optional[bytes] = None
        self.eseal_status: int = 200
        self.ltv_status: int = 200

        self._processes = 0
        self._transactions = 0

    # ------------------------------------------------------------------
    # Helpers for assertions
    # ------------------------------------------------------------------

    def paths(self, method: Optional[str] = None) -> List[str]:
        return [
            r.url.path for r in self.requests if method is None or r.method == method
        ]

    def count(self, method: str, suffix: str) -> int:
        return sum(
            1 for r in self.requests if r.method == method and r.url.path.endswith(suffix)
        )

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    # ------------------------------------------------------------------
    # Router
    # ------------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        path = request.url.path

        if host == "eseal.test":
            if self.eseal_status != 200:
                return httpx.Response(self.eseal_status)
            return httpx.Response(200, content=self.eseal_body or b"")

        if host == "ltv.test":
            if self.ltv_status != 200:
                return httpx.Response(self.ltv_status)
            return httpx.Response(
                200,
                content=(
                    "<LTVResponse><LTVDocument>"
                    + base64.b64encode(LTV_PDF).decode("ascii")
                    + "</LTVDocument></LTVResponse>"
                ).encode("utf-8"),
            )

        if host == "localhost":
            return self._hash_sdk(request, path)

        if path.endswith("/main-as/token"):
            return httpx.Response(200, json={"access_token": "svc-token", "expires_in": 3600})
        if path.endswith("/idshub/token"):
            return httpx.Response(200, json={"access_token": "user-token"})
        if path.endswith("/idshub/userinfo"):
            return httpx.Response(200, json=self.userinfo)

        if path.endswith("/signer_processes") and request.method == "POST":
            return self._create_process(request)
        if "/documents/" in path:
            return self._document(request, path)

        return httpx.Response(404)

    def _create_process(self, request: httpx.Request) -> httpx.Response:
        if self.process_status is not None:
            return httpx.Response(self.process_status)

        self._processes += 1
        process_id = f"proc-{self._processes}"
        count = request.content.count(b'name="document"')
        return httpx.Response(
            201,
            json={
                "id": process_id,
                "documents": [
                    {"url": f"{SIGNING_API}/documents/{process_id}-{i}"}
                    for i in range(count)
                ],
                "tasks": {"pending": [{"url": f"{PROVIDER}/ui/sign/{process_id}"}]},
            },
        )

    def _document(self, request: httpx.Request, path: str) -> httpx.Response:
        if request.method == "DELETE":
            return httpx.Response(204)

        name = path.split("/documents/", 1)[1].split("/", 1)[0]
        index = int(name.rsplit("-", 1)[1])
        if index in self.failing_downloads:
            return httpx.Response(500)
        if index in self.empty_downloads:
            return httpx.Response(200, content=b"")
        return httpx.Response(200, content=SIGNED_PDF)

    def _hash_sdk(self, request: httpx.Request, path: str) -> httpx.Response:
        body = json.loads(request.content or b"{}")

        if path == "/start":
            if self.sdk_start_status is not None:
                return httpx.Response(self.sdk_start_status)
            self._transactions += 1
            document = base64.b64decode(body["document"])
            identities = self.sign_identity_ids or ["sid-1"]
            identity = identities[(self._transactions - 1) % len(identities)]
            return httpx.Response(
                200,
                json={
                    "txId": f"tx-{self._transactions}",
                    "sign_identity_id": identity,
                    "digest": hashlib.sha256(document + body["signProp"].encode()).hexdigest(),
                },
            )

        if path == "/sign":
            status = self.sdk_sign_status.get(body.get("txId"))
            if status is not None:
                return httpx.Response(status)
            return httpx.Response(200, content=HASH_SIGNED_PDF)

        return httpx.Response(404)


def build_test_services(
    tmp_path,
    provider: FakeProvider,
    *,
    recorder: Optional[MemoryAuditRecorder] = None,
    tokens: Optional[InMemoryCorrelationTokenStore] = None,
    blobs: Optional[InMemoryBlobStore] = None,
    **setting_overrides,
) -> ServiceContainer:
    settings = make_settings(tmp_path, **setting_overrides)
    return build_services(
        settings,
        http_client=provider.client(),
        blobs=blobs if blobs is not None else InMemoryBlobStore(),
        tokens=tokens if tokens is not None else InMemoryCorrelationTokenStore(),
        recorder=recorder or MemoryAuditRecorder(),
    )


def state_of(url: str) -> str:
    return httpx.URL(url).params["state"]


async def mark_callback_received(
    services: ServiceContainer,
    job: SigningJob,
    status: str = "finished",
) -> SigningJob:
    return await services.jobs.update(
        job.id,
        lambda current: current.transition(JobStatus.CALLBACK_RECEIVED, callback_status=status),
    )
