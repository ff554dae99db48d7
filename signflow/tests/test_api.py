"""
HTTP surface.

Covers:
- identity headers are required; jobs of other owners read as missing
- signing initiation is gated on a recent re-confirmation (403 body
  points at the verification endpoint)
- Provider callbacks always answer with a redirect to the frontend
- download only after the job is signed
- eSeal upload limits and owner-scoped downloads
- data erasure requires explicit confirmation
- health check reports breaker states without calling out
"""

import base64
from uuid import UUID

import anyio
import httpx
import pytest
from fastapi.testclient import TestClient

from signflow.app.main import create_app
from signflow.app.schemas.jobs import JobStatus, utcnow
from signflow.app.schemas.reconfirmation import IdentityReconfirmation, ReconfirmationStatus
from signflow.app.services.completion import ProviderOutcome
from signflow.tests.fixtures.pdf_factory import blank_pdf_b64, signed_pdf
from signflow.tests.helpers import (
    ESEAL_ENDPOINT,
    FRONTEND,
    SIGNED_PDF,
    FakeProvider,
    build_test_services,
    dss_response,
    mark_callback_received,
)

OWNER = {
    "X-Identity-Id": "owner-1",
    "X-Identity-Class": "SOP3",
    "X-Identity-Uuid": "uuid-1111",
    "X-Identity-Email": "signer@example.test",
}
OTHER_OWNER = {**OWNER, "X-Identity-Id": "owner-2"}

SINGLE_PAYLOAD = {"file_name": "contract.pdf", "file_base64": blank_pdf_b64()}


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def services(tmp_path, provider):
    return build_test_services(
        tmp_path,
        provider,
        eseal_soap_endpoint=ESEAL_ENDPOINT,
        eseal_cert_subject_name="CN=Org Seal",
    )


@pytest.fixture
def client(services):
    return TestClient(create_app(services=services))


def _reconfirmed(services, owner_id="owner-1"):
    record = IdentityReconfirmation(
        owner_id=owner_id,
        purpose="Approve",
        expected_identity="uuid-1111",
        returned_identity="uuid-1111",
        match=True,
        status=ReconfirmationStatus.VERIFIED,
        verified_at=utcnow(),
    )
    anyio.run(services.reconfirmations.save, record)


def _complete(services, job_id):
    async def _run():
        job = await services.jobs.get(UUID(job_id))
        await mark_callback_received(services, job)
        await services.pipeline.complete(job.id, ProviderOutcome.from_sign_callback("finished"))

    anyio.run(_run)


# =============================================================================
# Authentication and health
# =============================================================================

def test_health_reports_breakers(client, provider):
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["service"] == "signflow"
    assert set(body["breakers"]) == {"signing_api", "hash_sdk", "eseal", "ltv", "provider_token"}
    assert set(body["breakers"].values()) == {"closed"}
    assert provider.requests == []


def test_identity_headers_required(client):
    response = client.get("/signature/status/00000000-0000-0000-0000-000000000000")

    assert response.status_code == 401
    assert response.json()["error"] == "UNAUTHENTICATED"


# =============================================================================
# Re-confirmation gate
# =============================================================================

def test_signing_requires_recent_reconfirmation(client, provider):
    response = client.post("/signature/initiate", json=SINGLE_PAYLOAD, headers=OWNER)

    assert response.status_code == 403
    body = response.json()
    assert body["error"] == "RECONFIRMATION_REQUIRED"
    assert body["verify_url"] == "/face/verify/initiate"
    assert "X-Correlation-ID" in response.headers
    assert provider.requests == []


def test_face_flow_unlocks_signing(client, provider):
    challenge = client.post(
        "/face/verify/initiate",
        json={"purpose": "Approve contract", "transaction_ref": "tx-1", "username_type": "EMAIL"},
        headers=OWNER,
    )
    assert challenge.status_code == 200
    state = httpx.URL(challenge.json()["authorization_url"]).params["state"]

    callback = client.get(
        "/face/callback", params={"state": state, "code": "auth-code"}, follow_redirects=False
    )
    assert callback.status_code == 302
    assert callback.headers["location"].startswith(f"{FRONTEND}/face/result?status=verified")

    verification_id = challenge.json()["verification_id"]
    status = client.get(f"/face/status/{verification_id}", headers=OWNER)
    assert status.json()["status"] == "VERIFIED"

    response = client.post("/signature/initiate", json=SINGLE_PAYLOAD, headers=OWNER)
    assert response.status_code == 200
    assert response.json()["document_count"] == 1


def test_face_mismatch_redirects_with_generic_error(client, provider):
    provider.userinfo = {"uuid": "someone-else"}
    challenge = client.post(
        "/face/verify/initiate",
        json={"purpose": "Approve", "transaction_ref": "tx-2", "username_type": "EMAIL"},
        headers=OWNER,
    )
    state = httpx.URL(challenge.json()["authorization_url"]).params["state"]

    callback = client.get(
        "/face/callback", params={"state": state, "code": "auth-code"}, follow_redirects=False
    )

    assert callback.headers["location"] == f"{FRONTEND}/face/result?error=verification_failed"


def test_blank_identity_header_never_verifies(client, provider):
    provider.userinfo = {"uuid": ""}
    headers = {**OWNER, "X-Identity-Uuid": "  "}
    challenge = client.post(
        "/face/verify/initiate",
        json={"purpose": "Approve", "transaction_ref": "tx-3", "username_type": "EMAIL"},
        headers=headers,
    )
    state = httpx.URL(challenge.json()["authorization_url"]).params["state"]

    callback = client.get(
        "/face/callback", params={"state": state, "code": "auth-code"}, follow_redirects=False
    )

    assert callback.headers["location"] == f"{FRONTEND}/face/result?error=verification_failed"
    response = client.post("/signature/initiate", json=SINGLE_PAYLOAD, headers=headers)
    assert response.status_code == 403


# =============================================================================
# Interactive signing
# =============================================================================

def test_invalid_base64_is_rejected(client, services):
    _reconfirmed(services)

    response = client.post(
        "/signature/initiate",
        json={"file_name": "x.pdf", "file_base64": "%%%"},
        headers=OWNER,
    )

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_BASE64"


def test_status_and_download_are_owner_scoped(client, services):
    _reconfirmed(services)
    job_id = client.post("/signature/initiate", json=SINGLE_PAYLOAD, headers=OWNER).json()["job_id"]

    own = client.get(f"/signature/status/{job_id}", headers=OWNER)
    assert own.status_code == 200
    assert own.json()["status"] == "AWAITING_USER"
    assert own.json()["download_url"] is None

    assert client.get(f"/signature/status/{job_id}", headers=OTHER_OWNER).status_code == 404
    assert client.get(f"/signature/download/{job_id}", headers=OTHER_OWNER).status_code == 404
    # Interactive jobs are not visible under the hash signing routes
    assert client.get(f"/hashsign/status/{job_id}", headers=OWNER).status_code == 404


def test_download_after_signing(client, services):
    _reconfirmed(services)
    job_id = client.post("/signature/initiate", json=SINGLE_PAYLOAD, headers=OWNER).json()["job_id"]

    early = client.get(f"/signature/download/{job_id}", headers=OWNER)
    assert early.status_code == 409
    assert early.json()["error"] == "NOT_SIGNED"

    _complete(services, job_id)

    status = client.get(f"/signature/status/{job_id}", headers=OWNER).json()
    assert status["status"] == JobStatus.SIGNED.value
    assert status["download_url"] == f"/signature/download/{job_id}"

    response = client.get(f"/signature/download/{job_id}", headers=OWNER)
    assert response.status_code == 200
    assert response.content == SIGNED_PDF
    assert response.headers["content-type"] == "application/pdf"
    assert response.headers["X-LTV-Applied"] == "false"


def test_callback_with_unknown_state_redirects(client):
    response = client.get(
        "/signature/callback",
        params={"state": "forged", "status": "finished"},
        follow_redirects=False,
    )

    assert response.status_code == 302
    assert response.headers["location"] == f"{FRONTEND}/signature/result?error=invalid_state"


def test_callback_when_pool_unavailable_redirects_with_error(client, services):
    _reconfirmed(services)
    job_id = client.post("/signature/initiate", json=SINGLE_PAYLOAD, headers=OWNER).json()["job_id"]
    job = anyio.run(services.jobs.get, UUID(job_id))
    state = httpx.URL(job.callback_url).params["state"]

    response = client.get(
        "/signature/callback",
        params={"state": state, "status": "finished"},
        follow_redirects=False,
    )

    assert response.status_code == 302
    assert response.headers["location"] == f"{FRONTEND}/signature/result?error=pool_saturated"


# =============================================================================
# eSeal
# =============================================================================

def test_seal_pdf_and_download(client, provider):
    sealed = signed_pdf("org-seal")
    provider.eseal_body = dss_response(
        "urn:oasis:names:tc:dss:1.0:resultmajor:Success",
        Base64Data=base64.b64encode(sealed).decode("ascii"),
    )

    response = client.post(
        "/eseal/pdf",
        files={"file": ("in.pdf", base64.b64decode(blank_pdf_b64()), "application/pdf")},
        headers=OWNER,
    )
    assert response.status_code == 200
    download_url = response.json()["download_url"]

    own = client.get(download_url, headers=OWNER)
    assert own.status_code == 200
    assert own.content == sealed

    assert client.get(download_url, headers=OTHER_OWNER).status_code == 404


def test_seal_rejects_empty_upload(client, provider):
    response = client.post(
        "/eseal/pdf",
        files={"file": ("in.pdf", b"", "application/pdf")},
        headers=OWNER,
    )

    assert response.status_code == 400
    assert response.json()["error"] == "EMPTY_FILE"
    assert provider.requests == []


# =============================================================================
# Data subject requests
# =============================================================================

def test_erasure_requires_confirmation(client, services):
    _reconfirmed(services)
    client.post("/signature/initiate", json=SINGLE_PAYLOAD, headers=OWNER)

    refused = client.request(
        "DELETE", "/users/me/data", json={"confirm": "yes"}, headers=OWNER
    )
    assert refused.status_code == 400
    assert refused.json()["error"] == "CONFIRMATION_REQUIRED"

    export = client.get("/users/me/data-export", headers=OWNER).json()
    assert len(export["signing_history"]) == 1
    assert export["owner_id"] == "owner-1"

    erased = client.request(
        "DELETE", "/users/me/data", json={"confirm": "DELETE_MY_DATA"}, headers=OWNER
    )
    assert erased.status_code == 200
    report = erased.json()
    assert report["signing_jobs_deleted"] == 1
    assert report["reconfirmations_deleted"] == 1
    assert report["audit_records_preserved"] is True

    # The verification went with the rest of the data
    again = client.post("/signature/initiate", json=SINGLE_PAYLOAD, headers=OWNER)
    assert again.status_code == 403
