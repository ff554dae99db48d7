"""
LTV enhancement backends.

Covers:
- backend selection from configuration
- SOAP backend success, malformed answers and outages all resolve to a
  result; only success marks the artifact as enhanced
- DSS backend embeds the signer chain into a real PAdES signature as an
  incremental update
- DSS backend degrades without a breaker fault for unsigned or
  unreadable input, and with one for an untrusted chain
- backends must implement the enhancement step
"""

import base64
import io

import httpx
import pytest
from pyhanko.pdf_utils.reader import PdfFileReader
from pyhanko.sign.validation.dss import DocumentSecurityStore

from signflow.app.services.ltv import (
    DisabledLtvEnhancer,
    DssLtvEnhancer,
    SoapLtvEnhancer,
    _BreakerGuardedEnhancer,
    build_ltv_enhancer,
    load_trust_root,
)
from signflow.app.services.resilience import CircuitBreaker, CircuitState
from signflow.app.services.soap import SoapTransport
from signflow.tests.fixtures.pdf_factory import blank_pdf, not_a_pdf
from signflow.tests.fixtures.pki import build_chain, sign_with_chain
from signflow.tests.helpers import LTV_ENDPOINT, make_settings

pytestmark = pytest.mark.anyio

ORIGINAL = b"%PDF-1.7 signed"
ENHANCED = b"%PDF-1.7 signed + dss"


def _enhancer(tmp_path, handler, *, breaker=None):
    settings = make_settings(tmp_path, ltv_backend="soap", ltv_soap_endpoint=LTV_ENDPOINT)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SoapLtvEnhancer(
        transport=SoapTransport(http_client=client, settings=settings),
        endpoint=LTV_ENDPOINT,
        breaker=breaker or CircuitBreaker("ltv", failure_threshold=2),
    )


def _ltv_answer(document: str) -> httpx.Response:
    return httpx.Response(
        200,
        content=f"<LTVResponse><LTVDocument>{document}</LTVDocument></LTVResponse>".encode(),
    )


def test_backend_selection(tmp_path):
    breaker = CircuitBreaker("ltv")
    client = httpx.AsyncClient()

    disabled = build_ltv_enhancer(
        make_settings(tmp_path), http_client=client, breaker=breaker
    )
    soap = build_ltv_enhancer(
        make_settings(tmp_path, ltv_backend="soap", ltv_soap_endpoint=LTV_ENDPOINT),
        http_client=client,
        breaker=breaker,
    )
    soap_without_endpoint = build_ltv_enhancer(
        make_settings(tmp_path, ltv_backend="soap"), http_client=client, breaker=breaker
    )
    dss_without_root = build_ltv_enhancer(
        make_settings(tmp_path, ltv_backend="dss"), http_client=client, breaker=breaker
    )

    assert isinstance(disabled, DisabledLtvEnhancer)
    assert isinstance(soap, SoapLtvEnhancer)
    assert isinstance(soap_without_endpoint, DisabledLtvEnhancer)
    assert isinstance(dss_without_root, DisabledLtvEnhancer)


async def test_disabled_backend_returns_input():
    result = await DisabledLtvEnhancer().enhance(ORIGINAL, job_id="job-1")

    assert result.applied is False
    assert result.pdf == ORIGINAL


async def test_soap_success(tmp_path):
    seen = []

    def handler(request):
        seen.append(request)
        return _ltv_answer(base64.b64encode(ENHANCED).decode("ascii"))

    result = await _enhancer(tmp_path, handler).enhance(ORIGINAL, job_id="job-1")

    assert result.applied is True
    assert result.pdf == ENHANCED
    assert base64.b64encode(ORIGINAL) in seen[0].content


async def test_soap_answer_without_document_degrades(tmp_path):
    result = await _enhancer(
        tmp_path, lambda request: httpx.Response(200, content=b"<LTVResponse/>")
    ).enhance(ORIGINAL, job_id="job-1")

    assert result.applied is False
    assert result.pdf == ORIGINAL


async def test_soap_answer_not_base64_degrades(tmp_path):
    result = await _enhancer(
        tmp_path, lambda request: _ltv_answer("***not base64***")
    ).enhance(ORIGINAL, job_id="job-1")

    assert result.applied is False


async def test_repeated_outage_opens_breaker(tmp_path):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500)

    breaker = CircuitBreaker("ltv", failure_threshold=2)
    enhancer = _enhancer(tmp_path, handler, breaker=breaker)

    for _ in range(3):
        result = await enhancer.enhance(ORIGINAL, job_id="job-1")
        assert result.applied is False
        assert result.pdf == ORIGINAL

    assert breaker.state is CircuitState.OPEN
    assert len(calls) == 2


# ------------------------------------------------------------------
# Local DSS backend
# ------------------------------------------------------------------

@pytest.fixture(scope="module")
def chain():
    return build_chain()


def _dss_certs(pdf: bytes):
    dss = DocumentSecurityStore.read_dss(PdfFileReader(io.BytesIO(pdf)))
    return {cert.dump() for cert in dss.load_certs()}


async def test_dss_embeds_signer_chain(chain):
    signed = await sign_with_chain(blank_pdf(), chain)
    breaker = CircuitBreaker("ltv")

    result = await DssLtvEnhancer(trust_root=chain.root, breaker=breaker).enhance(
        signed, job_id="job-1"
    )

    assert result.applied is True
    # Incremental update: the signed revision is kept byte for byte
    assert result.pdf.startswith(signed)
    assert len(result.pdf) > len(signed)
    assert chain.leaf.dump() in _dss_certs(result.pdf)
    assert breaker.failures == 0


@pytest.mark.parametrize("document", [blank_pdf(), not_a_pdf()])
async def test_dss_rejects_unsigned_input_without_fault(chain, document):
    breaker = CircuitBreaker("ltv")

    result = await DssLtvEnhancer(trust_root=chain.root, breaker=breaker).enhance(
        document, job_id="job-1"
    )

    assert result.applied is False
    assert result.pdf == document
    assert breaker.failures == 0


async def test_dss_untrusted_chain_degrades(chain):
    signed = await sign_with_chain(blank_pdf(), chain)
    other_root = build_chain().root
    breaker = CircuitBreaker("ltv")

    result = await DssLtvEnhancer(trust_root=other_root, breaker=breaker).enhance(
        signed, job_id="job-1"
    )

    assert result.applied is False
    assert result.pdf == signed
    assert breaker.failures == 1


def test_dss_backend_loads_trust_root(tmp_path, chain):
    root_path = tmp_path / "root.pem"
    root_path.write_bytes(chain.root_pem)

    enhancer = build_ltv_enhancer(
        make_settings(tmp_path, ltv_backend="dss", ltv_trust_root_path=root_path),
        http_client=httpx.AsyncClient(),
        breaker=CircuitBreaker("ltv"),
    )

    assert isinstance(enhancer, DssLtvEnhancer)
    assert enhancer.trust_root.dump() == chain.root.dump()
    assert load_trust_root(root_path).dump() == chain.root.dump()


def test_backend_without_enhancement_step_cannot_be_built():
    class Incomplete(_BreakerGuardedEnhancer):
        pass

    with pytest.raises(TypeError):
        Incomplete(CircuitBreaker("ltv"))
