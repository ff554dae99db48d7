"""
Document validation, placement encoding and bulk digest aggregation.

Covers:
- combined digest is SHA-256 over raw digest bytes in batch order
- hex digests are decoded before aggregation
- placement bounds and encodings (sign_prop, signature field rectangle)
- PDF validation: magic, size bound, parseability, placement page
"""

import hashlib

import pytest
from pydantic import ValidationError as PydanticValidationError

from signflow.app.core.errors import ValidationError
from signflow.app.schemas.signing import Placement
from signflow.app.utils.hashing import combined_digest, combined_digest_hex
from signflow.app.utils.pdf import decode_base64_document, validate_pdf
from signflow.tests.fixtures.pdf_factory import blank_pdf, blank_pdf_b64, not_a_pdf


# ------------------------------------------------------------------
# Digest aggregation
# ------------------------------------------------------------------

def test_combined_digest_concatenates_raw_bytes_in_order():
    d1 = hashlib.sha256(b"one").digest()
    d2 = hashlib.sha256(b"two").digest()

    expected = hashlib.sha256(d1 + d2).digest()
    assert combined_digest([d1, d2]) == expected
    assert combined_digest([d2, d1]) != expected


def test_combined_digest_of_one_document_hashes_that_digest():
    d1 = hashlib.sha256(b"only").digest()

    assert combined_digest([d1]) == hashlib.sha256(d1).digest()
    assert combined_digest([d1]) != d1


def test_combined_digest_hex_decodes_before_hashing():
    d1 = hashlib.sha256(b"one").digest()
    d2 = hashlib.sha256(b"two").digest()

    result = combined_digest_hex([d1.hex(), d2.hex()])
    assert result == hashlib.sha256(d1 + d2).hexdigest()
    # Concatenating hex text would give a different value.
    assert result != hashlib.sha256((d1.hex() + d2.hex()).encode()).hexdigest()


def test_combined_digest_rejects_empty_and_text():
    with pytest.raises(ValueError):
        combined_digest([])
    with pytest.raises(TypeError):
        combined_digest(["abcd"])


# ------------------------------------------------------------------
# Placement
# ------------------------------------------------------------------

def test_placement_encodings():
    placement = Placement(page=2, x=100, y=50.5, width=200, height=80)

    assert placement.sign_prop == "2:[100,50.5,200,80]"
    assert placement.location() == {
        "page": 2,
        "llx": 100,
        "lly": 50.5,
        "urx": 300,
        "ury": 130.5,
    }


@pytest.mark.parametrize(
    "kwargs",
    [
        {"page": 0, "x": 0, "y": 0, "width": 50, "height": 50},
        {"page": 1, "x": -1, "y": 0, "width": 50, "height": 50},
        {"page": 1, "x": 0, "y": 0, "width": 5, "height": 50},
        {"page": 1, "x": 0, "y": 0, "width": 50, "height": 9.9},
    ],
)
def test_placement_bounds(kwargs):
    with pytest.raises(PydanticValidationError):
        Placement(**kwargs)


# ------------------------------------------------------------------
# PDF validation
# ------------------------------------------------------------------

def test_valid_pdf_reports_page_count():
    assert validate_pdf(blank_pdf(3), max_bytes=1024 * 1024) == 3


def test_placement_page_must_exist():
    placement = Placement(page=3, x=0, y=0, width=50, height=50)
    with pytest.raises(ValidationError) as exc:
        validate_pdf(blank_pdf(2), max_bytes=1024 * 1024, placement=placement)
    assert exc.value.code == "INVALID_PLACEMENT"


@pytest.mark.parametrize("data", [b"", not_a_pdf(), b"%PD"])
def test_non_pdf_rejected(data):
    with pytest.raises(ValidationError) as exc:
        validate_pdf(data, max_bytes=1024 * 1024)
    assert exc.value.code == "INVALID_PDF"


def test_oversized_pdf_rejected():
    data = blank_pdf()
    with pytest.raises(ValidationError) as exc:
        validate_pdf(data, max_bytes=len(data) - 1)
    assert exc.value.code == "PDF_TOO_LARGE"


def test_base64_decoding():
    assert decode_base64_document(blank_pdf_b64()).startswith(b"%PDF")
    with pytest.raises(ValidationError) as exc:
        decode_base64_document("not base64 !!")
    assert exc.value.code == "INVALID_BASE64"
