import base64
import binascii
import io
import logging

import pikepdf

from signflow.app.core.errors import ValidationError
from signflow.app.schemas.signing import Placement

logger = logging.getLogger("signflow.pdf")

PDF_MAGIC = b"%PDF"


def decode_base64_document(encoded: str) -> bytes:
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Document is not valid Base64", code="INVALID_BASE64")


def validate_pdf(data: bytes, *, max_bytes: int, placement: Placement | None = None) -> int:
    """
    Reject anything that is not a parseable PDF within the size bound.

    Returns the page count. When ``placement`` is given its page must exist.
    """
    if not data:
        raise ValidationError("Document is empty", code="INVALID_PDF")

    if len(data) > max_bytes:
        raise ValidationError(
            f"Document exceeds the {max_bytes // (1024 * 1024)}MB limit",
            code="PDF_TOO_LARGE",
        )

    if len(data) < 5 or not data.startswith(PDF_MAGIC):
        raise ValidationError(
            "File does not appear to be a valid PDF",
            code="INVALID_PDF",
        )

    try:
        with pikepdf.open(io.BytesIO(data)) as pdf:
            page_count = len(pdf.pages)
    except pikepdf.PdfError:
        logger.warning("pdf_parse_failed", extra={"size": len(data)})
        raise ValidationError("PDF structure could not be parsed", code="INVALID_PDF")

    if placement is not None and placement.page > page_count:
        raise ValidationError(
            f"Signature page {placement.page} exceeds document page count {page_count}",
            code="INVALID_PLACEMENT",
        )

    return page_count
