import base64
import io

import pikepdf


# ------------------------------------------------------------------
# Unsigned PDFs (input documents)
# ------------------------------------------------------------------

def blank_pdf(pages: int = 1) -> bytes:
    """
    Produce a structurally valid PDF with ``pages`` blank Letter pages.

    Used as signing input; placement validation needs real pages.
    """
    buffer = io.BytesIO()
    with pikepdf.new() as pdf:
        for _ in range(pages):
            pdf.add_blank_page(page_size=(612, 792))
        pdf.save(buffer)
    return buffer.getvalue()


def blank_pdf_b64(pages: int = 1) -> str:
    return base64.b64encode(blank_pdf(pages)).decode("ascii")


# ------------------------------------------------------------------
# "Signed" PDFs (Provider output)
#
# Stand-ins for signed artifacts returned by the Provider. They are
# valid PDFs distinguishable by content; they carry no signature.
# ------------------------------------------------------------------

def signed_pdf(marker: str = "signed") -> bytes:
    buffer = io.BytesIO()
    with pikepdf.new() as pdf:
        pdf.add_blank_page(page_size=(612, 792))
        pdf.docinfo["/Subject"] = marker
        pdf.save(buffer)
    return buffer.getvalue()


# ------------------------------------------------------------------
# Non-PDF input
# ------------------------------------------------------------------

def not_a_pdf() -> bytes:
    return b"this is not a pdf"
