"""
Digest aggregation for bulk hash signing.

The Provider approves a whole batch against one combined digest:
SHA-256 over the concatenation of every document's raw digest bytes,
taken in batch order.

IMPORTANT DESIGN RULE:
- Digests are concatenated as raw bytes, never as hex text.
- Order is significant; reordering the batch changes the result.
"""

import hashlib
from typing import Sequence, Union

DIGEST_ALGORITHM = "SHA256"


def combined_digest(digests: Sequence[Union[bytes, bytearray]]) -> bytes:
    """SHA-256 of the in-order concatenation of raw digest bytes."""
    if not digests:
        raise ValueError("combined_digest requires at least one digest")

    for digest in digests:
        if not isinstance(digest, (bytes, bytearray)):
            raise TypeError(
                "combined_digest expects raw digest bytes, "
                f"got {type(digest).__name__}"
            )

    return hashlib.sha256(b"".join(bytes(d) for d in digests)).digest()


def combined_digest_hex(hex_digests: Sequence[str]) -> str:
    """
    Hex form of ``combined_digest`` for digests reported as hex strings.

    Each input is decoded to its raw bytes before aggregation.
    """
    return combined_digest([bytes.fromhex(h) for h in hex_digests]).hex()
