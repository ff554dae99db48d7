"""
Artifact storage.

Keys are slash-separated relative names (``signed/<job>.pdf``). Keys are
generated by the service from job ids and document indexes only; the
filesystem backend still refuses any key that would resolve outside its
root.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional, Protocol

import anyio

logger = logging.getLogger("signflow.storage.blobs")

PDF = "application/pdf"


class BlobNotFound(LookupError):
    """Raised when a key has no stored object."""


class BlobStore(Protocol):
    async def put(self, data: bytes, key: str, content_type: str) -> None:
        ...

    async def get(self, key: str) -> bytes:
        ...

    async def delete(self, key: str) -> None:
        ...


# ----------------------------------------------------------------------
# Key helpers
# ----------------------------------------------------------------------

def artifact_key(
    stage: str,
    job_id: object,
    *,
    index: Optional[int] = None,
    prefix: str = "",
    suffix: str = ".pdf",
) -> str:
    """
    Build a storage key such as ``signed/<job>.pdf``,
    ``signed-ltv/<job>_2.pdf`` or ``hashsign/unsigned/<job>_0.pdf``.
    """
    stem = f"{job_id}" if index is None else f"{job_id}_{index}"
    head = f"{prefix.rstrip('/')}/" if prefix else ""
    return f"{head}{stage}/{stem}{suffix}"


# ----------------------------------------------------------------------
# Filesystem backend
# ----------------------------------------------------------------------

class FilesystemBlobStore:
    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        candidate = (self.root / key).resolve()
        # Containment check: resolved path must remain inside the root.
        try:
            candidate.relative_to(self.root)
        except ValueError:
            raise ValueError(f"Storage key escapes storage root: {key!r}")
        if candidate == self.root:
            raise ValueError("Storage key must name a file")
        return candidate

    async def put(self, data: bytes, key: str, content_type: str) -> None:
        path = anyio.Path(self._path_for(key))
        await path.parent.mkdir(parents=True, exist_ok=True)
        await path.write_bytes(data)
        logger.debug(
            "blob_stored",
            extra={"key": key, "size": len(data), "content_type": content_type},
        )

    async def get(self, key: str) -> bytes:
        path = anyio.Path(self._path_for(key))
        if not await path.is_file():
            raise BlobNotFound(key)
        return await path.read_bytes()

    async def delete(self, key: str) -> None:
        path = anyio.Path(self._path_for(key))
        await path.unlink(missing_ok=True)


# ----------------------------------------------------------------------
# In-memory backend
# ----------------------------------------------------------------------

class InMemoryBlobStore:
    def __init__(self) -> None:
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}

    async def put(self, data: bytes, key: str, content_type: str) -> None:
        self.objects[key] = bytes(data)
        self.content_types[key] = content_type

    async def get(self, key: str) -> bytes:
        try:
            return self.objects[key]
        except KeyError:
            raise BlobNotFound(key) from None

    async def delete(self, key: str) -> None:
        self.objects.pop(key, None)
        self.content_types.pop(key, None)
