"""Content-addressed, immutable blob store.

Storage layout: {base_path}/{sha256[0:2]}/{sha256[2:4]}/{sha256}.dat
Backs the local registry: image payloads are stored once per digest and
never rewritten.
"""

from __future__ import annotations

from pathlib import Path

from deckhand.core.hasher import sha256_hex


class BlobIntegrityError(RuntimeError):
    """Raised when a stored blob's hash does not match its address."""


class ContentAddressedStore:
    """SHA-256 keyed, immutable blob store.

    Storing the same content twice is a no-op. There is no update or delete.

    Parameters
    ----------
    base_path:
        Root directory for blob storage.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _extract_digest(content_address: str) -> str:
        return content_address.removeprefix("sha256:")

    def _blob_path(self, sha256_digest: str) -> Path:
        return self._base / sha256_digest[:2] / sha256_digest[2:4] / f"{sha256_digest}.dat"

    def store(self, data: bytes) -> str:
        """Store data and return its content address ("sha256:<hex>").

        If the content already exists, verifies integrity instead of
        overwriting.
        """
        digest = sha256_hex(data)
        path = self._blob_path(digest)

        if path.exists():
            if not self.verify(digest):
                raise BlobIntegrityError(f"Existing blob at {digest} failed integrity check")
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        return f"sha256:{digest}"

    def retrieve(self, content_address: str) -> bytes:
        """Retrieve blob bytes by content address ("sha256:<hex>" or bare hex)."""
        path = self._blob_path(self._extract_digest(content_address))
        if not path.exists():
            raise FileNotFoundError(f"Blob not found: {content_address}")
        return path.read_bytes()

    def exists(self, content_address: str) -> bool:
        return self._blob_path(self._extract_digest(content_address)).exists()

    def verify(self, content_address: str) -> bool:
        """Re-hash stored data and compare against the content address."""
        digest = self._extract_digest(content_address)
        path = self._blob_path(digest)
        if not path.exists():
            return False
        return sha256_hex(path.read_bytes()) == digest
