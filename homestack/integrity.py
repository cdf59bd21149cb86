"""
SHA-256 digests for snapshot archives, stored in sha256sum format.
"""
import hashlib
import hmac
from pathlib import Path
from typing import Optional

from .models import Snapshot

CHUNK_SIZE = 65536


class IntegrityVerifier:
    """Computes and checks archive digests."""

    def digest(self, data: bytes) -> str:
        """Compute the SHA-256 hash of raw bytes."""
        hasher = hashlib.sha256()
        hasher.update(data)
        return hasher.hexdigest()

    def digest_file(self, path: Path) -> str:
        """Stream a file and return its SHA-256 hex digest."""
        hasher = hashlib.sha256()
        with path.open("rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                hasher.update(chunk)
        return hasher.hexdigest()

    def write_digest_file(self, path: Path, digest: str, archive_name: str) -> None:
        with path.open("w", encoding="utf-8") as f:
            f.write(f"{digest}  {archive_name}\n")

    def read_digest_file(self, path: Path) -> Optional[str]:
        """Return the digest stored in a sha256sum line, or None if unreadable."""
        try:
            line = path.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        if not line:
            return None
        digest = line.split()[0].lower()
        if len(digest) != 64 or any(c not in "0123456789abcdef" for c in digest):
            return None
        return digest

    def verify(self, snapshot: Snapshot) -> bool:
        """
        Recompute the archive digest and compare it with the stored digest file.
        A missing digest file or archive never verifies.
        """
        digest_path = snapshot.archive_path.with_name(f"{snapshot.id}.sha256")
        stored = self.read_digest_file(digest_path)
        if stored is None or not snapshot.archive_path.is_file():
            return False
        actual = self.digest_file(snapshot.archive_path)
        return hmac.compare_digest(actual, stored)
