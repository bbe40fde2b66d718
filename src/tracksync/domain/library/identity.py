"""
Track identity derived from file content.

A track_id is the SHA-256 of the file's bytes: identical content gives the
same id wherever the file lives, and any change to the content changes it.
"""

import hashlib

from tracksync.core.errors import IdentityError

DEFAULT_CHUNK_SIZE = 1024 * 1024
TRACK_ID_LENGTH = 64


class IdentityResolver:
    """Computes content-derived track ids.

    Passed explicitly to whatever needs identities, so tests and parallel
    scans never share hidden hashing state.
    """

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE):
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size

    def resolve(self, local_path: str) -> str:
        """Return the hex track_id of the file at local_path.

        Raises:
            IdentityError: If the file cannot be read
        """
        digest = hashlib.sha256()
        try:
            with open(local_path, "rb") as f:
                while chunk := f.read(self.chunk_size):
                    digest.update(chunk)
        except OSError as e:
            raise IdentityError(f"Cannot hash {local_path}: {e}", path=local_path) from e
        return digest.hexdigest()
