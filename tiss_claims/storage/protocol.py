"""
Protocol definition for blob storage.

Interchange files and operator returns live in an external blob store and are
referenced by URL. The engine only puts and gets bytes.
"""

from typing import Protocol, runtime_checkable


@runtime_checkable
class BlobStore(Protocol):
    """Protocol for blob storage backends."""

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """Store bytes under ``key`` and return their URL."""
        ...

    def get(self, url: str) -> bytes:
        """Fetch bytes by URL. Raises TransientError when unavailable."""
        ...

    def exists(self, url: str) -> bool:
        """Whether an object is stored at ``url``."""
        ...
