"""
In-memory blob store for tests.
"""

from tiss_claims.errors import TransientError


class InMemoryBlobStore:
    """Keeps objects in a dict keyed by ``memory://{key}`` URLs."""

    def __init__(self) -> None:
        self._objects: dict[str, bytes] = {}
        self._content_types: dict[str, str] = {}
        self.fail_reads = 0  # Number of upcoming get() calls that should fail

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        url = f"memory://{key}"
        self._objects[url] = bytes(data)
        self._content_types[url] = content_type
        return url

    def get(self, url: str) -> bytes:
        if self.fail_reads > 0:
            self.fail_reads -= 1
            raise TransientError(f"Blob store unavailable: {url}", {"url": url})
        if url not in self._objects:
            raise TransientError(f"Blob not found: {url}", {"url": url})
        return self._objects[url]

    def exists(self, url: str) -> bool:
        return url in self._objects

    def content_type(self, url: str) -> str | None:
        return self._content_types.get(url)

    @property
    def urls(self) -> list[str]:
        return list(self._objects)
